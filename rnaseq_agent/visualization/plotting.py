# rnaseq_agent/visualization/plotting.py

import scanpy as sc
import anndata as ad
import gseapy as gp
import logging
import os
import matplotlib.pyplot as plt
import pandas as pd
import numpy as np
import scipy.sparse as sp
from pathlib import Path

log = logging.getLogger(__name__)


# --- Helpers ---
def _output_path(output_dir: str, file_prefix: str, file_format: str) -> str:
    if not output_dir: raise ValueError("output_dir must be provided")
    Path(output_dir).mkdir(parents=True, exist_ok=True)
    return os.path.join(output_dir, f"{file_prefix}.{file_format}")


def _save_figure(fig, plot_type: str, output_path: str, dpi: int) -> None:
    """Internal helper to save a matplotlib figure and always release it."""
    try:
        fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
        log.info(f"Saved {plot_type} plot to {output_path}")
    except Exception as e:
        msg = f"Failed during plot saving for {plot_type}: {e}"
        log.error(msg, exc_info=True)
        raise RuntimeError(msg) from e
    finally:
        plt.close(fig)


def _group_colors(adata: ad.AnnData, groupby: str | None) -> tuple[list, dict]:
    """Returns one colour per sample plus the legend mapping for `groupby`."""
    if groupby is None:
        return ["#4C72B0"] * adata.n_obs, {}
    if groupby not in adata.obs: raise KeyError(f"Group key '{groupby}' not found in adata.obs")
    labels = adata.obs[groupby].astype(str)
    levels = list(dict.fromkeys(labels))
    cmap = plt.get_cmap("tab10")
    palette = {lvl: cmap(i % 10) for i, lvl in enumerate(levels)}
    return [palette[lbl] for lbl in labels], palette


# --- Plotting Functions ---

def plot_count_boxplot(
    adata: ad.AnnData,
    output_dir: str,
    layer: str = "log_counts",
    groupby: str | None = None,
    file_prefix: str = "count_boxplot",
    file_format: str = "png",
    dpi: int = 150,
    title: str | None = None
) -> str:
    """
    Draws one box per sample showing the distribution of log counts.

    Uses adata.layers[layer] (log2(count + 1) from log_transform_counts by
    default). Boxes are coloured by `groupby` when given.
    """
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if layer not in adata.layers: raise KeyError(f"Layer '{layer}' not found in adata.layers")

    values = adata.layers[layer]
    values = values.toarray() if sp.issparse(values) else np.asarray(values)
    colors, palette = _group_colors(adata, groupby)
    output_path = _output_path(output_dir, file_prefix, file_format)
    log.info(f"Generating count distribution boxplot from layer '{layer}' for {adata.n_obs} samples.")

    fig, ax = plt.subplots(figsize=(max(6, 0.6 * adata.n_obs), 5))
    box = ax.boxplot([values[i, :] for i in range(adata.n_obs)], patch_artist=True, showfliers=False)
    for patch, color in zip(box['boxes'], colors):
        patch.set_facecolor(color)
        patch.set_alpha(0.8)
    ax.set_xticks(range(1, adata.n_obs + 1))
    ax.set_xticklabels(adata.obs_names, rotation=90)
    ax.set_ylabel(layer.replace("_", " "))
    ax.set_title(title or "Per-sample count distribution")
    if palette:
        handles = [plt.Rectangle((0, 0), 1, 1, color=c) for c in palette.values()]
        ax.legend(handles, list(palette.keys()), title=groupby, loc="best")
    _save_figure(fig, "boxplot", output_path, dpi)
    return output_path


def plot_library_sizes(
    adata: ad.AnnData,
    output_dir: str,
    groupby: str | None = None,
    file_prefix: str = "library_sizes",
    file_format: str = "png",
    dpi: int = 150
) -> str:
    """Bar chart of total counts per sample (requires calculate_qc_metrics)."""
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if 'total_counts' not in adata.obs: raise KeyError("QC column 'total_counts' not found. Run calculate_qc_metrics first.")

    colors, palette = _group_colors(adata, groupby)
    output_path = _output_path(output_dir, file_prefix, file_format)
    log.info("Generating library size bar chart.")

    fig, ax = plt.subplots(figsize=(max(6, 0.6 * adata.n_obs), 4))
    ax.bar(range(adata.n_obs), adata.obs['total_counts'] / 1e6, color=colors)
    ax.set_xticks(range(adata.n_obs))
    ax.set_xticklabels(adata.obs_names, rotation=90)
    ax.set_ylabel("Library size (millions of reads)")
    ax.set_title("Library sizes")
    if palette:
        handles = [plt.Rectangle((0, 0), 1, 1, color=c) for c in palette.values()]
        ax.legend(handles, list(palette.keys()), title=groupby, loc="best")
    _save_figure(fig, "library size", output_path, dpi)
    return output_path


def plot_pca(
    adata: ad.AnnData,
    color_by: list[str],
    output_dir: str,
    file_prefix: str = "pca",
    components: str = "1,2",
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> list[str]:
    """Generates and saves sample PCA plots (scanpy.pl.pca), one per colour key."""
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if 'X_pca' not in adata.obsm: raise KeyError("PCA key 'X_pca' not found")
    if not isinstance(color_by, list) or not color_by: raise ValueError("color_by must be non-empty list")

    log.info(f"Generating PCA plots colored by: {', '.join(color_by)}")
    saved, errors_occurred = [], []
    kwargs.setdefault("size", 200)

    for feature in color_by:
        if feature not in adata.obs.columns and feature not in adata.var_names:
            log.warning(f"Feature '{feature}' not found. Skipping PCA plot.")
            errors_occurred.append(feature)
            continue

        safe_feature = feature.replace('/', '_').replace('\\', '_')
        output_path = _output_path(output_dir, f"{file_prefix}_{safe_feature}", file_format)
        try:
            sc.pl.pca(adata, color=feature, components=components, annotate_var_explained=True, show=False, **kwargs)
            _save_figure(plt.gcf(), "pca", output_path, dpi)
            saved.append(output_path)
        except Exception as e:
            plt.close("all")
            log.error(f"Failed to generate PCA plot for '{feature}': {e}", exc_info=True)
            errors_occurred.append(f"{feature}: {e}")

    if errors_occurred:
        log.warning(f"Some errors occurred during PCA plotting for features: {errors_occurred}")
    return saved


def plot_volcano(
    results: pd.DataFrame,
    output_dir: str,
    padj_threshold: float = 0.05,
    lfc_threshold: float = 1.0,
    n_labels: int = 10,
    file_prefix: str = "volcano",
    file_format: str = "png",
    dpi: int = 150
) -> str:
    """Volcano plot of a differential expression table, top genes labelled."""
    missing = [c for c in ('log2FoldChange', 'pvalue', 'padj') if c not in results.columns]
    if missing: raise KeyError(f"Results table is missing columns: {missing}")

    df = results.dropna(subset=['log2FoldChange', 'pvalue']).copy()
    if df.empty: raise ValueError("No genes with finite log2FoldChange and pvalue to plot.")
    df['neg_log10_p'] = -np.log10(df['pvalue'].clip(lower=np.finfo(float).tiny))
    sig = (df['padj'] < padj_threshold) & (df['log2FoldChange'].abs() > lfc_threshold)
    up = sig & (df['log2FoldChange'] > 0)
    down = sig & (df['log2FoldChange'] < 0)

    output_path = _output_path(output_dir, file_prefix, file_format)
    log.info(f"Generating volcano plot ({int(up.sum())} up, {int(down.sum())} down).")

    fig, ax = plt.subplots(figsize=(6, 5))
    ax.scatter(df.loc[~sig, 'log2FoldChange'], df.loc[~sig, 'neg_log10_p'], s=6, c="lightgrey", label="n.s.")
    ax.scatter(df.loc[up, 'log2FoldChange'], df.loc[up, 'neg_log10_p'], s=8, c="#C44E52", label="up")
    ax.scatter(df.loc[down, 'log2FoldChange'], df.loc[down, 'neg_log10_p'], s=8, c="#4C72B0", label="down")
    for x in (-lfc_threshold, lfc_threshold):
        ax.axvline(x, color="grey", linestyle="--", linewidth=0.8)
    for gene, row in df[sig].nsmallest(n_labels, 'padj').iterrows():
        ax.annotate(str(gene), (row['log2FoldChange'], row['neg_log10_p']), fontsize=7)
    ax.set_xlabel("log2 fold change")
    ax.set_ylabel("-log10 p-value")
    ax.legend(loc="best", frameon=False)
    _save_figure(fig, "volcano", output_path, dpi)
    return output_path


def plot_enrichment_bar(
    results: pd.DataFrame,
    output_dir: str,
    score_column: str = "padj",
    term_column: str = "term",
    top_n: int = 20,
    file_prefix: str = "enrichment_bar",
    file_format: str = "png",
    dpi: int = 150,
    title: str | None = None
) -> str:
    """
    Horizontal bar chart of the top enrichment results.

    P-value-like columns ('pvalue', 'padj', 'fdr') are shown as -log10 with
    the smallest values first. Any other column (e.g. 'nes') is plotted as is,
    ordered by absolute value.
    """
    if term_column not in results.columns: raise KeyError(f"Term column '{term_column}' not found")
    if score_column not in results.columns: raise KeyError(f"Score column '{score_column}' not found")
    if top_n < 1: raise ValueError("top_n must be a positive integer")

    df = results[[term_column, score_column]].dropna()
    if df.empty: raise ValueError("No enrichment results to plot.")
    pvalue_like = score_column in ('pvalue', 'padj', 'fdr')
    if pvalue_like:
        df = df.nsmallest(top_n, score_column)
        values = -np.log10(df[score_column].astype(float).clip(lower=np.finfo(float).tiny))
        xlabel = f"-log10 {score_column}"
    else:
        df = df.reindex(df[score_column].abs().sort_values(ascending=False).index).head(top_n)
        values = df[score_column].astype(float)
        xlabel = score_column

    output_path = _output_path(output_dir, file_prefix, file_format)
    log.info(f"Generating enrichment bar chart for top {len(df)} terms by '{score_column}'.")

    fig, ax = plt.subplots(figsize=(8, max(3, 0.35 * len(df))))
    colors = ["#C44E52" if v >= 0 else "#4C72B0" for v in values]
    ax.barh(range(len(df)), values, color=colors)
    ax.set_yticks(range(len(df)))
    ax.set_yticklabels(df[term_column].astype(str))
    ax.invert_yaxis()
    ax.set_xlabel(xlabel)
    ax.set_title(title or "Gene set enrichment")
    _save_figure(fig, "enrichment bar", output_path, dpi)
    return output_path


def plot_gsea_running_score(
    prerank,
    term: str,
    output_dir: str,
    file_prefix: str | None = None,
    file_format: str = "png"
) -> str:
    """Saves the gseapy running enrichment score plot for one gene set."""
    if term not in prerank.results: raise KeyError(f"Term '{term}' not found in GSEA results")
    safe_term = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in term)
    output_path = _output_path(output_dir, file_prefix or f"gsea_{safe_term}", file_format)
    log.info(f"Generating GSEA running score plot for '{term}'.")
    res = prerank.results[term]
    try:
        gp.gseaplot(
            rank_metric=prerank.ranking, term=term, hits=res["hits"], nes=res["nes"],
            pval=res["pval"], fdr=res["fdr"], RES=res["RES"], ofname=output_path
        )
    except Exception as e:
        msg = f"Failed to generate GSEA plot for '{term}': {e}"
        log.error(msg, exc_info=True)
        raise RuntimeError(msg) from e
    finally:
        plt.close("all")
    log.info(f"Saved GSEA plot to {output_path}")
    return output_path
