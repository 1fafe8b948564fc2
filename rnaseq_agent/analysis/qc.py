# rnaseq_agent/analysis/qc.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
import scipy.sparse as sp

log = logging.getLogger(__name__)


def _counts_matrix(adata: ad.AnnData, layer: str | None) -> np.ndarray:
    """Returns the requested count matrix as a dense array."""
    if layer is not None and layer not in adata.layers:
        raise KeyError(f"Layer '{layer}' not found in adata.layers.")
    matrix = adata.layers[layer] if layer is not None else adata.X
    return matrix.toarray() if sp.issparse(matrix) else np.asarray(matrix)


def calculate_qc_metrics(
    adata: ad.AnnData,
    layer: str | None = None,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Calculates per-sample and per-gene count metrics using scanpy.

    Adds the following to adata.obs:
        - 'total_counts' (library size), 'n_genes_by_counts' (detected genes)
    Adds 'total_counts', 'mean_counts', 'n_cells_by_counts' (samples with a
    non-zero count) and 'pct_dropout_by_counts' to adata.var.

    Args:
        adata: The annotated data matrix (samples x genes, raw counts).
        layer: Layer holding raw counts. Defaults to None (use adata.X).
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData object.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")

    log.info(f"Calculating QC metrics for {adata.n_obs} samples and {adata.n_vars} genes.")

    adata_copy = adata if inplace else adata.copy()

    try:
        sc.pp.calculate_qc_metrics(
            adata_copy,
            qc_vars=[],
            percent_top=None,
            log1p=False,
            layer=layer,
            inplace=True
        )
    except Exception as e:
        log.error(f"Error calculating QC metrics: {e}", exc_info=True)
        raise RuntimeError(f"Failed to calculate QC metrics: {e}") from e

    sizes = adata_copy.obs['total_counts']
    log.info(f"Library sizes range from {sizes.min():,.0f} to {sizes.max():,.0f} reads "
             f"(median {sizes.median():,.0f}).")
    empty_samples = adata_copy.obs_names[sizes == 0].tolist()
    if empty_samples:
        log.warning(f"Samples with zero total counts: {empty_samples}")

    if not inplace:
        return adata_copy
    else:
        return None


def filter_low_count_genes(
    adata: ad.AnnData,
    min_count: float = 10,
    min_samples: int | None = None,
    group_key: str | None = None,
    min_total: float | None = None,
    use_cpm: bool = False,
    layer: str | None = 'counts',
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Removes genes with too few reads to be informative.

    A gene is kept when its count (or counts-per-million if `use_cpm`) is at
    least `min_count` in at least `min_samples` samples and, if `min_total` is
    set, its summed count across all samples is at least `min_total`.

    Args:
        adata: The annotated data matrix (samples x genes).
        min_count: Per-sample count (or CPM) threshold. Defaults to 10.
        min_samples: Number of samples that must pass `min_count`. If None,
                     uses the size of the smallest group in `group_key`, or 1
                     when no group key is given.
        group_key: Column in adata.obs defining experimental groups.
        min_total: Optional threshold on the summed count per gene.
        use_cpm: Compare `min_count` against counts-per-million rather than
                 raw counts. Defaults to False.
        layer: Layer holding raw counts. Falls back to adata.X if the layer is
               absent. Defaults to 'counts'.
        inplace: Whether to subset the AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the filtered AnnData object.

    Raises:
        KeyError: If `group_key` is not a column of adata.obs.
        ValueError: If thresholds are negative, `min_samples` exceeds the
                    number of samples, or every gene would be removed.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    if min_count < 0:
        raise ValueError(f"min_count ({min_count}) must be non-negative.")
    if min_total is not None and min_total < 0:
        raise ValueError(f"min_total ({min_total}) must be non-negative.")

    if min_samples is None:
        if group_key is not None:
            if group_key not in adata.obs:
                raise KeyError(f"Group key '{group_key}' not found in adata.obs.")
            min_samples = int(adata.obs[group_key].value_counts().loc[lambda s: s > 0].min())
            log.info(f"min_samples not set. Using smallest group size in '{group_key}': {min_samples}")
        else:
            min_samples = 1
    if min_samples < 1 or min_samples > adata.n_obs:
        raise ValueError(f"min_samples ({min_samples}) must be between 1 and the number of samples ({adata.n_obs}).")

    if layer is not None and layer not in adata.layers:
        log.warning(f"Layer '{layer}' not found. Filtering on adata.X.")
        layer = None
    counts = _counts_matrix(adata, layer)

    values = counts
    if use_cpm:
        lib_sizes = counts.sum(axis=1, keepdims=True).astype(float)
        lib_sizes[lib_sizes == 0] = 1.0
        values = counts / lib_sizes * 1e6

    keep = (values >= min_count).sum(axis=0) >= min_samples
    if min_total is not None:
        keep &= counts.sum(axis=0) >= min_total

    n_keep = int(keep.sum())
    unit = "CPM" if use_cpm else "reads"
    log.info(f"Gene filter: >= {min_count} {unit} in >= {min_samples} samples"
             f"{f', total >= {min_total}' if min_total is not None else ''}. "
             f"Keeping {n_keep} of {adata.n_vars} genes ({adata.n_vars - n_keep} removed).")
    if n_keep == 0:
        raise ValueError("All genes were removed by the low-count filter. Lower the thresholds.")

    if inplace:
        adata._inplace_subset_var(keep)
        return None
    else:
        return adata[:, keep].copy()


def filter_samples_qc(
    adata: ad.AnnData,
    min_total_counts: float | None = None,
    min_genes: int | None = None,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Drops samples with too small a library or too few detected genes.

    Assumes `calculate_qc_metrics` has been run previously.

    Raises:
        KeyError: If required QC columns are missing in adata.obs.
        ValueError: If a threshold is negative or every sample would be removed.
    """
    required_cols = []
    if min_total_counts is not None:
        required_cols.append('total_counts')
    if min_genes is not None:
        required_cols.append('n_genes_by_counts')

    missing_cols = [col for col in required_cols if col not in adata.obs.columns]
    if missing_cols:
        raise KeyError(
            f"Missing required QC columns in adata.obs: {missing_cols}. "
            "Run calculate_qc_metrics first."
        )
    if min_total_counts is not None and min_total_counts < 0:
        raise ValueError(f"min_total_counts ({min_total_counts}) must be non-negative.")
    if min_genes is not None and min_genes < 0:
        raise ValueError(f"min_genes ({min_genes}) must be non-negative.")

    keep = np.ones(adata.n_obs, dtype=bool)
    if min_total_counts is not None:
        keep &= (adata.obs['total_counts'] >= min_total_counts).to_numpy()
    if min_genes is not None:
        keep &= (adata.obs['n_genes_by_counts'] >= min_genes).to_numpy()

    dropped = adata.obs_names[~keep].tolist()
    if dropped:
        log.warning(f"Removing {len(dropped)} samples failing QC: {dropped}")
    if not keep.any():
        raise ValueError("All samples were removed by the sample QC filter.")
    log.info(f"Sample filter complete. Kept {int(keep.sum())} of {adata.n_obs} samples.")

    if inplace:
        adata._inplace_subset_obs(keep)
        return None
    else:
        return adata[keep, :].copy()
