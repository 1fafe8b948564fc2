# rnaseq_agent/analysis/enrichment.py

import gseapy as gp
import json
import logging
import numpy as np
import os
import pandas as pd
from scipy import stats

log = logging.getLogger(__name__)

ORA_COLUMNS = [
    'term', 'overlap', 'set_size', 'query_size', 'background_size',
    'odds_ratio', 'pvalue', 'padj', 'genes'
]
GSEA_COLUMNS = {
    'Term': 'term', 'ES': 'es', 'NES': 'nes', 'NOM p-val': 'pvalue',
    'FDR q-val': 'fdr', 'FWER p-val': 'fwer', 'Tag %': 'tag_pct',
    'Gene %': 'gene_pct', 'Lead_genes': 'lead_genes'
}


def load_gene_sets(file_path: str) -> dict[str, list[str]]:
    """
    Loads gene sets from a .gmt file or a JSON mapping of set name to genes.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the suffix is unsupported or the content is malformed.
    """
    if not file_path:
        raise ValueError("No gene set file path provided.")
    expanded_path = os.path.expanduser(file_path)
    if not os.path.isfile(expanded_path):
        raise FileNotFoundError(f"Gene set file not found: {expanded_path}")

    lower = expanded_path.lower()
    if lower.endswith('.gmt'):
        gene_sets = gp.read_gmt(expanded_path)
    elif lower.endswith('.json'):
        try:
            with open(expanded_path, 'r') as f: gene_sets = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Error decoding JSON {expanded_path}: {e}") from e
    else:
        raise ValueError(f"Unsupported gene set format: {expanded_path}. Expecting .gmt or .json.")

    if not isinstance(gene_sets, dict) or not gene_sets or \
       not all(isinstance(k, str) and isinstance(v, list) and all(isinstance(g, str) for g in v) for k, v in gene_sets.items()):
        raise ValueError(f"Gene set file '{expanded_path}' has an invalid format.")

    gene_sets = {name: list(dict.fromkeys(g for g in genes if g)) for name, genes in gene_sets.items()}
    log.info(f"Loaded {len(gene_sets)} gene sets from {expanded_path}")
    return gene_sets


def filter_gene_sets(
    gene_sets: dict[str, list[str]],
    universe,
    min_size: int = 15,
    max_size: int = 500
) -> dict[str, list[str]]:
    """Restricts each set to genes in `universe` and drops sets outside the size bounds."""
    if min_size < 1 or max_size < min_size:
        raise ValueError(f"Invalid size bounds: min_size={min_size}, max_size={max_size}.")
    universe = set(universe)
    kept = {}
    for name, genes in gene_sets.items():
        members = [g for g in genes if g in universe]
        if min_size <= len(members) <= max_size:
            kept[name] = members
    log.info(f"{len(kept)} of {len(gene_sets)} gene sets have between {min_size} and {max_size} genes in the universe.")
    return kept


def run_ora(
    gene_list,
    gene_sets: dict[str, list[str]],
    background,
    min_size: int = 5,
    max_size: int = 500,
    alternative: str = 'greater'
) -> pd.DataFrame:
    """
    Over-representation analysis with Fisher's exact test.

    For every gene set a 2x2 table is built over the background universe
    (in list / not in list x in set / not in set) and tested with
    scipy.stats.fisher_exact. P-values are Benjamini-Hochberg adjusted.

    Args:
        gene_list: Genes of interest (e.g. significant DE genes).
        gene_sets: Mapping of set name to member genes.
        background: All genes that could have been selected (e.g. every gene
                    tested for differential expression).
        min_size: Minimum set size after restricting to the background.
        max_size: Maximum set size after restricting to the background.
        alternative: Passed to fisher_exact. Defaults to 'greater'.

    Returns:
        DataFrame with one row per tested set, sorted by p-value.

    Raises:
        ValueError: If the query is empty after restricting to the background
                    or no gene set passes the size filter.
    """
    background = set(map(str, background))
    if not background:
        raise ValueError("Background gene universe is empty.")
    query = set(map(str, gene_list))
    outside = query - background
    if outside:
        log.warning(f"{len(outside)} query genes are not in the background and will be ignored.")
    query &= background
    if not query:
        raise ValueError("No query genes found in the background universe.")

    tested_sets = filter_gene_sets(gene_sets, background, min_size=min_size, max_size=max_size)
    if not tested_sets:
        raise ValueError(f"No gene sets with between {min_size} and {max_size} genes in the background.")

    n_background = len(background)
    n_query = len(query)
    log.info(f"Running ORA: {n_query} query genes, {n_background} background genes, {len(tested_sets)} gene sets.")

    rows = []
    for name, members in tested_sets.items():
        members = set(members)
        hits = query & members
        a = len(hits)
        b = n_query - a
        c = len(members) - a
        d = n_background - a - b - c
        odds_ratio, pvalue = stats.fisher_exact([[a, b], [c, d]], alternative=alternative)
        rows.append({
            'term': name,
            'overlap': a,
            'set_size': len(members),
            'query_size': n_query,
            'background_size': n_background,
            'odds_ratio': odds_ratio,
            'pvalue': pvalue,
            'genes': ";".join(sorted(hits)),
        })

    results = pd.DataFrame(rows)
    results['padj'] = stats.false_discovery_control(results['pvalue'].to_numpy(), method='bh')
    results = results[ORA_COLUMNS].sort_values(['pvalue', 'term']).reset_index(drop=True)
    log.info(f"ORA complete. {int((results['padj'] < 0.05).sum())} gene sets with padj < 0.05.")
    return results


def ranking_metric(results: pd.DataFrame, method: str = 'stat') -> pd.Series:
    """
    Builds a pre-ranked gene list from a differential expression table.

    Methods:
        'stat': the Wald statistic.
        'signed_pvalue': -log10(pvalue) * sign(log2FoldChange).
        'lfc': the log2 fold change.

    Missing values are dropped and duplicated genes keep their highest score.
    Returns a Series sorted in descending order.
    """
    if method == 'stat':
        needed = ['stat']
    elif method == 'signed_pvalue':
        needed = ['pvalue', 'log2FoldChange']
    elif method == 'lfc':
        needed = ['log2FoldChange']
    else:
        raise ValueError(f"Unknown ranking method '{method}'. Use 'stat', 'signed_pvalue' or 'lfc'.")
    missing = [c for c in needed if c not in results.columns]
    if missing:
        raise KeyError(f"Results table is missing columns for '{method}' ranking: {missing}")

    if method == 'stat':
        scores = results['stat']
    elif method == 'signed_pvalue':
        pvals = results['pvalue'].clip(lower=np.finfo(float).tiny)
        scores = -np.log10(pvals) * np.sign(results['log2FoldChange'])
    else:
        scores = results['log2FoldChange']

    scores = pd.Series(scores.to_numpy(dtype=float), index=results.index.astype(str))
    scores = scores.replace([np.inf, -np.inf], np.nan).dropna()
    scores = scores.groupby(level=0).max()
    scores.name = method
    log.info(f"Built ranking metric '{method}' for {len(scores)} genes.")
    return scores.sort_values(ascending=False)


def run_gsea_prerank(
    ranking: pd.Series,
    gene_sets: dict[str, list[str]],
    min_size: int = 15,
    max_size: int = 500,
    permutation_num: int = 1000,
    seed: int = 42,
    threads: int = 1,
    outdir: str | None = None
):
    """
    Runs preranked GSEA with gseapy.prerank.

    Returns:
        Tuple of (results DataFrame sorted by NES with columns term, es, nes,
        pvalue, fdr, fwer, tag_pct, gene_pct, lead_genes; the gseapy Prerank
        object, needed for running-score plots).

    Raises:
        ValueError: If the ranking is empty or no gene set passes the size filter.
        RuntimeError: If gseapy fails.
    """
    if not isinstance(ranking, pd.Series) or ranking.empty:
        raise ValueError("Ranking must be a non-empty pandas Series of gene scores.")
    if permutation_num < 1:
        raise ValueError(f"permutation_num ({permutation_num}) must be positive.")

    tested_sets = filter_gene_sets(gene_sets, ranking.index, min_size=min_size, max_size=max_size)
    if not tested_sets:
        raise ValueError(f"No gene sets with between {min_size} and {max_size} genes in the ranking.")

    log.info(f"Running GSEA prerank on {len(ranking)} ranked genes and {len(tested_sets)} gene sets "
             f"({permutation_num} permutations, seed={seed}).")
    try:
        prerank = gp.prerank(
            rnk=ranking.sort_values(ascending=False),
            gene_sets=tested_sets,
            min_size=min_size,
            max_size=max_size,
            permutation_num=permutation_num,
            seed=seed,
            threads=threads,
            outdir=outdir,
            verbose=False
        )
    except Exception as e:
        log.error(f"An error occurred during GSEA prerank: {e}", exc_info=True)
        raise RuntimeError(f"Failed GSEA prerank: {e}") from e

    results = prerank.res2d.rename(columns=GSEA_COLUMNS)
    results = results[[c for c in GSEA_COLUMNS.values() if c in results.columns]].copy()
    for col in ('es', 'nes', 'pvalue', 'fdr', 'fwer'):
        if col in results.columns:
            results[col] = pd.to_numeric(results[col], errors='coerce')
    results = results.sort_values('nes', ascending=False).reset_index(drop=True)
    log.info(f"GSEA complete. {int((results['fdr'] < 0.25).sum())} gene sets with FDR < 0.25.")
    return results, prerank
