# rnaseq_agent/analysis/dge.py

import anndata as ad
import logging
import numpy as np
import pandas as pd
import scipy.sparse as sp
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

log = logging.getLogger(__name__)

RESULT_COLUMNS = ['baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj']


def run_differential_expression(
    adata: ad.AnnData,
    design_factor: str,
    reference: str,
    test: str | None = None,
    layer: str | None = 'counts',
    alpha: float = 0.05,
    n_cpus: int = 1,
    key_added: str = 'deseq2',
    quiet: bool = True
) -> pd.DataFrame:
    """
    Tests every gene for differential expression between two levels of a factor.

    Wraps pydeseq2 (DeseqDataSet + DeseqStats), which fits the negative
    binomial GLM and runs the Wald test. The results table is returned and
    also stored in adata.uns[key_added]['results'] together with the call
    parameters.

    Args:
        adata: The annotated data matrix (samples x genes). Must hold raw
               integer counts in `layer` (or .X when layer is None).
        design_factor: Column in adata.obs with the experimental condition.
        reference: Level of `design_factor` used as the baseline.
        test: Level compared against `reference`. If None, the factor must
              have exactly two levels and the non-reference one is used.
        layer: Layer holding raw counts. Defaults to 'counts'.
        alpha: Significance level used by DESeq2's independent filtering.
        n_cpus: Number of CPUs for pydeseq2 inference.
        key_added: Key in adata.uns for the results. Defaults to 'deseq2'.
        quiet: Suppress pydeseq2 progress output.

    Returns:
        DataFrame indexed by gene with columns baseMean, log2FoldChange,
        lfcSE, stat, pvalue, padj.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        KeyError: If `design_factor` or `layer` is missing.
        ValueError: If the factor levels are unusable.
        RuntimeError: If pydeseq2 fails.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if design_factor not in adata.obs:
        raise KeyError(f"Design factor '{design_factor}' not found in adata.obs.")
    if layer is not None and layer not in adata.layers:
        raise KeyError(f"Layer '{layer}' not found in adata.layers.")

    conditions = adata.obs[design_factor].astype(str)
    levels = sorted(conditions.unique())
    if len(levels) < 2:
        raise ValueError(f"Design factor '{design_factor}' needs at least two levels, found {levels}.")
    if reference not in levels:
        raise ValueError(f"Reference level '{reference}' not found in '{design_factor}'. Levels: {levels}")
    if test is None:
        others = [lvl for lvl in levels if lvl != reference]
        if len(others) != 1:
            raise ValueError(f"Factor '{design_factor}' has levels {levels}; specify 'test' explicitly.")
        test = others[0]
    elif test not in levels:
        raise ValueError(f"Test level '{test}' not found in '{design_factor}'. Levels: {levels}")
    if test == reference:
        raise ValueError("Test and reference levels must differ.")

    matrix = adata.layers[layer] if layer is not None else adata.X
    matrix = matrix.toarray() if sp.issparse(matrix) else np.asarray(matrix)
    if not np.issubdtype(matrix.dtype, np.integer):
        if not np.allclose(np.modf(matrix)[0], 0):
            log.warning("Count matrix contains non-integer values (e.g. estimated counts). Rounding for DESeq2.")
        matrix = np.rint(matrix)
    counts = pd.DataFrame(matrix.astype(np.int64), index=adata.obs_names.astype(str), columns=adata.var_names.astype(str))

    metadata = pd.DataFrame({design_factor: conditions.to_numpy()}, index=counts.index)
    log.info(f"Running DESeq2 on {counts.shape[0]} samples x {counts.shape[1]} genes: "
             f"{design_factor} '{test}' vs '{reference}'.")

    try:
        dds = DeseqDataSet(
            counts=counts,
            metadata=metadata,
            design=f"~{design_factor}",
            refit_cooks=True,
            inference=DefaultInference(n_cpus=n_cpus),
            quiet=quiet
        )
        dds.deseq2()
        stats = DeseqStats(
            dds,
            contrast=[design_factor, test, reference],
            alpha=alpha,
            inference=DefaultInference(n_cpus=n_cpus),
            quiet=quiet
        )
        stats.summary()
        results = stats.results_df[RESULT_COLUMNS].copy()
    except Exception as e:
        log.error(f"An error occurred during differential expression: {e}", exc_info=True)
        raise RuntimeError(f"Failed during differential expression: {e}") from e

    results.index.name = 'gene_id'
    n_sig = int((results['padj'] < alpha).sum())
    log.info(f"Differential expression complete. {n_sig} genes with padj < {alpha}. "
             f"Results stored in adata.uns['{key_added}'].")

    adata.uns[key_added] = {
        'params': {
            'design_factor': design_factor,
            'reference': reference,
            'test': test,
            'alpha': alpha,
        },
        'results': results,
    }
    return results


def significant_genes(
    results: pd.DataFrame,
    padj_threshold: float = 0.05,
    lfc_threshold: float = 1.0,
    direction: str = 'both'
) -> pd.DataFrame:
    """
    Selects genes passing adjusted p-value and |log2FC| thresholds.

    Adds a 'direction' column ('up' or 'down'). `direction` restricts the
    output to 'up', 'down' or 'both'.
    """
    if direction not in ('up', 'down', 'both'):
        raise ValueError(f"direction must be 'up', 'down' or 'both', got '{direction}'.")
    missing = [c for c in ('padj', 'log2FoldChange') if c not in results.columns]
    if missing:
        raise KeyError(f"Results table is missing columns: {missing}")
    if lfc_threshold < 0:
        raise ValueError(f"lfc_threshold ({lfc_threshold}) must be non-negative.")

    passed = results[(results['padj'] < padj_threshold) & (results['log2FoldChange'].abs() > lfc_threshold)].copy()
    passed['direction'] = np.where(passed['log2FoldChange'] > 0, 'up', 'down')
    if direction != 'both':
        passed = passed[passed['direction'] == direction]

    n_up = int((passed['direction'] == 'up').sum())
    n_down = int((passed['direction'] == 'down').sum())
    log.info(f"Significant genes (padj < {padj_threshold}, |log2FC| > {lfc_threshold}): {n_up} up, {n_down} down.")
    return passed.sort_values('padj')
