# rnaseq_agent/analysis/preprocess.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
import scipy.sparse as sp

log = logging.getLogger(__name__)


def _looks_like_counts(matrix) -> bool:
    data = matrix.data if sp.issparse(matrix) else np.asarray(matrix)
    if data.size == 0:
        return True
    if np.min(data) < 0:
        return False
    return np.issubdtype(data.dtype, np.integer) or np.allclose(np.modf(data)[0], 0)


def normalize_log(
    adata: ad.AnnData,
    target_sum: float | None = 1e6,
    base: float | None = 2,
    layer_counts: str = "counts",
    key_added: str = "log_cpm",
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Normalizes library sizes to counts-per-million and log transforms.

    Uses scanpy.pp.normalize_total and scanpy.pp.log1p, giving
    log_base(CPM + 1). The result replaces adata.X and is also stored in
    adata.layers[key_added]. Raw counts are kept in adata.layers[layer_counts]
    (copied from adata.X first if that layer does not exist yet).

    Args:
        adata: The annotated data matrix (samples x genes, raw counts in .X).
        target_sum: Total counts per sample after normalization. Defaults to
                    1e6 (CPM). If None, scales to the median library size.
        base: Logarithm base. Defaults to 2. None gives the natural log.
        layer_counts: Layer used to preserve raw counts. Defaults to 'counts'.
        key_added: Layer receiving the log-normalized values. Defaults to 'log_cpm'.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData object.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")

    log.info(f"Normalizing library sizes to target_sum={target_sum} and log{base or 'e'}(x + 1) transforming.")

    adata_copy = adata if inplace else adata.copy()

    if not _looks_like_counts(adata_copy.X):
        log.warning("Data in adata.X does not look like raw counts (e.g., negative values or non-integers found). "
                    "Normalization and log transformation assume raw counts.")

    if layer_counts not in adata_copy.layers:
        adata_copy.layers[layer_counts] = adata_copy.X.copy()
        log.info(f"Stored raw counts in adata.layers['{layer_counts}'].")

    try:
        adata_copy.X = adata_copy.X.astype(np.float64)
        sc.pp.normalize_total(adata_copy, target_sum=target_sum, inplace=True)
        sc.pp.log1p(adata_copy, base=base)
        adata_copy.layers[key_added] = adata_copy.X.copy()
        log.info(f"Normalization and log transformation complete. Stored in adata.layers['{key_added}'].")
    except Exception as e:
        log.error(f"Error during normalization/log transform: {e}", exc_info=True)
        raise RuntimeError(f"Failed to normalize/log transform data: {e}") from e

    if not inplace:
        return adata_copy
    else:
        return None


def log_transform_counts(
    adata: ad.AnnData,
    base: float = 2,
    pseudocount: float = 1,
    layer: str | None = "counts",
    key_added: str = "log_counts"
) -> None:
    """Stores log_base(count + pseudocount) of raw counts in adata.layers[key_added]."""
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    if pseudocount <= 0:
        raise ValueError(f"pseudocount ({pseudocount}) must be positive.")
    if base <= 0 or base == 1:
        raise ValueError(f"base ({base}) must be positive and not 1.")
    if layer is not None and layer not in adata.layers:
        raise KeyError(f"Layer '{layer}' not found in adata.layers.")

    counts = adata.layers[layer] if layer is not None else adata.X
    counts = counts.toarray() if sp.issparse(counts) else np.asarray(counts, dtype=np.float64)
    adata.layers[key_added] = np.log(counts + pseudocount) / np.log(base)
    log.info(f"Stored log{base}(counts + {pseudocount}) in adata.layers['{key_added}'].")
    return None
