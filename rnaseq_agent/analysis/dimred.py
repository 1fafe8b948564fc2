# rnaseq_agent/analysis/dimred.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
import pandas as pd
import warnings

log = logging.getLogger(__name__)


def reduce_dimensionality(
    adata: ad.AnnData,
    n_comps: int = 10,
    random_state: int = 0,
    layer: str | None = None,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Performs principal component analysis (PCA) on the samples.

    Uses scanpy.tl.pca. Stores sample coordinates in adata.obsm['X_pca'] and
    related info (variance, variance ratio, loadings) in adata.uns['pca']
    and adata.varm['PCs']. Assumes data has been log-normalized.

    Args:
        adata: The annotated data matrix (samples x genes, log-normalized).
        n_comps: Number of principal components to compute. Defaults to 10.
               Reduced to min(n_obs, n_vars) - 1 if larger, since a bulk
               experiment usually has only a handful of samples.
        random_state: Random seed for reproducibility of the SVD solver.
                      Defaults to 0.
        layer: Layer to run PCA on. Defaults to None (use adata.X).
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData
        object with PCA results.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        ValueError: If `n_comps` is not a positive integer or cannot be adjusted.
        KeyError: If `layer` is not present.
        RuntimeError: If the underlying scanpy PCA function fails.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not isinstance(n_comps, int) or n_comps <= 0:
        raise ValueError("Argument 'n_comps' must be a positive integer.")
    if layer is not None and layer not in adata.layers:
        raise KeyError(f"Layer '{layer}' not found in adata.layers.")

    log.info(f"Performing PCA with n_comps={n_comps}, random_state={random_state}...")

    min_dim = min(adata.shape)
    if n_comps >= min_dim:
        adjusted_n_comps = min_dim - 1
        if adjusted_n_comps <= 0:
            raise ValueError(f"Cannot compute PCA. Input data has shape {adata.shape}, "
                             f"requiring n_comps < {min_dim}, but minimum is 1.")

        warning_message = (
            f"Requested n_comps ({n_comps}) >= smallest dimension ({min_dim}). "
            f"Adjusting n_comps to {adjusted_n_comps}."
        )
        warnings.warn(warning_message, UserWarning, stacklevel=2)
        log.warning(warning_message)
        n_comps = adjusted_n_comps

    adata_work = adata if inplace else adata.copy()

    try:
        sc.tl.pca(
            adata_work, n_comps=n_comps, svd_solver='arpack', layer=layer,
            random_state=random_state, zero_center=True, copy=False
        )

        if 'X_pca' not in adata_work.obsm: raise RuntimeError("PCA calc finished but 'X_pca' not found.")
        if 'pca' not in adata_work.uns or 'variance_ratio' not in adata_work.uns['pca']: raise RuntimeError("PCA calc finished but variance info not found.")

        ratios = np.asarray(adata_work.uns['pca']['variance_ratio'])
        explained = ", ".join(f"PC{i + 1}={r * 100:.1f}%" for i, r in enumerate(ratios[:3]))
        log.info(f"PCA completed. Variance explained: {explained}.")

    except ValueError as ve: log.error(f"ValueError during PCA: {ve}", exc_info=True); raise ValueError(f"Input value error during PCA: {ve}") from ve
    except Exception as e: log.error(f"Unexpected error during PCA: {e}", exc_info=True); raise RuntimeError(f"Failed PCA: {e}") from e

    if not inplace: return adata_work
    else: return None


def pca_table(adata: ad.AnnData, n_comps: int = 2) -> pd.DataFrame:
    """Returns sample PC coordinates joined with the sample metadata."""
    if 'X_pca' not in adata.obsm:
        raise KeyError("PCA key 'X_pca' not found. Run reduce_dimensionality first.")
    coords = np.asarray(adata.obsm['X_pca'])
    n_comps = min(n_comps, coords.shape[1])
    table = pd.DataFrame(
        coords[:, :n_comps],
        index=adata.obs_names,
        columns=[f"PC{i + 1}" for i in range(n_comps)]
    )
    return table.join(adata.obs)
