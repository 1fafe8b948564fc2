# tests/test_qc.py

import pytest
import anndata as ad
import numpy as np
import logging

from rnaseq_agent.analysis.qc import calculate_qc_metrics, filter_low_count_genes, filter_samples_qc
from conftest import LOW_GENES, GENES

# --- calculate_qc_metrics ---

def test_qc_adds_library_sizes(raw_adata, counts_df):
    """Tests that QC calculation adds per-sample and per-gene columns."""
    adata = raw_adata.copy()
    calculate_qc_metrics(adata, inplace=True)

    assert {'total_counts', 'n_genes_by_counts'}.issubset(adata.obs.columns)
    assert {'total_counts', 'mean_counts', 'n_cells_by_counts'}.issubset(adata.var.columns)
    np.testing.assert_allclose(adata.obs['total_counts'].to_numpy(), counts_df.sum(axis=0).to_numpy())


def test_qc_uses_layer(raw_adata):
    adata = raw_adata.copy()
    adata.X = np.zeros(adata.shape)
    calculate_qc_metrics(adata, layer='counts', inplace=True)
    assert (adata.obs['total_counts'] > 0).all()


def test_qc_not_inplace(raw_adata):
    adata = raw_adata.copy()
    original_obs_cols = set(adata.obs.columns)
    adata_qc = calculate_qc_metrics(adata, inplace=False)
    assert isinstance(adata_qc, ad.AnnData)
    assert set(adata.obs.columns) == original_obs_cols, "Original object was modified"
    assert 'total_counts' in adata_qc.obs.columns


def test_qc_warns_on_empty_sample(raw_adata, caplog):
    adata = raw_adata.copy()
    adata.X[0, :] = 0
    with caplog.at_level(logging.WARNING):
        calculate_qc_metrics(adata, inplace=True)
    assert "zero total counts" in caplog.text
    assert "ctrl_1" in caplog.text


def test_qc_invalid_input_type():
    with pytest.raises(TypeError):
        calculate_qc_metrics(np.array([[1, 2], [3, 4]]))


# --- filter_low_count_genes ---

def test_filter_removes_low_genes_with_group_key(raw_adata, caplog):
    adata = raw_adata.copy()
    with caplog.at_level(logging.INFO):
        filter_low_count_genes(adata, min_count=10, group_key='condition', inplace=True)
    assert "smallest group size in 'condition': 4" in caplog.text
    assert not set(LOW_GENES) & set(adata.var_names)
    assert adata.n_vars == len(GENES) - len(LOW_GENES)


def test_filter_not_inplace(raw_adata):
    adata = raw_adata.copy()
    filtered = filter_low_count_genes(adata, min_count=10, min_samples=4, inplace=False)
    assert adata.n_vars == len(GENES)
    assert filtered.n_vars == len(GENES) - len(LOW_GENES)


def test_filter_min_total(raw_adata):
    adata = raw_adata.copy()
    totals = np.asarray(adata.layers['counts']).sum(axis=0)
    threshold = float(np.median(totals))
    filter_low_count_genes(adata, min_count=0, min_samples=1, min_total=threshold, inplace=True)
    assert adata.n_vars == int((totals >= threshold).sum())


def test_filter_use_cpm(raw_adata):
    """A CPM threshold is scale free, so doubling every library changes nothing."""
    a = raw_adata.copy()
    b = raw_adata.copy()
    b.layers['counts'] = b.layers['counts'] * 2
    filter_low_count_genes(a, min_count=50, min_samples=4, use_cpm=True, inplace=True)
    filter_low_count_genes(b, min_count=50, min_samples=4, use_cpm=True, inplace=True)
    assert list(a.var_names) == list(b.var_names)


def test_filter_falls_back_to_x(raw_adata, caplog):
    adata = raw_adata.copy()
    del adata.layers['counts']
    with caplog.at_level(logging.WARNING):
        filter_low_count_genes(adata, min_count=10, min_samples=4, inplace=True)
    assert "Filtering on adata.X" in caplog.text
    assert adata.n_vars == len(GENES) - len(LOW_GENES)


def test_filter_invalid_min_samples(raw_adata):
    with pytest.raises(ValueError, match="min_samples"):
        filter_low_count_genes(raw_adata.copy(), min_samples=100)
    with pytest.raises(ValueError, match="min_samples"):
        filter_low_count_genes(raw_adata.copy(), min_samples=0)


def test_filter_negative_threshold(raw_adata):
    with pytest.raises(ValueError):
        filter_low_count_genes(raw_adata.copy(), min_count=-1)


def test_filter_missing_group_key(raw_adata):
    with pytest.raises(KeyError):
        filter_low_count_genes(raw_adata.copy(), group_key='not_a_column')


def test_filter_everything_removed(raw_adata):
    with pytest.raises(ValueError, match="All genes were removed"):
        filter_low_count_genes(raw_adata.copy(), min_count=1e9, min_samples=1)


# --- filter_samples_qc ---

def test_filter_samples_by_library_size(raw_adata):
    adata = raw_adata.copy()
    calculate_qc_metrics(adata, inplace=True)
    smallest = adata.obs['total_counts'].idxmin()
    threshold = adata.obs['total_counts'].min() + 1
    filter_samples_qc(adata, min_total_counts=threshold, inplace=True)
    assert smallest not in adata.obs_names
    assert adata.n_obs == raw_adata.n_obs - 1


def test_filter_samples_missing_qc_columns(raw_adata):
    with pytest.raises(KeyError, match="Missing required QC columns"):
        filter_samples_qc(raw_adata.copy(), min_total_counts=10)


def test_filter_samples_all_removed(raw_adata):
    adata = raw_adata.copy()
    calculate_qc_metrics(adata, inplace=True)
    with pytest.raises(ValueError, match="All samples were removed"):
        filter_samples_qc(adata, min_genes=adata.n_vars + 1)


def test_filter_samples_no_thresholds_keeps_all(raw_adata):
    adata = raw_adata.copy()
    calculate_qc_metrics(adata, inplace=True)
    kept = filter_samples_qc(adata, inplace=False)
    assert kept.n_obs == adata.n_obs
