# tests/conftest.py

import pytest
import numpy as np
import pandas as pd
import logging

from rnaseq_agent.data.loader import build_anndata
from rnaseq_agent.analysis.qc import filter_low_count_genes
from rnaseq_agent.analysis.dge import run_differential_expression

logging.basicConfig(level=logging.WARNING)

# --- Simulated experiment ---
# 4 control vs 4 treated samples. The first 40 genes are 8x up in treated,
# the next 20 are 8x down, the last 20 are barely expressed.
SAMPLES = [f"ctrl_{i}" for i in range(1, 5)] + [f"treat_{i}" for i in range(1, 5)]
GENES = [f"GENE{i:04d}" for i in range(1, 301)]
UP_GENES = GENES[:40]
DOWN_GENES = GENES[40:60]
LOW_GENES = GENES[-20:]
GENE_SETS = {
    "UP_SET": UP_GENES,
    "DOWN_SET": DOWN_GENES,
    "NULL_SET_A": GENES[100:140],
    "NULL_SET_B": GENES[150:190],
    "NULL_SET_C": GENES[200:240],
}


def simulate_counts(seed: int = 0) -> pd.DataFrame:
    """Negative binomial counts, genes x samples."""
    rng = np.random.default_rng(seed)
    base = rng.uniform(100, 1000, size=len(GENES))
    base[-len(LOW_GENES):] = 0.3
    treated = np.array([s.startswith("treat") for s in SAMPLES])

    mu = np.tile(base, (len(SAMPLES), 1))
    mu[np.ix_(treated, np.arange(0, 40))] *= 8
    mu[np.ix_(treated, np.arange(40, 60))] /= 8
    mu *= rng.uniform(0.8, 1.2, size=len(SAMPLES))[:, None]

    size = 20
    counts = rng.negative_binomial(size, size / (size + mu)).astype(np.int64)
    df = pd.DataFrame(counts.T, index=GENES, columns=SAMPLES)
    df.index.name = 'gene_id'
    return df


def simulate_metadata() -> pd.DataFrame:
    meta = pd.DataFrame({
        'sample': SAMPLES,
        'condition': ['control'] * 4 + ['treated'] * 4,
        'batch': ['b1', 'b2'] * 4,
    })
    return meta.set_index('sample')


# --- Fixtures ---

@pytest.fixture
def counts_df() -> pd.DataFrame:
    return simulate_counts()


@pytest.fixture
def metadata_df() -> pd.DataFrame:
    return simulate_metadata()


@pytest.fixture
def raw_adata(counts_df, metadata_df):
    """Samples x genes AnnData with raw counts and condition metadata."""
    return build_anndata(counts_df, metadata_df)


@pytest.fixture
def count_files(tmp_path, counts_df, metadata_df):
    """Writes the simulated counts and sample sheet as CSV files."""
    counts_path = tmp_path / "counts.csv"
    meta_path = tmp_path / "metadata.csv"
    counts_df.to_csv(counts_path)
    metadata_df.reset_index().to_csv(meta_path, index=False)
    return str(counts_path), str(meta_path)


@pytest.fixture
def gmt_file(tmp_path):
    path = tmp_path / "gene_sets.gmt"
    with open(path, "w") as f:
        for name, genes in GENE_SETS.items():
            f.write("\t".join([name, "simulated"] + genes) + "\n")
    return str(path)


@pytest.fixture(scope="session")
def de_results() -> pd.DataFrame:
    """DESeq2 results for treated vs control, computed once per session."""
    adata = build_anndata(simulate_counts(), simulate_metadata())
    filter_low_count_genes(adata, min_count=10, group_key='condition', inplace=True)
    return run_differential_expression(adata, design_factor='condition', reference='control', test='treated')
