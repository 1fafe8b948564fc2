# rnaseq_agent/data/loader.py

import scanpy as sc
import anndata as ad
import pandas as pd
import numpy as np
import gzip
import os
import re
import logging

log = logging.getLogger(__name__)

# Annotation columns written by featureCounts ahead of the per-sample counts
FEATURECOUNTS_ANNOTATION = ['Geneid', 'Chr', 'Start', 'End', 'Strand', 'Length']
COUNT_TABLE_SUFFIXES = ('.csv', '.tsv', '.txt', '.csv.gz', '.tsv.gz', '.txt.gz')

_ALIGNMENT_EXT = re.compile(r'\.(bam|sam|cram)$', flags=re.IGNORECASE)
_ALIGNER_SUFFIX = re.compile(r'\.?Aligned(\.sortedByCoord)?\.out$|\.sorted$', flags=re.IGNORECASE)


def clean_sample_name(column: str) -> str:
    """
    Reduces an alignment file path used as a column header to a bare sample name.

    'results/aligned/ctrl_1/Aligned.sortedByCoord.out.bam' -> 'ctrl_1'
    'ctrl_1.sorted.bam' -> 'ctrl_1'
    Plain names are returned unchanged.
    """
    name = str(column).strip()
    if not _ALIGNMENT_EXT.search(name):
        return name
    parts = [p for p in re.split(r'[\\/]', name) if p]
    base = _ALIGNER_SUFFIX.sub('', _ALIGNMENT_EXT.sub('', parts[-1]))
    # STAR writes a fixed file name into a per-sample directory
    if not base and len(parts) > 1:
        base = parts[-2]
    return base or name


def _infer_separator(path: str) -> str:
    stem = path.lower()
    if stem.endswith('.gz'):
        stem = stem[:-3]
    return ',' if stem.endswith('.csv') else '\t'


def _count_leading_comments(path: str) -> int:
    """Number of '#' lines before the header (featureCounts writes its command line there)."""
    opener = gzip.open if path.lower().endswith('.gz') else open
    n = 0
    with opener(path, 'rt') as f:
        for line in f:
            if not line.startswith('#'):
                break
            n += 1
    return n


def read_count_matrix(
    path: str,
    sep: str | None = None,
    gene_column: str | None = None
) -> tuple[pd.DataFrame, pd.DataFrame | None]:
    """
    Reads a gene-count matrix (genes as rows, samples as columns).

    Handles plain count tables and featureCounts output. For featureCounts
    files the annotation columns (Chr, Start, End, Strand, Length) are split
    off and returned separately.

    Args:
        path: Path to a .csv/.tsv/.txt table (optionally gzipped).
        sep: Field separator. Inferred from the suffix if None.
        gene_column: Column holding gene identifiers. Defaults to 'Geneid'
                     for featureCounts files, otherwise the first column.

    Returns:
        Tuple of (counts DataFrame indexed by gene, gene annotation DataFrame
        or None).

    Raises:
        FileNotFoundError: If the file does not exist.
        KeyError: If `gene_column` is not a column of the table.
        ValueError: If count cells are non-numeric or negative, or the table
                    has no sample columns.
    """
    expanded_path = os.path.expanduser(path)
    if not os.path.isfile(expanded_path):
        raise FileNotFoundError(f"Count matrix not found: {expanded_path}")

    sep = sep or _infer_separator(expanded_path)
    log.info(f"Reading count matrix from {expanded_path} (sep={sep!r})")
    table = pd.read_csv(expanded_path, sep=sep, skiprows=_count_leading_comments(expanded_path))

    is_featurecounts = all(col in table.columns for col in FEATURECOUNTS_ANNOTATION)
    if gene_column is None:
        gene_column = 'Geneid' if is_featurecounts else table.columns[0]
    if gene_column not in table.columns:
        raise KeyError(f"Gene column '{gene_column}' not found in count matrix columns: {list(table.columns)}")

    table[gene_column] = table[gene_column].astype(str)
    table = table.set_index(gene_column)
    table.index.name = 'gene_id'

    annotation = None
    if is_featurecounts:
        log.info("Detected featureCounts output. Splitting annotation columns.")
        annotation_cols = [c for c in FEATURECOUNTS_ANNOTATION if c != 'Geneid']
        annotation = table[annotation_cols].copy()
        table = table.drop(columns=annotation_cols)

    if table.shape[1] == 0:
        raise ValueError(f"No sample columns found in count matrix {expanded_path}.")

    renamed = {col: clean_sample_name(col) for col in table.columns}
    changed = {k: v for k, v in renamed.items() if k != v}
    if changed:
        log.info(f"Renamed {len(changed)} sample columns from alignment paths.")
        log.debug(f"Column renames: {changed}")
    table = table.rename(columns=renamed)
    if table.columns.duplicated().any():
        dupes = table.columns[table.columns.duplicated()].tolist()
        raise ValueError(f"Duplicate sample names after renaming columns: {dupes}")

    try:
        counts = table.apply(pd.to_numeric, errors='raise')
    except (ValueError, TypeError) as e:
        raise ValueError(f"Count matrix contains non-numeric values: {e}") from e

    if counts.isna().any().any():
        n_missing = int(counts.isna().sum().sum())
        log.warning(f"Count matrix has {n_missing} missing values. Filling with 0.")
        counts = counts.fillna(0)
    if (counts < 0).any().any():
        raise ValueError("Count matrix contains negative values.")

    if counts.index.duplicated().any():
        n_dup = int(counts.index.duplicated().sum())
        log.warning(f"Found {n_dup} duplicated gene ids. Summing their counts.")
        counts = counts.groupby(level=0, sort=False).sum()
        if annotation is not None:
            annotation = annotation[~annotation.index.duplicated(keep='first')]

    log.info(f"Read count matrix with {counts.shape[0]} genes and {counts.shape[1]} samples.")
    return counts, annotation


def read_sample_metadata(path: str, sample_column: str | None = None, sep: str | None = None) -> pd.DataFrame:
    """Reads a sample sheet and indexes it by sample id."""
    expanded_path = os.path.expanduser(path)
    if not os.path.isfile(expanded_path):
        raise FileNotFoundError(f"Sample metadata not found: {expanded_path}")

    metadata = pd.read_csv(expanded_path, sep=sep or _infer_separator(expanded_path))
    if sample_column is None:
        sample_column = metadata.columns[0]
    if sample_column not in metadata.columns:
        raise KeyError(f"Sample column '{sample_column}' not found in metadata columns: {list(metadata.columns)}")

    metadata[sample_column] = metadata[sample_column].astype(str)
    metadata = metadata.set_index(sample_column)
    metadata.index.name = 'sample_id'
    if metadata.index.duplicated().any():
        raise ValueError(f"Duplicate sample ids in metadata: {metadata.index[metadata.index.duplicated()].tolist()}")
    log.info(f"Loaded metadata for {metadata.shape[0]} samples with columns {list(metadata.columns)}")
    return metadata


def build_anndata(
    counts: pd.DataFrame,
    metadata: pd.DataFrame | None = None,
    gene_annotation: pd.DataFrame | None = None
) -> ad.AnnData:
    """
    Joins a genes x samples count matrix with sample metadata into an AnnData.

    The AnnData is samples x genes: sample metadata lands in .obs, gene
    annotation in .var, and a copy of the raw counts in .layers['counts'].

    Raises:
        KeyError: If samples in the count matrix are absent from `metadata`.
    """
    if not isinstance(counts, pd.DataFrame):
        raise TypeError(f"Expected counts to be a pandas DataFrame, but got {type(counts)}")

    samples = counts.columns.astype(str)
    obs = pd.DataFrame(index=pd.Index(samples, name='sample_id'))

    if metadata is not None:
        meta = metadata.copy()
        meta.index = meta.index.astype(str)
        missing = [s for s in samples if s not in meta.index]
        if missing:
            raise KeyError(f"Samples missing from metadata: {missing}")
        extra = [s for s in meta.index if s not in set(samples)]
        if extra:
            log.warning(f"Dropping {len(extra)} metadata rows with no count column: {extra}")
        obs = meta.loc[list(samples)].copy()
        obs.index.name = 'sample_id'
        for col in obs.columns:
            if obs[col].dtype == object or pd.api.types.is_string_dtype(obs[col]):
                obs[col] = obs[col].astype('category')

    var = pd.DataFrame(index=pd.Index(counts.index.astype(str), name='gene_id'))
    if gene_annotation is not None:
        var = var.join(gene_annotation, how='left')

    matrix = counts.T.to_numpy()
    if np.issubdtype(matrix.dtype, np.integer):
        matrix = matrix.astype(np.int64)
    else:
        matrix = matrix.astype(np.float64)

    adata = ad.AnnData(X=matrix, obs=obs, var=var)
    adata.layers['counts'] = adata.X.copy()
    log.info(f"Built AnnData with {adata.n_obs} samples x {adata.n_vars} genes.")
    return adata


def load_data(data_path: str, metadata_path: str | None = None, sample_column: str | None = None) -> ad.AnnData:
    """
    Loads bulk RNA-seq counts into an AnnData object (samples x genes).

    Supports:
        - Count tables (.csv/.tsv/.txt, optionally gzipped), including
          featureCounts output, joined with an optional sample metadata table
        - AnnData (.h5ad) file

    Args:
        data_path: Path to the count table or .h5ad file.
        metadata_path: Optional path to a sample metadata table. Ignored for
                       .h5ad input, which already carries its .obs.
        sample_column: Metadata column holding sample ids (first column if None).

    Returns:
        An AnnData object containing the loaded data.

    Raises:
        FileNotFoundError: If the data_path does not exist.
        ValueError: If the data format is not recognized or loading fails.
        TypeError: If data_path is not a string.
    """
    log.info(f"Attempting to load data from: {data_path}")

    if not isinstance(data_path, str):
        raise TypeError(f"Expected data_path to be a string, but got {type(data_path)}")

    expanded_path = os.path.expanduser(data_path)
    if not os.path.exists(expanded_path):
        raise FileNotFoundError(f"Data path not found: {expanded_path}")

    lower = expanded_path.lower()
    if os.path.isfile(expanded_path) and lower.endswith('.h5ad'):
        log.info("Detected .h5ad file, attempting to load.")
        try:
            adata = sc.read_h5ad(expanded_path)
        except Exception as e:
            log.error(f"Failed to load data from {expanded_path}: {e}", exc_info=True)
            raise ValueError(f"An error occurred during data loading: {e}") from e
        if metadata_path:
            log.warning("metadata_path is ignored for .h5ad input.")
        adata.var_names_make_unique()
        log.info(f"Successfully loaded .h5ad file. Shape: {adata.shape}")
        return adata

    if os.path.isfile(expanded_path) and lower.endswith(COUNT_TABLE_SUFFIXES):
        log.info("Detected count table, attempting to load.")
        counts, annotation = read_count_matrix(expanded_path)
        metadata = read_sample_metadata(metadata_path, sample_column=sample_column) if metadata_path else None
        return build_anndata(counts, metadata, annotation)

    raise ValueError(
        f"Unrecognized file format or path type: {expanded_path}. "
        f"Expecting a count table ({', '.join(COUNT_TABLE_SUFFIXES)}) or an .h5ad file."
    )
