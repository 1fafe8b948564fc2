# rnaseq_agent/cli.py

import argparse
import logging
import sys
from pathlib import Path
import yaml

from .agent import RnaSeqWorkflow

log = logging.getLogger("rnaseq_agent.cli")

DEFAULTS = {
    'output_prefix': "rnaseq_result",
    'metadata_path': None, 'sample_column': None,
    # Gene / sample filtering
    'min_count': 10.0, 'min_samples': None, 'group_key': None, 'min_total': None,
    'use_cpm': False, 'min_library_size': None,
    # Normalization / PCA
    'target_sum': 1e6, 'log_base': 2.0, 'n_pca_comps': 10,
    'pca_color': "condition",
    # Differential expression
    'design_factor': None, 'reference_level': None, 'test_level': None,
    'padj_threshold': 0.05, 'lfc_threshold': 1.0,
    # Enrichment
    'gene_sets': None, 'ranking_method': "stat",
    'ora_min_size': 5, 'ora_max_size': 500,
    'gsea_min_size': 15, 'gsea_max_size': 500, 'gsea_permutations': 1000,
    'n_gsea_plots': 3,
    # FastQC
    'fastq_files': None, 'fastqc_threads': 1,
    # Plotting / other
    'run_qc_plots': True, 'plot_dpi': 150, 'plot_format': "png",
    'random_seed': 0, 'n_cpus': 1,
}
LIST_PARAMS = ['pca_color', 'fastq_files']
NULLABLE_PARAMS = [
    'metadata_path', 'sample_column', 'min_samples', 'group_key', 'min_total', 'min_library_size',
    'design_factor', 'reference_level', 'test_level', 'gene_sets'
]
NUMERIC_PARAMS = {
    'min_count': float, 'min_samples': int, 'min_total': float, 'min_library_size': float,
    'target_sum': float, 'log_base': float, 'n_pca_comps': int,
    'padj_threshold': float, 'lfc_threshold': float,
    'ora_min_size': int, 'ora_max_size': int, 'gsea_min_size': int, 'gsea_max_size': int,
    'gsea_permutations': int, 'n_gsea_plots': int, 'fastqc_threads': int,
    'plot_dpi': int, 'random_seed': int, 'n_cpus': int,
}


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )


# --- Argument Parser Setup ---
def create_parser():
    parser = argparse.ArgumentParser(
        description="Run a bulk RNA-seq count analysis: filtering, QC plots, PCA, DESeq2 and gene set enrichment.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # --- Input/Output Arguments ---
    parser.add_argument("-i", "--input-path", type=str, required=True, help="Path to a gene-count matrix (.csv/.tsv/featureCounts) or .h5ad file.")
    parser.add_argument("-o", "--output-dir", type=str, required=True, help="Directory to save results (tables, plots, AnnData).")
    parser.add_argument("-m", "--metadata-path", type=str, help="Path to the sample metadata table.")
    parser.add_argument("-c", "--config", type=str, default=None, help="Path to a YAML configuration file with pipeline parameters.")
    parser.add_argument("--output-prefix", type=str, help="Prefix for output files. Overrides config.")
    parser.add_argument("--sample-column", type=str, help="Metadata column holding sample ids (first column if unset).")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    # --- Step Arguments ---
    # FastQC
    parser.add_argument("--fastq-files", type=str, help="Comma-separated FASTQ files to run FastQC on before the analysis.")
    parser.add_argument("--fastqc-threads", type=int, help="Threads for FastQC.")
    # Filtering
    parser.add_argument("--min-count", type=float, help="Minimum count (or CPM with --use-cpm) per sample to keep a gene.")
    parser.add_argument("--min-samples", type=int, help="Samples that must reach --min-count. Defaults to the smallest group size.")
    parser.add_argument("--group-key", type=str, help="Metadata column defining groups for filtering and plot colours.")
    parser.add_argument("--min-total", type=float, help="Minimum summed count per gene.")
    parser.add_argument("--use-cpm", action=argparse.BooleanOptionalAction, help="Apply --min-count to CPM values.")
    parser.add_argument("--min-library-size", type=float, help="Drop samples with fewer total reads.")
    # Normalization / PCA
    parser.add_argument("--target-sum", type=float, help="Target library size for normalization (1e6 = CPM).")
    parser.add_argument("--log-base", type=float, help="Logarithm base for transformed counts.")
    parser.add_argument("--n-pca-comps", type=int, help="Number of PCA components.")
    parser.add_argument("--pca-color", type=str, help="Comma-separated metadata columns to colour PCA plots by.")
    # Differential expression
    parser.add_argument("--design-factor", type=str, help="Metadata column used as the DESeq2 design factor.")
    parser.add_argument("--reference-level", type=str, help="Reference level of the design factor.")
    parser.add_argument("--test-level", type=str, help="Level compared against the reference.")
    parser.add_argument("--padj-threshold", type=float, help="Adjusted p-value cutoff for significant genes.")
    parser.add_argument("--lfc-threshold", type=float, help="Absolute log2 fold change cutoff for significant genes.")
    # Enrichment
    parser.add_argument("--gene-sets", type=str, help="Gene set file (.gmt or .json) for ORA and GSEA.")
    parser.add_argument("--ranking-method", type=str, choices=['stat', 'signed_pvalue', 'lfc'], help="Gene ranking metric for GSEA.")
    parser.add_argument("--ora-min-size", type=int, help="Minimum gene set size for ORA.")
    parser.add_argument("--ora-max-size", type=int, help="Maximum gene set size for ORA.")
    parser.add_argument("--gsea-min-size", type=int, help="Minimum gene set size for GSEA.")
    parser.add_argument("--gsea-max-size", type=int, help="Maximum gene set size for GSEA.")
    parser.add_argument("--gsea-permutations", type=int, help="Number of GSEA permutations.")
    parser.add_argument("--n-gsea-plots", type=int, help="Number of top gene sets to draw running-score plots for.")
    # Plotting
    parser.add_argument("--run-qc-plots", action=argparse.BooleanOptionalAction, help="Generate library size and boxplots.")
    parser.add_argument("--plot-dpi", type=int, help="DPI for plots.")
    parser.add_argument("--plot-format", type=str, choices=['png', 'pdf', 'svg'], help="Plot file format.")
    # Other
    parser.add_argument("--random-seed", type=int, help="Random seed for reproducibility.")
    parser.add_argument("--n-cpus", type=int, help="CPUs for DESeq2 and GSEA.")

    return parser


def read_config(config_path: str) -> dict:
    """Reads a YAML config and flattens its sections into one parameter dict."""
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, 'r') as f:
        config_yaml = yaml.safe_load(f)
    config_params = {}
    if not config_yaml:
        return config_params
    if not isinstance(config_yaml, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level.")
    for section, params_in_section in config_yaml.items():
        if isinstance(params_in_section, dict):
            config_params.update(params_in_section)
        else:
            config_params[section] = params_in_section
    return config_params


# --- Parameter Loading and Precedence ---
def load_and_merge_params(args: argparse.Namespace) -> argparse.Namespace:
    """Loads config file and merges parameters with CLI args and defaults (CLI > config > defaults)."""
    config_params = {}
    if args.config:
        try:
            config_params = read_config(args.config)
            log.info(f"Loaded parameters from config file: {args.config}")
        except FileNotFoundError as e: log.error(str(e)); sys.exit(1)
        except yaml.YAMLError as e: log.error(f"Error parsing config file {args.config}: {e}"); sys.exit(1)
        except Exception as e: log.error(f"Error reading config file {args.config}: {e}", exc_info=True); sys.exit(1)

    unknown = sorted(set(config_params) - set(DEFAULTS))
    if unknown:
        log.warning(f"Ignoring unknown config parameters: {unknown}")

    final_params = argparse.Namespace()
    cli_args_dict = vars(args)

    for key, default_value in DEFAULTS.items():
        param_value = default_value

        config_value = config_params.get(key)
        if config_value is not None:
            param_value = None if str(config_value).lower() == 'null' else config_value

        cli_value = cli_args_dict.get(key)
        if cli_value is not None:
            param_value = cli_value

        if key in LIST_PARAMS:
            if isinstance(param_value, str):
                param_value = [f.strip() for f in param_value.split(',') if f.strip()]
            elif param_value is None:
                param_value = []
        elif key in NULLABLE_PARAMS and param_value == '':
            param_value = None
        elif key in NUMERIC_PARAMS and isinstance(param_value, str):
            # PyYAML reads values like 1e6 as strings
            try: param_value = NUMERIC_PARAMS[key](float(param_value))
            except ValueError: log.error(f"Parameter '{key}' expects a number, got '{param_value}'"); sys.exit(1)

        setattr(final_params, key, param_value)

    # Ensure required args are present
    final_params.input_path = args.input_path
    final_params.output_dir = args.output_dir

    log.debug(f"Final parameters after merge: {vars(final_params)}")
    return final_params


# --- Main Pipeline Function ---
def run_pipeline(params):
    """Initializes and runs the RnaSeqWorkflow."""
    try:
        workflow_agent = RnaSeqWorkflow(params)
        workflow_agent.run()
        log.info(f"Workflow finished. Results written to {params.output_dir}")
    except Exception as e:
        log.critical(f"Pipeline execution failed: {e}. See previous logs for details.")
        sys.exit(1)


# --- Entry Point ---
def main(argv=None):
    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    final_params = load_and_merge_params(args)
    run_pipeline(final_params)


if __name__ == "__main__":
    main()
