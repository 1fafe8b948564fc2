# rnaseq_agent/agent.py

import logging
from pathlib import Path
import scanpy as sc

# Import pipeline step functions
from .data.loader import load_data
from .analysis.fastqc import run_fastqc
from .analysis.qc import calculate_qc_metrics, filter_low_count_genes, filter_samples_qc
from .analysis.preprocess import normalize_log, log_transform_counts
from .analysis.dimred import reduce_dimensionality, pca_table
from .analysis.dge import run_differential_expression, significant_genes
from .analysis.enrichment import load_gene_sets, run_ora, ranking_metric, run_gsea_prerank
from .visualization.plotting import (
    plot_count_boxplot,
    plot_library_sizes,
    plot_pca,
    plot_volcano,
    plot_enrichment_bar,
    plot_gsea_running_score
)

log = logging.getLogger(__name__)


class RnaSeqWorkflow:
    """Orchestrates a bulk RNA-seq count analysis: QC, filtering, PCA, DE and enrichment."""
    def __init__(self, params):
        """Initializes the workflow orchestrator."""
        self.params = params
        self.adata = None
        self.de_results = None
        self.ora_results = None
        self.gsea_results = None
        self._prerank = None
        self.output_dir = Path(self.params.output_dir)
        self.prefix = self.params.output_prefix

        log.info("RnaSeqWorkflow initialized.")
        log.debug(f"Workflow parameters: {vars(self.params)}")
        required_attrs = ['input_path', 'output_dir', 'output_prefix']
        for attr in required_attrs:
            if not hasattr(self.params, attr):
                raise ValueError(f"Initialization failed: Missing required parameter '{attr}'.")
        if getattr(params, 'design_factor', None) and not getattr(params, 'reference_level', None):
            raise ValueError("A 'reference_level' is required when 'design_factor' is set.")
        if getattr(params, 'gene_sets', None) and not getattr(params, 'design_factor', None):
            log.warning("Gene sets given but no design factor. Enrichment needs DE results and will be skipped.")

    def run(self):
        """Executes the full bulk RNA-seq workflow sequentially."""
        log.info(f"Starting workflow run: {self.prefix}")
        try:
            self._setup_environment()          # Step 0
            self._run_fastqc()                 # Step 1
            self._load_data()                  # Step 2
            self._run_qc()                     # Step 3
            self._filter_genes()               # Step 4
            self._normalize()                  # Step 5
            self._run_pca()                    # Step 6
            self._differential_expression()    # Step 7
            self._enrichment()                 # Step 8
            self._save_results()               # Step 9

            log.info(f"Workflow run '{self.prefix}' completed successfully.")
            return self.adata

        except Exception as e:
            log.error(f"Workflow run '{self.prefix}' failed: {e}", exc_info=True)
            raise

    def _plot_kwargs(self):
        return dict(output_dir=str(self.output_dir), file_format=self.params.plot_format, dpi=self.params.plot_dpi)

    def _setup_environment(self):
        """Sets up Scanpy settings and output directory."""
        log.debug("Setting up environment...")
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            sc.settings.figdir = str(self.output_dir)
            log.info(f"Output directory set to: {self.output_dir}")
        except OSError as e:
            log.error(f"Failed to create output directory '{self.output_dir}': {e}")
            raise

    def _run_fastqc(self): # Step 1
        fastq_files = getattr(self.params, 'fastq_files', None)
        if not fastq_files:
            log.debug("No FASTQ files given. Skipping FastQC.")
            return
        log.info(f"Step 1: Running FastQC on {len(fastq_files)} files...")
        run_fastqc(fastq_files, str(self.output_dir / "fastqc"), threads=self.params.fastqc_threads)

    def _load_data(self): # Step 2
        log.info("Step 2: Loading counts and sample metadata...")
        self.adata = load_data(
            self.params.input_path,
            metadata_path=self.params.metadata_path,
            sample_column=self.params.sample_column
        )
        if 'counts' not in self.adata.layers:
            self.adata.layers['counts'] = self.adata.X.copy()
        log.info(f"Loaded data shape: {self.adata.shape} (samples x genes).")

    def _run_qc(self): # Step 3
        """Calculates library sizes, plots raw distributions, drops failing samples."""
        if self.adata is None: raise RuntimeError("adata not loaded before running QC.")
        log.info("Step 3: Calculating QC metrics...")
        calculate_qc_metrics(self.adata, layer='counts', inplace=True)
        log_transform_counts(self.adata, base=self.params.log_base, layer='counts', key_added='log_counts')

        group_key = self.params.group_key if self.params.group_key in self.adata.obs else None
        if self.params.run_qc_plots:
            plot_library_sizes(self.adata, groupby=group_key, file_prefix=f"{self.prefix}_library_sizes", **self._plot_kwargs())
            plot_count_boxplot(
                self.adata, layer='log_counts', groupby=group_key,
                file_prefix=f"{self.prefix}_boxplot_raw", title=f"log{self.params.log_base:g}(count + 1) before filtering",
                **self._plot_kwargs()
            )

        if self.params.min_library_size is not None:
            filter_samples_qc(self.adata, min_total_counts=self.params.min_library_size, inplace=True)

    def _filter_genes(self): # Step 4
        if self.adata is None: raise RuntimeError("adata not loaded before filtering.")
        log.info("Step 4: Filtering low-count genes...")
        n_vars_before = self.adata.n_vars
        group_key = self.params.group_key if self.params.group_key in self.adata.obs else None
        filter_low_count_genes(
            self.adata, min_count=self.params.min_count, min_samples=self.params.min_samples,
            group_key=group_key, min_total=self.params.min_total, use_cpm=self.params.use_cpm,
            inplace=True
        )
        log.info(f"Kept {self.adata.n_vars} / {n_vars_before} genes.")

    def _normalize(self): # Step 5
        if self.adata is None: raise RuntimeError("adata not loaded.")
        log.info("Step 5: Normalizing to CPM and log-transforming...")
        normalize_log(self.adata, target_sum=self.params.target_sum, base=self.params.log_base, inplace=True)
        if self.params.run_qc_plots:
            group_key = self.params.group_key if self.params.group_key in self.adata.obs else None
            plot_count_boxplot(
                self.adata, layer='log_cpm', groupby=group_key,
                file_prefix=f"{self.prefix}_boxplot_logcpm", title=f"log{self.params.log_base:g}(CPM + 1) after filtering",
                **self._plot_kwargs()
            )

    def _run_pca(self): # Step 6
        if self.adata is None: raise RuntimeError("adata not available.")
        log.info("Step 6: Performing PCA on samples...")
        reduce_dimensionality(
            self.adata, n_comps=self.params.n_pca_comps,
            random_state=self.params.random_seed, inplace=True
        )
        pca_table(self.adata, n_comps=self.adata.obsm['X_pca'].shape[1]).to_csv(
            self.output_dir / f"{self.prefix}_pca_coordinates.csv"
        )
        color_by = [c for c in self.params.pca_color if c in self.adata.obs]
        if color_by:
            plot_pca(self.adata, color_by=color_by, file_prefix=f"{self.prefix}_pca", **self._plot_kwargs())
        else:
            log.warning(f"None of the PCA colour keys {self.params.pca_color} found in sample metadata. Skipping PCA plots.")

    def _differential_expression(self): # Step 7
        if self.adata is None: raise RuntimeError("adata not available.")
        if not self.params.design_factor:
            log.info("No design factor given. Skipping differential expression.")
            return
        log.info("Step 7: Testing for differential expression...")
        self.de_results = run_differential_expression(
            self.adata, design_factor=self.params.design_factor,
            reference=self.params.reference_level, test=self.params.test_level,
            alpha=self.params.padj_threshold, n_cpus=self.params.n_cpus
        )
        self.de_results.to_csv(self.output_dir / f"{self.prefix}_deseq2.csv")
        sig = significant_genes(
            self.de_results, padj_threshold=self.params.padj_threshold,
            lfc_threshold=self.params.lfc_threshold
        )
        sig.to_csv(self.output_dir / f"{self.prefix}_deseq2_significant.csv")
        plot_volcano(
            self.de_results, padj_threshold=self.params.padj_threshold,
            lfc_threshold=self.params.lfc_threshold, file_prefix=f"{self.prefix}_volcano",
            **self._plot_kwargs()
        )

    def _enrichment(self): # Step 8
        if not self.params.gene_sets:
            log.info("No gene set file given. Skipping enrichment analysis.")
            return
        if self.de_results is None:
            log.warning("No differential expression results. Skipping enrichment analysis.")
            return
        log.info("Step 8: Running gene set enrichment analysis...")
        gene_sets = load_gene_sets(self.params.gene_sets)
        background = self.de_results.index[self.de_results['padj'].notna()]
        sig = significant_genes(
            self.de_results, padj_threshold=self.params.padj_threshold,
            lfc_threshold=self.params.lfc_threshold
        )

        # ORA
        if sig.empty:
            log.warning("No significant genes. Skipping over-representation analysis.")
        else:
            try:
                self.ora_results = run_ora(
                    sig.index, gene_sets, background,
                    min_size=self.params.ora_min_size, max_size=self.params.ora_max_size
                )
                self.ora_results.to_csv(self.output_dir / f"{self.prefix}_ora.csv", index=False)
                plot_enrichment_bar(
                    self.ora_results, score_column='padj', file_prefix=f"{self.prefix}_ora_bar",
                    title="Over-representation (Fisher's exact test)", **self._plot_kwargs()
                )
            except ValueError as e:
                log.warning(f"Over-representation analysis skipped: {e}")

        # GSEA
        ranking = ranking_metric(self.de_results, method=self.params.ranking_method)
        try:
            self.gsea_results, self._prerank = run_gsea_prerank(
                ranking, gene_sets, min_size=self.params.gsea_min_size, max_size=self.params.gsea_max_size,
                permutation_num=self.params.gsea_permutations, seed=self.params.random_seed,
                threads=self.params.n_cpus
            )
        except ValueError as e:
            log.warning(f"GSEA skipped: {e}")
            return
        self.gsea_results.to_csv(self.output_dir / f"{self.prefix}_gsea.csv", index=False)
        plot_enrichment_bar(
            self.gsea_results, score_column='nes', file_prefix=f"{self.prefix}_gsea_bar",
            title="GSEA normalized enrichment score", **self._plot_kwargs()
        )
        top_terms = self.gsea_results.sort_values('fdr')['term'].head(self.params.n_gsea_plots)
        for i, term in enumerate(top_terms, start=1):
            try:
                plot_gsea_running_score(
                    self._prerank, term, output_dir=str(self.output_dir),
                    file_prefix=f"{self.prefix}_gsea_{i}", file_format=self.params.plot_format
                )
            except Exception as e: log.error(f"Failed generating GSEA plot for '{term}': {e}")

    def _save_results(self): # Step 9
        if self.adata is None: raise RuntimeError("No AnnData object to save.")
        log.info("Step 9: Saving final AnnData object...")
        final_adata_path = self.output_dir / f"{self.prefix}_final.h5ad"
        try:
            self.adata.write_h5ad(final_adata_path, compression="gzip")
            log.info(f"Final AnnData object saved to: {final_adata_path}")
        except Exception as e: log.error(f"Failed to save final AnnData: {e}", exc_info=True); raise
