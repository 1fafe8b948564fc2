"""
Example script demonstrating basic usage of rnaseq_agent
"""

from rnaseq_agent.data.loader import load_data
from rnaseq_agent.analysis.qc import calculate_qc_metrics, filter_low_count_genes
from rnaseq_agent.analysis.preprocess import normalize_log
from rnaseq_agent.analysis.dimred import reduce_dimensionality, pca_table
from rnaseq_agent.analysis.dge import run_differential_expression, significant_genes
from rnaseq_agent.analysis.enrichment import load_gene_sets, run_ora

def main():
    # Load counts (featureCounts output works as is) and the sample sheet
    adata = load_data("path/to/featurecounts.txt", metadata_path="path/to/samples.csv")

    # Library sizes and low-count gene filter
    calculate_qc_metrics(adata, layer="counts")
    filter_low_count_genes(adata, min_count=10, group_key="condition")

    # log2(CPM + 1) and sample PCA
    normalize_log(adata, target_sum=1e6, base=2)
    reduce_dimensionality(adata, n_comps=5)
    print(pca_table(adata, n_comps=2))

    # DESeq2: treated vs control
    results = run_differential_expression(adata, design_factor="condition", reference="control", test="treated")
    sig = significant_genes(results, padj_threshold=0.05, lfc_threshold=1.0)

    # Over-representation of significant genes among all tested genes
    gene_sets = load_gene_sets("path/to/hallmark.gmt")
    ora = run_ora(sig.index, gene_sets, background=results.index[results["padj"].notna()])
    print(ora.head())

    # Save results
    adata.write_h5ad("results.h5ad")

if __name__ == "__main__":
    main()
