# tests/test_agent.py

import pytest
import argparse
import os
import anndata as ad
import pandas as pd
from unittest import mock

from rnaseq_agent.agent import RnaSeqWorkflow
from rnaseq_agent.cli import DEFAULTS, main
from conftest import GENES, LOW_GENES, SAMPLES


def _params(count_files, output_dir, **overrides):
    counts_path, meta_path = count_files
    values = dict(DEFAULTS)
    values.update(
        input_path=counts_path, output_dir=str(output_dir), metadata_path=meta_path,
        pca_color=['condition'], fastq_files=[], group_key='condition',
        output_prefix='test', gsea_permutations=50, n_gsea_plots=1
    )
    values.update(overrides)
    return argparse.Namespace(**values)


def test_workflow_full_run(count_files, gmt_file, tmp_path):
    out = tmp_path / "results"
    params = _params(
        count_files, out, design_factor='condition', reference_level='control',
        test_level='treated', gene_sets=gmt_file
    )
    adata = RnaSeqWorkflow(params).run()

    assert isinstance(adata, ad.AnnData)
    assert adata.n_obs == len(SAMPLES)
    assert adata.n_vars == len(GENES) - len(LOW_GENES)
    assert {'counts', 'log_counts', 'log_cpm'} <= set(adata.layers)
    assert 'X_pca' in adata.obsm
    assert 'deseq2' in adata.uns

    expected = [
        "test_library_sizes.png", "test_boxplot_raw.png", "test_boxplot_logcpm.png",
        "test_pca_coordinates.csv", "test_pca_condition.png",
        "test_deseq2.csv", "test_deseq2_significant.csv", "test_volcano.png",
        "test_ora.csv", "test_ora_bar.png", "test_gsea.csv", "test_gsea_bar.png",
        "test_gsea_1.png", "test_final.h5ad",
    ]
    for name in expected:
        assert (out / name).exists(), f"Missing output {name}"

    de = pd.read_csv(out / "test_deseq2.csv", index_col=0)
    assert 'padj' in de.columns
    ora = pd.read_csv(out / "test_ora.csv")
    assert ora.loc[0, 'term'] in ('UP_SET', 'DOWN_SET')

    saved = ad.read_h5ad(out / "test_final.h5ad")
    assert saved.shape == adata.shape


def test_workflow_without_design(count_files, tmp_path):
    out = tmp_path / "results"
    params = _params(count_files, out, run_qc_plots=False)
    workflow = RnaSeqWorkflow(params)
    workflow.run()
    assert workflow.de_results is None
    assert (out / "test_pca_coordinates.csv").exists()
    assert not (out / "test_deseq2.csv").exists()
    assert not (out / "test_boxplot_raw.png").exists()


def test_workflow_sample_filter(count_files, tmp_path):
    counts = pd.read_csv(count_files[0], index_col=0)
    threshold = float(counts.sum(axis=0).min()) + 1
    params = _params(count_files, tmp_path / "results", min_library_size=threshold, run_qc_plots=False)
    adata = RnaSeqWorkflow(params).run()
    assert adata.n_obs == len(SAMPLES) - 1


def test_workflow_requires_reference(count_files, tmp_path):
    params = _params(count_files, tmp_path, design_factor='condition')
    with pytest.raises(ValueError, match="reference_level"):
        RnaSeqWorkflow(params)


def test_workflow_missing_required_param(tmp_path):
    params = argparse.Namespace(output_dir=str(tmp_path), output_prefix='x')
    with pytest.raises(ValueError, match="input_path"):
        RnaSeqWorkflow(params)


def test_workflow_runs_fastqc_first(count_files, tmp_path):
    params = _params(count_files, tmp_path / "results", fastq_files=["a.fastq.gz"], run_qc_plots=False)
    with mock.patch("rnaseq_agent.agent.run_fastqc") as run_fastqc:
        RnaSeqWorkflow(params).run()
    run_fastqc.assert_called_once()
    assert run_fastqc.call_args.args[1].endswith("fastqc")


def test_workflow_bad_input_raises(tmp_path):
    params = _params(
        (str(tmp_path / "missing.csv"), None), tmp_path / "results", run_qc_plots=False
    )
    with pytest.raises(FileNotFoundError):
        RnaSeqWorkflow(params).run()


def test_main_end_to_end(count_files, tmp_path):
    counts_path, meta_path = count_files
    out = tmp_path / "cli_out"
    main([
        "-i", counts_path, "-m", meta_path, "-o", str(out),
        "--output-prefix", "cli", "--no-run-qc-plots", "--n-pca-comps", "3",
    ])
    assert (out / "cli_final.h5ad").exists()
    assert len(pd.read_csv(out / "cli_pca_coordinates.csv", index_col=0).columns) >= 3


def test_main_failure_exits(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        main(["-i", str(tmp_path / "missing.csv"), "-o", str(tmp_path / "out")])
    assert excinfo.value.code == 1


def test_workflow_boxplot_titles_format_log_base(count_files, tmp_path):
    params = _params(count_files, tmp_path / "results")
    with mock.patch("rnaseq_agent.agent.plot_count_boxplot") as boxplot, \
         mock.patch("rnaseq_agent.agent.plot_library_sizes"):
        RnaSeqWorkflow(params).run()
    titles = [c.kwargs['title'] for c in boxplot.call_args_list]
    assert titles == ["log2(count + 1) before filtering", "log2(CPM + 1) after filtering"]
