# tests/test_fastqc.py

import pytest
import subprocess
import logging
from pathlib import Path
from unittest import mock

from rnaseq_agent.analysis.fastqc import build_fastqc_command, run_fastqc, parse_fastqc_summary

# --- Fixtures ---

@pytest.fixture
def fastq_files(tmp_path):
    paths = []
    for name in ("ctrl_1_R1.fastq.gz", "ctrl_1_R2.fastq.gz"):
        path = tmp_path / name
        path.write_bytes(b"")
        paths.append(str(path))
    return paths


# --- build_fastqc_command ---

def test_build_command():
    cmd = build_fastqc_command(["a.fastq.gz", "b.fq"], "qc_out", threads=4, extra_args=["--quiet"])
    assert cmd == ["fastqc", "--outdir", "qc_out", "--threads", "4", "--quiet", "a.fastq.gz", "b.fq"]


def test_build_command_no_files():
    with pytest.raises(ValueError):
        build_fastqc_command([], "out")


@pytest.mark.parametrize("threads", [0, -1, 1.5])
def test_build_command_invalid_threads(threads):
    with pytest.raises(ValueError, match="threads"):
        build_fastqc_command(["a.fastq"], "out", threads=threads)


def test_build_command_bad_extension():
    with pytest.raises(ValueError, match="Unrecognized read file extension"):
        build_fastqc_command(["reads.txt"], "out")


# --- run_fastqc ---

def test_run_fastqc_success(fastq_files, tmp_path):
    out_dir = tmp_path / "fastqc"
    completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="Analysis complete", stderr="")
    with mock.patch("rnaseq_agent.analysis.fastqc.shutil.which", return_value="/usr/bin/fastqc"), \
         mock.patch("rnaseq_agent.analysis.fastqc.subprocess.run", return_value=completed) as run:
        result = run_fastqc(fastq_files, str(out_dir), threads=2)

    assert result == out_dir
    assert out_dir.is_dir()
    cmd = run.call_args.args[0]
    assert cmd[0] == "/usr/bin/fastqc"
    assert cmd[cmd.index("--threads") + 1] == "2"
    assert cmd[-2:] == fastq_files


def test_run_fastqc_missing_input(tmp_path):
    with pytest.raises(FileNotFoundError, match="FASTQ files not found"):
        run_fastqc([str(tmp_path / "missing.fastq")], str(tmp_path / "out"))


def test_run_fastqc_missing_executable(fastq_files, tmp_path):
    with mock.patch("rnaseq_agent.analysis.fastqc.shutil.which", return_value=None):
        with pytest.raises(FileNotFoundError, match="fastqc executable"):
            run_fastqc(fastq_files, str(tmp_path / "out"))


def test_run_fastqc_nonzero_exit(fastq_files, tmp_path, caplog):
    completed = subprocess.CompletedProcess(args=[], returncode=2, stdout="", stderr="Failed to process file")
    with mock.patch("rnaseq_agent.analysis.fastqc.shutil.which", return_value="/usr/bin/fastqc"), \
         mock.patch("rnaseq_agent.analysis.fastqc.subprocess.run", return_value=completed):
        with caplog.at_level(logging.ERROR):
            with pytest.raises(RuntimeError, match="Failed to process file"):
                run_fastqc(fastq_files, str(tmp_path / "out"))
    assert "return code 2" in caplog.text


def test_run_fastqc_timeout(fastq_files, tmp_path):
    with mock.patch("rnaseq_agent.analysis.fastqc.shutil.which", return_value="/usr/bin/fastqc"), \
         mock.patch("rnaseq_agent.analysis.fastqc.subprocess.run",
                    side_effect=subprocess.TimeoutExpired(cmd="fastqc", timeout=1)):
        with pytest.raises(RuntimeError, match="timed out"):
            run_fastqc(fastq_files, str(tmp_path / "out"), timeout=1)


# --- parse_fastqc_summary ---

def test_parse_summary(tmp_path, caplog):
    path = tmp_path / "summary.txt"
    path.write_text(
        "PASS\tBasic Statistics\tctrl_1_R1.fastq.gz\n"
        "WARN\tPer base sequence content\tctrl_1_R1.fastq.gz\n"
        "FAIL\tAdapter Content\tctrl_1_R1.fastq.gz\n"
    )
    with caplog.at_level(logging.WARNING):
        summary = parse_fastqc_summary(str(path))
    assert list(summary.columns) == ['status', 'module', 'file']
    assert summary['status'].tolist() == ['PASS', 'WARN', 'FAIL']
    assert "Adapter Content" in caplog.text


def test_parse_summary_bad_columns(tmp_path):
    path = tmp_path / "summary.txt"
    path.write_text("PASS\tBasic Statistics\n")
    with pytest.raises(ValueError, match="3 tab-separated columns"):
        parse_fastqc_summary(str(path))


def test_parse_summary_missing():
    with pytest.raises(FileNotFoundError):
        parse_fastqc_summary(str(Path("nowhere") / "summary.txt"))
