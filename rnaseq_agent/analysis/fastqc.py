# rnaseq_agent/analysis/fastqc.py

import logging
import os
import shutil
import subprocess
from pathlib import Path

import pandas as pd

log = logging.getLogger(__name__)

FASTQ_SUFFIXES = ('.fastq', '.fq', '.fastq.gz', '.fq.gz', '.bam', '.sam')


def build_fastqc_command(
    fastq_files: list[str],
    output_dir: str,
    threads: int = 1,
    extra_args: list[str] | None = None,
    executable: str = "fastqc"
) -> list[str]:
    """Builds the argv for a FastQC run over `fastq_files`."""
    if not fastq_files:
        raise ValueError("At least one FASTQ file is required.")
    if not isinstance(threads, int) or threads < 1:
        raise ValueError("Argument 'threads' must be a positive integer.")
    unknown = [f for f in fastq_files if not str(f).lower().endswith(FASTQ_SUFFIXES)]
    if unknown:
        raise ValueError(f"Unrecognized read file extension for: {unknown}")

    cmd = [executable, "--outdir", str(output_dir), "--threads", str(threads)]
    if extra_args:
        cmd.extend(str(a) for a in extra_args)
    cmd.extend(str(f) for f in fastq_files)
    return cmd


def run_fastqc(
    fastq_files: list[str],
    output_dir: str,
    threads: int = 1,
    extra_args: list[str] | None = None,
    timeout: float | None = None
) -> Path:
    """
    Runs FastQC on raw read files and returns the report directory.

    Args:
        fastq_files: FASTQ files (optionally gzipped) to check.
        output_dir: Directory for the HTML/zip reports. Created if missing.
        threads: Number of files processed in parallel by FastQC.
        extra_args: Additional command-line flags passed through to FastQC.
        timeout: Seconds before the run is aborted. None waits indefinitely.

    Raises:
        FileNotFoundError: If an input file or the fastqc executable is missing.
        RuntimeError: If FastQC exits with a non-zero status or times out.
    """
    missing = [f for f in fastq_files if not os.path.isfile(os.path.expanduser(f))]
    if missing:
        raise FileNotFoundError(f"FASTQ files not found: {missing}")

    executable = shutil.which("fastqc")
    if executable is None:
        raise FileNotFoundError("fastqc executable not found on PATH. Install FastQC first.")

    out_path = Path(output_dir)
    out_path.mkdir(parents=True, exist_ok=True)
    cmd = build_fastqc_command(
        [os.path.expanduser(f) for f in fastq_files], str(out_path),
        threads=threads, extra_args=extra_args, executable=executable
    )
    log.info(f"Running FastQC on {len(fastq_files)} files: {' '.join(cmd[:5])} ...")

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        log.error(f"FastQC timed out after {timeout} seconds.")
        raise RuntimeError(f"FastQC timed out after {timeout} seconds") from e

    if result.returncode != 0:
        log.error(f"FastQC failed with return code {result.returncode}")
        log.debug(f"FastQC stdout: {result.stdout}")
        raise RuntimeError(f"FastQC failed: {result.stderr.strip()}")

    log.info(f"FastQC completed. Reports written to {out_path}")
    return out_path


def parse_fastqc_summary(summary_path: str) -> pd.DataFrame:
    """
    Reads a FastQC summary.txt (PASS/WARN/FAIL, module, file per line).

    Raises:
        FileNotFoundError: If the summary file does not exist.
        ValueError: If a line does not have three tab-separated fields.
    """
    if not os.path.isfile(summary_path):
        raise FileNotFoundError(f"FastQC summary not found: {summary_path}")
    summary = pd.read_csv(summary_path, sep='\t', header=None, dtype=str)
    if summary.shape[1] != 3:
        raise ValueError(f"Expected 3 tab-separated columns in {summary_path}, found {summary.shape[1]}.")
    summary.columns = ['status', 'module', 'file']
    failed = summary.loc[summary['status'] == 'FAIL', 'module'].tolist()
    if failed:
        log.warning(f"FastQC modules failing in {summary_path}: {failed}")
    return summary
