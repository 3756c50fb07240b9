"""
External Tool Wrappers

Thin wrappers around the command-line tools the pipeline drives. Each wrapper
builds the command, runs it as a child process, sends diagnostics to a log
file, and raises ToolExecutionError on a non-zero exit. Partial outputs of a
failed run are removed so later stages see the output as absent.

Tools:
- samtools: BAM -> FASTQ conversion (``samtools fastq``), gzip-compressed
- filtlong: long-read quality filtering, gzip-compressed
- IRMA: iterative refinement consensus assembly (FLU_ont module)
- nextclade: clade assignment against an extracted reference

Stage preflight:
- require_tools() checks PATH once at stage entry and raises PreflightError
  before any per-sample work starts

Example Usage:
    >>> from iavbatch.tools import require_tools, run_filtlong
    >>> require_tools(["filtlong"])
    >>> run_filtlong("FOX_barcode01.fastq.gz", "qc_reads/FOX_barcode01.filtered.fastq.gz",
    ...              "qc_reads/qc_logs/FOX_barcode01.filtlong.log", filtering_config)
"""

from typing import List, Optional, Sequence, Union
from pathlib import Path
import gzip
import logging
import shutil
import subprocess

from .config import FilteringConfig
from .utils import IAVBatchError, check_external_tool

logger = logging.getLogger(__name__)


class PreflightError(IAVBatchError):
    """A required tool or input is missing before a stage starts."""
    pass


class ToolExecutionError(IAVBatchError):
    """An external tool exited with a non-zero status."""

    def __init__(self, tool: str, returncode: int, log_path: Optional[Path] = None):
        self.tool = tool
        self.returncode = returncode
        self.log_path = log_path
        message = f"{tool} exited with status {returncode}"
        if log_path is not None:
            message += f" (see {log_path})"
        super().__init__(message)


def require_tools(tool_names: Sequence[str]) -> None:
    """
    Check that every tool is available in PATH.

    Parameters
    ----------
    tool_names : Sequence[str]
        Tools needed by the stages about to run

    Raises
    ------
    PreflightError
        Listing every missing tool
    """
    missing = [name for name in tool_names if not check_external_tool(name)]
    if missing:
        raise PreflightError(f"Required tools not found in PATH: {', '.join(missing)}")


def _remove_partial(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists():
        path.unlink()


def run_piped_to_gzip(
    cmd: List[str],
    output_path: Union[str, Path],
    log_path: Union[str, Path],
) -> Path:
    """
    Run a command and gzip its stdout into ``output_path``.

    stderr is written to ``log_path``.

    Raises
    ------
    ToolExecutionError
        If the command exits non-zero (the partial output is removed)
    """
    output_path = Path(output_path)
    log_path = Path(log_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger.debug(f"Running: {' '.join(cmd)} | gzip > {output_path}")

    try:
        with open(log_path, 'wb') as log_handle, gzip.open(output_path, 'wb') as out_handle:
            process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=log_handle)
            shutil.copyfileobj(process.stdout, out_handle)
            process.stdout.close()
            returncode = process.wait()
    except OSError:
        _remove_partial(output_path)
        raise

    if returncode != 0:
        _remove_partial(output_path)
        raise ToolExecutionError(cmd[0], returncode, log_path)

    return output_path


def convert_bam_to_fastq(
    bam_path: Union[str, Path],
    fastq_gz_path: Union[str, Path],
    log_path: Union[str, Path],
) -> Path:
    """Convert an unaligned BAM to gzipped FASTQ with ``samtools fastq``."""
    cmd = ["samtools", "fastq", str(bam_path)]
    return run_piped_to_gzip(cmd, fastq_gz_path, log_path)


def compress_fastq(fastq_path: Union[str, Path]) -> Path:
    """
    Gzip-compress a FASTQ file in place.

    Mirrors ``gzip file.fastq``: writes ``file.fastq.gz`` and removes the
    uncompressed file once the copy is complete.

    Returns
    -------
    Path
        Path to the compressed file
    """
    source = Path(fastq_path)
    target = source.with_name(source.name + ".gz")

    logger.debug(f"Compressing {source}")
    try:
        with open(source, 'rb') as src, gzip.open(target, 'wb') as dst:
            shutil.copyfileobj(src, dst)
    except OSError:
        _remove_partial(target)
        raise

    source.unlink()
    return target


def build_filtlong_command(input_path: Union[str, Path], cfg: FilteringConfig) -> List[str]:
    """Build the filtlong command line for one FASTQ file."""
    cmd = [
        "filtlong",
        "--min_length", str(cfg.min_length),
        "--keep_percent", str(cfg.keep_percent),
        "--target_bases", str(cfg.target_bases),
    ]
    if cfg.max_length is not None:
        cmd += ["--max_length", str(cfg.max_length)]
    if cfg.min_quality is not None:
        cmd += ["--min_mean_q", str(cfg.min_quality)]
    cmd.append(str(input_path))
    return cmd


def run_filtlong(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    log_path: Union[str, Path],
    cfg: FilteringConfig,
) -> Path:
    """
    Filter reads with filtlong, gzip-compressing the kept reads.

    Raises
    ------
    ToolExecutionError
        If filtlong exits non-zero
    """
    cmd = build_filtlong_command(input_path, cfg)
    return run_piped_to_gzip(cmd, output_path, log_path)


def run_irma(
    module: str,
    input_path: Union[str, Path],
    output_dir: Union[str, Path],
    log_path: Union[str, Path],
) -> Path:
    """
    Run IRMA consensus assembly for one sample.

    Parameters
    ----------
    module : str
        IRMA module, e.g. "FLU_ont"
    input_path : Union[str, Path]
        Filtered reads
    output_dir : Union[str, Path]
        IRMA output directory; consensus segments land in
        ``output_dir/amended_consensus/``
    log_path : Union[str, Path]
        File receiving IRMA's stdout and stderr

    Returns
    -------
    Path
        The ``amended_consensus`` directory

    Raises
    ------
    ToolExecutionError
        If IRMA exits non-zero. Whatever the failed run wrote under
        ``output_dir`` is removed first, so a later pooling pass treats
        every segment of the sample as missing.
    """
    output_dir = Path(output_dir)
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Consensus files from an earlier run must not outlive this one
    if output_dir.exists():
        logger.debug(f"Removing previous IRMA output: {output_dir}")
        _remove_partial(output_dir)

    cmd = ["IRMA", module, str(input_path), str(output_dir)]
    logger.debug(f"Running: {' '.join(cmd)}")

    with open(log_path, 'w') as log_handle:
        result = subprocess.run(cmd, stdout=log_handle, stderr=subprocess.STDOUT)

    if result.returncode != 0:
        _remove_partial(output_dir)
        raise ToolExecutionError("IRMA", result.returncode, log_path)

    return output_dir / "amended_consensus"


def run_nextclade(
    input_fasta: Union[str, Path],
    reference_fasta: Union[str, Path],
    output_prefix: Union[str, Path],
    jobs: int = 1,
) -> Path:
    """
    Run ``nextclade run`` for one pooled segment file.

    Outputs are written next to ``output_prefix``:
    ``_nextclade.csv``, ``_nextclade.json``, ``_aligned.fasta``,
    ``_tree.json``, ``_nextclade.ndjson`` and the ``_nextclade.log``.

    Returns
    -------
    Path
        Path to the CSV output

    Raises
    ------
    ToolExecutionError
        If nextclade exits non-zero
    """
    prefix = str(output_prefix)
    log_path = Path(f"{prefix}_nextclade.log")
    log_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = [
        "nextclade", "run",
        str(input_fasta),
        "--output-csv", f"{prefix}_nextclade.csv",
        "--output-json", f"{prefix}_nextclade.json",
        "--output-fasta", f"{prefix}_aligned.fasta",
        "--input-ref", str(reference_fasta),
        "--output-tree", f"{prefix}_tree.json",
        "--output-ndjson", f"{prefix}_nextclade.ndjson",
        "--jobs", str(jobs),
    ]
    logger.debug(f"Running: {' '.join(cmd)}")

    with open(log_path, 'w') as log_handle:
        result = subprocess.run(cmd, stdout=log_handle, stderr=subprocess.STDOUT)

    if result.returncode != 0:
        raise ToolExecutionError("nextclade", result.returncode, log_path)

    return Path(f"{prefix}_nextclade.csv")
