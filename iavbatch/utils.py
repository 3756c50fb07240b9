"""
Helper Functions and Utilities

This module provides common utility functions used throughout the IAVBatch
package, including logging configuration, external tool discovery, directory
handling and FASTA record parsing.

Key Utilities:
1. Logging Configuration
   - Centralized logging setup for the ``iavbatch`` package logger
   - Console output plus optional per-batch log file
   - Stage banners for long-running pipeline steps

2. External Tool Management
   - Locate bioinformatics tools (samtools, filtlong, IRMA, nextclade) in PATH
   - Helpful installation instructions when a tool is missing

3. File Operations
   - Automatic directory creation
   - Segment FASTA parsing that keeps sequence lines verbatim
   - FASTA writing for pooled outputs

4. Time Formatting
   - Human-readable elapsed times for the final run report

Example Usage:
    >>> from iavbatch.utils import setup_logging, read_segment_records
    >>> logger = setup_logging(log_level="DEBUG", log_file="batch.log")
    >>> records = read_segment_records("barcode01_4.fa")
    >>> print(records[0].header_line)
    A_HA_H9
"""

from dataclasses import dataclass, field
from typing import Optional, List, Union, Iterable
from pathlib import Path
import logging
import shutil
import sys

# Configure module logger
logger = logging.getLogger(__name__)


class IAVBatchError(Exception):
    """Base exception for IAVBatch pipeline errors."""
    pass


# ============================================================================
# Logging Configuration
# ============================================================================

def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging for IAVBatch.

    Sets up the package logger with console and optional file output. Worker
    threads of the parallel executor log through the same handlers, so
    per-sample messages from concurrent tool runs are interleaved in the
    order they complete.

    Parameters
    ----------
    log_level : str, optional
        Logging level: DEBUG, INFO, WARNING, ERROR, or CRITICAL (default: INFO)
    log_file : str, optional
        Path to log file. If None, logs only to console (default: None)
    format_string : str, optional
        Custom format string for log messages. If None, uses default format

    Returns
    -------
    logging.Logger
        Configured logger instance

    Examples
    --------
    >>> logger = setup_logging(log_level="DEBUG", log_file="FOX01_pipeline.log")
    >>> logger.info("Starting batch")

    Notes
    -----
    The default format includes timestamp, level, and message:
    [2025-11-03 10:30:45] INFO: Starting batch
    """
    package_logger = logging.getLogger("iavbatch")
    package_logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers to avoid duplicates
    package_logger.handlers.clear()

    if format_string is None:
        format_string = "[%(asctime)s] %(levelname)s: %(message)s"

    formatter = logging.Formatter(format_string, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level.upper()))
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

        package_logger.info(f"Logging to file: {log_file}")

    return package_logger


def log_stage_banner(step: int, message: str) -> None:
    """Log a boxed 'Step N complete' banner."""
    logger.info("")
    logger.info("=" * 40)
    logger.info(f"Step {step} complete: {message}")
    logger.info("=" * 40)
    logger.info("")


# ============================================================================
# External Tool Management
# ============================================================================

def check_external_tool(tool_name: str) -> bool:
    """
    Check if an external bioinformatics tool is available in PATH.

    Parameters
    ----------
    tool_name : str
        Name of tool to check (e.g., 'samtools', 'filtlong', 'IRMA')

    Returns
    -------
    bool
        True if the tool is on PATH, False otherwise

    Examples
    --------
    >>> if not check_external_tool("filtlong"):
    ...     print("Please install filtlong")
    """
    tool_path = shutil.which(tool_name)

    if tool_path is None:
        logger.warning(f"Tool '{tool_name}' not found in PATH")
        logger.info(get_tool_installation_instructions(tool_name))
        return False

    logger.debug(f"Found {tool_name} at: {tool_path}")
    return True


def get_tool_installation_instructions(tool_name: str) -> str:
    """
    Get installation instructions for missing external tools.

    Parameters
    ----------
    tool_name : str
        Name of tool

    Returns
    -------
    str
        Installation instructions
    """
    instructions = {
        "samtools": """
samtools Installation:
  Via conda: conda install -c bioconda samtools
  Via apt:   sudo apt-get install samtools
  Website:   https://www.htslib.org/
""",
        "filtlong": """
Filtlong Installation:
  Via conda: conda install -c bioconda filtlong
  Website:   https://github.com/rrwick/Filtlong
""",
        "irma": """
IRMA Installation:
  Via conda: conda install -c bioconda irma
  Website:   https://wonder.cdc.gov/amd/flu/irma/
""",
        "nextclade": """
Nextclade Installation:
  Via conda: conda install -c bioconda nextclade
  Website:   https://docs.nextstrain.org/projects/nextclade/
""",
    }

    return instructions.get(
        tool_name.lower(),
        f"Please install {tool_name} and ensure it is in your system PATH"
    )


# ============================================================================
# File I/O and Path Handling
# ============================================================================

def create_output_directory(output_dir: Union[str, Path]) -> Path:
    """
    Create output directory if it doesn't exist.

    Parameters
    ----------
    output_dir : Union[str, Path]
        Path to output directory

    Returns
    -------
    Path
        Path object for output directory

    Raises
    ------
    OSError
        If directory cannot be created due to permissions or other issues
    """
    path = Path(output_dir)

    try:
        path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Created/verified output directory: {path}")
        return path
    except OSError as e:
        logger.error(f"Failed to create directory {path}: {e}")
        raise


@dataclass
class SegmentRecord:
    """
    A single FASTA record from a segment consensus file.

    Attributes
    ----------
    header_line : str
        Header text without the leading '>' and trailing newline
    sequence_body : List[str]
        Sequence lines exactly as they appeared in the source (newline stripped)
    """
    header_line: str
    sequence_body: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        """First whitespace-delimited token of the header."""
        parts = self.header_line.split()
        return parts[0] if parts else ""

    @property
    def sequence(self) -> str:
        return "".join(line.strip() for line in self.sequence_body)

    def to_fasta(self, header_line: Optional[str] = None) -> str:
        header = self.header_line if header_line is None else header_line
        lines = [f">{header}"] + list(self.sequence_body)
        return "\n".join(lines) + "\n"


def read_segment_records(fasta_path: Union[str, Path]) -> List[SegmentRecord]:
    """
    Read a FASTA file into SegmentRecords, keeping sequence lines verbatim.

    Unlike Bio.SeqIO, sequence lines are neither joined nor re-wrapped, so a
    pooled file reproduces the assembler's line layout exactly.

    Parameters
    ----------
    fasta_path : Union[str, Path]
        Path to FASTA file

    Returns
    -------
    List[SegmentRecord]
        Records in file order. An empty file gives an empty list.

    Raises
    ------
    FileNotFoundError
        If FASTA file doesn't exist

    Notes
    -----
    - Headers do not include the '>' character
    - Lines before the first header are dropped with a warning
    """
    path = Path(fasta_path)

    if not path.exists():
        raise FileNotFoundError(f"FASTA file not found: {path}")

    records = []
    current = None
    orphan_lines = 0

    with open(path, 'r') as fh:
        for line in fh:
            line = line.rstrip('\r\n')

            if line.startswith('>'):
                current = SegmentRecord(header_line=line[1:])
                records.append(current)
            elif current is None:
                if line.strip():
                    orphan_lines += 1
            else:
                current.sequence_body.append(line)

    if orphan_lines:
        logger.warning(f"Ignored {orphan_lines} line(s) before the first header in {path}")

    logger.debug(f"Read {len(records)} records from {path}")
    return records


def write_segment_records(
    records: Iterable[SegmentRecord],
    output_path: Union[str, Path],
) -> int:
    """
    Write SegmentRecords to a FASTA file, replacing any existing content.

    Returns
    -------
    int
        Number of records written
    """
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    n_written = 0
    with open(path, 'w') as fh:
        for record in records:
            fh.write(record.to_fasta())
            n_written += 1

    logger.debug(f"Wrote {n_written} records to {path}")
    return n_written


def count_fasta_headers(fasta_path: Union[str, Path]) -> int:
    """Count lines beginning with '>' in a FASTA file."""
    with open(fasta_path, 'r') as fh:
        return sum(1 for line in fh if line.startswith('>'))


# ============================================================================
# Time Formatting Utilities
# ============================================================================

def format_elapsed_time(seconds: float) -> str:
    """
    Format elapsed time in human-readable format.

    Parameters
    ----------
    seconds : float
        Elapsed time in seconds

    Returns
    -------
    str
        Formatted time string (e.g., "2h 15m")

    Examples
    --------
    >>> format_elapsed_time(45)
    '45s'
    >>> format_elapsed_time(3661)
    '1h 1m'
    """
    if seconds < 60:
        return f"{seconds:.0f}s"

    minutes = seconds / 60
    if minutes < 60:
        return f"{minutes:.1f}m"

    hours = minutes / 60
    minutes_remainder = minutes % 60

    if hours < 24:
        return f"{int(hours)}h {int(minutes_remainder)}m"

    days = hours / 24
    hours_remainder = hours % 24
    return f"{int(days)}d {int(hours_remainder)}h"
