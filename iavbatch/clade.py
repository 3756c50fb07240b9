"""
Nextclade Clade Assignment

Runs nextclade once per segment on the full-label pooled consensus files,
using a reference record extracted for that segment. Results are split into
two directories by segment parity:

    nextclade_results/even_segments/   HA, NA, PB1, NS
    nextclade_results/odd_segments/    PB2, PA, NP, MP

A segment whose pooled file is absent is skipped. A nextclade failure for one
segment is logged and the next segment still runs. A missing reference
collection or reference record aborts the whole stage with CladeStageError.

Example Usage:
    >>> from iavbatch.clade import run_clade_analysis
    >>> outcome = run_clade_analysis(cfg, layout)
    >>> sorted(outcome['completed'])
    ['HA', 'NA']
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

import pandas as pd

from .aggregation import FULL_LABEL, pooled_output_path
from .config import PipelineConfig
from .reference import ReferenceExtractionError, extracted_references
from .stages import StageLayout
from .utils import IAVBatchError
from . import tools

logger = logging.getLogger(__name__)

SEGMENT_TYPES = {
    "HA": "even",
    "NA": "even",
    "PB1": "even",
    "NS": "even",
    "PB2": "odd",
    "PA": "odd",
    "NP": "odd",
    "MP": "odd",
}

CLADE_SEGMENT_ORDER = ["HA", "NA", "PB1", "NS", "PB2", "PA", "NP", "MP"]


class CladeStageError(IAVBatchError):
    """The clade stage could not start."""
    pass


def segment_output_dir(clade_dir: Union[str, Path], segment: str) -> Path:
    """``even_segments`` or ``odd_segments`` directory for a segment."""
    return Path(clade_dir) / f"{SEGMENT_TYPES[segment]}_segments"


def output_prefix(clade_dir: Union[str, Path], segment: str, batch_id: str) -> Path:
    """Common prefix of a segment's nextclade outputs."""
    return segment_output_dir(clade_dir, segment) / f"{segment}_consensus_{batch_id}"


def run_clade_analysis(cfg: PipelineConfig, layout: StageLayout) -> Dict[str, Any]:
    """
    Run nextclade for every segment that has a pooled file.

    Parameters
    ----------
    cfg : PipelineConfig
        Pipeline configuration (reference collection, names, thread count)
    layout : StageLayout
        Batch layout; pooled inputs are read from ``layout.pool_dir``

    Returns
    -------
    Dict[str, Any]
        - 'completed': Dict[str, Path] - segment -> nextclade CSV
        - 'failed': List[str] - segments whose nextclade run failed
        - 'skipped': List[str] - segments without a pooled file

    Raises
    ------
    CladeStageError
        If the reference collection or a reference record is unavailable
    """
    reference_fasta = Path(cfg.clade.reference_fasta)
    if not reference_fasta.is_file():
        raise CladeStageError(f"Reference file not found at {reference_fasta}")

    outcome: Dict[str, Any] = {'completed': {}, 'failed': [], 'skipped': []}

    for parity in ("even", "odd"):
        (layout.clade_dir / f"{parity}_segments").mkdir(parents=True, exist_ok=True)

    try:
        with extracted_references(reference_fasta, cfg.clade.reference_names) as references:
            for segment in CLADE_SEGMENT_ORDER:
                input_fasta = pooled_output_path(
                    layout.pool_dir, segment, layout.batch_id, FULL_LABEL
                )
                if not input_fasta.exists():
                    logger.warning(f"Warning: {input_fasta.name} not found, skipping...")
                    outcome['skipped'].append(segment)
                    continue

                logger.info(f"Processing {segment} segment...")
                try:
                    csv_path = tools.run_nextclade(
                        input_fasta,
                        references[segment],
                        output_prefix(layout.clade_dir, segment, layout.batch_id),
                        jobs=cfg.n_threads,
                    )
                except tools.ToolExecutionError as e:
                    logger.error(f"Error processing {segment}: {e}")
                    outcome['failed'].append(segment)
                    continue

                outcome['completed'][segment] = csv_path
    except ReferenceExtractionError as e:
        raise CladeStageError(str(e)) from e

    logger.info(
        f"Nextclade: {len(outcome['completed'])} completed, "
        f"{len(outcome['failed'])} failed, {len(outcome['skipped'])} skipped"
    )
    return outcome


def summarize_clades(
    csv_paths: Dict[str, Path],
    output_path: Optional[Union[str, Path]] = None,
) -> pd.DataFrame:
    """
    Combine per-segment nextclade CSVs into one table.

    Nextclade writes semicolon-separated CSVs. Each row of the combined table
    gains ``segment`` and ``segment_type`` columns; the remaining columns are
    the union of the per-segment columns.

    Parameters
    ----------
    csv_paths : Dict[str, Path]
        Segment -> nextclade CSV
    output_path : Union[str, Path], optional
        If given, the table is written there as TSV

    Returns
    -------
    pd.DataFrame
        Combined table (empty when no CSV could be read)
    """
    frames: List[pd.DataFrame] = []

    for segment in CLADE_SEGMENT_ORDER:
        csv_path = csv_paths.get(segment)
        if csv_path is None:
            continue
        if not Path(csv_path).exists():
            logger.warning(f"Nextclade output not found for {segment}: {csv_path}")
            continue

        df = pd.read_csv(csv_path, sep=';', dtype=str, keep_default_na=False)
        df.insert(0, 'segment_type', SEGMENT_TYPES[segment])
        df.insert(0, 'segment', segment)
        frames.append(df)

    if frames:
        summary = pd.concat(frames, ignore_index=True, sort=False)
    else:
        summary = pd.DataFrame(columns=['segment', 'segment_type'])

    if output_path is not None:
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        summary.to_csv(path, sep='\t', index=False)
        logger.info(f"Wrote clade summary ({len(summary)} rows) to {path}")

    return summary
