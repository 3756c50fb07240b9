"""
Segment Pooling and Header Relabeling

Pools per-sample IRMA consensus segments into batch-level FASTA files, one
file per segment, under one of two header labeling policies:

- full:        >{batch}_{barcode}|{sample label}|{original header}
               written to irma_consensus/{SEG}_consensus_{batch}.fasta
- sample-only: >{sample label}
               written to irma_consensus/{SEG}_{batch}.fasta

Pooling rules:
1. Samples are visited in ascending barcode order, segments in IRMA order
   (PB2, PB1, PA, HA, NP, NA, MP, NS = {barcode}_1.fa .. {barcode}_8.fa)
2. A missing per-sample segment file is reported and skipped
3. Records keep their source order; sequence lines are copied verbatim
4. Each pool is rebuilt from scratch on every run, never appended to
5. A pool that ends up with zero records has no file at all: a stale file
   from an earlier run is deleted

The two policies are separate passes over the same IRMA outputs, so either
one can be re-run on its own.

Example Usage:
    >>> from iavbatch.aggregation import aggregate, FULL_LABEL
    >>> result = aggregate("FOX01", items, SEGMENTS, FULL_LABEL,
    ...                    assembly_dir="irma_results", output_dir="irma_consensus")
    >>> result.counts["HA"]
    21
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union
import logging

import pandas as pd

from .config import SEGMENTS
from .samples import WorkItem
from .utils import SegmentRecord, read_segment_records, write_segment_records

logger = logging.getLogger(__name__)

FULL_LABEL = "full"
SAMPLE_ONLY = "sample-only"
POLICIES = (FULL_LABEL, SAMPLE_ONLY)


@dataclass
class AggregationResult:
    """
    Outcome of one pooling pass.

    Attributes
    ----------
    batch_id : str
    policy : str
    counts : Dict[str, int]
        Segment -> number of pooled records (0 for removed pools)
    written : Dict[str, Path]
        Segment -> pooled file, only for segments with records
    missing : List[Tuple[str, str]]
        (barcode, segment) pairs whose source file was absent
    removed : List[str]
        Segments whose pool was empty and has no file
    record_counts : Dict[Tuple[str, str], int]
        (barcode, segment) -> records read from the source file (0 when
        the file is absent or holds no records)
    """
    batch_id: str
    policy: str
    counts: Dict[str, int] = field(default_factory=dict)
    written: Dict[str, Path] = field(default_factory=dict)
    missing: List[Tuple[str, str]] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    record_counts: Dict[Tuple[str, str], int] = field(default_factory=dict)


def segment_number(segment: str) -> int:
    """IRMA file number (1..8) of a segment name."""
    try:
        return SEGMENTS.index(segment) + 1
    except ValueError:
        raise ValueError(f"Unknown segment '{segment}'. Expected one of {SEGMENTS}") from None


def segment_source_path(assembly_dir: Union[str, Path], identifier: str, segment: str) -> Path:
    """Per-sample IRMA consensus file for one segment."""
    return (
        Path(assembly_dir) / identifier / "amended_consensus"
        / f"{identifier}_{segment_number(segment)}.fa"
    )


def pooled_output_path(
    output_dir: Union[str, Path],
    segment: str,
    batch_id: str,
    policy: str,
) -> Path:
    """Batch-level pooled FASTA path for a segment under a labeling policy."""
    output_dir = Path(output_dir)
    if policy == FULL_LABEL:
        return output_dir / f"{segment}_consensus_{batch_id}.fasta"
    if policy == SAMPLE_ONLY:
        return output_dir / f"{segment}_{batch_id}.fasta"
    raise ValueError(f"Unknown labeling policy '{policy}'. Expected one of {POLICIES}")


def relabel_header(record: SegmentRecord, item: WorkItem, batch_id: str, policy: str) -> str:
    """
    Build the pooled header for a record (without the leading '>').

    >>> relabel_header(SegmentRecord("A_HA_H9"), WorkItem("barcode07", "FOX-114"), "FOX01", FULL_LABEL)
    'FOX01_barcode07|FOX-114|A_HA_H9'
    >>> relabel_header(SegmentRecord("A_HA_H9"), WorkItem("barcode07", "FOX-114"), "FOX01", SAMPLE_ONLY)
    'FOX-114'
    """
    if policy == FULL_LABEL:
        return f"{batch_id}_{item.identifier}|{item.sample_label}|{record.header_line}"
    if policy == SAMPLE_ONLY:
        return item.sample_label
    raise ValueError(f"Unknown labeling policy '{policy}'. Expected one of {POLICIES}")


def aggregate(
    batch_id: str,
    items: Sequence[WorkItem],
    segments: Sequence[str],
    policy: str,
    assembly_dir: Union[str, Path],
    output_dir: Union[str, Path],
) -> AggregationResult:
    """
    Pool every sample's consensus segments into per-segment batch files.

    Parameters
    ----------
    batch_id : str
        Batch name
    items : Sequence[WorkItem]
        Samples to pool; visited in ascending identifier order regardless of
        the order given
    segments : Sequence[str]
        Segments to pool (normally all eight)
    policy : str
        FULL_LABEL or SAMPLE_ONLY
    assembly_dir : Union[str, Path]
        IRMA results root (``irma_results``)
    output_dir : Union[str, Path]
        Pooled output directory (``irma_consensus``)

    Returns
    -------
    AggregationResult
    """
    if policy not in POLICIES:
        raise ValueError(f"Unknown labeling policy '{policy}'. Expected one of {POLICIES}")

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    ordered_segments = sorted(segments, key=segment_number)
    pools: Dict[str, List[SegmentRecord]] = {segment: [] for segment in ordered_segments}
    result = AggregationResult(batch_id=batch_id, policy=policy)

    for item in sorted(items, key=lambda i: i.identifier):
        if policy == FULL_LABEL:
            logger.info(f"Processing {item.identifier}...")

        for segment in ordered_segments:
            source = segment_source_path(assembly_dir, item.identifier, segment)

            if not source.is_file():
                result.missing.append((item.identifier, segment))
                result.record_counts[(item.identifier, segment)] = 0
                # The sample-only pass rescans the same files; warn once per run
                if policy == FULL_LABEL:
                    logger.warning(
                        f"Consensus file not found for {item.identifier} segment {segment}"
                    )
                else:
                    logger.debug(f"No consensus file for {item.identifier} segment {segment}")
                continue

            records = read_segment_records(source)
            result.record_counts[(item.identifier, segment)] = len(records)
            for record in records:
                pools[segment].append(
                    SegmentRecord(
                        header_line=relabel_header(record, item, batch_id, policy),
                        sequence_body=list(record.sequence_body),
                    )
                )

    for segment in ordered_segments:
        output_path = pooled_output_path(output_dir, segment, batch_id, policy)
        records = pools[segment]

        if not records:
            if output_path.exists():
                output_path.unlink()
            logger.info(f"Removing empty file: {output_path}")
            result.counts[segment] = 0
            result.removed.append(segment)
            continue

        result.counts[segment] = write_segment_records(records, output_path)
        result.written[segment] = output_path
        logger.info(f"{segment}: {result.counts[segment]} sequences")

    return result


def write_pool_summary(
    results: Sequence[AggregationResult],
    output_path: Union[str, Path],
) -> pd.DataFrame:
    """
    Write a per-segment record-count table for one or more pooling passes.

    Columns: segment, policy, n_records, output_file (empty when removed).
    """
    rows = []
    for result in results:
        for segment, count in result.counts.items():
            written = result.written.get(segment)
            rows.append({
                'segment': segment,
                'policy': result.policy,
                'n_records': count,
                'output_file': written.name if written is not None else '',
            })

    df = pd.DataFrame(rows, columns=['segment', 'policy', 'n_records', 'output_file'])

    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep='\t', index=False)
    logger.info(f"Wrote pooling summary to {path}")
    return df


def sample_segment_matrix(
    result: AggregationResult,
    items: Sequence[WorkItem],
    output_path: Optional[Union[str, Path]] = None,
) -> pd.DataFrame:
    """
    Tabulate which samples contributed which segments.

    Returns a DataFrame indexed by barcode with a ``sample`` column and one
    boolean column per segment of the pooling pass. A segment counts only
    when its source file contributed at least one record.
    """
    segments = list(result.counts)

    rows = []
    for item in sorted(items, key=lambda i: i.identifier):
        row = {'barcode': item.identifier, 'sample': item.sample_label}
        for segment in segments:
            row[segment] = result.record_counts.get((item.identifier, segment), 0) > 0
        rows.append(row)

    df = pd.DataFrame(rows, columns=['barcode', 'sample'] + segments).set_index('barcode')
    if segments:
        df['n_segments'] = df[segments].sum(axis=1).astype(int)
    else:
        df['n_segments'] = 0

    if output_path is not None:
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(path, sep='\t')
        logger.info(f"Wrote sample/segment matrix to {path}")

    return df
