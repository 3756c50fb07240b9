"""
Per-Segment Reference Extraction

Nextclade needs one reference sequence per segment. IRMA ships all of them in
a single multi-record collection (``FLU_ont/reference/consensus.fasta``), so
this module pulls out the configured record for each segment and writes it to
its own FASTA file.

Records are matched on their name, the first whitespace-delimited token of
the header. Every segment must match exactly one record with a non-empty
sequence. All names are resolved before anything is written, so a failed
lookup leaves no extraction files behind.

Example Usage:
    >>> from iavbatch.reference import extracted_references
    >>> with extracted_references(collection, {"HA": "A_HA_H9", "NA": "A_NA_N2"}) as refs:
    ...     print(refs["HA"].name)
    HA_ref.fasta
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Union
import logging
import tempfile

from Bio import SeqIO
from Bio.SeqRecord import SeqRecord

from .utils import IAVBatchError

logger = logging.getLogger(__name__)


class ReferenceExtractionError(IAVBatchError):
    """A reference collection or one of its records could not be used."""
    pass


def reference_path_for(dest_dir: Union[str, Path], segment: str) -> Path:
    """Extraction target for one segment: ``{dest_dir}/{SEG}_ref.fasta``."""
    return Path(dest_dir) / f"{segment}_ref.fasta"


def _index_collection(reference_path: Path) -> Dict[str, List[SeqRecord]]:
    """Group the collection's records by name."""
    index: Dict[str, List[SeqRecord]] = {}
    for record in SeqIO.parse(str(reference_path), "fasta"):
        index.setdefault(record.id, []).append(record)
    return index


def extract_reference(
    reference_path: Union[str, Path],
    segment_to_ref_name: Dict[str, str],
    dest_dir: Union[str, Path],
) -> Dict[str, Path]:
    """
    Extract one named record per segment from a reference collection.

    Parameters
    ----------
    reference_path : Union[str, Path]
        Multi-record reference FASTA
    segment_to_ref_name : Dict[str, str]
        Segment -> record name, e.g. {"HA": "A_HA_H9"}
    dest_dir : Union[str, Path]
        Directory receiving ``{SEG}_ref.fasta`` files

    Returns
    -------
    Dict[str, Path]
        Segment -> extracted reference file

    Raises
    ------
    ReferenceExtractionError
        If the collection is missing, or a name matches no record, more than
        one record, or a record with an empty sequence
    """
    reference_path = Path(reference_path)

    if not reference_path.is_file():
        raise ReferenceExtractionError(f"Reference file not found at {reference_path}")

    index = _index_collection(reference_path)
    logger.debug(f"Indexed {len(index)} reference names from {reference_path}")

    selected: Dict[str, SeqRecord] = {}
    problems = []

    for segment, ref_name in segment_to_ref_name.items():
        matches = index.get(ref_name, [])
        if not matches:
            problems.append(f"{segment}: no record named '{ref_name}'")
        elif len(matches) > 1:
            problems.append(f"{segment}: {len(matches)} records named '{ref_name}'")
        elif len(matches[0].seq) == 0:
            problems.append(f"{segment}: record '{ref_name}' has an empty sequence")
        else:
            selected[segment] = matches[0]

    if problems:
        raise ReferenceExtractionError(
            f"Could not extract references from {reference_path}: " + "; ".join(problems)
        )

    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)

    extracted = {}
    for segment, record in selected.items():
        output_path = reference_path_for(dest_dir, segment)
        SeqIO.write([record], str(output_path), "fasta")
        extracted[segment] = output_path
        logger.debug(f"Extracted {record.id} ({len(record.seq)} bp) for {segment}")

    return extracted


@contextmanager
def extracted_references(
    reference_path: Union[str, Path],
    segment_to_ref_name: Dict[str, str],
) -> Iterator[Dict[str, Path]]:
    """
    Extract references into a temporary directory for the duration of a block.

    The directory and everything in it is removed when the block exits,
    whether or not it raised.
    """
    with tempfile.TemporaryDirectory(prefix="iavbatch_refs_") as tmp_dir:
        yield extract_reference(reference_path, segment_to_ref_name, tmp_dir)
