"""
Barcode Catalog and Sample Label Resolution

Every batch is a fixed set of barcoded samples, barcode01..barcode24 by
default. Each barcode is resolved once to a human-readable sample label from
the configured mapping; a barcode with no label (or a blank one) keeps its
identifier as its label, so the mapping is always total.

Labels can come from the ``sample_labels`` section of the configuration file
or from a tab-separated sample sheet with ``barcode`` and ``sample`` columns.

Example Usage:
    >>> from iavbatch.samples import build_catalog
    >>> items = build_catalog(barcode_count=3, sample_labels={"barcode02": "FOX-114"})
    >>> [(item.identifier, item.sample_label) for item in items]
    [('barcode01', 'barcode01'), ('barcode02', 'FOX-114'), ('barcode03', 'barcode03')]
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union
import logging

import pandas as pd

from .config import BARCODE_PATTERN

logger = logging.getLogger(__name__)

# Characters that would break the '|' delimited full-label header
FORBIDDEN_LABEL_CHARS = set("|>\n\r\t")


@dataclass(frozen=True)
class WorkItem:
    """One barcoded sample moving through the pipeline."""
    identifier: str
    sample_label: str


def barcode_id(number: int) -> str:
    """
    Format a barcode number as an identifier.

    >>> barcode_id(7)
    'barcode07'
    """
    if number < 1:
        raise ValueError(f"Barcode numbers start at 1, got {number}")
    return f"barcode{number:02d}"


def resolve_sample_label(identifier: str, sample_labels: Dict[str, str]) -> str:
    """
    Resolve the sample label for a barcode.

    Falls back to the identifier itself when the barcode is unmapped or its
    label is blank.
    """
    label = sample_labels.get(identifier)
    if label is None or not str(label).strip():
        return identifier

    label = str(label).strip()
    bad = FORBIDDEN_LABEL_CHARS.intersection(label)
    if bad:
        raise ValueError(
            f"Sample label {label!r} for {identifier} contains reserved characters: "
            f"{sorted(bad)}"
        )
    return label


def build_catalog(
    barcode_count: int = 24,
    sample_labels: Optional[Dict[str, str]] = None,
) -> List[WorkItem]:
    """
    Enumerate the batch's work items in ascending identifier order.

    Parameters
    ----------
    barcode_count : int
        Number of barcodes (default: 24)
    sample_labels : Dict[str, str], optional
        Barcode identifier -> sample label

    Returns
    -------
    List[WorkItem]
        barcode01..barcodeNN with resolved labels
    """
    sample_labels = sample_labels or {}

    items = [
        WorkItem(identifier=ident, sample_label=resolve_sample_label(ident, sample_labels))
        for ident in (barcode_id(n) for n in range(1, barcode_count + 1))
    ]

    n_labelled = sum(1 for item in items if item.sample_label != item.identifier)
    logger.debug(f"Built catalog of {len(items)} barcodes ({n_labelled} with sample labels)")

    labels = [item.sample_label for item in items]
    duplicates = sorted({label for label in labels if labels.count(label) > 1})
    if duplicates:
        logger.warning(
            f"Sample labels shared by more than one barcode: {duplicates}. "
            "Sample-only pooled headers will not be unique."
        )

    return items


def load_sample_sheet(
    sheet_path: Union[str, Path],
    barcode_column: str = "barcode",
    sample_column: str = "sample",
) -> Dict[str, str]:
    """
    Read barcode -> sample label assignments from a TSV sample sheet.

    Barcodes may be written as ``barcode07``, ``07`` or ``7``.

    Parameters
    ----------
    sheet_path : Union[str, Path]
        Tab-separated file with a header row
    barcode_column : str
        Column holding the barcode (default: "barcode")
    sample_column : str
        Column holding the sample label (default: "sample")

    Returns
    -------
    Dict[str, str]
        Identifier -> sample label

    Raises
    ------
    FileNotFoundError
        If the sample sheet doesn't exist
    ValueError
        If required columns are missing, a barcode is malformed, or a
        barcode is listed twice
    """
    path = Path(sheet_path)

    if not path.exists():
        raise FileNotFoundError(f"Sample sheet not found: {path}")

    df = pd.read_csv(path, sep='\t', dtype=str, keep_default_na=False)

    missing = [c for c in (barcode_column, sample_column) if c not in df.columns]
    if missing:
        raise ValueError(f"Sample sheet {path} is missing required columns: {missing}")

    df[barcode_column] = df[barcode_column].str.strip().map(_normalize_barcode)
    df[sample_column] = df[sample_column].str.strip()

    duplicated = df[barcode_column].duplicated()
    if duplicated.any():
        dup_ids = df.loc[duplicated, barcode_column].tolist()
        raise ValueError(f"Sample sheet {path} lists barcodes more than once: {dup_ids}")

    labels = dict(zip(df[barcode_column], df[sample_column]))
    logger.info(f"Loaded {len(labels)} sample labels from {path}")
    return labels


def _normalize_barcode(value: str) -> str:
    if BARCODE_PATTERN.match(value):
        return value
    digits = value[len("barcode"):] if value.lower().startswith("barcode") else value
    if not digits.isdigit():
        raise ValueError(f"Malformed barcode in sample sheet: {value!r}")
    return barcode_id(int(digits))
