"""
IAVBatch: Nanopore Influenza A Batch Processing

IAVBatch is a Python package that drives one Oxford Nanopore sequencing batch
of Influenza A virus samples from raw reads to per-segment clade calls. It
orchestrates external tools and pools their outputs into batch-level files.

Core functionality includes:
- BAM / FASTQ ingest and filtlong read filtering
- IRMA consensus assembly with bounded per-sample parallelism
- Pooling of per-sample segment consensus sequences under two header labels
- Per-segment reference extraction and nextclade clade assignment
"""

__version__ = "0.1.0"

# Import main modules for easy access
from . import aggregation
from . import clade
from . import config
from . import core
from . import executor
from . import reference
from . import samples
from . import utils

__all__ = [
    "aggregation",
    "clade",
    "config",
    "core",
    "executor",
    "reference",
    "samples",
    "utils",
]
