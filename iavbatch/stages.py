"""
Per-Sample Stage Actions and Filesystem Layout

Declares the pipeline's stages and the per-sample actions of the three
executor-driven stages. Every stage names the input it expects and the output
it produces through a StageLayout bound to one batch, so each stage finds its
inputs by checking the filesystem left behind by the previous one.

Stages (in order):
    ingest     {prefix}_{id}.bam | {prefix}_{id}.fastq  ->  {prefix}_{id}.fastq.gz
    filter     {prefix}_{id}.fastq.gz                    ->  qc_reads/{prefix}_{id}.filtered.fastq.gz
    assemble   qc_reads/{prefix}_{id}.filtered.fastq.gz  ->  irma_results/{id}/amended_consensus/
    aggregate  irma_results/                             ->  irma_consensus/{SEG}_consensus_{batch}.fasta
    relabel    irma_results/                             ->  irma_consensus/{SEG}_{batch}.fasta
    clade      irma_consensus/ + reference collection    ->  nextclade_results/{even,odd}_segments/

A per-sample action never raises for expected conditions: a missing input
gives a skipped result, a failing tool gives a failed result.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
import logging

from .config import PipelineConfig
from .executor import StageResult
from .samples import WorkItem
from . import tools

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageSpec:
    """Static description of one pipeline stage."""
    name: str
    description: str
    tools: Tuple[str, ...] = ()
    per_sample: bool = False


STAGES: List[StageSpec] = [
    StageSpec("ingest", "Convert BAM / compress FASTQ input", ("samtools",), per_sample=True),
    StageSpec("filter", "Quality filtering with filtlong", ("filtlong",), per_sample=True),
    StageSpec("assemble", "IRMA consensus assembly", ("IRMA",), per_sample=True),
    StageSpec("aggregate", "Pool BatchID/BarcodeXX/SampleID labelled consensus"),
    StageSpec("relabel", "Pool SampleID-labelled consensus"),
    StageSpec("clade", "Nextclade analysis for all IAV segments", ("nextclade",)),
]

STAGE_NAMES = [stage.name for stage in STAGES]


def select_stages(
    start_stage: Optional[str] = None,
    stop_stage: Optional[str] = None,
) -> List[StageSpec]:
    """
    Select a contiguous slice of the ordered stage list.

    Raises
    ------
    ValueError
        For unknown stage names or a start stage after the stop stage
    """
    for name in (start_stage, stop_stage):
        if name is not None and name not in STAGE_NAMES:
            raise ValueError(f"Unknown stage '{name}'. Choose from: {', '.join(STAGE_NAMES)}")

    start = STAGE_NAMES.index(start_stage) if start_stage else 0
    stop = STAGE_NAMES.index(stop_stage) if stop_stage else len(STAGES) - 1

    if start > stop:
        raise ValueError(f"start stage '{start_stage}' comes after stop stage '{stop_stage}'")

    return STAGES[start:stop + 1]


class StageLayout:
    """
    Path templates for one batch, rooted at the working directory.

    Parameters
    ----------
    work_dir : Path
        Directory holding the raw inputs
    sample_prefix : str
        Prefix of the raw and filtered read files
    batch_id : str
        Batch name used by the pooled and clade outputs
    """

    def __init__(self, work_dir: Path, sample_prefix: str, batch_id: str):
        self.work_dir = Path(work_dir)
        self.sample_prefix = sample_prefix
        self.batch_id = batch_id

        self.qc_dir = self.work_dir / "qc_reads"
        self.qc_log_dir = self.qc_dir / "qc_logs"
        self.assembly_dir = self.work_dir / "irma_results"
        self.assembly_log_dir = self.assembly_dir / "irma_logs"
        self.pool_dir = self.work_dir / "irma_consensus"
        self.clade_dir = self.work_dir / "nextclade_results"

    @classmethod
    def from_config(cls, cfg: PipelineConfig) -> 'StageLayout':
        return cls(cfg.work_dir, cfg.sample_prefix, cfg.batch_id)

    def sample_stem(self, item: WorkItem) -> str:
        return f"{self.sample_prefix}_{item.identifier}"

    def raw_bam(self, item: WorkItem) -> Path:
        return self.work_dir / f"{self.sample_stem(item)}.bam"

    def raw_fastq(self, item: WorkItem) -> Path:
        return self.work_dir / f"{self.sample_stem(item)}.fastq"

    def ingest_log(self, item: WorkItem) -> Path:
        return self.work_dir / "ingest_logs" / f"{self.sample_stem(item)}.samtools.log"

    def reads(self, item: WorkItem) -> Path:
        return self.work_dir / f"{self.sample_stem(item)}.fastq.gz"

    def filtered_reads(self, item: WorkItem) -> Path:
        return self.qc_dir / f"{self.sample_stem(item)}.filtered.fastq.gz"

    def filter_log(self, item: WorkItem) -> Path:
        return self.qc_log_dir / f"{self.sample_stem(item)}.filtlong.log"

    def assembly_output(self, item: WorkItem) -> Path:
        return self.assembly_dir / item.identifier

    def assembly_log(self, item: WorkItem) -> Path:
        return self.assembly_log_dir / f"{item.identifier}.irma.log"

    def has_bam_inputs(self) -> bool:
        return any(self.work_dir.glob("*.bam"))

    def has_fastq_inputs(self) -> bool:
        return any(self.work_dir.glob("*.fastq"))


# ============================================================================
# Per-sample actions
# ============================================================================

def make_ingest_action(layout: StageLayout, mode: str) -> Callable[[WorkItem], StageResult]:
    """
    Build the ingest action for one batch.

    Parameters
    ----------
    layout : StageLayout
        Batch layout
    mode : str
        "bam" converts ``{stem}.bam`` with samtools; "fastq" gzip-compresses
        ``{stem}.fastq``

    Notes
    -----
    A sample that already has ``{stem}.fastq.gz`` and no raw input succeeds
    without doing anything.
    """
    if mode not in ("bam", "fastq"):
        raise ValueError(f"Unknown ingest mode: {mode}")

    def ingest(item: WorkItem) -> StageResult:
        target = layout.reads(item)
        source = layout.raw_bam(item) if mode == "bam" else layout.raw_fastq(item)

        if not source.exists():
            if target.exists():
                logger.debug(f"{item.identifier}: {target.name} already present")
                return StageResult.success(item.identifier, "ingest", target)
            logger.debug(f"{item.identifier}: no {source.name}")
            return StageResult.skip(item.identifier, "ingest", f"{source} not found")

        try:
            if mode == "bam":
                logger.info(f"Converting {source.name} to FASTQ...")
                tools.convert_bam_to_fastq(source, target, layout.ingest_log(item))
            else:
                logger.info(f"Compressing {source.name}...")
                tools.compress_fastq(source)
        except tools.ToolExecutionError as e:
            logger.error(f"{item.identifier}: {e}")
            return StageResult.failure(item.identifier, "ingest", str(e))

        return StageResult.success(item.identifier, "ingest", target)

    return ingest


def make_filter_action(layout: StageLayout, cfg: PipelineConfig) -> Callable[[WorkItem], StageResult]:
    """Build the filtlong action for one batch."""

    def filter_reads(item: WorkItem) -> StageResult:
        source = layout.reads(item)
        if not source.exists():
            logger.warning(f"Warning: {source.name} not found")
            return StageResult.skip(item.identifier, "filter", f"{source} not found")

        logger.info(f"Processing {source.name}...")
        target = layout.filtered_reads(item)
        try:
            tools.run_filtlong(source, target, layout.filter_log(item), cfg.filtering)
        except tools.ToolExecutionError as e:
            logger.error(f"{item.identifier}: {e}")
            return StageResult.failure(item.identifier, "filter", str(e))

        return StageResult.success(item.identifier, "filter", target)

    return filter_reads


def make_assemble_action(layout: StageLayout, cfg: PipelineConfig) -> Callable[[WorkItem], StageResult]:
    """Build the IRMA action for one batch."""

    def assemble(item: WorkItem) -> StageResult:
        source = layout.filtered_reads(item)
        if not source.exists():
            logger.warning(f"Warning: {source.name} not found, skipping IRMA for {item.identifier}")
            return StageResult.skip(item.identifier, "assemble", f"{source} not found")

        logger.info(f"Running IRMA on {source.name}...")
        try:
            consensus_dir = tools.run_irma(
                cfg.assembly.module,
                source,
                layout.assembly_output(item),
                layout.assembly_log(item),
            )
        except tools.ToolExecutionError as e:
            logger.error(f"{item.identifier}: {e}")
            return StageResult.failure(item.identifier, "assemble", str(e))

        return StageResult.success(item.identifier, "assemble", consensus_dir)

    return assemble


def detect_ingest_mode(layout: StageLayout) -> Optional[str]:
    """Return "bam", "fastq", or None when the directory holds neither."""
    if layout.has_bam_inputs():
        return "bam"
    if layout.has_fastq_inputs():
        return "fastq"
    return None


def tools_for_stages(stages: List[StageSpec], layout: Optional[StageLayout] = None) -> List[str]:
    """
    List the external tools the selected stages need.

    samtools is only required for ingest when BAM inputs are present.
    """
    needed: Dict[str, None] = {}
    for stage in stages:
        for tool in stage.tools:
            if tool == "samtools" and layout is not None and detect_ingest_mode(layout) != "bam":
                continue
            needed[tool] = None
    return list(needed)
