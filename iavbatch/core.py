"""
Core Pipeline Orchestration for IAVBatch

This module runs one sequencing batch through the ordered pipeline stages:

1. Ingest: BAM -> FASTQ conversion, or compression of raw FASTQ
2. Filter: filtlong quality filtering
3. Assemble: IRMA consensus assembly per barcode
4. Aggregate: pool consensus segments with BatchID_Barcode|Sample|header labels
5. Relabel: pool consensus segments with SampleID-only labels
6. Clade: nextclade analysis for every segment

Stages run strictly one after another. The three per-sample stages fan out
over the barcodes with at most ``n_threads`` tool processes at once, and the
next stage starts only when every barcode has finished the current one.
Stages hand off through files on disk, so any contiguous slice of stages can
be re-run on its own with ``start_stage`` / ``stop_stage``.

Example Usage:
    >>> from iavbatch.config import load_config_from_file
    >>> from iavbatch.core import run_pipeline
    >>> cfg = load_config_from_file("FOX01.yaml")
    >>> results = run_pipeline(cfg)
    >>> results['pools']['full'].counts['HA']
    21
"""

from typing import Any, Dict, List, Optional
import logging
import time

from . import aggregation, clade, executor, stages, tools, utils
from .config import SEGMENTS, PipelineConfig
from .samples import WorkItem, build_catalog

logger = logging.getLogger(__name__)


def run_pipeline(
    cfg: PipelineConfig,
    start_stage: Optional[str] = None,
    stop_stage: Optional[str] = None,
    items: Optional[List[WorkItem]] = None,
) -> Dict[str, Any]:
    """
    Run the IAVBatch pipeline for one batch.

    Parameters
    ----------
    cfg : PipelineConfig
        Batch configuration
    start_stage : str, optional
        First stage to run (default: ingest)
    stop_stage : str, optional
        Last stage to run (default: clade)
    items : List[WorkItem], optional
        Work items to process (default: catalog built from cfg)

    Returns
    -------
    Dict[str, Any]
        Dictionary containing:
        - 'success': bool - Whether every selected stage ran to completion
        - 'batch_id': str - Batch name
        - 'work_dir': Path - Working directory
        - 'stages': List[str] - Names of the stages that were selected
        - 'stage_results': Dict[str, List[StageResult]] - Per-sample results
        - 'stage_counts': Dict[str, Dict[str, int]] - Status counts per stage
        - 'pools': Dict[str, AggregationResult] - Pooling result per policy
        - 'clade': Optional[Dict[str, Any]] - Nextclade outcome
        - 'files': Dict[str, Path] - Summary tables
        - 'errors': List[str] - Non-fatal problems encountered
        - 'elapsed': float - Wall-clock seconds

    Raises
    ------
    ValueError
        If the stage selection is invalid
    PreflightError
        If a tool needed by the selected stages is not in PATH
    CladeStageError
        If the reference collection or a reference record is unavailable

    Notes
    -----
    Skipped and failed samples do not stop the pipeline; they are reported
    in 'stage_results' and later stages skip them because their inputs are
    absent.
    """
    start_time = time.time()

    results: Dict[str, Any] = {
        'success': False,
        'batch_id': cfg.batch_id,
        'work_dir': cfg.work_dir,
        'stages': [],
        'stage_results': {},
        'stage_counts': {},
        'pools': {},
        'clade': None,
        'files': {},
        'errors': [],
        'elapsed': 0.0,
    }

    selected = stages.select_stages(start_stage, stop_stage)
    if not cfg.clade.run_clade_analysis:
        selected = [stage for stage in selected if stage.name != "clade"]
    results['stages'] = [stage.name for stage in selected]

    layout = stages.StageLayout.from_config(cfg)
    if items is None:
        items = build_catalog(cfg.barcode_count, cfg.sample_labels)

    logger.info("=" * 80)
    logger.info(f"IAVBatch Pipeline - {cfg.batch_id}")
    logger.info("=" * 80)
    logger.info(f"Working directory: {cfg.work_dir}")
    logger.info(f"Sample prefix: {cfg.sample_prefix}")
    logger.info(f"Barcodes: {len(items)}")
    logger.info(f"Threads: {cfg.n_threads}")
    logger.info(f"Stages: {', '.join(results['stages'])}")
    logger.info("")

    try:
        tools.require_tools(stages.tools_for_stages(selected, layout))

        for step, stage in enumerate(selected, start=1):
            if stage.name == "ingest":
                _run_ingest(cfg, layout, items, results)
            elif stage.name == "filter":
                _run_per_sample(
                    stage.name, items, cfg, stages.make_filter_action(layout, cfg), results
                )
            elif stage.name == "assemble":
                utils.create_output_directory(layout.assembly_log_dir)
                _run_per_sample(
                    stage.name, items, cfg, stages.make_assemble_action(layout, cfg), results
                )
            elif stage.name == "aggregate":
                logger.info("Creating BatchID/BarcodeXX/SampleID labelled consensus files")
                results['pools'][aggregation.FULL_LABEL] = aggregation.aggregate(
                    cfg.batch_id, items, SEGMENTS, aggregation.FULL_LABEL,
                    layout.assembly_dir, layout.pool_dir,
                )
                _write_pool_tables(cfg, layout, items, results)
            elif stage.name == "relabel":
                logger.info("Creating SampleID-labelled consensus files")
                results['pools'][aggregation.SAMPLE_ONLY] = aggregation.aggregate(
                    cfg.batch_id, items, SEGMENTS, aggregation.SAMPLE_ONLY,
                    layout.assembly_dir, layout.pool_dir,
                )
                _write_pool_tables(cfg, layout, items, results)
            elif stage.name == "clade":
                results['clade'] = clade.run_clade_analysis(cfg, layout)
                if results['clade']['completed']:
                    summary_path = layout.clade_dir / f"{cfg.batch_id}_clade_summary.tsv"
                    clade.summarize_clades(results['clade']['completed'], summary_path)
                    results['files']['clade_summary'] = summary_path
                for segment in results['clade']['failed']:
                    results['errors'].append(f"nextclade failed for {segment}")

            utils.log_stage_banner(step, stage.description)

        results['success'] = True

    except Exception as e:
        logger.error(f"Pipeline failed with error: {e}")
        results['errors'].append(str(e))
        raise

    finally:
        results['elapsed'] = time.time() - start_time

    logger.info("=" * 80)
    logger.info(f"Pipeline completed for {cfg.batch_id}")
    for name, counts in results['stage_counts'].items():
        logger.info(
            f"  {name}: {counts[executor.SUCCEEDED]} succeeded, "
            f"{counts[executor.FAILED]} failed, {counts[executor.SKIPPED]} skipped"
        )
    logger.info(f"  Total time: {utils.format_elapsed_time(results['elapsed'])}")
    logger.info("=" * 80)

    return results


def _run_per_sample(
    stage_name: str,
    items: List[WorkItem],
    cfg: PipelineConfig,
    action,
    results: Dict[str, Any],
) -> None:
    stage_results = executor.run_all(items, cfg.n_threads, action, stage=stage_name)
    results['stage_results'][stage_name] = stage_results
    results['stage_counts'][stage_name] = executor.summarize_results(stage_results)


def _run_ingest(
    cfg: PipelineConfig,
    layout: stages.StageLayout,
    items: List[WorkItem],
    results: Dict[str, Any],
) -> None:
    mode = stages.detect_ingest_mode(layout)
    if mode is None:
        if any(layout.reads(item).exists() for item in items):
            logger.info("No raw BAM or FASTQ files found; using existing .fastq.gz files")
        else:
            logger.error("Error: No BAM or FASTQ files found")
            results['errors'].append("No BAM or FASTQ files found")
        return

    if mode == "bam":
        logger.info("BAM files detected. Converting to FASTQ...")
    else:
        logger.info("FASTQ files detected. Compressing...")

    _run_per_sample("ingest", items, cfg, stages.make_ingest_action(layout, mode), results)


def _write_pool_tables(
    cfg: PipelineConfig,
    layout: stages.StageLayout,
    items: List[WorkItem],
    results: Dict[str, Any],
) -> None:
    """
    Write the pooling count summary and the per-sample segment matrix.

    Called after each pooling pass, so the tables cover every pass run so
    far even if a later stage fails.
    """
    pools = results['pools']

    summary_path = layout.pool_dir / f"{cfg.batch_id}_pool_summary.tsv"
    aggregation.write_pool_summary(list(pools.values()), summary_path)
    results['files']['pool_summary'] = summary_path

    reference_pool = pools.get(aggregation.FULL_LABEL) or pools.get(aggregation.SAMPLE_ONLY)
    matrix_path = layout.pool_dir / f"{cfg.batch_id}_segment_matrix.tsv"
    aggregation.sample_segment_matrix(reference_pool, items, matrix_path)
    results['files']['segment_matrix'] = matrix_path
