"""
Bounded Parallel Execution of Per-Sample Actions

Runs one action per work item with a ceiling on how many run at once. Each
action spends its time waiting on an external process (samtools, filtlong,
IRMA), so a thread pool sized to the ceiling is enough to keep that many
child processes busy. A new item is admitted as soon as any in-flight item
finishes.

Failure isolation:
- An action reports failure by returning a failed or skipped StageResult
- An action that raises is recorded as a failed StageResult
- Neither case cancels, blocks or otherwise affects sibling items

run_all() returns only after every item has finished, which is the barrier
between one pipeline stage and the next.

Example Usage:
    >>> from iavbatch.executor import run_all, StageResult
    >>> def action(item):
    ...     return StageResult.success(item.identifier, "filter", output_path=None)
    >>> results = run_all(items, concurrency_limit=8, action=action, stage="filter")
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence
import logging

from .samples import WorkItem

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass(frozen=True)
class StageResult:
    """
    Outcome of one work item in one stage.

    Attributes
    ----------
    identifier : str
        Work item identifier (e.g. "barcode07")
    stage : str
        Stage name
    status : str
        "succeeded", "failed" or "skipped"
    output_path : Optional[Path]
        Main output of the item for this stage, if any
    error_note : Optional[str]
        Why the item failed or was skipped
    """
    identifier: str
    stage: str
    status: str
    output_path: Optional[Path] = None
    error_note: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED

    @classmethod
    def success(cls, identifier: str, stage: str, output_path: Optional[Path] = None) -> 'StageResult':
        return cls(identifier, stage, SUCCEEDED, output_path=output_path)

    @classmethod
    def failure(cls, identifier: str, stage: str, error_note: str) -> 'StageResult':
        return cls(identifier, stage, FAILED, error_note=error_note)

    @classmethod
    def skip(cls, identifier: str, stage: str, error_note: str) -> 'StageResult':
        return cls(identifier, stage, SKIPPED, error_note=error_note)


def run_all(
    items: Sequence[WorkItem],
    concurrency_limit: int,
    action: Callable[[WorkItem], StageResult],
    stage: str = "stage",
) -> List[StageResult]:
    """
    Run ``action`` for every item with at most ``concurrency_limit`` in flight.

    Parameters
    ----------
    items : Sequence[WorkItem]
        Work items to process
    concurrency_limit : int
        Maximum number of actions running at the same time
    action : Callable[[WorkItem], StageResult]
        Per-item action. Should check its own preconditions and return a
        skipped result before starting any external process.
    stage : str
        Stage name used for logging and for results of actions that raise

    Returns
    -------
    List[StageResult]
        One result per item, in the order of ``items``

    Raises
    ------
    ValueError
        If concurrency_limit is less than 1
    """
    if concurrency_limit < 1:
        raise ValueError(f"concurrency_limit must be at least 1, got {concurrency_limit}")

    if not items:
        return []

    logger.info(
        f"Running {stage} on {len(items)} samples "
        f"(up to {concurrency_limit} in parallel)"
    )

    results: Dict[str, StageResult] = {}

    with ThreadPoolExecutor(max_workers=concurrency_limit) as executor:
        futures = {executor.submit(action, item): item for item in items}
        for future in as_completed(futures):
            item = futures[future]
            try:
                result = future.result()
            except Exception as e:
                logger.error(f"{stage} failed for {item.identifier}: {e}", exc_info=True)
                result = StageResult.failure(item.identifier, stage, f"{type(e).__name__}: {e}")

            if result is None:
                result = StageResult.failure(item.identifier, stage, "action returned no result")

            results[item.identifier] = result
            logger.debug(f"{stage}: {item.identifier} {result.status}")

    return [results[item.identifier] for item in items]


def summarize_results(results: Sequence[StageResult]) -> Dict[str, int]:
    """
    Count results by status and log the identifiers that did not succeed.

    Returns
    -------
    Dict[str, int]
        Counts for "succeeded", "failed" and "skipped"
    """
    counts = {SUCCEEDED: 0, FAILED: 0, SKIPPED: 0}
    for result in results:
        counts[result.status] = counts.get(result.status, 0) + 1

    if not results:
        return counts

    stage = results[0].stage
    logger.info(
        f"{stage}: {counts[SUCCEEDED]} succeeded, {counts[FAILED]} failed, "
        f"{counts[SKIPPED]} skipped"
    )

    failed = [r.identifier for r in results if r.status == FAILED]
    if failed:
        logger.warning(f"{stage} failed for: {', '.join(failed)}")

    skipped = [r.identifier for r in results if r.status == SKIPPED]
    if skipped:
        logger.debug(f"{stage} skipped: {', '.join(skipped)}")

    return counts
