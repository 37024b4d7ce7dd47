"""
Dev retention job runner.

In-process stand-in for the daily prune cron, for development and testing.

Production schedules `shoplytics prune --drain` (or POST /api/admin/analytics/prune)
once a day at 02:00 UTC; this provides equivalent behaviour locally.

Key behaviors:
- Each batch is one transaction inside the pruner
- A run keeps invoking batches while has_more, up to max_batches
- Failures are logged and retried on the next poll
"""

from __future__ import annotations

import logging
import threading
import time

from shoplytics.components.analytics import AnalyticsStoreError, RetentionPruner
from shoplytics.core.ports.jobs import BatchResult, JobResult, JobStatus, PruneJobPort

logger = logging.getLogger(__name__)


class DevPruneJob:
    """Runs one prune batch and reports it as a JobResult."""

    def __init__(
        self,
        pruner: RetentionPruner,
        retention_days: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        self._pruner = pruner
        self._retention_days = retention_days
        self._batch_size = batch_size

    def run_batch(self) -> JobResult:
        start_time = time.monotonic()
        try:
            result, errors = self._pruner.prune_older_than(self._retention_days, self._batch_size)
        except AnalyticsStoreError as e:
            return JobResult(
                status=JobStatus.FAILURE,
                message="Prune batch failed",
                error=str(e),
                execution_time_ms=int((time.monotonic() - start_time) * 1000),
            )
        elapsed_ms = int((time.monotonic() - start_time) * 1000)

        if errors:
            return JobResult(
                status=JobStatus.FAILURE,
                message="Invalid prune parameters",
                error="; ".join(e.message for e in errors),
                execution_time_ms=elapsed_ms,
            )
        assert result is not None
        if result.deleted == 0:
            return JobResult(
                status=JobStatus.NO_WORK,
                message="No events past retention",
                execution_time_ms=elapsed_ms,
            )
        return JobResult(
            status=JobStatus.SUCCESS,
            deleted=result.deleted,
            has_more=result.has_more,
            message=f"Pruned {result.deleted} events",
            execution_time_ms=elapsed_ms,
        )


class DevPruneRunner:
    """Drains the retention backlog, one batch at a time."""

    def __init__(self, job: PruneJobPort, max_batches: int = 20) -> None:
        self._job = job
        self._max_batches = max_batches

    def run_due(self, max_batches: int | None = None) -> BatchResult:
        """Run batches while has_more, up to max_batches."""
        limit = max_batches or self._max_batches
        results: list[JobResult] = []
        total_deleted = 0
        failed = 0
        has_more = False

        for _ in range(limit):
            result = self._job.run_batch()
            results.append(result)
            if result.status == JobStatus.FAILURE:
                failed += 1
                has_more = True
                break
            total_deleted += result.deleted
            has_more = result.has_more
            if not has_more:
                break

        return BatchResult(
            total_deleted=total_deleted,
            batches=len(results),
            has_more=has_more,
            failed=failed,
            results=results,
        )


class DevPruneScheduler:
    """
    Dev prune scheduler with background polling.

    Runs a background thread that drains the backlog at a
    configurable interval.
    """

    def __init__(
        self,
        runner: DevPruneRunner,
        poll_interval_seconds: float = 86400.0,
    ) -> None:
        self._runner = runner
        self._poll_interval = poll_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._running = False

    def start(self) -> None:
        """Start the background scheduler."""
        if self._running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._poll_loop, daemon=True)
        self._thread.start()
        self._running = True
        logger.info("Prune scheduler started (poll interval: %.1fs)", self._poll_interval)

    def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
        self._running = False
        logger.info("Prune scheduler stopped")

    def trigger_now(self) -> BatchResult:
        """Trigger an immediate prune run."""
        return self._runner.run_due()

    @property
    def is_running(self) -> bool:
        return self._running

    def _poll_loop(self) -> None:
        """Background polling loop."""
        while not self._stop_event.wait(timeout=self._poll_interval):
            try:
                result = self._runner.run_due()
                if result.total_deleted > 0 or result.failed:
                    logger.info(
                        "Scheduler pruned %d events in %d batches (failed=%d, has_more=%s)",
                        result.total_deleted,
                        result.batches,
                        result.failed,
                        result.has_more,
                    )
            except Exception:
                logger.exception("Error in prune scheduler poll loop")


# Factory functions


def create_dev_prune_runner(
    pruner: RetentionPruner,
    max_batches: int | None = None,
) -> DevPruneRunner:
    return DevPruneRunner(DevPruneJob(pruner), max_batches or pruner.config.max_batches_per_run)


def create_dev_scheduler(
    runner: DevPruneRunner,
    poll_interval_seconds: float = 86400.0,
) -> DevPruneScheduler:
    return DevPruneScheduler(runner, poll_interval_seconds)
