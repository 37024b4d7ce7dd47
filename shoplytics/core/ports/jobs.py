"""
Background job interface.

Retention pruning runs as a scheduled batch job. Production triggers it
from an external cron (CLI `prune` or the admin endpoint); the dev
scheduler polls in-process.

Key requirements:
- Each invocation is one bounded batch in one transaction
- Re-running is safe (already-deleted events are simply not selected)
- has_more signals the caller to re-invoke
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol


class JobStatus(Enum):
    """Job execution result status."""

    SUCCESS = "success"
    FAILURE = "failure"
    NO_WORK = "no_work"  # Nothing eligible


@dataclass
class JobResult:
    """Result of one prune batch."""

    status: JobStatus
    deleted: int = 0
    has_more: bool = False
    message: str = ""
    error: str | None = None
    execution_time_ms: int = 0


@dataclass
class BatchResult:
    """Result of a run made of several prune batches."""

    total_deleted: int
    batches: int
    has_more: bool
    failed: int = 0
    results: list[JobResult] = field(default_factory=list)


class PruneJobPort(Protocol):
    """Executes one prune batch."""

    def run_batch(self) -> JobResult: ...
