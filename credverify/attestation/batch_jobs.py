"""
Background batch verification jobs.

start() registers a job and processes it in a background task; callers poll
status() or await wait(). Each address ends up VALID, INVALID (definitive
negative) or ERROR (network trouble). A BATCH_COMPLETED event is emitted when
a job finishes, whether it completed or failed. Jobs live in memory only.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from credverify.attestation.verifier import (
    DEFAULT_CHUNK_PAUSE_SEC,
    DEFAULT_CHUNK_SIZE,
    AttestationVerifier,
    VerificationResult,
)
from credverify.core.events import EventBus, EventKind
from credverify.cv_logging import get_logger

logger = get_logger(__name__)

DEFAULT_RETENTION_SEC = 7 * 24 * 3600.0


class BatchStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ItemStatus(str, Enum):
    VALID = "VALID"
    INVALID = "INVALID"
    ERROR = "ERROR"


@dataclass(frozen=True)
class BatchItemResult:
    address: str
    status: ItemStatus
    reason: str | None
    timestamp: float


@dataclass
class BatchJob:
    """Mutable progress of one batch; counters are updated as chunks finish."""

    batch_id: str
    total: int
    status: BatchStatus = BatchStatus.PENDING
    processed: int = 0
    valid: int = 0
    invalid: int = 0
    errors: int = 0
    results: list[BatchItemResult] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_finished(self) -> bool:
        return self.status in (BatchStatus.COMPLETED, BatchStatus.FAILED)

    def record(self, result: VerificationResult, now: float) -> None:
        if result.is_valid:
            status = ItemStatus.VALID
            self.valid += 1
        elif result.transient:
            status = ItemStatus.ERROR
            self.errors += 1
        else:
            status = ItemStatus.INVALID
            self.invalid += 1
        self.results.append(BatchItemResult(result.address, status, result.reason, now))
        self.processed += 1

    def summary(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "total": self.total,
            "processed": self.processed,
            "valid": self.valid,
            "invalid": self.invalid,
            "errors": self.errors,
        }


def new_batch_id(now: float) -> str:
    return f"batch_{int(now * 1000)}_{uuid.uuid4().hex[:9]}"


class BatchVerificationJobs:
    """In-memory registry of background verification jobs."""

    def __init__(
        self,
        verifier: AttestationVerifier,
        events: EventBus,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_pause: float = DEFAULT_CHUNK_PAUSE_SEC,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._verifier = verifier
        self._events = events
        self._chunk_size = max(1, chunk_size)
        self._chunk_pause = max(0.0, chunk_pause)
        self._clock = clock
        self._sleep = sleep
        self._jobs: dict[str, BatchJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def start(self, addresses: Iterable[str], *, metadata: dict[str, Any] | None = None) -> str:
        """Register a job and start processing it in the background. Returns the batch id."""
        items = list(addresses)
        now = self._clock()
        job = BatchJob(batch_id=new_batch_id(now), total=len(items), started_at=now, metadata=dict(metadata or {}))
        self._jobs[job.batch_id] = job
        task = asyncio.get_running_loop().create_task(self._process(job, items))
        self._tasks[job.batch_id] = task
        task.add_done_callback(lambda t, bid=job.batch_id: self._tasks.pop(bid, None))
        logger.info("batch_job_started", batch_id=job.batch_id, total=job.total)
        return job.batch_id

    def status(self, batch_id: str) -> BatchJob | None:
        return self._jobs.get(batch_id)

    def list_jobs(self, limit: int = 50) -> list[BatchJob]:
        """Most recently started first."""
        jobs = sorted(self._jobs.values(), key=lambda j: j.started_at, reverse=True)
        return jobs[: max(0, limit)]

    def cleanup_completed(self, older_than_sec: float = DEFAULT_RETENTION_SEC) -> int:
        """Forget COMPLETED jobs that finished more than older_than_sec ago. Returns the count removed."""
        cutoff = self._clock() - older_than_sec
        doomed = [
            bid
            for bid, job in self._jobs.items()
            if job.status == BatchStatus.COMPLETED and job.completed_at is not None and job.completed_at < cutoff
        ]
        for bid in doomed:
            del self._jobs[bid]
        if doomed:
            logger.info("batch_jobs_cleaned_up", removed=len(doomed))
        return len(doomed)

    async def wait(self, batch_id: str) -> BatchJob | None:
        task = self._tasks.get(batch_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._jobs.get(batch_id)

    async def _process(self, job: BatchJob, addresses: list[str]) -> None:
        job.status = BatchStatus.PROCESSING
        try:
            for start in range(0, len(addresses), self._chunk_size):
                chunk = addresses[start : start + self._chunk_size]
                outcomes = await self._verifier.batch_verify(chunk, chunk_size=len(chunk), chunk_pause=0)
                now = self._clock()
                for addr in chunk:
                    job.record(outcomes[str(addr)], now)
                if start + self._chunk_size < len(addresses) and self._chunk_pause > 0:
                    await self._sleep(self._chunk_pause)
            job.status = BatchStatus.COMPLETED
        except asyncio.CancelledError:
            job.status = BatchStatus.FAILED
            job.error = "cancelled"
            job.completed_at = self._clock()
            raise
        except Exception as e:
            job.status = BatchStatus.FAILED
            job.error = str(e)
            logger.exception("batch_job_failed", batch_id=job.batch_id, error=str(e))
        job.completed_at = self._clock()
        logger.info("batch_job_finished", **job.summary())
        self._events.emit(EventKind.BATCH_COMPLETED, **job.summary())

    async def close(self) -> None:
        """Cancel running jobs. Safe to call twice."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
