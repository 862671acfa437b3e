from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Callable

logger = logging.getLogger(__name__)


def sync_job_id(connection_id: str) -> str:
    return f"sync-connection-{connection_id}"


def reconcile_job_id(connection_id: str) -> str:
    return f"reconcile-connection-{connection_id}"


def tax_lots_job_id(user_id: str, tax_year: int | None = None) -> str:
    return f"tax-lots-{user_id}" if tax_year is None else f"tax-lots-{user_id}-{tax_year}"


class JobState(StrEnum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass
class JobRecord:
    job_id: str
    state: JobState = JobState.QUEUED
    attempts: int = 0
    error: str | None = None
    result: Any = None
    submitted_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def active(self) -> bool:
        return self.state in (JobState.QUEUED, JobState.RUNNING)


class SyncJobQueue:
    """Bounded worker pool where a job id can only have one active run.

    Submitting an id that is still queued or running returns the existing job
    instead of starting another. Failed attempts are retried with exponential
    backoff until ``max_attempts`` is reached.
    """

    def __init__(
        self,
        *,
        max_workers: int = 4,
        max_attempts: int = 2,
        backoff_seconds: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sync-job")
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._lock = threading.Lock()
        self._jobs: dict[str, JobRecord] = {}
        self._futures: dict[str, Future[None]] = {}

    def submit(self, job_id: str, fn: Callable[[], Any]) -> str:
        with self._lock:
            existing = self._jobs.get(job_id)
            if existing is not None and existing.active:
                logger.info("Job %s already active, not resubmitting", job_id)
                return job_id
            self._jobs[job_id] = JobRecord(job_id=job_id, submitted_at=datetime.now(timezone.utc))
            self._futures[job_id] = self._executor.submit(self._run, job_id, fn)
        return job_id

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return self._jobs.get(job_id)

    def is_active(self, job_id: str) -> bool:
        job = self.get(job_id)
        return job is not None and job.active

    def wait(self, job_id: str, timeout: float | None = None) -> JobRecord:
        with self._lock:
            future = self._futures.get(job_id)
        if future is None:
            raise KeyError(job_id)
        future.result(timeout=timeout)
        with self._lock:
            return self._jobs[job_id]

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _run(self, job_id: str, fn: Callable[[], Any]) -> None:
        job = self._jobs[job_id]
        for attempt in range(1, self._max_attempts + 1):
            with self._lock:
                job.state = JobState.RUNNING
                job.attempts = attempt
            try:
                result = fn()
            except Exception as exc:
                logger.warning("Job %s attempt %s/%s failed: %s", job_id, attempt, self._max_attempts, exc)
                with self._lock:
                    job.error = str(exc) or type(exc).__name__
                if attempt < self._max_attempts:
                    self._sleep(self._backoff_seconds * 2 ** (attempt - 1))
                    continue
                with self._lock:
                    job.state = JobState.FAILED
                    job.finished_at = datetime.now(timezone.utc)
                logger.error("Job %s failed after %s attempts", job_id, attempt)
                return

            with self._lock:
                job.state = JobState.SUCCEEDED
                job.result = result
                job.error = None
                job.finished_at = datetime.now(timezone.utc)
            return


__all__ = [
    "JobRecord",
    "JobState",
    "SyncJobQueue",
    "reconcile_job_id",
    "sync_job_id",
    "tax_lots_job_id",
]
