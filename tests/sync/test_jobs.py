from __future__ import annotations

import threading
from typing import Iterator

import pytest

from sync.jobs import JobState, SyncJobQueue, reconcile_job_id, sync_job_id, tax_lots_job_id


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def queue(sleeps: list[float]) -> Iterator[SyncJobQueue]:
    job_queue = SyncJobQueue(max_workers=2, max_attempts=3, backoff_seconds=1.0, sleep=sleeps.append)
    yield job_queue
    job_queue.shutdown()


def test_job_ids() -> None:
    assert sync_job_id("c1") == "sync-connection-c1"
    assert reconcile_job_id("c1") == "reconcile-connection-c1"
    assert tax_lots_job_id("u1") == "tax-lots-u1"
    assert tax_lots_job_id("u1", 2024) == "tax-lots-u1-2024"


def test_active_job_is_not_started_twice(queue: SyncJobQueue) -> None:
    started, release = threading.Event(), threading.Event()
    runs: list[str] = []

    def blocking() -> str:
        runs.append("first")
        started.set()
        release.wait(5)
        return "done"

    queue.submit("sync-connection-c1", blocking)
    assert started.wait(5)

    assert queue.submit("sync-connection-c1", lambda: runs.append("second")) == "sync-connection-c1"
    assert queue.is_active("sync-connection-c1")

    release.set()
    record = queue.wait("sync-connection-c1", timeout=5)
    assert record.state == JobState.SUCCEEDED
    assert record.result == "done"
    assert runs == ["first"]

    queue.submit("sync-connection-c1", lambda: runs.append("again"))
    queue.wait("sync-connection-c1", timeout=5)
    assert runs == ["first", "again"]


def test_failed_attempt_is_retried_with_backoff(queue: SyncJobQueue, sleeps: list[float]) -> None:
    attempts: list[int] = []

    def flaky() -> int:
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("exchange timeout")
        return len(attempts)

    queue.submit("job", flaky)
    record = queue.wait("job", timeout=5)

    assert record.state == JobState.SUCCEEDED
    assert record.attempts == 3
    assert record.error is None
    assert sleeps == [1.0, 2.0]


def test_job_fails_after_last_attempt(queue: SyncJobQueue, sleeps: list[float]) -> None:
    def broken() -> None:
        raise ValueError("bad cursor")

    queue.submit("job", broken)
    record = queue.wait("job", timeout=5)

    assert record.state == JobState.FAILED
    assert record.attempts == 3
    assert record.error == "bad cursor"
    assert record.finished_at is not None
    assert not queue.is_active("job")
    assert sleeps == [1.0, 2.0]


def test_unknown_job() -> None:
    job_queue = SyncJobQueue(max_workers=1)
    try:
        assert job_queue.get("missing") is None
        with pytest.raises(KeyError):
            job_queue.wait("missing")
    finally:
        job_queue.shutdown()

    with pytest.raises(ValueError):
        SyncJobQueue(max_attempts=0)
