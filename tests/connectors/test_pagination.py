from __future__ import annotations

from datetime import datetime, timezone

import pytest

from connectors.pagination import (
    fetch_bisecting,
    from_ms,
    iter_newest_first,
    iter_windows,
    paginate_after,
    paginate_cursor,
    paginate_offset,
    to_ms,
)


class WindowedUpstream:
    """Returns records in ``[start, end]`` oldest first, truncated at ``page_limit``."""

    def __init__(self, timestamps: list[int], page_limit: int | None = None) -> None:
        self.timestamps = sorted(timestamps)
        self.page_limit = page_limit
        self.calls: list[tuple[int, int]] = []

    def __call__(self, start: int, end: int) -> list[int]:
        self.calls.append((start, end))
        hits = [ts for ts in self.timestamps if start <= ts <= end]
        return hits[: self.page_limit] if self.page_limit is not None else hits


def test_ms_conversions_treat_naive_as_utc() -> None:
    assert to_ms(datetime(2024, 1, 1)) == to_ms(datetime(2024, 1, 1, tzinfo=timezone.utc)) == 1704067200000
    assert from_ms("1704067200000") == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_paginate_offset_stops_on_short_page() -> None:
    data = list(range(25))
    offsets: list[int] = []

    def fetch(offset: int, limit: int) -> list[int]:
        offsets.append(offset)
        return data[offset : offset + limit]

    pages = list(paginate_offset(fetch, limit=10))

    assert [len(page) for page in pages] == [10, 10, 5]
    assert offsets == [0, 10, 20]


def test_paginate_cursor_follows_until_no_next_cursor() -> None:
    pages = {None: ([1, 2], "c1"), "c1": ([3], "c2"), "c2": ([4], None)}

    result = list(paginate_cursor(lambda cursor: pages[cursor]))

    assert [items for items, _ in result] == [[1, 2], [3], [4]]


def test_paginate_after_uses_marker_of_last_item() -> None:
    data = list(range(1, 8))
    seen: list[str | None] = []

    def fetch(after: str | None) -> list[int]:
        seen.append(after)
        start = int(after) if after else 0
        return [n for n in data if n > start][:3]

    pages = list(paginate_after(fetch, marker=str, limit=3))

    assert pages == [[1, 2, 3], [4, 5, 6], [7]]
    assert seen == [None, "3", "6"]


def test_fetch_bisecting_splits_capped_windows_until_complete() -> None:
    upstream = WindowedUpstream(list(range(0, 100)), page_limit=10)

    records = fetch_bisecting(upstream, 0, 99, page_limit=10)

    assert records == list(range(100))
    assert len(upstream.calls) > 1


def test_fetch_bisecting_returns_capped_page_for_single_instant() -> None:
    upstream = WindowedUpstream([5] * 12, page_limit=10)

    records = fetch_bisecting(upstream, 5, 5, page_limit=10)

    assert len(records) == 10


def test_windows_cover_whole_range_without_gaps_or_duplicates() -> None:
    dataset = list(range(0, 1000, 3))
    upstream = WindowedUpstream(dataset, page_limit=10)
    state: dict = {}

    batches = list(iter_windows(upstream, state, earliest_ms=0, now_ms=999, span_ms=200, page_limit=10))
    fetched = [ts for batch in batches for ts in batch]

    assert sorted(fetched) == dataset
    assert len(fetched) == len(set(fetched))
    assert state == {"fetchedUntil": 999}


def test_windows_resume_after_last_consumed_window() -> None:
    upstream = WindowedUpstream(list(range(150)))
    state: dict = {}

    interrupted = iter_windows(upstream, state, earliest_ms=0, now_ms=149, span_ms=50)
    next(interrupted)
    next(interrupted)
    interrupted.close()
    assert state == {"passEnd": 149, "windowEnd": 100}

    upstream.calls.clear()
    list(iter_windows(upstream, state, earliest_ms=0, now_ms=500, span_ms=50))

    assert upstream.calls == [(50, 99), (0, 49)]
    assert state == {"fetchedUntil": 149}


def test_completed_pass_only_fetches_newer_data() -> None:
    upstream = WindowedUpstream([])
    state = {"fetchedUntil": 149}

    list(iter_windows(upstream, state, earliest_ms=0, now_ms=220, span_ms=50))

    assert upstream.calls == [(171, 220), (150, 170)]
    assert state == {"fetchedUntil": 220}


def test_windows_reject_non_positive_span() -> None:
    with pytest.raises(ValueError):
        list(iter_windows(WindowedUpstream([]), {}, earliest_ms=0, now_ms=10, span_ms=0))


class NewestFirstFeed:
    def __init__(self, keys: list[int], limit: int) -> None:
        self.keys = sorted(keys, reverse=True)
        self.limit = limit

    def __call__(self, after: str | None) -> list[dict]:
        keys = [k for k in self.keys if after is None or k < int(after)]
        return [{"id": str(k), "ts": k} for k in keys[: self.limit]]


def _walk(feed: NewestFirstFeed, state: dict) -> list[int]:
    pages = iter_newest_first(feed, state, key=lambda item: item["ts"], marker=lambda item: item["id"], limit=feed.limit)
    return [item["ts"] for page in pages for item in page]


def test_newest_first_walks_back_then_stops_at_previous_pass() -> None:
    feed = NewestFirstFeed(list(range(1, 26)), limit=10)
    state: dict = {}

    assert _walk(feed, state) == list(range(25, 0, -1))
    assert state == {"fetchedUntil": 25}

    feed.keys = sorted(range(1, 31), reverse=True)
    assert _walk(feed, state) == [30, 29, 28, 27, 26, 25]
    assert state == {"fetchedUntil": 30}


def test_newest_first_resumes_interrupted_pass() -> None:
    feed = NewestFirstFeed(list(range(1, 26)), limit=10)
    state: dict = {}

    pages = iter_newest_first(feed, state, key=lambda item: item["ts"], marker=lambda item: item["id"], limit=10)
    next(pages)
    next(pages)
    pages.close()
    # Only the first page was fully consumed before the interruption.
    assert state == {"passTop": 25, "passAfter": "16"}

    assert _walk(feed, state) == list(range(15, 0, -1))
    assert state == {"fetchedUntil": 25}
