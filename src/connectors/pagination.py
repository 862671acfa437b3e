"""Pagination helpers shared by the exchange connectors.

Upstream list APIs come in four shapes: offset/limit, page number, opaque
cursor (or "after this id"), and time windows with a capped span. The
windowed helper keeps its progress in a plain dict that lives inside the
sync cursor, so an interrupted pass resumes at the last consumed window and
a finished pass is never fetched again.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DAY_MS = 24 * 60 * 60 * 1000

FETCHED_UNTIL = "fetchedUntil"
PASS_END = "passEnd"
WINDOW_END = "windowEnd"


def to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_ms(value: int | str) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def paginate_offset(fetch: Callable[[int, int], list[T]], *, limit: int, start: int = 0) -> Iterator[list[T]]:
    offset = start
    while True:
        page = fetch(offset, limit)
        if page:
            yield page
        if len(page) < limit:
            return
        offset += limit


def paginate_pages(fetch: Callable[[int, int], list[T]], *, size: int, start_page: int = 1) -> Iterator[list[T]]:
    page_no = start_page
    while True:
        page = fetch(page_no, size)
        if page:
            yield page
        if len(page) < size:
            return
        page_no += 1


def paginate_cursor(
    fetch: Callable[[str | None], tuple[list[T], str | None]],
    *,
    start: str | None = None,
) -> Iterator[tuple[list[T], str | None]]:
    """Follow an opaque ``nextPageCursor`` until the upstream stops returning one."""
    cursor = start
    while True:
        items, next_cursor = fetch(cursor)
        yield items, next_cursor
        if not items or not next_cursor or next_cursor == cursor:
            return
        cursor = next_cursor


def paginate_after(
    fetch: Callable[[str | None], list[T]],
    *,
    marker: Callable[[T], str],
    limit: int,
    start: str | None = None,
) -> Iterator[list[T]]:
    """Marker pagination: each request continues from a marker derived from the last item seen."""
    after = start
    while True:
        page = fetch(after)
        if not page:
            return
        yield page
        next_after = marker(page[-1])
        if len(page) < limit or next_after == after:
            return
        after = next_after


def fetch_bisecting(
    fetch: Callable[[int, int], list[T]],
    start_ms: int,
    end_ms: int,
    *,
    page_limit: int,
) -> list[T]:
    """Fetch the inclusive range ``[start_ms, end_ms]``.

    A response that hits ``page_limit`` may be truncated, so the range is split
    in half and both halves are fetched instead.
    """
    page = fetch(start_ms, end_ms)
    if len(page) < page_limit:
        return page
    if end_ms <= start_ms:
        logger.warning(
            "Window %s..%s still returns the page cap (%d); records may be truncated",
            start_ms,
            end_ms,
            page_limit,
        )
        return page

    mid = (start_ms + end_ms) // 2
    return fetch_bisecting(fetch, start_ms, mid, page_limit=page_limit) + fetch_bisecting(
        fetch, mid + 1, end_ms, page_limit=page_limit
    )


def iter_windows(
    fetch: Callable[[int, int], list[T]],
    state: dict[str, Any],
    *,
    earliest_ms: int,
    now_ms: int,
    span_ms: int,
    page_limit: int | None = None,
) -> Iterator[list[T]]:
    """Slide a ``span_ms`` window backward from now to ``earliest_ms``.

    ``state`` is mutated after every consumed window:

    - ``passEnd``: upper bound of the pass in progress,
    - ``windowEnd``: start of the last consumed window in that pass,
    - ``fetchedUntil``: everything up to this instant was consumed by an
      earlier pass, so later runs only look at newer data.
    """
    if span_ms <= 0:
        raise ValueError("span_ms must be > 0")

    floor = earliest_ms
    fetched_until = state.get(FETCHED_UNTIL)
    if fetched_until is not None:
        floor = max(floor, int(fetched_until) + 1)

    pass_end = int(state.setdefault(PASS_END, now_ms))
    window_end = state.get(WINDOW_END)
    current_end = (int(window_end) if window_end is not None else pass_end + 1) - 1

    while current_end >= floor:
        window_start = max(floor, current_end - span_ms + 1)
        if page_limit is None:
            batch = fetch(window_start, current_end)
        else:
            batch = fetch_bisecting(fetch, window_start, current_end, page_limit=page_limit)
        yield batch
        state[WINDOW_END] = window_start
        current_end = window_start - 1

    previous = int(fetched_until) if fetched_until is not None else None
    state[FETCHED_UNTIL] = pass_end if previous is None else max(previous, pass_end)
    state.pop(PASS_END, None)
    state.pop(WINDOW_END, None)


PASS_AFTER = "passAfter"
PASS_TOP = "passTop"


def iter_newest_first(
    fetch: Callable[[str | None], list[T]],
    state: dict[str, Any],
    *,
    key: Callable[[T], int],
    marker: Callable[[T], str],
    limit: int,
    floor: int = 0,
) -> Iterator[list[T]]:
    """Walk a newest-first feed backward, stopping at data an earlier pass already consumed.

    ``key`` orders items (usually a millisecond timestamp) and ``marker`` gives
    the value to send as ``after`` for the next page. ``state`` tracks:

    - ``passAfter``: marker of the oldest item consumed in the pass in progress,
    - ``passTop``: newest key seen when the pass started,
    - ``fetchedUntil``: newest key covered by a completed pass.

    Items at exactly ``fetchedUntil`` are returned again; callers dedupe.
    """
    fetched_until = state.get(FETCHED_UNTIL)
    lower = max(floor, int(fetched_until)) if fetched_until is not None else floor
    after = state.get(PASS_AFTER)

    while True:
        page = fetch(after)
        if not page:
            break

        if PASS_TOP not in state:
            state[PASS_TOP] = max(key(item) for item in page)

        fresh = [item for item in page if key(item) >= lower]
        if fresh:
            yield fresh
        state[PASS_AFTER] = marker(page[-1])

        next_after = state[PASS_AFTER]
        if len(fresh) < len(page) or len(page) < limit or next_after == after:
            break
        after = next_after

    top = state.pop(PASS_TOP, None)
    state.pop(PASS_AFTER, None)
    if top is not None:
        state[FETCHED_UNTIL] = top if fetched_until is None else max(int(fetched_until), int(top))


__all__ = [
    "DAY_MS",
    "fetch_bisecting",
    "from_ms",
    "iter_newest_first",
    "iter_windows",
    "paginate_after",
    "paginate_cursor",
    "paginate_offset",
    "paginate_pages",
    "to_ms",
]
