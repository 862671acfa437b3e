from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Protocol

from .price_types import PriceQuote

Pair = tuple[str, str]


class PriceStore(Protocol):
    def write(self, quote: PriceQuote) -> None: ...

    def read(self, base_id: str, quote_id: str, timestamp: datetime) -> PriceQuote | None: ...


class JsonlPriceStore(PriceStore):
    """One append-only ``BASE-QUOTE.jsonl`` file per pair.

    A pair's file is parsed on first access and served from memory after
    that; writes go to both.
    """

    def __init__(self, *, root_dir: Path) -> None:
        self.root_dir = root_dir
        self._cache: dict[Pair, list[PriceQuote]] = defaultdict(list)
        self._loaded: set[Pair] = set()
        self._lock = threading.Lock()

    def write(self, quote: PriceQuote) -> None:
        pair = self._pair(quote.base_id, quote.quote_id)
        with self._lock:
            self._ensure_loaded(pair)
            self._cache[pair].append(quote)
            self.root_dir.mkdir(parents=True, exist_ok=True)
            with self._path(pair).open("a", encoding="utf-8") as handle:
                handle.write(quote.model_dump_json() + "\n")

    def read(self, base_id: str, quote_id: str, timestamp: datetime) -> PriceQuote | None:
        pair = self._pair(base_id, quote_id)
        with self._lock:
            self._ensure_loaded(pair)
            covering = [quote for quote in self._cache[pair] if quote.covers(timestamp)]
        # Overlapping candles: the most recently opened one is the finer grained.
        return max(covering, key=lambda quote: quote.timestamp, default=None)

    def _ensure_loaded(self, pair: Pair) -> None:
        if pair in self._loaded:
            return
        self._loaded.add(pair)
        path = self._path(pair)
        if path.exists():
            lines = path.read_text(encoding="utf-8").splitlines()
            self._cache[pair].extend(PriceQuote.model_validate_json(line) for line in lines if line.strip())

    def _path(self, pair: Pair) -> Path:
        return self.root_dir / f"{pair[0]}-{pair[1]}.jsonl"

    @staticmethod
    def _pair(base_id: str, quote_id: str) -> Pair:
        return base_id.upper(), quote_id.upper()


__all__ = ["JsonlPriceStore", "PriceStore"]
