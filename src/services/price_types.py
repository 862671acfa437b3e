from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel, ConfigDict


class PriceQuote(BaseModel):
    """Close price of one candle; valid for ``valid_from <= t < valid_to``."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    base_id: str
    quote_id: str
    rate: Decimal
    source: str
    valid_from: datetime
    valid_to: datetime

    def covers(self, timestamp: datetime) -> bool:
        return self.valid_from <= timestamp < self.valid_to


class PriceSource(Protocol):
    def fetch_snapshot(self, base_id: str, quote_id: str, timestamp: datetime) -> PriceQuote: ...


__all__ = ["PriceQuote", "PriceSource"]
