from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Protocol


class PriceOracle(Protocol):
    """USD price lookup. ``None`` means "unknown", never an error."""

    def usd_price(self, asset_id: str, timestamp: datetime) -> Decimal | None: ...
