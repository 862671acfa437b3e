from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Mapping

from config import config
from domain.assets import is_usd_like, symbol_from_asset_id
from domain.ledger import CanonicalTransaction
from domain.pricing import PriceOracle

from .coindesk_source import CoinDeskAPIError, CoinDeskSource
from .price_store import JsonlPriceStore, PriceStore
from .price_types import PriceSource

logger = logging.getLogger(__name__)

USD = "USD"


def _hour_floor(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


class CachedPriceOracle:
    """USD prices per hour, read through a local quote store.

    Stablecoins answer 1. Any upstream failure, or an asset whose ticker
    cannot be determined, answers ``None``.
    """

    def __init__(
        self,
        source: PriceSource,
        store: PriceStore,
        *,
        symbols: Mapping[str, str] | None = None,
    ) -> None:
        self.source = source
        self.store = store
        self._symbols = {asset_id: symbol.upper() for asset_id, symbol in (symbols or {}).items()}

    def usd_price(self, asset_id: str, timestamp: datetime) -> Decimal | None:
        symbol = self._symbols.get(asset_id) or symbol_from_asset_id(asset_id)
        if symbol is None:
            return None
        if is_usd_like(symbol):
            return Decimal(1)

        hour = _hour_floor(timestamp)
        cached = self.store.read(base_id=symbol, quote_id=USD, timestamp=hour)
        if cached is not None:
            return cached.rate

        try:
            quote = self.source.fetch_snapshot(base_id=symbol, quote_id=USD, timestamp=hour)
        except CoinDeskAPIError as exc:
            logger.info("No USD price for %s at %s: %s", symbol, hour.isoformat(), exc)
            return None
        self.store.write(quote)
        return quote.rate


def enrich_prices(tx: CanonicalTransaction, oracle: PriceOracle) -> CanonicalTransaction:
    """Fill in missing flow USD values and, if absent, the transaction total."""
    flows = []
    for flow in tx.flows:
        if flow.value_usd is None:
            price = flow.price_usd if flow.price_usd is not None else oracle.usd_price(flow.asset_id, tx.timestamp)
            if price is not None:
                flow = flow.model_copy(update={"price_usd": price, "value_usd": abs(flow.amount * price)})
        flows.append(flow)

    total = tx.total_value_usd
    if total is None or total == 0:
        values = [f.value_usd for f in flows if not f.is_fee and f.value_usd is not None]
        total = sum(values, Decimal(0)) if values else tx.total_value_usd

    return tx.model_copy(update={"flows": flows, "total_value_usd": total})


def build_default_oracle(symbols: Mapping[str, str] | None = None) -> PriceOracle | None:
    if not config().coindesk_api_key:
        logger.info("CoinDesk API key not configured, USD enrichment disabled")
        return None
    store = JsonlPriceStore(root_dir=Path(config().price_cache_dir))
    return CachedPriceOracle(CoinDeskSource(), store, symbols=symbols)


__all__ = ["CachedPriceOracle", "build_default_oracle", "enrich_prices"]
