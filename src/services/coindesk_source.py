"""Hourly USD reference prices from the CoinDesk data API.

Requests go through the same rate-limited, retrying HTTP client the
exchange connectors use; every failure surfaces as ``CoinDeskAPIError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import requests

from config import config
from connectors.http import ExchangeHttpClient
from connectors.rate_limiter import TokenBucket, shared_limiter
from domain.errors import ExchangeAPIError, TransientUpstreamError

from .price_types import PriceQuote

logger = logging.getLogger(__name__)

PROVIDER = "coindesk"
BASE_URL = "https://data-api.coindesk.com"
HOUR = timedelta(hours=1)
FIRST_TRADE_FIELD = "FIRST_TRADE_SPOT_TIMESTAMP"


class CoinDeskAPIError(ExchangeAPIError):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message, exchange=PROVIDER, status_code=status_code, payload=payload)


def _error_message(payload: Any) -> str | None:
    err = payload.get("Err") if isinstance(payload, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return None


def _unwrap(payload: Any) -> Any:
    if not isinstance(payload, dict):
        raise CoinDeskAPIError("CoinDesk API returned unexpected payload type", payload=payload)
    message = _error_message(payload)
    if message:
        raise CoinDeskAPIError(message, payload=payload)
    return payload.get("Data")


class BearerSigner:
    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    def sign(self, method: str, path: str, params: dict[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        return params, {"Authorization": f"Bearer {self._api_key}"}


@dataclass(frozen=True)
class HourCandle:
    opened_at: datetime
    close: Decimal

    @classmethod
    def from_payload(cls, entry: dict[str, Any]) -> HourCandle:
        if entry.get("TIMESTAMP") is None or entry.get("CLOSE") is None:
            raise CoinDeskAPIError("CoinDesk candle without TIMESTAMP or CLOSE", payload=entry)
        return cls(
            opened_at=datetime.fromtimestamp(int(entry["TIMESTAMP"]), tz=timezone.utc),
            close=Decimal(str(entry["CLOSE"])),
        )


class CoinDeskClient:
    # https://developers.coindesk.com/documentation/data-api/
    def __init__(
        self,
        api_key: str | None = None,
        *,
        session: requests.Session | None = None,
        limiter: TokenBucket | None = None,
    ) -> None:
        key = api_key if api_key is not None else config().coindesk_api_key
        self._configured = bool(key)
        self._http = ExchangeHttpClient(
            exchange=PROVIDER,
            base_url=BASE_URL,
            limiter=limiter or shared_limiter(PROVIDER, config().coindesk_requests_per_second),
            signer=BearerSigner(key) if key else None,
            unwrap=_unwrap,
            timeout=10.0,
            session=session,
            retry_attempts=10,
        )

    def hour_candles(self, *, market: str, instrument: str, to_ts: int, limit: int = 1) -> list[HourCandle]:
        params = {
            "market": market,
            "instrument": instrument,
            "to_ts": to_ts,
            "limit": limit,
            "aggregate": 1,
            "fill": "true",
            "response_format": "JSON",
        }
        data = self._get("/spot/v1/historical/hours", params)
        return [HourCandle.from_payload(entry) for entry in data or []]

    def first_trade_timestamp(self, *, market: str, instrument: str) -> int | None:
        data = self._get("/spot/v1/markets/instruments", {"market": market, "instrument": instrument})
        if not isinstance(data, dict):
            return None
        markets = {key.lower(): value for key, value in data.items()}
        instruments = (markets.get(market.lower()) or {}).get("instruments") or {}
        listed = instruments.get(instrument.upper()) or {}
        first_trade = listed.get(FIRST_TRADE_FIELD)
        return first_trade if isinstance(first_trade, int) else None

    def _get(self, path: str, params: dict[str, Any]) -> Any:
        if not self._configured:
            raise CoinDeskAPIError("CoinDesk API key is not configured")
        try:
            return self._http.get(path, params)
        except CoinDeskAPIError:
            raise
        except ExchangeAPIError as exc:
            message = _error_message(exc.payload) or str(exc)
            raise CoinDeskAPIError(message, status_code=exc.status_code, payload=exc.payload) from exc
        except TransientUpstreamError as exc:
            raise CoinDeskAPIError(str(exc)) from exc


class CoinDeskSource:
    """``PriceSource`` answering with the close of the hour candle that contains the timestamp."""

    def __init__(
        self,
        *,
        market: str = "coinbase",
        client: CoinDeskClient | None = None,
        source_name: str = "coindesk-spot-api",
    ) -> None:
        if not market:
            raise ValueError("market must be provided")
        self.client = client or CoinDeskClient()
        self.market = market
        self.source_name = source_name

    def fetch_snapshot(self, base_id: str, quote_id: str, timestamp: datetime) -> PriceQuote:
        base, quote = base_id.upper(), quote_id.upper()
        instrument = f"{base}-{quote}"
        to_ts = int(timestamp.timestamp())
        try:
            candles = self.client.hour_candles(market=self.market, instrument=instrument, to_ts=to_ts)
        except CoinDeskAPIError as exc:
            listed_at = self._listing_after(instrument, to_ts, exc)
            if listed_at is None:
                raise
            candles = self.client.hour_candles(market=self.market, instrument=instrument, to_ts=listed_at)

        if not candles:
            raise CoinDeskAPIError(f"No price data returned for {instrument} on {self.market}")
        candle = max(candles, key=lambda c: c.opened_at)
        return PriceQuote(
            timestamp=candle.opened_at,
            base_id=base,
            quote_id=quote,
            rate=candle.close,
            source=self.source_name,
            valid_from=candle.opened_at,
            valid_to=candle.opened_at + HOUR,
        )

    def _listing_after(self, instrument: str, to_ts: int, error: CoinDeskAPIError) -> int | None:
        """Assets priced before their first trade get the first available candle instead."""
        if error.status_code != 404 or FIRST_TRADE_FIELD not in str(error):
            return None
        first_trade = self.client.first_trade_timestamp(market=self.market, instrument=instrument)
        if first_trade is None or first_trade <= to_ts:
            return None
        logger.warning(
            "%s on %s has no trades before %s; using first trade at %s",
            instrument,
            self.market,
            datetime.fromtimestamp(to_ts, tz=timezone.utc).isoformat(),
            datetime.fromtimestamp(first_trade, tz=timezone.utc).isoformat(),
        )
        return first_trade


__all__ = ["BearerSigner", "CoinDeskAPIError", "CoinDeskClient", "CoinDeskSource", "HourCandle"]
