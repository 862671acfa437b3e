from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, cast
from unittest.mock import Mock

import pytest
import requests

from connectors.rate_limiter import TokenBucket
from services.coindesk_source import CoinDeskAPIError, CoinDeskClient, CoinDeskSource, HourCandle

HOUR_START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class _StubCoinDeskClient:
    def __init__(self, candles: list[HourCandle], *, first_error: CoinDeskAPIError | None = None) -> None:
        self.candles = candles
        self.first_error = first_error
        self.first_trade: int | None = None
        self.calls: list[dict[str, Any]] = []

    def hour_candles(self, **params: Any) -> list[HourCandle]:
        self.calls.append(params)
        if self.first_error is not None and len(self.calls) == 1:
            raise self.first_error
        return self.candles

    def first_trade_timestamp(self, **params: Any) -> int | None:
        return self.first_trade


def _source(client: _StubCoinDeskClient) -> CoinDeskSource:
    return CoinDeskSource(client=cast(CoinDeskClient, client))


def test_source_turns_latest_hour_candle_into_quote() -> None:
    client = _StubCoinDeskClient(
        [HourCandle(HOUR_START - timedelta(hours=1), Decimal("2990")), HourCandle(HOUR_START, Decimal("3001.5"))]
    )

    quote = _source(client).fetch_snapshot("eth", "usd", HOUR_START)

    assert (quote.base_id, quote.quote_id, quote.rate) == ("ETH", "USD", Decimal("3001.5"))
    assert quote.valid_from == HOUR_START
    assert quote.valid_to == HOUR_START + timedelta(hours=1)
    assert client.calls == [{"market": "coinbase", "instrument": "ETH-USD", "to_ts": int(HOUR_START.timestamp())}]


def test_source_retries_from_first_trade_when_asset_did_not_trade_yet() -> None:
    listed = HOUR_START + timedelta(days=3)
    error = CoinDeskAPIError("to_ts is before FIRST_TRADE_SPOT_TIMESTAMP", status_code=404)
    client = _StubCoinDeskClient([HourCandle(listed, Decimal("1.2"))], first_error=error)
    client.first_trade = int(listed.timestamp())

    quote = _source(client).fetch_snapshot("NEW", "USD", HOUR_START)

    assert quote.rate == Decimal("1.2")
    assert client.calls[1]["to_ts"] == int(listed.timestamp())


def test_source_reraises_other_errors_and_empty_data() -> None:
    failing = _StubCoinDeskClient([], first_error=CoinDeskAPIError("instrument not found", status_code=404))
    with pytest.raises(CoinDeskAPIError, match="instrument not found"):
        _source(failing).fetch_snapshot("XYZ", "USD", HOUR_START)

    with pytest.raises(CoinDeskAPIError, match="No price data"):
        _source(_StubCoinDeskClient([])).fetch_snapshot("XYZ", "USD", HOUR_START)


def _response(payload: Any, *, status: int = 200) -> Mock:
    response = Mock(status_code=status)
    response.json.return_value = payload
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    return response


def _client(session: Mock, api_key: str = "secret") -> CoinDeskClient:
    return CoinDeskClient(api_key, session=session, limiter=TokenBucket(1000))


def test_client_parses_hour_candles() -> None:
    session = Mock()
    session.request.return_value = _response({"Data": [{"TIMESTAMP": int(HOUR_START.timestamp()), "CLOSE": 3001.5}]})

    [candle] = _client(session).hour_candles(market="coinbase", instrument="ETH-USD", to_ts=1)

    assert candle == HourCandle(HOUR_START, Decimal("3001.5"))
    _, kwargs = session.request.call_args
    assert kwargs["headers"] == {"Authorization": "Bearer secret"}
    assert kwargs["params"]["aggregate"] == 1


def test_client_maps_http_errors_with_coindesk_message() -> None:
    session = Mock()
    session.request.return_value = _response(
        {"Err": {"message": "FIRST_TRADE_SPOT_TIMESTAMP is after to_ts"}}, status=404
    )

    with pytest.raises(CoinDeskAPIError) as exc_info:
        _client(session).hour_candles(market="coinbase", instrument="ETH-USD", to_ts=1)

    assert exc_info.value.status_code == 404
    assert "FIRST_TRADE_SPOT_TIMESTAMP" in str(exc_info.value)


def test_client_rejects_error_body_on_success_status() -> None:
    session = Mock()
    session.request.return_value = _response({"Err": {"message": "market not supported"}, "Data": []})

    with pytest.raises(CoinDeskAPIError, match="market not supported"):
        _client(session).hour_candles(market="nowhere", instrument="ETH-USD", to_ts=1)


def test_client_requires_api_key() -> None:
    session = Mock()

    with pytest.raises(CoinDeskAPIError, match="not configured"):
        _client(session, api_key="").first_trade_timestamp(market="coinbase", instrument="ETH-USD")
    session.request.assert_not_called()


def test_first_trade_lookup() -> None:
    session = Mock()
    session.request.return_value = _response(
        {"Data": {"Coinbase": {"instruments": {"NEW-USD": {"FIRST_TRADE_SPOT_TIMESTAMP": 42}}}}}
    )

    assert _client(session).first_trade_timestamp(market="coinbase", instrument="new-usd") == 42
