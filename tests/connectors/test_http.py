from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest
import requests

from connectors.http import ExchangeHttpClient
from connectors.rate_limiter import TokenBucket
from domain.errors import ExchangeAPIError, TransientUpstreamError


class StaticSigner:
    def sign(self, method: str, path: str, params: dict[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        return {**params, "signature": "abc"}, {"X-KEY": "key"}


def _response(payload: Any = None, *, status: int = 200) -> MagicMock:
    response = MagicMock(status_code=status)
    response.json.return_value = payload
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    return response


def _client(session: MagicMock, **kwargs: Any) -> ExchangeHttpClient:
    return ExchangeHttpClient(
        exchange="binance",
        base_url="https://api.example.com/",
        limiter=TokenBucket(1000),
        signer=StaticSigner(),
        session=session,
        **kwargs,
    )


def test_signed_get_drops_none_params_and_adds_signature() -> None:
    session = MagicMock()
    session.request.return_value = _response({"ok": True})

    payload = _client(session).get("/sapi/v1/capital/deposit/hisrec", {"coin": "ETH", "startTime": None})

    assert payload == {"ok": True}
    session.request.assert_called_once_with(
        "GET",
        "https://api.example.com/sapi/v1/capital/deposit/hisrec",
        params={"coin": "ETH", "signature": "abc"},
        headers={"X-KEY": "key"},
        timeout=15.0,
    )


def test_unwrap_is_applied_to_payload() -> None:
    session = MagicMock()
    session.request.return_value = _response({"code": "0", "data": [1, 2]})

    assert _client(session, unwrap=lambda body: body["data"]).get("/api/v5/asset/balances") == [1, 2]


def test_http_error_carries_exchange_message() -> None:
    session = MagicMock()
    session.request.return_value = _response({"code": -2015, "msg": "Invalid API-key"}, status=401)

    with pytest.raises(ExchangeAPIError) as exc_info:
        _client(session).get("/api/v3/account")

    assert str(exc_info.value) == "binance: Invalid API-key"
    assert exc_info.value.status_code == 401
    assert exc_info.value.payload == {"code": -2015, "msg": "Invalid API-key"}


@pytest.mark.parametrize(
    "error",
    [requests.ConnectionError("reset"), requests.Timeout("slow"), requests.exceptions.RetryError("429")],
)
def test_network_failures_are_transient(error: Exception) -> None:
    session = MagicMock()
    session.request.side_effect = error

    with pytest.raises(TransientUpstreamError):
        _client(session).get("/api/v3/myTrades")


def test_invalid_json_is_an_api_error() -> None:
    session = MagicMock()
    response = _response()
    response.json.side_effect = ValueError("no json")
    session.request.return_value = response

    with pytest.raises(ExchangeAPIError, match="invalid JSON"):
        _client(session).get("/api/v3/myTrades")


def test_signed_request_without_signer_is_rejected() -> None:
    session = MagicMock()
    client = ExchangeHttpClient(exchange="okx", base_url="https://okx.test", limiter=TokenBucket(10), session=session)

    with pytest.raises(ExchangeAPIError):
        client.get("/api/v5/account/balance")
    session.request.assert_not_called()


def test_heavy_endpoint_weight_is_capped_at_bucket_capacity() -> None:
    session = MagicMock()
    session.request.return_value = _response([])
    limiter = MagicMock(capacity=10.0)
    client = ExchangeHttpClient(exchange="binance", base_url="https://b.test", limiter=limiter, session=session)

    client.get("/api/v3/exchangeInfo", signed=False, weight=20)

    limiter.acquire.assert_called_once_with(10.0)
