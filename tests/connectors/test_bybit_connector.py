from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

from connectors.base import ApiCredentials
from connectors.bybit import BybitConnector, BybitSigner, _unwrap, parse_symbol
from connectors.pagination import to_ms
from domain.errors import ExchangeAPIError
from domain.records import ExchangeRecordType, SyncOptions, TradeSide
from tests.helpers.fake_http import RoutedHttp

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)
CREDENTIALS = ApiCredentials(api_key="key", api_secret="secret")
MAY_20 = to_ms(datetime(2024, 5, 20, tzinfo=timezone.utc))
MAY_24 = to_ms(datetime(2024, 5, 24, tzinfo=timezone.utc))
MAY_30 = to_ms(datetime(2024, 5, 30, tzinfo=timezone.utc))


def _windowed(rows: list[dict[str, Any]], time_field: str, list_key: str = "list"):
    """Answers a time-windowed endpoint with the rows inside ``[startTime, endTime]``."""

    def route(params: dict[str, Any]) -> dict[str, Any]:
        inside = [row for row in rows if params["startTime"] <= int(row[time_field]) <= params["endTime"]]
        return {list_key: inside, "nextPageCursor": ""}

    return route


def _connector(http: RoutedHttp) -> BybitConnector:
    return BybitConnector(CREDENTIALS, http=http, now=lambda: NOW, max_history_days=10)


def test_signer_builds_bybit_headers() -> None:
    signer = BybitSigner(CREDENTIALS, recv_window=5000, clock=lambda: 1700000000.0)

    params, headers = signer.sign("GET", "/v5/asset/deposit/query-record", {"coin": "ETH"})

    payload = b"1700000000000key5000coin=ETH"
    assert params == {"coin": "ETH"}
    assert headers["X-BAPI-SIGN"] == hmac.new(b"secret", payload, hashlib.sha256).hexdigest()
    assert headers["X-BAPI-TIMESTAMP"] == "1700000000000"
    assert headers["X-BAPI-RECV-WINDOW"] == "5000"


def test_unwrap_returns_result_or_raises() -> None:
    assert _unwrap({"retCode": 0, "result": {"list": []}}) == {"list": []}
    with pytest.raises(ExchangeAPIError, match="API key is invalid"):
        _unwrap({"retCode": 10003, "retMsg": "API key is invalid."})


@pytest.mark.parametrize(
    ("symbol", "expected"),
    [("ETHUSDT", ("ETH", "USDT")), ("SOLUSDC", ("SOL", "USDC")), ("ETHBTC", ("ETH", "BTC"))],
)
def test_parse_symbol(symbol: str, expected: tuple[str, str]) -> None:
    assert parse_symbol(symbol) == expected


def test_phase_one_maps_transfers_and_trades() -> None:
    deposits = [{"coin": "USDT", "amount": "100", "chain": "TRX", "txID": "0xdep", "successAt": MAY_30}]
    withdrawals = [
        {"withdrawId": "w1", "coin": "ETH", "amount": "0.5", "withdrawFee": "0.001", "status": "success", "txID": "0xwd", "createTime": MAY_30},
        {"withdrawId": "w2", "coin": "ETH", "amount": "0.2", "withdrawFee": "0", "status": "Pending", "createTime": MAY_30},
    ]
    trades = [
        {"execId": "e1", "symbol": "ETHUSDT", "side": "Buy", "execQty": "0.1", "execPrice": "3000", "execValue": "300", "execFee": "0.0001", "execTime": MAY_30},
        {"execId": "e2", "symbol": "ETHUSDT", "side": "Sell", "execQty": "0.1", "execPrice": "2900", "execValue": "", "execFee": "0.29", "execTime": MAY_24},
    ]
    http = RoutedHttp(
        {
            "/v5/asset/deposit/query-record": _windowed(deposits, "successAt", "rows"),
            "/v5/asset/withdraw/query-record": _windowed(withdrawals, "createTime", "rows"),
            "/v5/execution/list": _windowed(trades, "execTime"),
        }
    )

    result = _connector(http).fetch_phase(1, SyncOptions())

    by_id = {record.external_id: record for record in result.records}
    assert set(by_id) == {"dep-0xdep", "wd-w1", "trade-e1", "trade-e2"}
    assert by_id["dep-0xdep"].network == "TRX"
    assert (by_id["wd-w1"].fee, by_id["wd-w1"].fee_asset) == (Decimal("0.001"), "ETH")

    buy, sell = by_id["trade-e1"], by_id["trade-e2"]
    assert (buy.side, buy.fee_asset, buy.quote_amount) == (TradeSide.BUY, "ETH", Decimal("300"))
    assert (sell.side, sell.fee_asset, sell.quote_amount) == (TradeSide.SELL, "USDT", Decimal("290.0"))

    assert result.cursor["deposits"] == {"fetchedUntil": to_ms(NOW)}
    assert len(http.params_for("/v5/execution/list")) == 2
    assert all(params["category"] == "spot" for params in http.params_for("/v5/execution/list"))


def test_completed_pass_only_queries_newer_data() -> None:
    http = RoutedHttp(
        {
            "/v5/asset/deposit/query-record": _windowed([], "successAt", "rows"),
            "/v5/asset/withdraw/query-record": _windowed([], "createTime", "rows"),
            "/v5/execution/list": _windowed([], "execTime"),
        }
    )
    cursor = {"deposits": {"fetchedUntil": MAY_30}}

    _connector(http).fetch_phase(1, SyncOptions(cursor=cursor))

    [params] = http.params_for("/v5/asset/deposit/query-record")
    assert params["startTime"] == MAY_30 + 1
    assert params["endTime"] == to_ms(NOW)


def test_converts_skip_rows_covered_by_earlier_run() -> None:
    rows = [
        {"exchangeTxId": "new", "fromCoin": "USDT", "fromAmount": "100", "toCoin": "ETH", "toAmount": "0.03", "createdTime": str(MAY_30)},
        {"exchangeTxId": "old", "fromCoin": "USDT", "fromAmount": "50", "toCoin": "BTC", "toAmount": "0.001", "createdTime": str(MAY_20)},
    ]
    http = RoutedHttp({"/v5/asset/exchange/order-record": lambda params: {"orderBody": rows if params["index"] == 1 else []}})

    result = _connector(http).fetch_phase(2, SyncOptions(cursor={"convert": {"fetchedUntil": MAY_24}}))

    assert [record.external_id for record in result.records] == ["convert-new"]
    convert = result.records[0]
    assert (convert.asset, convert.quote_asset, convert.quote_amount) == ("USDT", "ETH", Decimal("0.03"))
    assert result.cursor["convert"] == {"fetchedUntil": MAY_30}


def test_phase_three_maps_earn_and_dividends() -> None:
    def earn_orders(params: dict[str, Any]) -> dict[str, Any]:
        if params["category"] != "FlexibleSaving":
            return {"list": []}
        return _windowed(
            [
                {"orderId": "o1", "coin": "USDT", "orderValue": "500", "orderType": "Stake", "status": "Success", "createdAt": MAY_24},
                {"orderId": "o2", "coin": "USDT", "orderValue": "200", "orderType": "Redeem", "status": "Success", "createdAt": MAY_30},
                {"orderId": "o3", "coin": "USDT", "orderValue": "50", "orderType": "Stake", "status": "Fail", "createdAt": MAY_30},
            ],
            "createdAt",
        )(params)

    logs = [
        {"id": "l1", "type": "AIRDRP", "currency": "MNT", "change": "3", "transactionTime": MAY_30},
        {"id": "l2", "type": "TRADE", "currency": "ETH", "change": "1", "transactionTime": MAY_30},
    ]
    http = RoutedHttp(
        {
            "/v5/earn/order": earn_orders,
            "/v5/earn/yield": _windowed([{"id": "y1", "coin": "USDT", "amount": "0.12", "createdAt": MAY_30}], "createdAt", "yield"),
            "/v5/account/transaction-log": _windowed(logs, "transactionTime"),
        }
    )

    result = _connector(http).fetch_phase(3, SyncOptions())

    by_id = {record.external_id: record.type for record in result.records}
    assert by_id == {
        "earn-o1": ExchangeRecordType.STAKE,
        "earn-o2": ExchangeRecordType.UNSTAKE,
        "yield-y1-USDT": ExchangeRecordType.INTEREST,
        "txlog-l1-MNT": ExchangeRecordType.DIVIDEND,
    }
    assert set(result.cursor["earnOrders"]) == {"FlexibleSaving", "OnChain"}


def test_phase_four_maps_borrow_interest() -> None:
    rows = [
        {"currency": "USDT", "borrowCost": "0.8", "createdTime": MAY_30},
        {"currency": "USDT", "borrowCost": "0", "createdTime": MAY_24},
    ]
    http = RoutedHttp({"/v5/account/borrow-history": _windowed(rows, "createdTime")})

    result = _connector(http).fetch_phase(4, SyncOptions())

    assert [(r.type, r.amount) for r in result.records] == [(ExchangeRecordType.MARGIN_INTEREST, Decimal("0.8"))]


def test_connection_check_reads_permissions() -> None:
    http = RoutedHttp(
        {
            "/v5/user/query-api": {
                "permissions": {"Spot": ["SpotTrade"], "Wallet": ["AccountTransfer"]},
                "readOnly": 1,
                "userID": 777,
            }
        }
    )

    result = _connector(http).test_connection()

    assert result.valid
    assert result.permissions == ["TRADE", "TRANSFER", "READ"]
    assert result.account_id == "777"


def test_balances_fall_back_to_funding_when_unified_fails() -> None:
    http = RoutedHttp(
        {
            "/v5/account/wallet-balance": ExchangeAPIError("accountType only support UNIFIED", exchange="bybit"),
            "/v5/asset/transfer/query-account-coins-balance": {
                "balance": [
                    {"coin": "USDT", "walletBalance": "40", "transferBalance": "30"},
                    {"coin": "BTC", "walletBalance": "0", "transferBalance": "0"},
                ]
            },
        }
    )

    balances = _connector(http).fetch_real_time_balances()

    assert [(b.asset, b.free, b.locked, b.source) for b in balances] == [
        ("USDT", Decimal("30"), Decimal("10"), "funding")
    ]


def test_deposit_addresses_list_every_chain() -> None:
    def address(params: dict[str, Any]) -> dict[str, Any]:
        if params["coin"] != "USDT":
            raise ExchangeAPIError("coin not supported", exchange="bybit")
        return {
            "chains": [
                {"chain": "TRX", "addressDeposit": "Tusdt", "tagDeposit": ""},
                {"chain": "ETH", "addressDeposit": "0xusdt", "tagDeposit": ""},
                {"chain": "SOL", "addressDeposit": ""},
            ]
        }

    http = RoutedHttp(
        {
            "/v5/asset/transfer/query-account-coins-balance": {"balance": [{"coin": "USDT", "walletBalance": "5"}]},
            "/v5/asset/deposit/query-address": address,
        }
    )

    addresses = _connector(http).fetch_deposit_addresses()

    assert [(a.network, a.address, a.tag) for a in addresses] == [("TRX", "Tusdt", None), ("ETH", "0xusdt", None)]
    assert [params["coin"] for params in http.params_for("/v5/asset/deposit/query-address")] == [
        "USDT",
        "BTC",
        "ETH",
        "USDC",
        "SOL",
    ]
