from __future__ import annotations

import hashlib
import hmac
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator
from urllib.parse import urlencode

from config import config
from domain.assets import KNOWN_QUOTES, is_fiat, is_usd_like
from domain.errors import ExchangeAPIError, PhaseError, TransientUpstreamError
from domain.records import (
    ConnectionTestResult,
    DepositAddress,
    ExchangeRecord,
    ExchangeRecordType,
    PhaseResult,
    RealTimeBalance,
    SyncOptions,
    TradeSide,
)

from .base import ApiCredentials, EndpointGuard, to_decimal
from .http import ExchangeHttpClient
from .pagination import DAY_MS, from_ms, iter_windows, paginate_after, paginate_offset, paginate_pages, to_ms
from .rate_limiter import shared_limiter

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "binance"
BASE_URL = "https://api.binance.com"
MAX_HISTORY_DAYS = 3 * 365

TRADE_QUOTES = ("USDT", "USDC", "BTC", "BUSD", "FDUSD", "BRL", "EUR", "BNB", "ETH", "TRY")
COMMON_PAIRS = (
    "BTCUSDT", "BTCUSDC", "BTCFDUSD", "BTCEUR", "BTCBRL",
    "ETHUSDT", "ETHUSDC", "ETHBTC", "ETHFDUSD", "ETHBRL",
    "BNBUSDT", "BNBUSDC", "BNBBTC", "BNBFDUSD",
    "SOLUSDT", "SOLUSDC", "SOLBTC", "SOLBNB", "SOLFDUSD", "SOLBRL",
    "XRPUSDT", "ADAUSDT", "DOGEUSDT", "DOTUSDT", "AVAXUSDT", "LINKUSDT",
    "LTCUSDT", "TRXUSDT", "ATOMUSDT", "NEARUSDT", "ARBUSDT", "OPUSDT",
)  # fmt: skip

TRADE_LIMIT = 1000
CAPITAL_LIMIT = 1000
CONVERT_LIMIT = 1000
DIVIDEND_LIMIT = 500
EARN_PAGE_SIZE = 100
MARGIN_PAGE_SIZE = 100


class BinanceSigner:
    def __init__(
        self,
        credentials: ApiCredentials,
        *,
        recv_window: int = 10_000,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._credentials = credentials
        self._recv_window = recv_window
        self._clock = clock or time.time

    def sign(self, method: str, path: str, params: dict[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        signed = dict(params)
        signed["timestamp"] = int(self._clock() * 1000)
        signed["recvWindow"] = self._recv_window
        query = urlencode(signed)
        signed["signature"] = hmac.new(
            self._credentials.api_secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return signed, {"X-MBX-APIKEY": self._credentials.api_key}


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict) and isinstance(payload.get("code"), int) and payload["code"] < 0:
        raise ExchangeAPIError(payload.get("msg") or "Binance error", exchange=EXCHANGE_NAME, payload=payload)
    return payload


def parse_symbol(symbol: str) -> tuple[str, str]:
    for quote in KNOWN_QUOTES:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return symbol[: -len(quote)], quote
    return symbol[:-4], symbol[-4:]


class BinanceConnector:
    """Binance spot, earn and margin history.

    Phase 1 pulls deposits, withdrawals and fiat payments before spot trades
    because the assets seen there widen the set of trading pairs queried.
    """

    exchange_name = EXCHANGE_NAME

    def __init__(
        self,
        credentials: ApiCredentials,
        *,
        http: ExchangeHttpClient | None = None,
        now: Callable[[], datetime] | None = None,
        max_history_days: int = MAX_HISTORY_DAYS,
    ) -> None:
        self._http = http or ExchangeHttpClient(
            exchange=EXCHANGE_NAME,
            base_url=BASE_URL,
            limiter=shared_limiter(EXCHANGE_NAME, config().binance_requests_per_second),
            signer=BinanceSigner(credentials),
            unwrap=_unwrap,
        )
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._max_history = timedelta(days=max_history_days)

    # ---- Connector interface ----

    def fetch_phase(self, phase: int, options: SyncOptions) -> PhaseResult:
        handlers = {
            1: self._phase_core,
            2: self._phase_conversions,
            3: self._phase_income,
            4: self._phase_margin,
        }
        handler = handlers.get(phase)
        if handler is None:
            raise PhaseError(f"Unknown phase {phase}", phase=phase)

        cursor = dict(options.cursor)
        guard = EndpointGuard(self.exchange_name)
        records: list[ExchangeRecord] = []
        try:
            handler(options, cursor, guard, records)
        except (ExchangeAPIError, TransientUpstreamError) as exc:
            raise PhaseError(f"{self.exchange_name} phase {phase} failed: {exc}", phase=phase) from exc
        return PhaseResult(phase=phase, records=records, cursor=cursor, errors=guard.errors)

    def test_connection(self) -> ConnectionTestResult:
        try:
            account = self._http.get("/api/v3/account", {"omitZeroBalances": "true"}, weight=20)
        except Exception as exc:
            return ConnectionTestResult(valid=False, error=str(exc) or "Connection failed")

        permissions = [
            name
            for name, flag in (("TRADE", "canTrade"), ("WITHDRAW", "canWithdraw"), ("DEPOSIT", "canDeposit"))
            if account.get(flag)
        ]
        uid = account.get("uid")
        return ConnectionTestResult(valid=True, permissions=permissions, account_id=str(uid) if uid else None)

    def fetch_real_time_balances(self) -> list[RealTimeBalance]:
        balances: list[RealTimeBalance] = []
        try:
            account = self._http.get("/api/v3/account", {"omitZeroBalances": "true"}, weight=20)
            for row in account.get("balances", []):
                asset = str(row["asset"])
                # LD* tokens mirror flexible earn positions inside spot.
                if asset.startswith("LD"):
                    continue
                free, locked = to_decimal(row.get("free")), to_decimal(row.get("locked"))
                if free > 0 or locked > 0:
                    balances.append(RealTimeBalance(asset=asset, free=free, locked=locked, source="spot"))
        except ExchangeAPIError as exc:
            logger.debug("Binance spot balances unavailable: %s", exc)

        try:
            funding = self._http.request("POST", "/sapi/v1/asset/get-funding-asset")
            for row in funding or []:
                free = to_decimal(row.get("free"))
                locked = to_decimal(row.get("locked")) + to_decimal(row.get("freeze"))
                if free > 0 or locked > 0:
                    balances.append(RealTimeBalance(asset=row["asset"], free=free, locked=locked, source="funding"))
        except ExchangeAPIError as exc:
            logger.debug("Binance funding balances unavailable: %s", exc)

        return balances

    def fetch_deposit_addresses(self) -> list[DepositAddress]:
        addresses: list[DepositAddress] = []
        coins = self._http.get("/sapi/v1/capital/config/getall", weight=10)
        for coin in coins or []:
            if to_decimal(coin.get("free")) <= 0 and to_decimal(coin.get("locked")) <= 0:
                continue
            for network in coin.get("networkList") or []:
                if not network.get("depositEnable"):
                    continue
                try:
                    result = self._http.get(
                        "/sapi/v1/capital/deposit/address",
                        {"coin": coin["coin"], "network": network["network"]},
                        weight=10,
                    )
                except ExchangeAPIError as exc:
                    logger.debug("No deposit address for %s/%s: %s", coin["coin"], network["network"], exc)
                    continue
                if result and result.get("address"):
                    addresses.append(
                        DepositAddress(
                            coin=coin["coin"],
                            network=network["network"],
                            address=result["address"],
                            tag=result.get("tag") or None,
                        )
                    )
        logger.info("Fetched %d Binance deposit addresses", len(addresses))
        return addresses

    # ---- Phases ----

    def _phase_core(
        self, options: SyncOptions, cursor: dict[str, Any], guard: EndpointGuard, records: list[ExchangeRecord]
    ) -> None:
        guard.run("deposits", lambda: self._deposits(options, cursor, records))
        guard.run("withdrawals", lambda: self._withdrawals(options, cursor, records))
        guard.run("fiatPayments", lambda: self._fiat_payments(options, cursor, records))

        discovered = set(cursor.get("discoveredAssets", []))
        for record in records:
            for symbol in (record.asset, record.quote_asset, record.fee_asset):
                if symbol and not is_fiat(symbol):
                    discovered.add(symbol)
        cursor["discoveredAssets"] = sorted(discovered)

        guard.run("trades", lambda: self._spot_trades(cursor, discovered, guard, records))

    def _phase_conversions(
        self, options: SyncOptions, cursor: dict[str, Any], guard: EndpointGuard, records: list[ExchangeRecord]
    ) -> None:
        guard.run("convert", lambda: self._convert(options, cursor, records))
        guard.run("dust", lambda: self._dust(options, cursor, records))

    def _phase_income(
        self, options: SyncOptions, cursor: dict[str, Any], guard: EndpointGuard, records: list[ExchangeRecord]
    ) -> None:
        guard.run("flexibleEarn", lambda: self._flexible_earn(options, cursor, records))
        guard.run("flexibleRewards", lambda: self._flexible_rewards(options, cursor, records))
        guard.run("dividends", lambda: self._dividends(options, cursor, records))

    def _phase_margin(
        self, options: SyncOptions, cursor: dict[str, Any], guard: EndpointGuard, records: list[ExchangeRecord]
    ) -> None:
        guard.run("marginInterest", lambda: self._margin_interest(options, cursor, records))
        guard.run("marginBorrowRepay", lambda: self._margin_borrow_repay(options, cursor, records))
        guard.run("marginLiquidations", lambda: self._margin_liquidations(options, cursor, records))

    # ---- Phase 1 ----

    def _deposits(self, options: SyncOptions, cursor: dict[str, Any], records: list[ExchangeRecord]) -> None:
        state = cursor.setdefault("deposits", {})
        for window in self._windows(options, state, 90, self._capital_fetcher("/sapi/v1/capital/deposit/hisrec", 1)):
            for row in window:
                ref = row.get("txId") or row.get("id") or f"{row['coin']}-{row['insertTime']}"
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.DEPOSIT,
                        external_id=f"dep-{ref}",
                        timestamp=from_ms(row["insertTime"]),
                        asset=row["coin"],
                        amount=to_decimal(row["amount"]),
                        network=row.get("network"),
                        tx_id=row.get("txId") or None,
                        raw=row,
                    )
                )

    def _withdrawals(self, options: SyncOptions, cursor: dict[str, Any], records: list[ExchangeRecord]) -> None:
        state = cursor.setdefault("withdrawals", {})
        for window in self._windows(options, state, 90, self._capital_fetcher("/sapi/v1/capital/withdraw/history", 6)):
            for row in window:
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.WITHDRAWAL,
                        external_id=f"wd-{row['id']}",
                        timestamp=_parse_binance_time(row["applyTime"]),
                        asset=row["coin"],
                        amount=to_decimal(row["amount"]),
                        fee=to_decimal(row.get("transactionFee")),
                        fee_asset=row["coin"],
                        network=row.get("network"),
                        tx_id=row.get("txId") or None,
                        raw=row,
                    )
                )

    def _capital_fetcher(self, path: str, status: int) -> Callable[[int, int], list[dict[str, Any]]]:
        def fetch(start_ms: int, end_ms: int) -> list[dict[str, Any]]:
            rows: list[dict[str, Any]] = []
            for page in paginate_offset(
                lambda offset, limit: self._http.get(
                    path,
                    {"startTime": start_ms, "endTime": end_ms, "status": status, "offset": offset, "limit": limit},
                )
                or [],
                limit=CAPITAL_LIMIT,
            ):
                rows.extend(page)
            return rows

        return fetch

    def _fiat_payments(self, options: SyncOptions, cursor: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for transaction_type in ("0", "1"):
            is_buy = transaction_type == "0"
            state = cursor.setdefault("fiatPayments", {}).setdefault(transaction_type, {})

            def fetch(start_ms: int, end_ms: int, transaction_type: str = transaction_type) -> list[dict[str, Any]]:
                rows: list[dict[str, Any]] = []
                for page in paginate_pages(
                    lambda page_no, size: (
                        self._http.get(
                            "/sapi/v1/fiat/payments",
                            {
                                "transactionType": transaction_type,
                                "beginTime": start_ms,
                                "endTime": end_ms,
                                "page": page_no,
                                "rows": size,
                            },
                        ).get("data")
                        or []
                    ),
                    size=500,
                ):
                    rows.extend(page)
                return rows

            for window in self._windows(options, state, 90, fetch):
                for row in window:
                    if row.get("status") != "Completed":
                        continue
                    fiat = row["fiatCurrency"]
                    records.append(
                        ExchangeRecord(
                            type=ExchangeRecordType.FIAT_BUY if is_buy else ExchangeRecordType.FIAT_SELL,
                            external_id=f"fiat-{row['orderNo']}",
                            timestamp=from_ms(row["createTime"]),
                            asset=row["cryptoCurrency"],
                            amount=to_decimal(row["obtainAmount"]),
                            price_usd=to_decimal(row.get("price")) if is_usd_like(fiat) else None,
                            total_value_usd=to_decimal(row.get("sourceAmount")) if is_usd_like(fiat) else None,
                            fee=to_decimal(row.get("totalFee")),
                            fee_asset=fiat,
                            side=TradeSide.BUY if is_buy else TradeSide.SELL,
                            pair=f"{row['cryptoCurrency']}/{fiat}",
                            quote_asset=fiat,
                            quote_amount=to_decimal(row.get("sourceAmount")),
                            raw=row,
                        )
                    )

    def _spot_trades(
        self,
        cursor: dict[str, Any],
        discovered: set[str],
        guard: EndpointGuard,
        records: list[ExchangeRecord],
    ) -> None:
        state = cursor.setdefault("trades", {})
        from_ids: dict[str, int] = state.setdefault("fromId", {})
        state.pop("processed", None)
        symbols = self._trade_symbols(state, discovered)
        logger.info("Fetching Binance trades for %d symbols (%d with a fromId)", len(symbols), len(from_ids))

        # Every symbol is scanned on every run; fromId keeps each scan incremental.
        for symbol in symbols:
            guard.run(f"trades:{symbol}", lambda symbol=symbol: self._symbol_trades(symbol, from_ids, records))

    def _symbol_trades(self, symbol: str, from_ids: dict[str, int], records: list[ExchangeRecord]) -> bool:
        base, quote = parse_symbol(symbol)
        start = str(from_ids.get(symbol, 0))
        for page in paginate_after(
            lambda after: self._http.get(
                "/api/v3/myTrades", {"symbol": symbol, "fromId": int(after or 0), "limit": TRADE_LIMIT}, weight=20
            ),
            marker=lambda trade: str(int(trade["id"]) + 1),
            limit=TRADE_LIMIT,
            start=start,
        ):
            for trade in page:
                records.append(self._trade_record(trade, symbol, base, quote))
            from_ids[symbol] = int(page[-1]["id"]) + 1
        return True

    @staticmethod
    def _trade_record(trade: dict[str, Any], symbol: str, base: str, quote: str) -> ExchangeRecord:
        quote_qty = to_decimal(trade.get("quoteQty"))
        usd_quote = is_usd_like(quote)
        return ExchangeRecord(
            type=ExchangeRecordType.TRADE,
            external_id=f"trade-{symbol}-{trade['id']}",
            timestamp=from_ms(trade["time"]),
            asset=base,
            amount=to_decimal(trade["qty"]),
            price_usd=to_decimal(trade.get("price")) if usd_quote else None,
            total_value_usd=quote_qty if usd_quote else None,
            fee=to_decimal(trade.get("commission")),
            fee_asset=trade.get("commissionAsset"),
            side=TradeSide.BUY if trade.get("isBuyer") else TradeSide.SELL,
            pair=symbol,
            quote_asset=quote,
            quote_amount=quote_qty,
            raw=trade,
        )

    def _trade_symbols(self, state: dict[str, Any], discovered: set[str]) -> list[str]:
        assets = set(self._held_assets()) | discovered
        candidates = {f"{asset}{quote}" for asset in assets if not is_fiat(asset) for quote in TRADE_QUOTES if asset != quote}
        candidates.update(COMMON_PAIRS)

        valid = set(state.get("validSymbols", []))
        if not valid:
            info = self._http.get("/api/v3/exchangeInfo", signed=False, weight=20)
            valid = {row["symbol"] for row in info.get("symbols", [])}
            state["validSymbols"] = sorted(valid)
        return sorted(candidates & valid)

    def _held_assets(self) -> list[str]:
        try:
            rows = self._http.request("POST", "/sapi/v3/asset/getUserAsset", weight=5)
            assets = [row["asset"] for row in rows or []]
            if assets:
                return assets
        except ExchangeAPIError as exc:
            logger.debug("getUserAsset unavailable, falling back to account balances: %s", exc)

        account = self._http.get("/api/v3/account", {"omitZeroBalances": "true"}, weight=20)
        return [row["asset"] for row in account.get("balances", [])]

    # ---- Phase 2 ----

    def _convert(self, options: SyncOptions, cursor: dict[str, Any], records: list[ExchangeRecord]) -> None:
        state = cursor.setdefault("convert", {})

        def fetch(start_ms: int, end_ms: int) -> list[dict[str, Any]]:
            payload = self._http.get(
                "/sapi/v1/convert/tradeFlow",
                {"startTime": start_ms, "endTime": end_ms, "limit": CONVERT_LIMIT},
                weight=100,
            )
            return [row for row in payload.get("list") or [] if row.get("orderStatus", "SUCCESS") == "SUCCESS"]

        for window in self._windows(options, state, 30, fetch, page_limit=CONVERT_LIMIT):
            for row in window:
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.CONVERT,
                        external_id=f"convert-{row.get('orderId') or row.get('quoteId')}",
                        timestamp=from_ms(row.get("createTime") or row["orderTime"]),
                        asset=row["fromAsset"],
                        amount=to_decimal(row["fromAmount"]),
                        quote_asset=row["toAsset"],
                        quote_amount=to_decimal(row["toAmount"]),
                        raw=row,
                    )
                )

    def _dust(self, options: SyncOptions, cursor: dict[str, Any], records: list[ExchangeRecord]) -> None:
        state = cursor.setdefault("dust", {})

        def fetch(start_ms: int, end_ms: int) -> list[dict[str, Any]]:
            payload = self._http.get("/sapi/v1/asset/dribblet", {"startTime": start_ms, "endTime": end_ms})
            return payload.get("userAssetDribblets") or []

        for window in self._windows(options, state, 90, fetch):
            for entry in window:
                operated_at = from_ms(entry["operateTime"])
                for detail in entry.get("userAssetDribbletDetails") or []:
                    records.append(
                        ExchangeRecord(
                            type=ExchangeRecordType.DUST_CONVERT,
                            external_id=f"dust-{detail.get('transId') or detail.get('tranId')}",
                            timestamp=operated_at,
                            asset=detail["fromAsset"],
                            amount=to_decimal(detail["amount"]),
                            quote_asset="BNB",
                            quote_amount=to_decimal(detail.get("transferedAmount")),
                            fee=to_decimal(detail.get("serviceChargeAmount")),
                            fee_asset="BNB",
                            raw=detail,
                        )
                    )

    # ---- Phase 3 ----

    def _flexible_earn(self, options: SyncOptions, cursor: dict[str, Any], records: list[ExchangeRecord]) -> None:
        endpoints = (
            ("subscriptions", "/sapi/v1/simple-earn/flexible/history/subscriptionRecord", ExchangeRecordType.STAKE),
            ("redemptions", "/sapi/v1/simple-earn/flexible/history/redemptionRecord", ExchangeRecordType.UNSTAKE),
        )
        for key, path, record_type in endpoints:
            state = cursor.setdefault("flexibleEarn", {}).setdefault(key, {})
            for window in self._windows(options, state, 90, self._earn_fetcher(path, {})):
                for row in window:
                    ref = row.get("purchaseId") or row.get("redeemId") or row["time"]
                    records.append(
                        ExchangeRecord(
                            type=record_type,
                            external_id=f"flex{key[:3]}-{ref}",
                            timestamp=from_ms(row["time"]),
                            asset=row["asset"],
                            amount=to_decimal(row["amount"]),
                            raw=row,
                        )
                    )

    def _flexible_rewards(self, options: SyncOptions, cursor: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for reward_type in ("BONUS", "REALTIME", "REWARDS"):
            state = cursor.setdefault("flexibleRewards", {}).setdefault(reward_type, {})
            fetch = self._earn_fetcher("/sapi/v1/simple-earn/flexible/history/rewardsRecord", {"type": reward_type})
            for window in self._windows(options, state, 90, fetch):
                for row in window:
                    amount = to_decimal(row.get("rewards") or row.get("amount"))
                    if amount <= 0:
                        continue
                    records.append(
                        ExchangeRecord(
                            type=ExchangeRecordType.INTEREST,
                            external_id=f"flexreward-{reward_type}-{row['asset']}-{row['time']}",
                            timestamp=from_ms(row["time"]),
                            asset=row["asset"],
                            amount=amount,
                            raw=row,
                        )
                    )

    def _earn_fetcher(self, path: str, extra: dict[str, Any]) -> Callable[[int, int], list[dict[str, Any]]]:
        def fetch(start_ms: int, end_ms: int) -> list[dict[str, Any]]:
            rows: list[dict[str, Any]] = []
            for page in paginate_pages(
                lambda page_no, size: self._http.get(
                    path, {**extra, "startTime": start_ms, "endTime": end_ms, "current": page_no, "size": size}
                ).get("rows")
                or [],
                size=EARN_PAGE_SIZE,
            ):
                rows.extend(page)
            return rows

        return fetch

    def _dividends(self, options: SyncOptions, cursor: dict[str, Any], records: list[ExchangeRecord]) -> None:
        state = cursor.setdefault("dividends", {})

        def fetch(start_ms: int, end_ms: int) -> list[dict[str, Any]]:
            payload = self._http.get(
                "/sapi/v1/asset/assetDividend",
                {"startTime": start_ms, "endTime": end_ms, "limit": DIVIDEND_LIMIT},
                weight=10,
            )
            return payload.get("rows") or []

        # The dividend API rejects spans over 180 days and has no offset parameter.
        for window in self._windows(options, state, 170, fetch, page_limit=DIVIDEND_LIMIT):
            for row in window:
                amount = to_decimal(row.get("amount"))
                if amount <= 0 or not row.get("asset"):
                    continue
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.DIVIDEND,
                        external_id=f"div-{row.get('id') or row.get('tranId')}",
                        timestamp=from_ms(row["divTime"]),
                        asset=row["asset"],
                        amount=amount,
                        raw=row,
                    )
                )

    # ---- Phase 4 ----

    def _margin_interest(self, options: SyncOptions, cursor: dict[str, Any], records: list[ExchangeRecord]) -> None:
        state = cursor.setdefault("marginInterest", {})
        for window in self._windows(options, state, 30, self._margin_fetcher("/sapi/v1/margin/interestHistory", {})):
            for row in window:
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.MARGIN_INTEREST,
                        external_id=f"marginint-{row.get('txId') or row['interestAccuredTime']}-{row['asset']}",
                        timestamp=from_ms(row["interestAccuredTime"]),
                        asset=row["asset"],
                        amount=to_decimal(row["interest"]),
                        raw=row,
                    )
                )

    def _margin_borrow_repay(
        self, options: SyncOptions, cursor: dict[str, Any], records: list[ExchangeRecord]
    ) -> None:
        for kind, record_type in (("BORROW", ExchangeRecordType.MARGIN_BORROW), ("REPAY", ExchangeRecordType.MARGIN_REPAY)):
            state = cursor.setdefault("marginBorrowRepay", {}).setdefault(kind, {})
            fetch = self._margin_fetcher("/sapi/v1/margin/borrow-repay", {"type": kind})
            for window in self._windows(options, state, 30, fetch):
                for row in window:
                    if row.get("status", "CONFIRMED") != "CONFIRMED":
                        continue
                    records.append(
                        ExchangeRecord(
                            type=record_type,
                            external_id=f"margin{kind.lower()}-{row.get('txId') or row.get('tranId')}",
                            timestamp=from_ms(row["timestamp"]),
                            asset=row["asset"],
                            amount=to_decimal(row.get("amount") or row.get("principal")),
                            raw=row,
                        )
                    )

    def _margin_liquidations(
        self, options: SyncOptions, cursor: dict[str, Any], records: list[ExchangeRecord]
    ) -> None:
        state = cursor.setdefault("marginLiquidations", {})
        for window in self._windows(options, state, 30, self._margin_fetcher("/sapi/v1/margin/forceLiquidationRec", {})):
            for row in window:
                base, quote = parse_symbol(row["symbol"])
                sold = row.get("side") == "SELL"
                executed = to_decimal(row.get("executedQty"))
                proceeds = executed * to_decimal(row.get("avgPrice"))
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.MARGIN_LIQUIDATION,
                        external_id=f"liquidation-{row['orderId']}",
                        timestamp=from_ms(row["updatedTime"]),
                        asset=base if sold else quote,
                        amount=executed if sold else proceeds,
                        side=TradeSide.SELL if sold else TradeSide.BUY,
                        pair=row["symbol"],
                        quote_asset=quote if sold else base,
                        quote_amount=proceeds if sold else executed,
                        raw=row,
                    )
                )

    def _margin_fetcher(self, path: str, extra: dict[str, Any]) -> Callable[[int, int], list[dict[str, Any]]]:
        def fetch(start_ms: int, end_ms: int) -> list[dict[str, Any]]:
            rows: list[dict[str, Any]] = []
            for page in paginate_pages(
                lambda page_no, size: self._http.get(
                    path, {**extra, "startTime": start_ms, "endTime": end_ms, "current": page_no, "size": size}
                ).get("rows")
                or [],
                size=MARGIN_PAGE_SIZE,
            ):
                rows.extend(page)
            return rows

        return fetch

    # ---- Helpers ----

    def _windows(
        self,
        options: SyncOptions,
        state: dict[str, Any],
        span_days: int,
        fetch: Callable[[int, int], list[dict[str, Any]]],
        *,
        page_limit: int | None = None,
    ) -> Iterator[list[dict[str, Any]]]:
        now = self._now()
        earliest = options.since or now - self._max_history
        return iter_windows(
            fetch,
            state,
            earliest_ms=to_ms(earliest),
            now_ms=to_ms(now),
            span_ms=span_days * DAY_MS,
            page_limit=page_limit,
        )


def _parse_binance_time(value: Any) -> datetime:
    """Withdraw history reports ``applyTime`` as ``YYYY-MM-DD HH:MM:SS`` (UTC)."""
    if isinstance(value, (int, float)) or str(value).isdigit():
        return from_ms(value)
    return datetime.strptime(str(value), "%Y-%m-%d %H:%M:%S").replace(tzinfo=timezone.utc)


__all__ = ["BinanceConnector", "BinanceSigner", "parse_symbol"]
