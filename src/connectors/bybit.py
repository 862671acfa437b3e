from __future__ import annotations

import hashlib
import hmac
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator
from urllib.parse import urlencode

from config import config
from domain.assets import KNOWN_QUOTES
from domain.errors import ExchangeAPIError, PhaseError
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
from .pagination import DAY_MS, from_ms, iter_windows, paginate_cursor, paginate_pages, to_ms
from .rate_limiter import shared_limiter

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "bybit"
BASE_URL = "https://api.bybit.com"
# Bybit refuses queries older than two years; keep a week of margin.
MAX_HISTORY_DAYS = 2 * 365 - 7

DIVIDEND_LOG_TYPES = ("AIRDRP", "AIRDROP", "BONUS", "CASHBACK", "FEE_REFUND")
DEFAULT_ADDRESS_COINS = ("BTC", "ETH", "USDT", "USDC", "SOL")


class BybitSigner:
    def __init__(
        self,
        credentials: ApiCredentials,
        *,
        recv_window: int = 10_000,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._credentials = credentials
        self._recv_window = str(recv_window)
        self._clock = clock or time.time

    def sign(self, method: str, path: str, params: dict[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        timestamp = str(int(self._clock() * 1000))
        payload = f"{timestamp}{self._credentials.api_key}{self._recv_window}{urlencode(params)}"
        signature = hmac.new(
            self._credentials.api_secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return params, {
            "X-BAPI-API-KEY": self._credentials.api_key,
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-RECV-WINDOW": self._recv_window,
            "X-BAPI-SIGN": signature,
        }


def _unwrap(payload: Any) -> Any:
    if not isinstance(payload, dict):
        return payload
    if payload.get("retCode", 0) != 0:
        raise ExchangeAPIError(payload.get("retMsg") or "Bybit error", exchange=EXCHANGE_NAME, payload=payload)
    return payload.get("result") or {}


def parse_symbol(symbol: str) -> tuple[str, str]:
    for quote in KNOWN_QUOTES:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return symbol[: -len(quote)], quote
    return symbol[:-4], symbol[-4:]


def _fallback_ref(row: dict[str, Any], *fields: str) -> str:
    return "-".join(str(row[field]) for field in fields)


class BybitConnector:
    """Bybit unified trading account history through the v5 REST API."""

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
            limiter=shared_limiter(EXCHANGE_NAME, config().bybit_requests_per_second),
            signer=BybitSigner(credentials),
            unwrap=_unwrap,
        )
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._max_history = timedelta(days=max_history_days)

    def fetch_phase(self, phase: int, options: SyncOptions) -> PhaseResult:
        endpoints: dict[int, tuple[tuple[str, Callable[..., None]], ...]] = {
            1: (("deposits", self._deposits), ("withdrawals", self._withdrawals), ("trades", self._spot_trades)),
            2: (("convert", self._converts),),
            3: (("earnOrders", self._earn_orders), ("earnYield", self._earn_yield), ("transactionLog", self._dividends)),
            4: (("borrowHistory", self._borrow_interest),),
        }
        if phase not in endpoints:
            raise PhaseError(f"Unknown phase {phase}", phase=phase)

        cursor = dict(options.cursor)
        guard = EndpointGuard(self.exchange_name)
        records: list[ExchangeRecord] = []
        for name, handler in endpoints[phase]:
            state = cursor.setdefault(name, {})
            guard.run(name, lambda handler=handler, state=state: handler(options, state, records))
        return PhaseResult(phase=phase, records=records, cursor=cursor, errors=guard.errors)

    def test_connection(self) -> ConnectionTestResult:
        try:
            info = self._http.get("/v5/user/query-api")
        except Exception as exc:
            return ConnectionTestResult(valid=False, error=str(exc) or "Connection failed")

        perms = info.get("permissions") or {}
        permissions = []
        if "SpotTrade" in (perms.get("Spot") or []) or perms.get("ContractTrade"):
            permissions.append("TRADE")
        if "AccountTransfer" in (perms.get("Wallet") or []):
            permissions.append("TRANSFER")
        if info.get("readOnly") == 0:
            permissions.append("WRITE")
        permissions.append("READ")
        uid = info.get("userID") or info.get("uid")
        return ConnectionTestResult(valid=True, permissions=permissions, account_id=str(uid) if uid else None)

    def fetch_real_time_balances(self) -> list[RealTimeBalance]:
        balances: list[RealTimeBalance] = []
        try:
            result = self._http.get("/v5/account/wallet-balance", {"accountType": "UNIFIED"})
            for account in result.get("list") or []:
                for coin in account.get("coin") or []:
                    wallet, locked = to_decimal(coin.get("walletBalance")), to_decimal(coin.get("locked"))
                    if wallet > 0:
                        balances.append(
                            RealTimeBalance(asset=coin["coin"], free=wallet - locked, locked=locked, source="unified")
                        )
        except ExchangeAPIError as exc:
            logger.debug("Bybit unified balance unavailable: %s", exc)

        try:
            result = self._http.get("/v5/asset/transfer/query-account-coins-balance", {"accountType": "FUND"})
            for coin in result.get("balance") or []:
                wallet, free = to_decimal(coin.get("walletBalance")), to_decimal(coin.get("transferBalance"))
                if wallet > 0:
                    balances.append(RealTimeBalance(asset=coin["coin"], free=free, locked=wallet - free, source="funding"))
        except ExchangeAPIError as exc:
            logger.debug("Bybit funding balance unavailable: %s", exc)

        return balances

    def fetch_deposit_addresses(self) -> list[DepositAddress]:
        held: list[str] = []
        try:
            result = self._http.get("/v5/asset/transfer/query-account-coins-balance", {"accountType": "UNIFIED"})
            held = [row["coin"] for row in result.get("balance") or [] if to_decimal(row.get("walletBalance")) > 0]
        except ExchangeAPIError as exc:
            logger.debug("Bybit balances unavailable for address discovery: %s", exc)

        addresses: list[DepositAddress] = []
        for coin in dict.fromkeys([*held, *DEFAULT_ADDRESS_COINS]):
            try:
                result = self._http.get("/v5/asset/deposit/query-address", {"coin": coin})
            except ExchangeAPIError as exc:
                logger.debug("No Bybit deposit address for %s: %s", coin, exc)
                continue
            for chain in result.get("chains") or []:
                if chain.get("addressDeposit"):
                    addresses.append(
                        DepositAddress(
                            coin=coin,
                            network=chain.get("chain") or chain.get("chainType") or "",
                            address=chain["addressDeposit"],
                            tag=chain.get("tagDeposit") or None,
                        )
                    )
        logger.info("Fetched %d Bybit deposit addresses", len(addresses))
        return addresses

    # ---- Phase 1 ----

    def _deposits(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for rows in self._windowed("/v5/asset/deposit/query-record", {"limit": 50}, state, options, 30, "rows"):
            for row in rows:
                amount = to_decimal(row.get("amount"))
                if amount <= 0:
                    continue
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.DEPOSIT,
                        external_id=f"dep-{row.get('txID') or _fallback_ref(row, 'successAt', 'coin')}",
                        timestamp=from_ms(row["successAt"]),
                        asset=row["coin"],
                        amount=amount,
                        network=row.get("chain"),
                        tx_id=row.get("txID") or None,
                        raw=row,
                    )
                )

    def _withdrawals(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for rows in self._windowed("/v5/asset/withdraw/query-record", {"limit": 50}, state, options, 30, "rows"):
            for row in rows:
                amount = to_decimal(row.get("amount"))
                if amount <= 0 or row.get("status", "success").lower() != "success":
                    continue
                fee = to_decimal(row.get("withdrawFee"))
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.WITHDRAWAL,
                        external_id=f"wd-{row.get('withdrawId') or row.get('txID')}",
                        timestamp=from_ms(row["createTime"]),
                        asset=row["coin"],
                        amount=amount,
                        fee=fee,
                        fee_asset=row["coin"] if fee > 0 else None,
                        network=row.get("chain"),
                        tx_id=row.get("txID") or None,
                        raw=row,
                    )
                )

    def _spot_trades(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        params = {"category": "spot", "limit": 100}
        for rows in self._windowed("/v5/execution/list", params, state, options, 7, "list"):
            for trade in rows:
                base, quote = parse_symbol(trade["symbol"])
                qty = to_decimal(trade["execQty"])
                value = to_decimal(trade.get("execValue")) or qty * to_decimal(trade.get("execPrice"))
                side = TradeSide.BUY if trade.get("side") == "Buy" else TradeSide.SELL
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.TRADE,
                        external_id=f"trade-{trade['execId']}",
                        timestamp=from_ms(trade["execTime"]),
                        asset=base,
                        amount=qty,
                        fee=abs(to_decimal(trade.get("execFee"))),
                        fee_asset=trade.get("feeCurrency") or (base if side is TradeSide.BUY else quote),
                        side=side,
                        pair=trade["symbol"],
                        quote_asset=quote,
                        quote_amount=value,
                        raw=trade,
                    )
                )

    # ---- Phase 2 ----

    def _converts(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        """The convert record API has no time filter; rows already covered by an earlier run are skipped."""
        covered = int(state.get("fetchedUntil", 0))
        newest = covered
        for page in paginate_pages(
            lambda index, size: self._http.get(
                "/v5/asset/exchange/order-record", {"index": index, "limit": size}
            ).get("orderBody")
            or [],
            size=100,
        ):
            for row in page:
                created = int(row.get("createdTime") or 0)
                newest = max(newest, created)
                if created and created < covered:
                    continue
                from_amount = to_decimal(row.get("fromAmount"))
                if from_amount <= 0:
                    continue
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.CONVERT,
                        external_id=f"convert-{row.get('exchangeTxId') or row.get('exchangeId') or created}",
                        timestamp=from_ms(created),
                        asset=row["fromCoin"],
                        amount=from_amount,
                        quote_asset=row["toCoin"],
                        quote_amount=to_decimal(row.get("toAmount")),
                        raw=row,
                    )
                )
        state["fetchedUntil"] = newest

    # ---- Phase 3 ----

    def _earn_orders(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for category in ("FlexibleSaving", "OnChain"):
            sub_state = state.setdefault(category, {})
            params = {"category": category, "limit": 100}
            for rows in self._windowed("/v5/earn/order", params, sub_state, options, 30, "list"):
                for order in rows:
                    amount = to_decimal(order.get("orderValue") or order.get("amount"))
                    if amount <= 0 or order.get("status", "Success") != "Success":
                        continue
                    redeem = str(order.get("orderType", "")).lower() == "redeem"
                    records.append(
                        ExchangeRecord(
                            type=ExchangeRecordType.UNSTAKE if redeem else ExchangeRecordType.STAKE,
                            external_id=f"earn-{order['orderId']}",
                            timestamp=from_ms(order.get("createdAt") or order["updatedAt"]),
                            asset=order["coin"],
                            amount=amount,
                            raw=order,
                        )
                    )

    def _earn_yield(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for category in ("FlexibleSaving", "OnChain"):
            sub_state = state.setdefault(category, {})
            params = {"category": category, "limit": 100}
            for rows in self._windowed("/v5/earn/yield", params, sub_state, options, 30, "yield"):
                for row in rows:
                    amount = to_decimal(row.get("amount"))
                    if amount <= 0:
                        continue
                    created = row.get("createdAt") or row.get("createdTime")
                    records.append(
                        ExchangeRecord(
                            type=ExchangeRecordType.INTEREST,
                            external_id=f"yield-{row.get('id') or row.get('orderId') or created}-{row['coin']}",
                            timestamp=from_ms(created),
                            asset=row["coin"],
                            amount=amount,
                            raw=row,
                        )
                    )

    def _dividends(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        params = {"accountType": "UNIFIED", "limit": 50}
        for rows in self._windowed("/v5/account/transaction-log", params, state, options, 7, "list"):
            for log in rows:
                log_type = str(log.get("type", "")).upper()
                if not any(kind in log_type for kind in DIVIDEND_LOG_TYPES):
                    continue
                change = to_decimal(log.get("change") or log.get("cashFlow"))
                if change <= 0:
                    continue
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.DIVIDEND,
                        external_id=f"txlog-{log.get('id') or log['transactionTime']}-{log['currency']}",
                        timestamp=from_ms(log["transactionTime"]),
                        asset=log["currency"],
                        amount=change,
                        raw=log,
                    )
                )

    # ---- Phase 4 ----

    def _borrow_interest(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for rows in self._windowed("/v5/account/borrow-history", {"limit": 50}, state, options, 30, "list"):
            for row in rows:
                cost = to_decimal(row.get("borrowCost"))
                if cost <= 0:
                    continue
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.MARGIN_INTEREST,
                        external_id=f"borrowint-{row['createdTime']}-{row['currency']}",
                        timestamp=from_ms(row["createdTime"]),
                        asset=row["currency"],
                        amount=cost,
                        raw=row,
                    )
                )

    # ---- Helpers ----

    def _windowed(
        self,
        path: str,
        params: dict[str, Any],
        state: dict[str, Any],
        options: SyncOptions,
        span_days: int,
        list_key: str,
    ) -> Iterator[list[dict[str, Any]]]:
        def fetch(start_ms: int, end_ms: int) -> list[dict[str, Any]]:
            rows: list[dict[str, Any]] = []

            def page(cursor: str | None) -> tuple[list[dict[str, Any]], str | None]:
                result = self._http.get(path, {**params, "startTime": start_ms, "endTime": end_ms, "cursor": cursor})
                return result.get(list_key) or [], result.get("nextPageCursor") or None

            for items, _next in paginate_cursor(page):
                rows.extend(items)
            return rows

        now = self._now()
        earliest = max(options.since or now - self._max_history, now - self._max_history)
        return iter_windows(
            fetch, state, earliest_ms=to_ms(earliest), now_ms=to_ms(now), span_ms=span_days * DAY_MS
        )


__all__ = ["BybitConnector", "BybitSigner", "parse_symbol"]
