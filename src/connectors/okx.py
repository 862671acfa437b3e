from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable
from urllib.parse import urlencode

from config import config
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
from .pagination import from_ms, iter_newest_first, to_ms
from .rate_limiter import shared_limiter

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "okx"
BASE_URL = "https://www.okx.com"
MAX_HISTORY_DAYS = 3 * 365
PAGE_LIMIT = 100

DEPOSIT_SUCCESS = {"2"}
WITHDRAWAL_SUCCESS = {"2"}
CONVERT_BILL_TYPE = "30"
TRANSFER_BILL_TYPE = "1"
CONVERT_EXPENSE_SUBTYPE = "320"
CONVERT_INCOME_SUBTYPE = "321"
DEFAULT_ADDRESS_COINS = ("BTC", "ETH", "USDT", "USDC", "SOL")


class OkxSigner:
    def __init__(self, credentials: ApiCredentials, *, clock: Callable[[], datetime] | None = None) -> None:
        if not credentials.passphrase:
            raise ValueError("OKX API keys require a passphrase")
        self._credentials = credentials
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def sign(self, method: str, path: str, params: dict[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        timestamp = self._clock().isoformat(timespec="milliseconds").replace("+00:00", "Z")
        request_path = f"{path}?{urlencode(params)}" if params else path
        prehash = f"{timestamp}{method.upper()}{request_path}"
        digest = hmac.new(self._credentials.api_secret.encode("utf-8"), prehash.encode("utf-8"), hashlib.sha256)
        headers = {
            "OK-ACCESS-KEY": self._credentials.api_key,
            "OK-ACCESS-SIGN": base64.b64encode(digest.digest()).decode("ascii"),
            "OK-ACCESS-TIMESTAMP": timestamp,
            "OK-ACCESS-PASSPHRASE": self._credentials.passphrase or "",
        }
        return params, headers


def _unwrap(payload: Any) -> Any:
    if not isinstance(payload, dict):
        return payload
    if str(payload.get("code", "0")) != "0":
        raise ExchangeAPIError(payload.get("msg") or "OKX error", exchange=EXCHANGE_NAME, payload=payload)
    return payload.get("data") or []


def split_inst_id(inst_id: str) -> tuple[str, str]:
    parts = inst_id.split("-")
    return parts[0], parts[1] if len(parts) > 1 else ""


def _ts(row: dict[str, Any], *fields: str) -> int:
    for field in fields:
        value = row.get(field)
        if value not in (None, ""):
            return int(value)
    raise KeyError(f"none of {fields} present")


def _fallback_ref(row: dict[str, Any], *fields: str) -> str:
    return "-".join(str(row[field]) for field in fields)


class OkxConnector:
    """OKX unified account history, read through the v5 REST API."""

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
            limiter=shared_limiter(EXCHANGE_NAME, config().okx_requests_per_second),
            signer=OkxSigner(credentials),
            unwrap=_unwrap,
        )
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._max_history = timedelta(days=max_history_days)

    def fetch_phase(self, phase: int, options: SyncOptions) -> PhaseResult:
        endpoints: dict[int, tuple[tuple[str, Callable[..., None]], ...]] = {
            1: (
                ("deposits", self._deposits),
                ("withdrawals", self._withdrawals),
                ("trades", self._spot_fills),
            ),
            2: (
                ("convert", self._converts),
                ("easyConvert", self._easy_converts),
                ("billConverts", self._bill_converts),
            ),
            3: (
                ("stakingOrders", self._staking_orders),
                ("lendingHistory", self._lending_history),
                ("ethStaking", self._eth_staking),
            ),
            4: (
                ("marginTrades", self._margin_fills),
                ("billsArchive", self._bills_archive),
            ),
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
            configs = self._http.get("/api/v5/account/config")
        except Exception as exc:
            return ConnectionTestResult(valid=False, error=str(exc) or "Connection failed")
        if not configs:
            return ConnectionTestResult(valid=False, error="No account config returned")

        account = configs[0]
        perm = str(account.get("perm", ""))
        permissions = ["READ"]
        if "trade" in perm:
            permissions.append("TRADE")
        if "withdraw" in perm:
            permissions.append("WITHDRAW")
        uid = account.get("uid")
        return ConnectionTestResult(valid=True, permissions=permissions, account_id=str(uid) if uid else None)

    def fetch_real_time_balances(self) -> list[RealTimeBalance]:
        balances: list[RealTimeBalance] = []
        try:
            accounts = self._http.get("/api/v5/account/balance")
            for detail in (accounts[0].get("details") or []) if accounts else []:
                free, frozen = to_decimal(detail.get("availBal")), to_decimal(detail.get("frozenBal"))
                if free > 0 or frozen > 0 or to_decimal(detail.get("eq")) > 0:
                    balances.append(RealTimeBalance(asset=detail["ccy"], free=free, locked=frozen, source="trading"))
        except ExchangeAPIError as exc:
            logger.debug("OKX trading balance unavailable: %s", exc)

        try:
            for row in self._http.get("/api/v5/asset/balances") or []:
                free, frozen = to_decimal(row.get("availBal")), to_decimal(row.get("frozenBal"))
                if free > 0 or frozen > 0:
                    balances.append(RealTimeBalance(asset=row["ccy"], free=free, locked=frozen, source="funding"))
        except ExchangeAPIError as exc:
            logger.debug("OKX funding balance unavailable: %s", exc)

        try:
            for row in self._http.get("/api/v5/finance/savings/balance") or []:
                amount = to_decimal(row.get("amt"))
                if amount > 0:
                    balances.append(RealTimeBalance(asset=row["ccy"], free=to_decimal(0), locked=amount, source="savings"))
        except ExchangeAPIError as exc:
            logger.debug("OKX savings balance unavailable: %s", exc)

        return balances

    def fetch_deposit_addresses(self) -> list[DepositAddress]:
        funding = self._http.get("/api/v5/asset/balances") or []
        held = [
            row["ccy"]
            for row in funding
            if to_decimal(row.get("availBal")) > 0 or to_decimal(row.get("frozenBal")) > 0
        ]
        coins = list(dict.fromkeys([*held, *DEFAULT_ADDRESS_COINS]))

        addresses: list[DepositAddress] = []
        for coin in coins:
            try:
                rows = self._http.get("/api/v5/asset/deposit-address", {"ccy": coin})
            except ExchangeAPIError as exc:
                logger.debug("No OKX deposit address for %s: %s", coin, exc)
                continue
            for row in rows or []:
                if not row.get("addr"):
                    continue
                addresses.append(
                    DepositAddress(
                        coin=coin,
                        network=row.get("chain") or "",
                        address=row["addr"],
                        tag=row.get("tag") or row.get("memo") or None,
                    )
                )
        logger.info("Fetched %d OKX deposit addresses", len(addresses))
        return addresses

    # ---- Phase 1 ----

    def _deposits(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for page in self._newest_first("/api/v5/asset/deposit-history", {}, state, options, key_fields=("ts",)):
            for row in page:
                amount = to_decimal(row.get("amt"))
                if row.get("state") not in DEPOSIT_SUCCESS or amount <= 0:
                    continue
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.DEPOSIT,
                        external_id=f"dep-{row.get('depId') or _fallback_ref(row, 'ts', 'ccy')}",
                        timestamp=from_ms(row["ts"]),
                        asset=row["ccy"],
                        amount=amount,
                        network=row.get("chain"),
                        tx_id=row.get("txId") or None,
                        raw=row,
                    )
                )

    def _withdrawals(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for page in self._newest_first("/api/v5/asset/withdrawal-history", {}, state, options, key_fields=("ts",)):
            for row in page:
                amount = to_decimal(row.get("amt"))
                if str(row.get("state")) not in WITHDRAWAL_SUCCESS or amount <= 0:
                    continue
                fee = to_decimal(row.get("fee"))
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.WITHDRAWAL,
                        external_id=f"wd-{row.get('wdId') or _fallback_ref(row, 'ts', 'ccy')}",
                        timestamp=from_ms(row["ts"]),
                        asset=row["ccy"],
                        amount=amount,
                        fee=fee,
                        fee_asset=(row.get("feeCcy") or row["ccy"]) if fee > 0 else None,
                        network=row.get("chain"),
                        tx_id=row.get("txId") or None,
                        raw=row,
                    )
                )

    def _spot_fills(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        self._fills("SPOT", options, state, records)

    def _margin_fills(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        self._fills("MARGIN", options, state, records)

    def _fills(self, inst_type: str, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for page in self._newest_first(
            "/api/v5/trade/fills-history", {"instType": inst_type}, state, options, key_fields=("ts",), marker="billId"
        ):
            for fill in page:
                base, quote = split_inst_id(fill["instId"])
                size = to_decimal(fill["fillSz"])
                price = to_decimal(fill["fillPx"])
                side = TradeSide.BUY if fill.get("side") == "buy" else TradeSide.SELL
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.TRADE,
                        external_id=f"trade-{fill.get('tradeId') or fill['billId']}",
                        timestamp=from_ms(fill["ts"]),
                        asset=base,
                        amount=size,
                        fee=abs(to_decimal(fill.get("fee"))),
                        fee_asset=fill.get("feeCcy") or (base if side is TradeSide.BUY else quote),
                        side=side,
                        pair=fill["instId"],
                        quote_asset=quote,
                        quote_amount=size * price,
                        raw=fill,
                    )
                )

    # ---- Phase 2 ----

    def _converts(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for page in self._newest_first("/api/v5/asset/convert/history", {}, state, options, key_fields=("ts", "uTime")):
            for row in page:
                base_sz = to_decimal(row.get("fillBaseSz") or row.get("baseSz"))
                quote_sz = to_decimal(row.get("fillQuoteSz") or row.get("quoteSz"))
                if base_sz <= 0 or quote_sz <= 0:
                    continue
                # "side" tells which leg of the pair the user sold.
                sold_base = row.get("side", "sell") == "sell"
                base, quote = row.get("baseCcy", ""), row.get("quoteCcy", "")
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.CONVERT,
                        external_id=f"convert-{row.get('tradeId') or row.get('clTReqId') or row['ts']}",
                        timestamp=from_ms(_ts(row, "ts", "uTime")),
                        asset=base if sold_base else quote,
                        amount=base_sz if sold_base else quote_sz,
                        quote_asset=quote if sold_base else base,
                        quote_amount=quote_sz if sold_base else base_sz,
                        pair=row.get("instId"),
                        raw=row,
                    )
                )

    def _easy_converts(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for page in self._newest_first("/api/v5/trade/easy-convert-history", {}, state, options, key_fields=("uTime",)):
            for row in page:
                targets = row.get("toData") or [{"ccy": row.get("toCcy"), "amt": row.get("toAmt")}]
                target = targets[0] if targets else {}
                sources = row.get("fromData") or [{"ccy": row.get("fromCcy"), "amt": row.get("fillFromSz")}]
                for source in sources:
                    amount = to_decimal(source.get("amt"))
                    if amount <= 0 or not source.get("ccy"):
                        continue
                    records.append(
                        ExchangeRecord(
                            type=ExchangeRecordType.DUST_CONVERT,
                            external_id=f"dust-{row['uTime']}-{source['ccy']}",
                            timestamp=from_ms(row["uTime"]),
                            asset=source["ccy"],
                            amount=amount,
                            quote_asset=target.get("ccy"),
                            quote_amount=to_decimal(target.get("amt")),
                            raw=row,
                        )
                    )

    def _bill_converts(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        """Converts that only show up as paired account bills (expense 320, income 321) at one timestamp."""
        by_ts: dict[str, list[dict[str, Any]]] = {}
        for page in self._newest_first(
            "/api/v5/account/bills-archive",
            {"type": CONVERT_BILL_TYPE},
            state,
            options,
            key_fields=("ts",),
            marker="billId",
        ):
            for bill in page:
                by_ts.setdefault(str(bill["ts"]), []).append(bill)

        for ts, bills in by_ts.items():
            received = next((b for b in bills if str(b.get("subType")) == CONVERT_EXPENSE_SUBTYPE), None)
            spent = next((b for b in bills if str(b.get("subType")) == CONVERT_INCOME_SUBTYPE), None)
            if received is None or spent is None:
                logger.debug("Unpaired OKX convert bill at ts=%s", ts)
                continue
            records.append(
                ExchangeRecord(
                    type=ExchangeRecordType.CONVERT,
                    external_id=f"convert-bill-{received['billId']}",
                    timestamp=from_ms(ts),
                    asset=spent["ccy"],
                    amount=abs(to_decimal(spent.get("sz") or spent.get("balChg"))),
                    quote_asset=received["ccy"],
                    quote_amount=abs(to_decimal(received.get("sz") or received.get("balChg"))),
                    pair=received.get("instId") or spent.get("instId") or f"{spent['ccy']}-{received['ccy']}",
                    raw={"expense": received, "income": spent},
                )
            )

    # ---- Phase 3 ----

    def _staking_orders(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for page in self._newest_first(
            "/api/v5/finance/staking-defi/orders-history",
            {},
            state,
            options,
            key_fields=("ts", "purchasedTime"),
            marker="ordId",
        ):
            for order in page:
                invest = (order.get("investData") or [{}])[0]
                ccy = order.get("ccy") or invest.get("ccy")
                amount = to_decimal(invest.get("amt") or order.get("amt"))
                if amount <= 0 or not ccy:
                    continue
                action = str(order.get("state") or order.get("action") or "").lower()
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.UNSTAKE if "redeem" in action else ExchangeRecordType.STAKE,
                        external_id=f"staking-{order.get('ordId') or order['ts']}",
                        timestamp=from_ms(_ts(order, "ts", "purchasedTime")),
                        asset=ccy,
                        amount=amount,
                        raw=order,
                    )
                )

    def _lending_history(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for page in self._newest_first("/api/v5/finance/savings/lending-history", {}, state, options, key_fields=("ts",)):
            for row in page:
                amount = to_decimal(row.get("earnings") or row.get("amt"))
                if amount <= 0:
                    continue
                records.append(
                    ExchangeRecord(
                        type=ExchangeRecordType.INTEREST,
                        external_id=f"lending-{row['ts']}-{row['ccy']}",
                        timestamp=from_ms(row["ts"]),
                        asset=row["ccy"],
                        amount=amount,
                        raw=row,
                    )
                )

    def _eth_staking(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for staking_type, record_type in (("purchase", ExchangeRecordType.STAKE), ("redeem", ExchangeRecordType.UNSTAKE)):
            sub_state = state.setdefault(staking_type, {})
            for page in self._newest_first(
                "/api/v5/finance/staking-defi/eth/purchase-redeem-history",
                {"type": staking_type},
                sub_state,
                options,
                key_fields=("requestTime", "ts"),
                marker="requestTime",
            ):
                for row in page:
                    amount = to_decimal(row.get("amt"))
                    if amount <= 0:
                        continue
                    ts = _ts(row, "requestTime", "ts")
                    records.append(
                        ExchangeRecord(
                            type=record_type,
                            external_id=f"ethstaking-{staking_type}-{row.get('ordId') or ts}",
                            timestamp=from_ms(ts),
                            asset="ETH",
                            amount=amount,
                            raw=row,
                        )
                    )

    # ---- Phase 4 ----

    def _bills_archive(self, options: SyncOptions, state: dict[str, Any], records: list[ExchangeRecord]) -> None:
        for page in self._newest_first(
            "/api/v5/account/bills-archive", {}, state, options, key_fields=("ts",), marker="billId"
        ):
            for bill in page:
                bill_type = str(bill.get("type", ""))
                if bill_type in (CONVERT_BILL_TYPE, TRANSFER_BILL_TYPE):
                    continue
                change = to_decimal(bill.get("balChg") or bill.get("pnl"))
                record_type = map_bill_type(bill_type, change)
                if change == 0 or record_type is None:
                    continue
                records.append(
                    ExchangeRecord(
                        type=record_type,
                        external_id=f"bill-{bill.get('billId') or bill['ts']}",
                        timestamp=from_ms(bill["ts"]),
                        asset=bill["ccy"],
                        amount=abs(change),
                        raw=bill,
                    )
                )

    # ---- Helpers ----

    def _newest_first(
        self,
        path: str,
        params: dict[str, Any],
        state: dict[str, Any],
        options: SyncOptions,
        *,
        key_fields: tuple[str, ...],
        marker: str | None = None,
    ):
        earliest = options.since or self._now() - self._max_history

        def fetch(after: str | None) -> list[dict[str, Any]]:
            return self._http.get(path, {**params, "after": after, "limit": PAGE_LIMIT}) or []

        return iter_newest_first(
            fetch,
            state,
            key=lambda row: _ts(row, *key_fields),
            marker=lambda row: str(row[marker] if marker else _ts(row, *key_fields)),
            limit=PAGE_LIMIT,
            floor=to_ms(earliest),
        )


def map_bill_type(bill_type: str, change: Decimal) -> ExchangeRecordType | None:
    """Map an OKX account bill to a record type; ``None`` means the bill is covered elsewhere."""
    if bill_type in ("7", "8"):
        # Interest deduction and funding fees; a positive funding fee was received.
        return ExchangeRecordType.INTEREST if change > 0 else ExchangeRecordType.MARGIN_INTEREST
    if bill_type == "5":
        return ExchangeRecordType.MARGIN_LIQUIDATION
    return None


__all__ = ["OkxConnector", "OkxSigner", "map_bill_type", "split_inst_id"]
