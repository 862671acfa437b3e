"""Turns raw exchange records into canonical transactions with typed flows."""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Iterable

from domain.assets import AssetResolver, StaticAssetResolver, is_usd_like, split_pair
from domain.ledger import (
    CanonicalTransaction,
    ConnectionId,
    Flow,
    FlowDirection,
    TransactionCategory,
    TransactionSource,
    TransactionType,
    WalletId,
)
from domain.records import ExchangeRecord, ExchangeRecordType, TradeSide

logger = logging.getLogger(__name__)

ONE = Decimal(1)

TYPE_MAP: dict[ExchangeRecordType, TransactionType] = {
    ExchangeRecordType.TRADE: TransactionType.EXCHANGE_TRADE,
    ExchangeRecordType.DEPOSIT: TransactionType.EXCHANGE_DEPOSIT,
    ExchangeRecordType.WITHDRAWAL: TransactionType.EXCHANGE_WITHDRAWAL,
    ExchangeRecordType.FEE: TransactionType.FEE,
    ExchangeRecordType.FIAT_BUY: TransactionType.EXCHANGE_FIAT_BUY,
    ExchangeRecordType.FIAT_SELL: TransactionType.EXCHANGE_FIAT_SELL,
    ExchangeRecordType.CONVERT: TransactionType.EXCHANGE_CONVERT,
    ExchangeRecordType.DUST_CONVERT: TransactionType.EXCHANGE_DUST_CONVERT,
    ExchangeRecordType.C2C_TRADE: TransactionType.EXCHANGE_C2C_TRADE,
    ExchangeRecordType.STAKE: TransactionType.EXCHANGE_STAKE,
    ExchangeRecordType.UNSTAKE: TransactionType.EXCHANGE_UNSTAKE,
    ExchangeRecordType.INTEREST: TransactionType.EXCHANGE_INTEREST,
    ExchangeRecordType.DIVIDEND: TransactionType.EXCHANGE_DIVIDEND,
    ExchangeRecordType.MARGIN_BORROW: TransactionType.MARGIN_BORROW,
    ExchangeRecordType.MARGIN_REPAY: TransactionType.MARGIN_REPAY,
    ExchangeRecordType.MARGIN_INTEREST: TransactionType.MARGIN_INTEREST,
    ExchangeRecordType.MARGIN_LIQUIDATION: TransactionType.MARGIN_LIQUIDATION,
    ExchangeRecordType.MINING: TransactionType.EXCHANGE_INTEREST,
}

CATEGORY_MAP: dict[TransactionType, TransactionCategory] = {
    TransactionType.EXCHANGE_TRADE: TransactionCategory.DISPOSAL_SWAP,
    TransactionType.EXCHANGE_C2C_TRADE: TransactionCategory.DISPOSAL_SWAP,
    TransactionType.EXCHANGE_FIAT_BUY: TransactionCategory.DISPOSAL_SWAP,
    TransactionType.EXCHANGE_CONVERT: TransactionCategory.DISPOSAL_SWAP,
    TransactionType.EXCHANGE_DEPOSIT: TransactionCategory.TRANSFER_TO_EXCHANGE,
    TransactionType.EXCHANGE_WITHDRAWAL: TransactionCategory.TRANSFER_FROM_EXCHANGE,
    TransactionType.EXCHANGE_FIAT_SELL: TransactionCategory.DISPOSAL_SALE,
    TransactionType.EXCHANGE_STAKE: TransactionCategory.TRANSFER_INTERNAL,
    TransactionType.EXCHANGE_UNSTAKE: TransactionCategory.TRANSFER_INTERNAL,
    TransactionType.EXCHANGE_INTEREST: TransactionCategory.INCOME_STAKING_REWARD,
    TransactionType.EXCHANGE_DIVIDEND: TransactionCategory.INCOME_OTHER,
    TransactionType.EXCHANGE_DUST_CONVERT: TransactionCategory.DUST,
    TransactionType.MARGIN_BORROW: TransactionCategory.DEFI_BORROW,
    TransactionType.MARGIN_REPAY: TransactionCategory.DEFI_REPAY,
    TransactionType.MARGIN_INTEREST: TransactionCategory.FEE,
    TransactionType.MARGIN_LIQUIDATION: TransactionCategory.DISPOSAL_SALE,
    TransactionType.FEE: TransactionCategory.FEE,
}


def exchange_wallet_id(connection_id: str) -> WalletId:
    """Pseudo wallet that holds every flow of one exchange connection."""
    return WalletId(f"exchange:{connection_id}")


def _decimal(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


def _positive(value: Decimal | None) -> bool:
    return value is not None and value > 0


class ExchangeRecordMapper:
    """Maps ``ExchangeRecord`` rows to ``CanonicalTransaction`` objects.

    Each record type has a handler that fixes the flow shape; unknown symbols
    resolve to ``exchange:<SYMBOL>`` pseudo assets so nothing is dropped for
    lack of metadata.
    """

    def __init__(self, resolver: AssetResolver | None = None) -> None:
        self._resolver = resolver or StaticAssetResolver()
        self._handlers: dict[ExchangeRecordType, Callable[[ExchangeRecord, WalletId], list[Flow | None]]] = {
            ExchangeRecordType.TRADE: self._trade_flows,
            ExchangeRecordType.C2C_TRADE: self._trade_flows,
            ExchangeRecordType.DEPOSIT: self._inflow,
            ExchangeRecordType.WITHDRAWAL: self._withdrawal_flows,
            ExchangeRecordType.FIAT_BUY: self._fiat_buy_flows,
            ExchangeRecordType.FIAT_SELL: self._fiat_sell_flows,
            ExchangeRecordType.CONVERT: self._convert_flows,
            ExchangeRecordType.DUST_CONVERT: self._convert_flows,
            ExchangeRecordType.STAKE: self._stake_flows,
            ExchangeRecordType.UNSTAKE: self._unstake_flows,
            ExchangeRecordType.INTEREST: self._inflow,
            ExchangeRecordType.DIVIDEND: self._inflow,
            ExchangeRecordType.MINING: self._inflow,
            ExchangeRecordType.MARGIN_BORROW: self._inflow,
            ExchangeRecordType.MARGIN_REPAY: self._outflow,
            ExchangeRecordType.MARGIN_INTEREST: self._outflow,
            ExchangeRecordType.MARGIN_LIQUIDATION: self._liquidation_flows,
            ExchangeRecordType.FEE: self._fee_only,
        }

    def map(self, record: ExchangeRecord, *, connection_id: ConnectionId, exchange_name: str) -> CanonicalTransaction:
        wallet_id = exchange_wallet_id(connection_id)
        handler = self._handlers.get(record.type, self._generic_flows)
        flows = [flow for flow in handler(record, wallet_id) if flow is not None]
        if not flows:
            raise ValueError(f"Record {record.external_id} produced no flows")

        tx_type = TYPE_MAP.get(record.type, TransactionType.UNKNOWN)
        return CanonicalTransaction(
            source=TransactionSource.EXCHANGE,
            external_id=record.external_id,
            type=tx_type,
            timestamp=record.timestamp,
            connection_id=connection_id,
            wallet_id=wallet_id,
            exchange_name=exchange_name,
            tx_hash=record.tx_id,
            category=CATEGORY_MAP.get(tx_type),
            total_value_usd=self._total_value_usd(record, flows),
            raw=record.raw or None,
            flows=flows,
        )

    def map_batch(
        self,
        records: Iterable[ExchangeRecord],
        *,
        connection_id: ConnectionId,
        exchange_name: str,
    ) -> list[CanonicalTransaction]:
        mapped: list[CanonicalTransaction] = []
        for record in records:
            try:
                mapped.append(self.map(record, connection_id=connection_id, exchange_name=exchange_name))
            except ValueError as exc:
                logger.warning("Skipping %s record %s: %s", exchange_name, record.external_id, exc)
        return mapped

    # ---- Flow shapes ----

    def _trade_flows(self, record: ExchangeRecord, wallet_id: WalletId) -> list[Flow | None]:
        base = record.asset
        quote = self._quote_of(record)
        quote_amount = record.quote_amount if _positive(record.quote_amount) else record.total_value_usd
        base_price = record.price_usd
        if base_price is None and quote and is_usd_like(quote) and _positive(quote_amount) and record.amount > 0:
            base_price = quote_amount / record.amount

        buying = record.side != TradeSide.SELL
        base_dir, quote_dir = (FlowDirection.IN, FlowDirection.OUT) if buying else (FlowDirection.OUT, FlowDirection.IN)
        flows = [self._flow(base, record.amount, base_dir, wallet_id, price=base_price, network=record.network)]
        if quote and _positive(quote_amount):
            flows.append(self._flow(quote, quote_amount, quote_dir, wallet_id))
        flows.append(self._fee_flow(record, wallet_id, base_price=base_price))
        return flows

    def _inflow(self, record: ExchangeRecord, wallet_id: WalletId) -> list[Flow | None]:
        return [self._flow(record.asset, record.amount, FlowDirection.IN, wallet_id, price=record.price_usd, network=record.network)]

    def _outflow(self, record: ExchangeRecord, wallet_id: WalletId) -> list[Flow | None]:
        return [self._flow(record.asset, record.amount, FlowDirection.OUT, wallet_id, price=record.price_usd, network=record.network)]

    def _withdrawal_flows(self, record: ExchangeRecord, wallet_id: WalletId) -> list[Flow | None]:
        return [*self._outflow(record, wallet_id), self._fee_flow(record, wallet_id, default_asset=record.asset)]

    def _fiat_buy_flows(self, record: ExchangeRecord, wallet_id: WalletId) -> list[Flow | None]:
        return [*self._inflow(record, wallet_id), self._fee_flow(record, wallet_id)]

    def _fiat_sell_flows(self, record: ExchangeRecord, wallet_id: WalletId) -> list[Flow | None]:
        flows = [*self._outflow(record, wallet_id), self._fee_flow(record, wallet_id)]
        quote = self._quote_of(record)
        if quote and _positive(record.quote_amount):
            flows.append(self._flow(quote, record.quote_amount, FlowDirection.IN, wallet_id))
        return flows

    def _convert_flows(self, record: ExchangeRecord, wallet_id: WalletId) -> list[Flow | None]:
        target = record.quote_asset
        target_amount = record.quote_amount
        source_price, target_price = record.price_usd, None

        if target and _positive(target_amount) and record.amount > 0:
            if is_usd_like(target):
                source_price, target_price = target_amount / record.amount, ONE
            elif is_usd_like(record.asset):
                source_price, target_price = ONE, record.amount / target_amount
            else:
                source_price = source_price or self._raw_index_price(record.raw, "income")
                target_price = self._raw_index_price(record.raw, "expense")

        flows = [self._flow(record.asset, record.amount, FlowDirection.OUT, wallet_id, price=source_price)]
        if target and _positive(target_amount):
            flows.append(self._flow(target, target_amount, FlowDirection.IN, wallet_id, price=target_price))
        flows.append(self._fee_flow(record, wallet_id))
        return flows

    def _stake_flows(self, record: ExchangeRecord, wallet_id: WalletId) -> list[Flow | None]:
        flows = self._outflow(record, wallet_id)
        if record.quote_asset and _positive(record.quote_amount):
            flows.append(self._flow(record.quote_asset, record.quote_amount, FlowDirection.IN, wallet_id))
        return flows

    def _unstake_flows(self, record: ExchangeRecord, wallet_id: WalletId) -> list[Flow | None]:
        flows = self._inflow(record, wallet_id)
        if record.quote_asset and _positive(record.quote_amount):
            flows.append(self._flow(record.quote_asset, record.quote_amount, FlowDirection.OUT, wallet_id))
        return flows

    def _liquidation_flows(self, record: ExchangeRecord, wallet_id: WalletId) -> list[Flow | None]:
        flows = self._outflow(record, wallet_id)
        if record.quote_asset and _positive(record.quote_amount):
            flows.append(self._flow(record.quote_asset, record.quote_amount, FlowDirection.IN, wallet_id))
        return flows

    def _fee_only(self, record: ExchangeRecord, wallet_id: WalletId) -> list[Flow | None]:
        return [self._flow(record.asset, record.amount, FlowDirection.OUT, wallet_id, price=record.price_usd, is_fee=True)]

    def _generic_flows(self, record: ExchangeRecord, wallet_id: WalletId) -> list[Flow | None]:
        direction = FlowDirection.OUT if record.side == TradeSide.SELL else FlowDirection.IN
        return [self._flow(record.asset, record.amount, direction, wallet_id, price=record.price_usd)]

    # ---- Helpers ----

    def _flow(
        self,
        symbol: str,
        amount: Decimal | None,
        direction: FlowDirection,
        wallet_id: WalletId,
        *,
        price: Decimal | None = None,
        is_fee: bool = False,
        network: str | None = None,
    ) -> Flow | None:
        if not symbol or amount is None or amount <= 0:
            return None
        resolved = self._resolver.resolve(symbol, network)
        if is_usd_like(symbol):
            price = ONE
        if not _positive(price):
            price = None
        raw_amount = (amount * (Decimal(10) ** resolved.decimals)).to_integral_value(rounding=ROUND_HALF_UP)
        return Flow(
            asset_id=resolved.asset_id,
            symbol=symbol.upper(),
            decimals=resolved.decimals,
            raw_amount=str(int(raw_amount)),
            amount=amount,
            direction=direction,
            value_usd=amount * price if price is not None else None,
            price_usd=price,
            is_fee=is_fee,
            wallet_id=wallet_id,
            network=network,
        )

    def _fee_flow(
        self,
        record: ExchangeRecord,
        wallet_id: WalletId,
        *,
        default_asset: str | None = None,
        base_price: Decimal | None = None,
    ) -> Flow | None:
        fee_asset = record.fee_asset or default_asset
        if not fee_asset or not _positive(record.fee):
            return None
        price = base_price if fee_asset == record.asset else None
        return self._flow(fee_asset, record.fee, FlowDirection.OUT, wallet_id, price=price, is_fee=True)

    @staticmethod
    def _quote_of(record: ExchangeRecord) -> str | None:
        if record.quote_asset:
            return record.quote_asset
        parsed = split_pair(record.pair, record.asset)
        return parsed[1] if parsed else None

    @staticmethod
    def _raw_index_price(raw: dict[str, Any], leg: str) -> Decimal | None:
        entry = raw.get(leg) if isinstance(raw, dict) else None
        if isinstance(entry, dict):
            price = _decimal(entry.get("fillIdxPx"))
            if _positive(price):
                return price
        return None

    def _total_value_usd(self, record: ExchangeRecord, flows: list[Flow]) -> Decimal | None:
        principal = [flow.value_usd for flow in flows if not flow.is_fee and flow.value_usd is not None]
        total: Decimal | None = None
        if principal:
            # Both legs of a swap count, so a trade totals twice its notional.
            total = sum(principal, Decimal(0))
        elif record.total_value_usd is not None:
            total = record.total_value_usd

        if total is None or total == 0:
            extracted = self._value_from_raw(record)
            if _positive(extracted):
                total = extracted
        return total

    @staticmethod
    def _value_from_raw(record: ExchangeRecord) -> Decimal | None:
        raw = record.raw or {}
        if record.type in (ExchangeRecordType.TRADE, ExchangeRecordType.C2C_TRADE):
            quote = record.quote_asset or (split_pair(record.pair, record.asset) or (None, None))[1]
            return _decimal(raw.get("quoteQty")) if is_usd_like(quote) else None
        if record.type in (
            ExchangeRecordType.DEPOSIT,
            ExchangeRecordType.WITHDRAWAL,
            ExchangeRecordType.STAKE,
            ExchangeRecordType.UNSTAKE,
            ExchangeRecordType.INTEREST,
            ExchangeRecordType.DIVIDEND,
        ):
            return abs(record.amount) if is_usd_like(record.asset) else None
        if record.type == ExchangeRecordType.CONVERT:
            if is_usd_like(raw.get("toAsset")):
                return _decimal(raw.get("toAmount"))
            if is_usd_like(raw.get("fromAsset")):
                return _decimal(raw.get("fromAmount"))
            return None
        if record.type in (ExchangeRecordType.FIAT_BUY, ExchangeRecordType.FIAT_SELL):
            # sourceAmount is denominated in the fiat currency.
            return _decimal(raw.get("sourceAmount")) if is_usd_like(raw.get("fiatCurrency")) else None
        return None


__all__ = ["CATEGORY_MAP", "ExchangeRecordMapper", "TYPE_MAP", "exchange_wallet_id"]
