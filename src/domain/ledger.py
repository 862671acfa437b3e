from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, NewType
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, model_validator

ChainId = NewType("ChainId", str)
WalletAddress = NewType("WalletAddress", str)
AssetId = NewType("AssetId", str)
TransactionId = NewType("TransactionId", UUID)
FlowId = NewType("FlowId", UUID)
WalletId = NewType("WalletId", str)
ConnectionId = NewType("ConnectionId", str)
UserId = NewType("UserId", str)


class TransactionSource(StrEnum):
    EXCHANGE = "EXCHANGE"
    ONCHAIN = "ONCHAIN"


class TransactionType(StrEnum):
    EXCHANGE_TRADE = "EXCHANGE_TRADE"
    EXCHANGE_DEPOSIT = "EXCHANGE_DEPOSIT"
    EXCHANGE_WITHDRAWAL = "EXCHANGE_WITHDRAWAL"
    EXCHANGE_FIAT_BUY = "EXCHANGE_FIAT_BUY"
    EXCHANGE_FIAT_SELL = "EXCHANGE_FIAT_SELL"
    EXCHANGE_CONVERT = "EXCHANGE_CONVERT"
    EXCHANGE_DUST_CONVERT = "EXCHANGE_DUST_CONVERT"
    EXCHANGE_C2C_TRADE = "EXCHANGE_C2C_TRADE"
    EXCHANGE_STAKE = "EXCHANGE_STAKE"
    EXCHANGE_UNSTAKE = "EXCHANGE_UNSTAKE"
    EXCHANGE_INTEREST = "EXCHANGE_INTEREST"
    EXCHANGE_DIVIDEND = "EXCHANGE_DIVIDEND"
    MARGIN_BORROW = "MARGIN_BORROW"
    MARGIN_REPAY = "MARGIN_REPAY"
    MARGIN_INTEREST = "MARGIN_INTEREST"
    MARGIN_LIQUIDATION = "MARGIN_LIQUIDATION"
    FEE = "FEE"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    SWAP = "SWAP"
    UNKNOWN = "UNKNOWN"


class TransactionCategory(StrEnum):
    DISPOSAL_SWAP = "DISPOSAL_SWAP"
    DISPOSAL_SALE = "DISPOSAL_SALE"
    TRANSFER_TO_EXCHANGE = "TRANSFER_TO_EXCHANGE"
    TRANSFER_FROM_EXCHANGE = "TRANSFER_FROM_EXCHANGE"
    TRANSFER_INTERNAL = "TRANSFER_INTERNAL"
    INCOME_STAKING_REWARD = "INCOME_STAKING_REWARD"
    INCOME_OTHER = "INCOME_OTHER"
    DUST = "DUST"
    DEFI_BORROW = "DEFI_BORROW"
    DEFI_REPAY = "DEFI_REPAY"
    FEE = "FEE"


class FlowDirection(StrEnum):
    IN = "IN"
    OUT = "OUT"


class Flow(BaseModel):
    """A single directional asset movement owned by a transaction.

    ``amount`` is always positive; the sign lives in ``direction``.
    ``raw_amount`` is the amount scaled by ``10 ** decimals`` and kept as an
    integer string so it survives any storage backend.
    """

    id: FlowId = FlowId(Field(default_factory=uuid4))
    asset_id: AssetId
    symbol: str
    decimals: int = 8
    raw_amount: str
    amount: Decimal
    direction: FlowDirection
    value_usd: Decimal | None = None
    price_usd: Decimal | None = None
    is_fee: bool = False
    wallet_id: WalletId | None = None
    network: str | None = None
    counterparty: str | None = None

    @model_validator(mode="after")
    def _validate_amounts(self) -> Flow:
        if self.amount <= 0:
            raise ValueError("Flow.amount must be > 0")
        if self.value_usd is not None and self.value_usd < 0:
            raise ValueError("Flow.value_usd must be >= 0")
        return self

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.direction == FlowDirection.IN else -self.amount


class CanonicalTransaction(BaseModel):
    id: TransactionId = TransactionId(Field(default_factory=uuid4))
    source: TransactionSource
    external_id: str
    type: TransactionType
    timestamp: datetime
    connection_id: ConnectionId | None = None
    wallet_id: WalletId | None = None
    exchange_name: str | None = None
    tx_hash: str | None = None
    category: TransactionCategory | None = None
    total_value_usd: Decimal | None = None
    linked_transaction_id: TransactionId | None = None
    raw: dict[str, Any] | None = None
    flows: list[Flow] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_fields(self) -> CanonicalTransaction:
        if not self.external_id:
            raise ValueError("CanonicalTransaction.external_id must be non-empty")
        if self.source == TransactionSource.EXCHANGE and self.connection_id is None:
            raise ValueError("Exchange transactions require a connection_id")
        return self

    @property
    def dedupe_key(self) -> str:
        if self.source == TransactionSource.EXCHANGE:
            return f"{self.connection_id}:{self.external_id}"
        return f"onchain:{self.wallet_id}:{self.external_id}"


__all__ = [
    "AssetId",
    "CanonicalTransaction",
    "ChainId",
    "ConnectionId",
    "Flow",
    "FlowDirection",
    "FlowId",
    "TransactionCategory",
    "TransactionId",
    "TransactionSource",
    "TransactionType",
    "UserId",
    "WalletAddress",
    "WalletId",
]
