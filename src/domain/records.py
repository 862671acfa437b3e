"""Raw exchange-side records and the connector result types."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ExchangeRecordType(StrEnum):
    TRADE = "TRADE"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    FEE = "FEE"
    FIAT_BUY = "FIAT_BUY"
    FIAT_SELL = "FIAT_SELL"
    CONVERT = "CONVERT"
    DUST_CONVERT = "DUST_CONVERT"
    C2C_TRADE = "C2C_TRADE"
    STAKE = "STAKE"
    UNSTAKE = "UNSTAKE"
    INTEREST = "INTEREST"
    DIVIDEND = "DIVIDEND"
    MARGIN_BORROW = "MARGIN_BORROW"
    MARGIN_REPAY = "MARGIN_REPAY"
    MARGIN_INTEREST = "MARGIN_INTEREST"
    MARGIN_LIQUIDATION = "MARGIN_LIQUIDATION"
    MINING = "MINING"


class TradeSide(StrEnum):
    BUY = "BUY"
    SELL = "SELL"


class PhaseStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"


class ExchangeRecord(BaseModel):
    """One raw activity row as emitted by a connector.

    Amounts are absolute values; direction is implied by ``type`` and ``side``.
    """

    model_config = ConfigDict(frozen=True)

    type: ExchangeRecordType
    external_id: str
    timestamp: datetime
    asset: str
    amount: Decimal
    price_usd: Decimal | None = None
    total_value_usd: Decimal | None = None
    fee: Decimal | None = None
    fee_asset: str | None = None
    side: TradeSide | None = None
    pair: str | None = None
    quote_asset: str | None = None
    quote_amount: Decimal | None = None
    network: str | None = None
    tx_id: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @field_validator("asset", "fee_asset", "quote_asset")
    @classmethod
    def _upper_symbol(cls, value: str | None) -> str | None:
        return value.upper() if value else value


class EndpointError(BaseModel):
    endpoint: str
    error: str


class SyncOptions(BaseModel):
    since: datetime | None = None
    cursor: dict[str, Any] = Field(default_factory=dict)
    full_sync: bool = False


class PhaseResult(BaseModel):
    phase: int
    records: list[ExchangeRecord] = Field(default_factory=list)
    cursor: dict[str, Any] = Field(default_factory=dict)
    errors: list[EndpointError] = Field(default_factory=list)


class ConnectionTestResult(BaseModel):
    valid: bool
    permissions: list[str] = Field(default_factory=list)
    account_id: str | None = None
    error: str | None = None


class RealTimeBalance(BaseModel):
    asset: str
    free: Decimal
    locked: Decimal = Decimal(0)
    source: str = "spot"


class DepositAddress(BaseModel):
    coin: str
    network: str
    address: str
    tag: str | None = None


__all__ = [
    "ConnectionTestResult",
    "DepositAddress",
    "EndpointError",
    "ExchangeRecord",
    "ExchangeRecordType",
    "PhaseResult",
    "PhaseStatus",
    "RealTimeBalance",
    "SyncOptions",
    "TradeSide",
]
