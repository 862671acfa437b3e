"""Users' wallets, exchange connections and the address book used by reconciliation."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from .ledger import AssetId, ConnectionId, TransactionCategory, TransactionId, UserId, WalletId


class ConnectionStatus(StrEnum):
    ACTIVE = "ACTIVE"
    SYNCING = "SYNCING"
    ERROR = "ERROR"


class EntityType(StrEnum):
    EXCHANGE = "EXCHANGE"
    DEFI = "DEFI"
    BRIDGE = "BRIDGE"
    OTHER = "OTHER"


class ReviewItemType(StrEnum):
    OFFRAMP = "OFFRAMP"


class ReviewItemStatus(StrEnum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


class Wallet(BaseModel):
    """A self-custodied on-chain wallet. The lowercased address doubles as its id."""

    user_id: UserId
    chain: str
    address: str
    label: str | None = None

    @field_validator("address")
    @classmethod
    def _normalize_address(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def id(self) -> WalletId:
        return WalletId(self.address)


class ExchangeConnection(BaseModel):
    id: ConnectionId = Field(default_factory=lambda: ConnectionId(str(uuid4())))
    user_id: UserId
    exchange_name: str
    encrypted_api_key: str
    encrypted_api_secret: str
    encrypted_passphrase: str | None = None
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    last_sync_at: datetime | None = None
    last_error: str | None = None
    sync_cursor: dict[str, Any] = Field(default_factory=dict)
    balances: list[dict[str, Any]] | None = None
    balances_updated_at: datetime | None = None


class KnownAddress(BaseModel):
    address: str
    network: str | None = None
    name: str
    label: str
    entity_type: EntityType
    source: str = "manual"

    @field_validator("address")
    @classmethod
    def _normalize_address(cls, value: str) -> str:
        return value.strip().lower()


class ReviewItem(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: UserId
    transaction_id: TransactionId
    related_transaction_id: TransactionId | None = None
    type: ReviewItemType
    status: ReviewItemStatus = ReviewItemStatus.PENDING
    priority: int = 0
    suggested_category: TransactionCategory | None = None
    estimated_value_usd: Decimal | None = None
    description: str = ""


class AssetMapping(BaseModel):
    symbol: str
    network: str | None = None
    asset_id: AssetId
    decimals: int = 8

    @field_validator("symbol")
    @classmethod
    def _upper_symbol(cls, value: str) -> str:
        return value.upper()


__all__ = [
    "AssetMapping",
    "ConnectionStatus",
    "EntityType",
    "ExchangeConnection",
    "KnownAddress",
    "ReviewItem",
    "ReviewItemStatus",
    "ReviewItemType",
    "Wallet",
]
