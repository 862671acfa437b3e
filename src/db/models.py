from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

# Snapshots computed over the whole history use this tax_year so the unique key stays non-null.
ALL_YEARS = 0


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: object) -> str | None:
        if value is None:
            return None
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    pass


class WalletOrm(Base):
    __tablename__ = "wallets"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    chain: Mapped[str] = mapped_column(String, nullable=False)
    address: Mapped[str] = mapped_column(String, nullable=False)
    label: Mapped[str | None] = mapped_column(String, nullable=True)


class ExchangeConnectionOrm(Base):
    __tablename__ = "exchange_connections"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    exchange_name: Mapped[str] = mapped_column(String, nullable=False)
    encrypted_api_key: Mapped[str] = mapped_column(String, nullable=False)
    encrypted_api_secret: Mapped[str] = mapped_column(String, nullable=False)
    encrypted_passphrase: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)
    sync_cursor: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    balances: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    balances_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TransactionOrm(Base):
    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("dedupe_key", name="uq_transactions_dedupe_key"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    dedupe_key: Mapped[str] = mapped_column(String, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)
    external_id: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    connection_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    wallet_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    exchange_name: Mapped[str | None] = mapped_column(String, nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    total_value_usd: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    linked_transaction_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    raw: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    flows: Mapped[list["TransactionFlowOrm"]] = relationship(
        cascade="all, delete-orphan", back_populates="transaction", lazy="selectin"
    )


class TransactionFlowOrm(Base):
    __tablename__ = "transaction_flows"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    transaction_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("transactions.id"), nullable=False)
    asset_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String, nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False)
    raw_amount: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    direction: Mapped[str] = mapped_column(String, nullable=False)
    value_usd: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    price_usd: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    is_fee: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    wallet_id: Mapped[str | None] = mapped_column(String, nullable=True)
    network: Mapped[str | None] = mapped_column(String, nullable=True)
    counterparty: Mapped[str | None] = mapped_column(String, nullable=True)

    transaction: Mapped[TransactionOrm] = relationship(back_populates="flows")


class PortfolioSnapshotOrm(Base):
    __tablename__ = "portfolio_snapshots"
    __table_args__ = (
        UniqueConstraint("user_id", "asset_id", "method", "tax_year", name="uq_portfolio_snapshot_key"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    asset_id: Mapped[str] = mapped_column(String, nullable=False)
    method: Mapped[str] = mapped_column(String, nullable=False)
    tax_year: Mapped[int] = mapped_column(Integer, nullable=False, default=ALL_YEARS)
    total_acquired: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    total_disposed: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    total_cost_basis: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    total_proceeds: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    realized_gain_loss: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    short_term_gain_loss: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    long_term_gain_loss: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    remaining_amount: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    unrealized_cost_basis: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    holdings_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_stale: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class KnownAddressOrm(Base):
    __tablename__ = "known_addresses"
    __table_args__ = (UniqueConstraint("address", name="uq_known_addresses_address"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    address: Mapped[str] = mapped_column(String, nullable=False)
    network: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    label: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)


class ReviewItemOrm(Base):
    __tablename__ = "review_items"
    __table_args__ = (UniqueConstraint("transaction_id", "type", name="uq_review_items_transaction_type"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    transaction_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("transactions.id"), nullable=False)
    related_transaction_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    suggested_category: Mapped[str | None] = mapped_column(String, nullable=True)
    estimated_value_usd: Mapped[Decimal | None] = mapped_column(DecimalAsString, nullable=True)
    description: Mapped[str] = mapped_column(String, nullable=False, default="")


class AssetMappingOrm(Base):
    __tablename__ = "asset_mappings"
    __table_args__ = (UniqueConstraint("symbol", "network", name="uq_asset_mappings_symbol_network"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    symbol: Mapped[str] = mapped_column(String, nullable=False)
    network: Mapped[str | None] = mapped_column(String, nullable=True)
    asset_id: Mapped[str] = mapped_column(String, nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=8)
