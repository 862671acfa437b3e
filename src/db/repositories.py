from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db import models
from domain.accounts import (
    AssetMapping,
    ConnectionStatus,
    EntityType,
    ExchangeConnection,
    KnownAddress,
    ReviewItem,
    ReviewItemStatus,
    ReviewItemType,
    Wallet,
)
from domain.assets import ResolvedAsset, StaticAssetResolver
from domain.cost_basis import CostBasisMethod, PortfolioSnapshot
from domain.ledger import (
    AssetId,
    CanonicalTransaction,
    ConnectionId,
    Flow,
    FlowDirection,
    TransactionCategory,
    TransactionId,
    TransactionSource,
    TransactionType,
    UserId,
    WalletId,
)

_UNSET: Any = object()


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utc_or_none(value: datetime | None) -> datetime | None:
    return _utc(value) if value is not None else None


class WalletRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, wallet: Wallet) -> Wallet:
        orm_wallet = self._session.get(models.WalletOrm, wallet.id)
        if orm_wallet is None:
            orm_wallet = models.WalletOrm(id=wallet.id, user_id=wallet.user_id, chain=wallet.chain, address=wallet.address)
            self._session.add(orm_wallet)
        orm_wallet.label = wallet.label
        self._session.commit()
        return self._to_domain(orm_wallet)

    def list_for_user(self, user_id: UserId) -> list[Wallet]:
        stmt = select(models.WalletOrm).where(models.WalletOrm.user_id == user_id).order_by(models.WalletOrm.id)
        return [self._to_domain(row) for row in self._session.scalars(stmt)]

    @staticmethod
    def _to_domain(orm_wallet: models.WalletOrm) -> Wallet:
        return Wallet(
            user_id=UserId(orm_wallet.user_id),
            chain=orm_wallet.chain,
            address=orm_wallet.address,
            label=orm_wallet.label,
        )


class ConnectionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, connection: ExchangeConnection) -> ExchangeConnection:
        orm_connection = models.ExchangeConnectionOrm(
            id=connection.id,
            user_id=connection.user_id,
            exchange_name=connection.exchange_name.lower(),
            encrypted_api_key=connection.encrypted_api_key,
            encrypted_api_secret=connection.encrypted_api_secret,
            encrypted_passphrase=connection.encrypted_passphrase,
            status=connection.status.value,
            last_sync_at=_utc_or_none(connection.last_sync_at),
            last_error=connection.last_error,
            sync_cursor=dict(connection.sync_cursor),
            balances=connection.balances,
            balances_updated_at=_utc_or_none(connection.balances_updated_at),
        )
        self._session.add(orm_connection)
        self._session.commit()
        return self._to_domain(orm_connection)

    def get(self, connection_id: str) -> ExchangeConnection | None:
        orm_connection = self._session.get(models.ExchangeConnectionOrm, connection_id)
        if orm_connection is None:
            return None
        self._session.refresh(orm_connection)
        return self._to_domain(orm_connection)

    def list_for_user(self, user_id: UserId) -> list[ExchangeConnection]:
        stmt = (
            select(models.ExchangeConnectionOrm)
            .where(models.ExchangeConnectionOrm.user_id == user_id)
            .order_by(models.ExchangeConnectionOrm.id)
        )
        return [self._to_domain(row) for row in self._session.scalars(stmt)]

    def save_cursor(self, connection_id: str, cursor: dict[str, Any]) -> None:
        self._update(connection_id, sync_cursor=dict(cursor))

    def update_status(
        self,
        connection_id: str,
        status: ConnectionStatus,
        *,
        last_error: str | None = _UNSET,
        last_sync_at: datetime | None = _UNSET,
    ) -> None:
        values: dict[str, Any] = {"status": status.value}
        if last_error is not _UNSET:
            values["last_error"] = last_error
        if last_sync_at is not _UNSET:
            values["last_sync_at"] = _utc_or_none(last_sync_at)
        self._update(connection_id, **values)

    def save_balances(self, connection_id: str, balances: list[dict[str, Any]], updated_at: datetime) -> None:
        self._update(connection_id, balances=balances, balances_updated_at=_utc(updated_at))

    def _update(self, connection_id: str, **values: Any) -> None:
        self._session.execute(
            update(models.ExchangeConnectionOrm).where(models.ExchangeConnectionOrm.id == connection_id).values(**values)
        )
        self._session.commit()

    @staticmethod
    def _to_domain(orm_connection: models.ExchangeConnectionOrm) -> ExchangeConnection:
        return ExchangeConnection(
            id=ConnectionId(orm_connection.id),
            user_id=UserId(orm_connection.user_id),
            exchange_name=orm_connection.exchange_name,
            encrypted_api_key=orm_connection.encrypted_api_key,
            encrypted_api_secret=orm_connection.encrypted_api_secret,
            encrypted_passphrase=orm_connection.encrypted_passphrase,
            status=ConnectionStatus(orm_connection.status),
            last_sync_at=_utc_or_none(orm_connection.last_sync_at),
            last_error=orm_connection.last_error,
            sync_cursor=dict(orm_connection.sync_cursor or {}),
            balances=orm_connection.balances,
            balances_updated_at=_utc_or_none(orm_connection.balances_updated_at),
        )


class TransactionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def exists(self, dedupe_key: str) -> bool:
        stmt = select(models.TransactionOrm.id).where(models.TransactionOrm.dedupe_key == dedupe_key)
        return self._session.execute(stmt).first() is not None

    def create_with_flows(self, tx: CanonicalTransaction) -> bool:
        """Insert a transaction and its flows. Returns False when the dedupe key already exists."""
        if self.exists(tx.dedupe_key):
            return False

        orm_tx = models.TransactionOrm(
            id=tx.id,
            dedupe_key=tx.dedupe_key,
            source=tx.source.value,
            external_id=tx.external_id,
            type=tx.type.value,
            category=tx.category.value if tx.category else None,
            timestamp=_utc(tx.timestamp),
            connection_id=tx.connection_id,
            wallet_id=tx.wallet_id,
            exchange_name=tx.exchange_name,
            tx_hash=tx.tx_hash.lower() if tx.tx_hash else None,
            total_value_usd=tx.total_value_usd,
            linked_transaction_id=tx.linked_transaction_id,
            raw=tx.raw,
        )
        orm_tx.flows = [
            models.TransactionFlowOrm(
                id=flow.id,
                asset_id=flow.asset_id,
                symbol=flow.symbol,
                decimals=flow.decimals,
                raw_amount=flow.raw_amount,
                amount=flow.amount,
                direction=flow.direction.value,
                value_usd=flow.value_usd,
                price_usd=flow.price_usd,
                is_fee=flow.is_fee,
                wallet_id=flow.wallet_id,
                network=flow.network,
                counterparty=flow.counterparty.lower() if flow.counterparty else None,
            )
            for flow in tx.flows
        ]

        self._session.add(orm_tx)
        try:
            self._session.commit()
        except IntegrityError:
            # A concurrent writer inserted the same key first.
            self._session.rollback()
            return False
        return True

    def get(self, tx_id: UUID) -> CanonicalTransaction | None:
        orm_tx = self._session.get(models.TransactionOrm, tx_id)
        if orm_tx is None:
            return None
        self._session.refresh(orm_tx)
        return self._to_domain(orm_tx)

    def count_for_connection(self, connection_id: str) -> int:
        stmt = select(func.count()).select_from(models.TransactionOrm).where(
            models.TransactionOrm.connection_id == connection_id
        )
        return int(self._session.execute(stmt).scalar_one())

    def list_for_connection(
        self,
        connection_id: str,
        *,
        types: Iterable[TransactionType] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CanonicalTransaction]:
        stmt = select(models.TransactionOrm).where(models.TransactionOrm.connection_id == connection_id)
        stmt = self._filter(stmt, types=types, start=start, end=end)
        return self._load(stmt)

    def list_for_owner(
        self,
        *,
        wallet_ids: Iterable[str],
        connection_ids: Iterable[str],
    ) -> list[CanonicalTransaction]:
        wallet_ids, connection_ids = list(wallet_ids), list(connection_ids)
        if not wallet_ids and not connection_ids:
            return []
        stmt = select(models.TransactionOrm).where(
            or_(
                models.TransactionOrm.wallet_id.in_(wallet_ids),
                models.TransactionOrm.connection_id.in_(connection_ids),
            )
        )
        return self._load(stmt)

    def find_onchain_transfers(
        self,
        *,
        wallet_ids: Iterable[str],
        asset_id: AssetId,
        tx_type: TransactionType,
        start: datetime,
        end: datetime,
        unlinked_only: bool = True,
    ) -> list[CanonicalTransaction]:
        direction = FlowDirection.OUT if tx_type == TransactionType.TRANSFER_OUT else FlowDirection.IN
        stmt = (
            select(models.TransactionOrm)
            .join(models.TransactionFlowOrm)
            .where(
                models.TransactionOrm.source == TransactionSource.ONCHAIN.value,
                models.TransactionOrm.wallet_id.in_(list(wallet_ids)),
                models.TransactionOrm.type == tx_type.value,
                models.TransactionFlowOrm.asset_id == asset_id,
                models.TransactionFlowOrm.direction == direction.value,
                models.TransactionFlowOrm.is_fee.is_(False),
            )
            .distinct()
        )
        if unlinked_only:
            stmt = stmt.where(models.TransactionOrm.linked_transaction_id.is_(None))
        stmt = self._filter(stmt, start=start, end=end)
        return self._load(stmt)

    def find_by_tx_hash(self, tx_hash: str, *, source: TransactionSource = TransactionSource.ONCHAIN) -> list[CanonicalTransaction]:
        stmt = select(models.TransactionOrm).where(
            models.TransactionOrm.tx_hash == tx_hash.lower(),
            models.TransactionOrm.source == source.value,
        )
        return self._load(stmt)

    def list_onchain_for_wallets(
        self, wallet_ids: Iterable[str], *, types: Iterable[TransactionType] | None = None
    ) -> list[CanonicalTransaction]:
        stmt = select(models.TransactionOrm).where(
            models.TransactionOrm.source == TransactionSource.ONCHAIN.value,
            models.TransactionOrm.wallet_id.in_(list(wallet_ids)),
        )
        stmt = self._filter(stmt, types=types)
        return self._load(stmt)

    def latest_onchain_timestamp(self, wallet_id: str) -> datetime | None:
        stmt = select(func.max(models.TransactionOrm.timestamp)).where(
            models.TransactionOrm.source == TransactionSource.ONCHAIN.value,
            models.TransactionOrm.wallet_id == wallet_id,
        )
        latest = self._session.execute(stmt).scalar_one_or_none()
        return _utc(latest) if latest is not None else None

    def link_pair(self, first_id: TransactionId, second_id: TransactionId) -> bool:
        """Link two transactions to each other in one database transaction.

        Each side is only written while its ``linked_transaction_id`` is still
        empty; if either side was already linked nothing is changed.
        """
        if first_id == second_id:
            return False
        for tx_id, other_id in ((first_id, second_id), (second_id, first_id)):
            result = self._session.execute(
                update(models.TransactionOrm)
                .where(
                    models.TransactionOrm.id == tx_id,
                    models.TransactionOrm.linked_transaction_id.is_(None),
                )
                .values(linked_transaction_id=other_id)
            )
            if result.rowcount != 1:
                self._session.rollback()
                return False
        self._session.commit()
        return True

    def set_category(self, tx_id: UUID, category: TransactionCategory) -> None:
        self._session.execute(
            update(models.TransactionOrm).where(models.TransactionOrm.id == tx_id).values(category=category.value)
        )
        self._session.commit()

    @staticmethod
    def _filter(stmt, *, types=None, start: datetime | None = None, end: datetime | None = None):
        if types is not None:
            stmt = stmt.where(models.TransactionOrm.type.in_([t.value for t in types]))
        if start is not None:
            stmt = stmt.where(models.TransactionOrm.timestamp >= _utc(start))
        if end is not None:
            stmt = stmt.where(models.TransactionOrm.timestamp <= _utc(end))
        return stmt

    def _load(self, stmt) -> list[CanonicalTransaction]:
        stmt = stmt.order_by(models.TransactionOrm.timestamp.asc(), models.TransactionOrm.id.asc()).execution_options(
            populate_existing=True
        )
        return [self._to_domain(row) for row in self._session.scalars(stmt).unique()]

    @staticmethod
    def _to_domain(orm_tx: models.TransactionOrm) -> CanonicalTransaction:
        flows = [
            Flow(
                id=flow.id,
                asset_id=AssetId(flow.asset_id),
                symbol=flow.symbol,
                decimals=flow.decimals,
                raw_amount=flow.raw_amount,
                amount=flow.amount,
                direction=FlowDirection(flow.direction),
                value_usd=flow.value_usd,
                price_usd=flow.price_usd,
                is_fee=flow.is_fee,
                wallet_id=WalletId(flow.wallet_id) if flow.wallet_id else None,
                network=flow.network,
                counterparty=flow.counterparty,
            )
            for flow in orm_tx.flows
        ]
        return CanonicalTransaction(
            id=orm_tx.id,
            source=TransactionSource(orm_tx.source),
            external_id=orm_tx.external_id,
            type=TransactionType(orm_tx.type),
            timestamp=_utc(orm_tx.timestamp),
            connection_id=ConnectionId(orm_tx.connection_id) if orm_tx.connection_id else None,
            wallet_id=WalletId(orm_tx.wallet_id) if orm_tx.wallet_id else None,
            exchange_name=orm_tx.exchange_name,
            tx_hash=orm_tx.tx_hash,
            category=TransactionCategory(orm_tx.category) if orm_tx.category else None,
            total_value_usd=orm_tx.total_value_usd,
            linked_transaction_id=orm_tx.linked_transaction_id,
            raw=orm_tx.raw,
            flows=flows,
        )


class SnapshotRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def mark_stale(self, user_id: UserId, *, tax_year: int | None = None) -> int:
        result = self._session.execute(
            update(models.PortfolioSnapshotOrm)
            .where(
                models.PortfolioSnapshotOrm.user_id == user_id,
                models.PortfolioSnapshotOrm.tax_year == self._year_key(tax_year),
            )
            .values(is_stale=True)
        )
        self._session.commit()
        return result.rowcount or 0

    def upsert(self, snapshot: PortfolioSnapshot) -> None:
        stmt = select(models.PortfolioSnapshotOrm).where(
            models.PortfolioSnapshotOrm.user_id == snapshot.user_id,
            models.PortfolioSnapshotOrm.asset_id == snapshot.asset_id,
            models.PortfolioSnapshotOrm.method == snapshot.method.value,
            models.PortfolioSnapshotOrm.tax_year == self._year_key(snapshot.tax_year),
        )
        orm_snapshot = self._session.scalars(stmt).first()
        if orm_snapshot is None:
            orm_snapshot = models.PortfolioSnapshotOrm(
                user_id=snapshot.user_id,
                asset_id=snapshot.asset_id,
                method=snapshot.method.value,
                tax_year=self._year_key(snapshot.tax_year),
            )
            self._session.add(orm_snapshot)

        for field in (
            "total_acquired",
            "total_disposed",
            "total_cost_basis",
            "total_proceeds",
            "realized_gain_loss",
            "short_term_gain_loss",
            "long_term_gain_loss",
            "remaining_amount",
            "unrealized_cost_basis",
            "holdings_count",
            "is_stale",
        ):
            setattr(orm_snapshot, field, getattr(snapshot, field))
        orm_snapshot.computed_at = _utc(snapshot.computed_at)
        self._session.commit()

    def list_for_user(
        self,
        user_id: UserId,
        *,
        method: CostBasisMethod | None = None,
        tax_year: int | None = None,
        include_stale: bool = False,
    ) -> list[PortfolioSnapshot]:
        stmt = select(models.PortfolioSnapshotOrm).where(
            models.PortfolioSnapshotOrm.user_id == user_id,
            models.PortfolioSnapshotOrm.tax_year == self._year_key(tax_year),
        )
        if method is not None:
            stmt = stmt.where(models.PortfolioSnapshotOrm.method == method.value)
        if not include_stale:
            stmt = stmt.where(models.PortfolioSnapshotOrm.is_stale.is_(False))
        stmt = stmt.order_by(models.PortfolioSnapshotOrm.method, models.PortfolioSnapshotOrm.asset_id).execution_options(
            populate_existing=True
        )
        return [self._to_domain(row) for row in self._session.scalars(stmt)]

    @staticmethod
    def _year_key(tax_year: int | None) -> int:
        return models.ALL_YEARS if tax_year is None else tax_year

    @staticmethod
    def _to_domain(orm_snapshot: models.PortfolioSnapshotOrm) -> PortfolioSnapshot:
        return PortfolioSnapshot(
            user_id=UserId(orm_snapshot.user_id),
            asset_id=AssetId(orm_snapshot.asset_id),
            method=CostBasisMethod(orm_snapshot.method),
            tax_year=None if orm_snapshot.tax_year == models.ALL_YEARS else orm_snapshot.tax_year,
            total_acquired=orm_snapshot.total_acquired,
            total_disposed=orm_snapshot.total_disposed,
            total_cost_basis=orm_snapshot.total_cost_basis,
            total_proceeds=orm_snapshot.total_proceeds,
            realized_gain_loss=orm_snapshot.realized_gain_loss,
            short_term_gain_loss=orm_snapshot.short_term_gain_loss,
            long_term_gain_loss=orm_snapshot.long_term_gain_loss,
            remaining_amount=orm_snapshot.remaining_amount,
            unrealized_cost_basis=orm_snapshot.unrealized_cost_basis,
            holdings_count=orm_snapshot.holdings_count,
            is_stale=orm_snapshot.is_stale,
            computed_at=_utc(orm_snapshot.computed_at),
        )


class KnownAddressRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def upsert(self, known: KnownAddress) -> bool:
        """Returns True when the address was new."""
        stmt = select(models.KnownAddressOrm).where(models.KnownAddressOrm.address == known.address)
        orm_address = self._session.scalars(stmt).first()
        created = orm_address is None
        if orm_address is None:
            orm_address = models.KnownAddressOrm(address=known.address)
            self._session.add(orm_address)
        orm_address.network = known.network
        orm_address.name = known.name
        orm_address.label = known.label
        orm_address.entity_type = known.entity_type.value
        orm_address.source = known.source
        self._session.commit()
        return created

    def get(self, address: str) -> KnownAddress | None:
        stmt = select(models.KnownAddressOrm).where(models.KnownAddressOrm.address == address.strip().lower())
        orm_address = self._session.scalars(stmt).first()
        return self._to_domain(orm_address) if orm_address is not None else None

    def by_entity_type(self, entity_type: EntityType) -> dict[str, KnownAddress]:
        stmt = select(models.KnownAddressOrm).where(models.KnownAddressOrm.entity_type == entity_type.value)
        return {row.address: self._to_domain(row) for row in self._session.scalars(stmt)}

    @staticmethod
    def _to_domain(orm_address: models.KnownAddressOrm) -> KnownAddress:
        return KnownAddress(
            address=orm_address.address,
            network=orm_address.network,
            name=orm_address.name,
            label=orm_address.label,
            entity_type=EntityType(orm_address.entity_type),
            source=orm_address.source,
        )


class ReviewItemRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_if_absent(self, item: ReviewItem) -> bool:
        stmt = select(models.ReviewItemOrm.id).where(
            models.ReviewItemOrm.transaction_id == item.transaction_id,
            models.ReviewItemOrm.type == item.type.value,
        )
        if self._session.execute(stmt).first() is not None:
            return False
        self._session.add(
            models.ReviewItemOrm(
                id=item.id,
                user_id=item.user_id,
                transaction_id=item.transaction_id,
                related_transaction_id=item.related_transaction_id,
                type=item.type.value,
                status=item.status.value,
                priority=item.priority,
                suggested_category=item.suggested_category.value if item.suggested_category else None,
                estimated_value_usd=item.estimated_value_usd,
                description=item.description,
            )
        )
        try:
            self._session.commit()
        except IntegrityError:
            self._session.rollback()
            return False
        return True

    def list_for_user(self, user_id: UserId, *, status: ReviewItemStatus | None = None) -> list[ReviewItem]:
        stmt = select(models.ReviewItemOrm).where(models.ReviewItemOrm.user_id == user_id)
        if status is not None:
            stmt = stmt.where(models.ReviewItemOrm.status == status.value)
        stmt = stmt.order_by(models.ReviewItemOrm.priority.desc(), models.ReviewItemOrm.id)
        return [self._to_domain(row) for row in self._session.scalars(stmt)]

    @staticmethod
    def _to_domain(orm_item: models.ReviewItemOrm) -> ReviewItem:
        return ReviewItem(
            id=orm_item.id,
            user_id=UserId(orm_item.user_id),
            transaction_id=orm_item.transaction_id,
            related_transaction_id=orm_item.related_transaction_id,
            type=ReviewItemType(orm_item.type),
            status=ReviewItemStatus(orm_item.status),
            priority=orm_item.priority,
            suggested_category=TransactionCategory(orm_item.suggested_category) if orm_item.suggested_category else None,
            estimated_value_usd=orm_item.estimated_value_usd,
            description=orm_item.description,
        )


class AssetMappingRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def upsert(self, mapping: AssetMapping) -> None:
        stmt = select(models.AssetMappingOrm).where(
            models.AssetMappingOrm.symbol == mapping.symbol,
            models.AssetMappingOrm.network.is_(None)
            if mapping.network is None
            else models.AssetMappingOrm.network == mapping.network,
        )
        orm_mapping = self._session.scalars(stmt).first()
        if orm_mapping is None:
            orm_mapping = models.AssetMappingOrm(symbol=mapping.symbol, network=mapping.network)
            self._session.add(orm_mapping)
        orm_mapping.asset_id = mapping.asset_id
        orm_mapping.decimals = mapping.decimals
        self._session.commit()

    def list(self) -> list[AssetMapping]:
        return [
            AssetMapping(
                symbol=row.symbol,
                network=row.network,
                asset_id=AssetId(row.asset_id),
                decimals=row.decimals,
            )
            for row in self._session.scalars(select(models.AssetMappingOrm))
        ]

    def resolver(self) -> StaticAssetResolver:
        """Snapshot of the stored mappings as an ``AssetResolver``."""
        return StaticAssetResolver(
            {
                (mapping.symbol, mapping.network): ResolvedAsset(asset_id=mapping.asset_id, decimals=mapping.decimals)
                for mapping in self.list()
            }
        )


__all__ = [
    "AssetMappingRepository",
    "ConnectionRepository",
    "KnownAddressRepository",
    "ReviewItemRepository",
    "SnapshotRepository",
    "TransactionRepository",
    "WalletRepository",
]
