"""Links exchange deposits and withdrawals to the on-chain transfers behind them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Protocol

from sqlalchemy.orm import Session

from config import config
from db.repositories import (
    ConnectionRepository,
    KnownAddressRepository,
    ReviewItemRepository,
    TransactionRepository,
    WalletRepository,
)
from domain.accounts import EntityType, ReviewItem, ReviewItemType
from domain.errors import JobError
from domain.ledger import (
    AssetId,
    CanonicalTransaction,
    Flow,
    FlowDirection,
    TransactionCategory,
    TransactionId,
    TransactionType,
)

logger = logging.getLogger(__name__)

MIN_AMOUNT = Decimal("0.0001")
OFFRAMP_PRIORITY = 10
SELL_TYPES = (TransactionType.EXCHANGE_TRADE, TransactionType.EXCHANGE_FIAT_SELL)


class OnChainIndex(Protocol):
    def find_transfers(
        self,
        *,
        wallet_ids: Iterable[str],
        asset_id: AssetId,
        tx_type: TransactionType,
        start: datetime,
        end: datetime,
    ) -> list[CanonicalTransaction]: ...

    def find_by_hash(self, tx_hash: str) -> list[CanonicalTransaction]: ...


class RepositoryOnChainIndex:
    """``OnChainIndex`` over the ONCHAIN transactions already ingested."""

    def __init__(self, transactions: TransactionRepository) -> None:
        self._transactions = transactions

    def find_transfers(
        self,
        *,
        wallet_ids: Iterable[str],
        asset_id: AssetId,
        tx_type: TransactionType,
        start: datetime,
        end: datetime,
    ) -> list[CanonicalTransaction]:
        return self._transactions.find_onchain_transfers(
            wallet_ids=wallet_ids,
            asset_id=asset_id,
            tx_type=tx_type,
            start=start,
            end=end,
            unlinked_only=True,
        )

    def find_by_hash(self, tx_hash: str) -> list[CanonicalTransaction]:
        return self._transactions.find_by_tx_hash(tx_hash)


@dataclass(frozen=True)
class ReconciliationSettings:
    deposit_window: timedelta = timedelta(hours=1)
    withdrawal_window: timedelta = timedelta(hours=2)
    amount_tolerance: Decimal = Decimal("0.02")
    amount_weight: Decimal = Decimal("0.7")
    time_weight: Decimal = Decimal("0.3")
    offramp_window: timedelta = timedelta(hours=24)

    @classmethod
    def from_config(cls) -> ReconciliationSettings:
        settings = config()
        return cls(
            deposit_window=timedelta(seconds=settings.reconciliation_deposit_window_seconds),
            withdrawal_window=timedelta(seconds=settings.reconciliation_withdrawal_window_seconds),
            amount_tolerance=Decimal(str(settings.reconciliation_amount_tolerance)),
            amount_weight=Decimal(str(settings.reconciliation_amount_weight)),
            time_weight=Decimal(str(settings.reconciliation_time_weight)),
            offramp_window=timedelta(seconds=settings.offramp_window_seconds),
        )


@dataclass(frozen=True)
class ReconciliationLink:
    exchange_transaction_id: TransactionId
    onchain_transaction_id: TransactionId
    confidence: Decimal
    method: str


@dataclass
class ReconciliationSummary:
    matched: int = 0
    unmatched: int = 0
    offramps: int = 0
    address_classified: int = 0
    links: list[ReconciliationLink] = field(default_factory=list)


@dataclass(frozen=True)
class ScoredCandidate:
    tx: CanonicalTransaction
    score: Decimal


def _principal_flow(tx: CanonicalTransaction, direction: FlowDirection) -> Flow | None:
    return next((f for f in tx.flows if not f.is_fee and f.direction == direction), None)


def amount_difference(expected: Decimal, actual: Decimal) -> Decimal:
    return abs(expected - actual) / max(expected, MIN_AMOUNT)


class ReconciliationEngine:
    """Cross-links one exchange connection's transfers with on-chain activity.

    Every step only writes what is missing: links are made with a conditional
    paired update, review items are keyed by transaction and categories are
    only set when different, so running it again changes nothing.
    """

    def __init__(
        self,
        session: Session,
        *,
        index: OnChainIndex | None = None,
        settings: ReconciliationSettings | None = None,
    ) -> None:
        self._connections = ConnectionRepository(session)
        self._wallets = WalletRepository(session)
        self._transactions = TransactionRepository(session)
        self._known_addresses = KnownAddressRepository(session)
        self._review_items = ReviewItemRepository(session)
        self._index = index or RepositoryOnChainIndex(self._transactions)
        self.settings = settings or ReconciliationSettings.from_config()

    def reconcile_connection(self, connection_id: str) -> ReconciliationSummary:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise JobError(f"Connection {connection_id} not found", connection_id=connection_id)

        wallet_ids = [wallet.id for wallet in self._wallets.list_for_user(connection.user_id)]
        summary = ReconciliationSummary()

        transfers = self._transactions.list_for_connection(
            connection_id,
            types=(TransactionType.EXCHANGE_DEPOSIT, TransactionType.EXCHANGE_WITHDRAWAL),
        )
        for tx in transfers:
            if tx.linked_transaction_id is not None:
                continue
            link = self._match(tx, wallet_ids)
            if link is None:
                summary.unmatched += 1
                continue
            summary.matched += 1
            summary.links.append(link)

        summary.offramps = self._detect_offramps(connection_id, connection.user_id)
        summary.address_classified = self._classify_addresses(wallet_ids)
        logger.info(
            "Reconciled connection %s: matched=%s unmatched=%s offramps=%s classified=%s",
            connection_id,
            summary.matched,
            summary.unmatched,
            summary.offramps,
            summary.address_classified,
        )
        return summary

    def _match(self, tx: CanonicalTransaction, wallet_ids: list[str]) -> ReconciliationLink | None:
        is_deposit = tx.type == TransactionType.EXCHANGE_DEPOSIT
        onchain_type = TransactionType.TRANSFER_OUT if is_deposit else TransactionType.TRANSFER_IN

        if tx.tx_hash:
            owned = set(wallet_ids)
            direct = [
                candidate
                for candidate in self._index.find_by_hash(tx.tx_hash)
                if candidate.wallet_id in owned and candidate.type == onchain_type
            ]
            for candidate in direct:
                if candidate.linked_transaction_id is not None:
                    continue
                if self._transactions.link_pair(tx.id, candidate.id):
                    return ReconciliationLink(tx.id, candidate.id, Decimal(1), "tx_hash")
            if direct:
                # The referenced transfer is already linked elsewhere.
                return None

        if not wallet_ids:
            return None

        flow = _principal_flow(tx, FlowDirection.IN if is_deposit else FlowDirection.OUT)
        if flow is None:
            return None

        window = self.settings.deposit_window if is_deposit else self.settings.withdrawal_window
        start, end = (tx.timestamp - window, tx.timestamp) if is_deposit else (tx.timestamp, tx.timestamp + window)
        candidates = self._index.find_transfers(
            wallet_ids=wallet_ids,
            asset_id=flow.asset_id,
            tx_type=onchain_type,
            start=start,
            end=end,
        )

        for candidate in self.rank_candidates(tx, flow.amount, candidates, window):
            if self._transactions.link_pair(tx.id, candidate.tx.id):
                confidence = max(Decimal(0), Decimal(1) - candidate.score)
                return ReconciliationLink(tx.id, candidate.tx.id, confidence, "amount_time")
            logger.info("Candidate %s for %s was linked concurrently", candidate.tx.id, tx.id)
        return None

    def rank_candidates(
        self,
        tx: CanonicalTransaction,
        amount: Decimal,
        candidates: Iterable[CanonicalTransaction],
        window: timedelta,
    ) -> list[ScoredCandidate]:
        """Score candidates, lowest first; ties go to the earlier, then lower id."""
        onchain_direction = FlowDirection.OUT if tx.type == TransactionType.EXCHANGE_DEPOSIT else FlowDirection.IN
        window_seconds = Decimal(str(window.total_seconds())) or Decimal(1)
        ranked: list[ScoredCandidate] = []
        for candidate in candidates:
            if candidate.linked_transaction_id is not None:
                continue
            flow = _principal_flow(candidate, onchain_direction)
            if flow is None:
                continue
            amount_diff = amount_difference(amount, flow.amount)
            if amount_diff > self.settings.amount_tolerance:
                continue
            time_diff = Decimal(str(abs((tx.timestamp - candidate.timestamp).total_seconds())))
            score = self.settings.amount_weight * amount_diff + self.settings.time_weight * time_diff / window_seconds
            ranked.append(ScoredCandidate(tx=candidate, score=score))

        ranked.sort(key=lambda c: (c.score, c.tx.timestamp, str(c.tx.id)))
        return ranked

    def _detect_offramps(self, connection_id: str, user_id: str) -> int:
        created = 0
        deposits = self._transactions.list_for_connection(connection_id, types=(TransactionType.EXCHANGE_DEPOSIT,))
        for deposit in deposits:
            if deposit.linked_transaction_id is None:
                continue
            if _principal_flow(deposit, FlowDirection.IN) is None:
                continue
            sells = self._transactions.list_for_connection(
                connection_id,
                types=SELL_TYPES,
                start=deposit.timestamp,
                end=deposit.timestamp + self.settings.offramp_window,
            )
            for sell in sells:
                sold = _principal_flow(sell, FlowDirection.OUT)
                if sold is None:
                    continue
                item = ReviewItem(
                    user_id=user_id,
                    transaction_id=sell.id,
                    related_transaction_id=deposit.id,
                    type=ReviewItemType.OFFRAMP,
                    priority=OFFRAMP_PRIORITY,
                    suggested_category=TransactionCategory.DISPOSAL_SALE,
                    estimated_value_usd=sell.total_value_usd,
                    description=f"{sold.amount} {sold.symbol} deposited on-chain and sold within "
                    f"{int(self.settings.offramp_window.total_seconds() // 3600)}h",
                )
                if self._review_items.create_if_absent(item):
                    created += 1
        return created

    def _classify_addresses(self, wallet_ids: list[str]) -> int:
        if not wallet_ids:
            return 0
        exchange_addresses = self._known_addresses.by_entity_type(EntityType.EXCHANGE)
        if not exchange_addresses:
            return 0

        classified = 0
        outgoing = self._transactions.list_onchain_for_wallets(
            wallet_ids, types=(TransactionType.TRANSFER_OUT, TransactionType.UNKNOWN)
        )
        for tx in outgoing:
            if tx.category == TransactionCategory.TRANSFER_TO_EXCHANGE:
                continue
            to_exchange = any(
                flow.direction == FlowDirection.OUT
                and not flow.is_fee
                and flow.counterparty is not None
                and flow.counterparty.lower() in exchange_addresses
                for flow in tx.flows
            )
            if to_exchange:
                self._transactions.set_category(tx.id, TransactionCategory.TRANSFER_TO_EXCHANGE)
                classified += 1
        return classified


__all__ = [
    "OnChainIndex",
    "ReconciliationEngine",
    "ReconciliationLink",
    "ReconciliationSettings",
    "ReconciliationSummary",
    "RepositoryOnChainIndex",
    "ScoredCandidate",
    "amount_difference",
]
