from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable

from sqlalchemy.orm import Session, sessionmaker

from config import config
from db.repositories import ConnectionRepository, SnapshotRepository, TransactionRepository, WalletRepository
from domain.cost_basis import CostBasisEngine, CostBasisMethod, PortfolioSnapshot, build_entries
from domain.ledger import UserId
from importers.exchange_mapper import exchange_wallet_id

logger = logging.getLogger(__name__)


class TaxLotService:
    """Recomputes a user's portfolio snapshots from the full ledger.

    Existing snapshots for the scope are marked stale first, then every
    method's results are upserted, so assets that dropped out stay stale.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        engine: CostBasisEngine | None = None,
        methods: Iterable[CostBasisMethod] = tuple(CostBasisMethod),
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine or CostBasisEngine(long_term_days=config().long_term_holding_days)
        self._methods = tuple(methods)
        self._now = now

    def compute(self, user_id: UserId, tax_year: int | None = None) -> list[PortfolioSnapshot]:
        with self._session_factory() as session:
            wallet_ids = [wallet.id for wallet in WalletRepository(session).list_for_user(user_id)]
            connection_ids = [connection.id for connection in ConnectionRepository(session).list_for_user(user_id)]
            transactions = TransactionRepository(session).list_for_owner(
                wallet_ids=wallet_ids, connection_ids=connection_ids
            )
            owned = set(wallet_ids) | {exchange_wallet_id(connection_id) for connection_id in connection_ids}
            entries = build_entries(transactions, owned)

            snapshots = SnapshotRepository(session)
            stale = snapshots.mark_stale(user_id, tax_year=tax_year)
            computed_at = self._now()
            results: list[PortfolioSnapshot] = []
            for method in self._methods:
                for asset_result in self._engine.compute(entries, method, tax_year=tax_year).values():
                    if asset_result.unmatched_disposed:
                        logger.warning(
                            "User %s disposed %s %s without matching acquisitions (%s)",
                            user_id,
                            asset_result.unmatched_disposed,
                            asset_result.asset_id,
                            method.value,
                        )
                    snapshot = PortfolioSnapshot.from_cost_basis(user_id, asset_result, computed_at)
                    snapshots.upsert(snapshot)
                    results.append(snapshot)

        logger.info(
            "Computed %s snapshots for user %s (tax_year=%s, %s previously stale-marked)",
            len(results),
            user_id,
            tax_year,
            stale,
        )
        return results


__all__ = ["TaxLotService"]
