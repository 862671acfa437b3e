from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from config import config
from db.repositories import ConnectionRepository, TransactionRepository
from domain.accounts import ConnectionStatus
from domain.errors import JobError
from domain.ledger import UserId
from domain.records import PhaseStatus
from domain.sync_cursor import SyncCursor
from reconciliation.engine import ReconciliationEngine, ReconciliationSummary
from services.tax_lots import TaxLotService

from .jobs import SyncJobQueue, reconcile_job_id, sync_job_id, tax_lots_job_id
from .orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class SyncStatus(BaseModel):
    connection_id: str
    overall_status: ConnectionStatus
    phase_status: dict[int, PhaseStatus] = Field(default_factory=dict)
    total_transactions: int = 0
    last_error: str | None = None
    last_sync_at: datetime | None = None


class SyncService:
    """Entry point used by the CLI and any outer API layer."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        orchestrator: SyncOrchestrator | None = None,
        queue: SyncJobQueue | None = None,
        tax_lots: TaxLotService | None = None,
        reconciler_factory: Callable[[Session], ReconciliationEngine] = ReconciliationEngine,
    ) -> None:
        settings = config()
        self._session_factory = session_factory
        self._orchestrator = orchestrator or SyncOrchestrator(session_factory)
        self._queue = queue or SyncJobQueue(
            max_workers=settings.sync_workers,
            max_attempts=settings.sync_job_attempts,
            backoff_seconds=settings.sync_job_backoff_seconds,
        )
        self._tax_lots = tax_lots or TaxLotService(session_factory)
        self._reconciler_factory = reconciler_factory
        # Sync passes and standalone reconciliations of one connection never overlap.
        self._connection_locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    @property
    def queue(self) -> SyncJobQueue:
        return self._queue

    def start_sync(self, connection_id: str, full_sync: bool = False) -> str:
        self._require_connection(connection_id)
        return self._queue.submit(
            sync_job_id(connection_id),
            lambda: self._exclusive(connection_id, lambda: self._orchestrator.run(connection_id, full_sync=full_sync)),
        )

    def get_sync_status(self, connection_id: str) -> SyncStatus:
        with self._session_factory() as session:
            connection = ConnectionRepository(session).get(connection_id)
            if connection is None:
                raise JobError(f"Connection {connection_id} not found", connection_id=connection_id)
            total = TransactionRepository(session).count_for_connection(connection_id)

        overall = connection.status
        if self._queue.is_active(sync_job_id(connection_id)):
            overall = ConnectionStatus.SYNCING
        return SyncStatus(
            connection_id=connection_id,
            overall_status=overall,
            phase_status=SyncCursor(connection.sync_cursor).phase_statuses(),
            total_transactions=total,
            last_error=connection.last_error,
            last_sync_at=connection.last_sync_at,
        )

    def trigger_reconciliation(self, connection_id: str) -> str:
        """Queue a reconciliation pass; while a sync is running, its own closing pass stands in."""
        self._require_connection(connection_id)
        running_sync = sync_job_id(connection_id)
        if self._queue.is_active(running_sync):
            logger.info("Connection %s is syncing; reconciliation follows that sync", connection_id)
            return running_sync
        return self._queue.submit(
            reconcile_job_id(connection_id),
            lambda: self._exclusive(connection_id, lambda: self.reconcile(connection_id)),
        )

    def reconcile(self, connection_id: str) -> ReconciliationSummary:
        with self._session_factory() as session:
            return self._reconciler_factory(session).reconcile_connection(connection_id)

    def compute_tax_lots(self, user_id: UserId, tax_year: int | None = None) -> str:
        return self._queue.submit(
            tax_lots_job_id(user_id, tax_year),
            lambda: self._tax_lots.compute(user_id, tax_year=tax_year),
        )

    def _exclusive(self, connection_id: str, fn: Callable[[], Any]) -> Any:
        with self._locks_guard:
            lock = self._connection_locks[connection_id]
        with lock:
            return fn()

    def _require_connection(self, connection_id: str) -> None:
        with self._session_factory() as session:
            if ConnectionRepository(session).get(connection_id) is None:
                raise JobError(f"Connection {connection_id} not found", connection_id=connection_id)


__all__ = ["SyncService", "SyncStatus"]
