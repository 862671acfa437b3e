"""Runs the four sync phases for one exchange connection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from config import config
from connectors.base import ApiCredentials, ExchangeConnector, SupportsDepositAddresses, SupportsRealTimeBalances
from connectors.registry import create_connector
from db.repositories import AssetMappingRepository, ConnectionRepository, KnownAddressRepository, TransactionRepository
from domain.accounts import ConnectionStatus, EntityType, ExchangeConnection, KnownAddress
from domain.errors import JobError
from domain.ledger import TransactionType
from domain.pricing import PriceOracle
from domain.records import DepositAddress, EndpointError, ExchangeRecord, PhaseStatus, SyncOptions
from domain.sync_cursor import TOTAL_PHASES, SyncCursor
from importers.exchange_mapper import ExchangeRecordMapper
from reconciliation.engine import ReconciliationEngine, ReconciliationSummary
from services.price_oracle import enrich_prices
from utils.credentials import CredentialCipher

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[str, ApiCredentials], ExchangeConnector]
ReconcilerFactory = Callable[[Session], ReconciliationEngine]

# Binance, Bybit and OKX deposit history rows respectively.
DEPOSIT_ADDRESS_KEYS = ("address", "toAddress", "to")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncReport:
    connection_id: str
    inserted: int = 0
    duplicates: int = 0
    phase_status: dict[int, PhaseStatus] = field(default_factory=dict)
    errors: list[EndpointError] = field(default_factory=list)
    reconciliation: ReconciliationSummary | None = None

    @property
    def failed_phases(self) -> list[int]:
        return [phase for phase, status in self.phase_status.items() if status == PhaseStatus.FAILED]


class SyncOrchestrator:
    """Fetch, map and store one connection's history, then reconcile it.

    The cursor is written back after every phase, whatever the outcome, so an
    interrupted run resumes where it stopped. Records are persisted before the
    cursor that consumed them, and inserts are keyed on
    ``(connection_id, external_id)``, so replaying a phase never duplicates.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        cipher: CredentialCipher | None = None,
        connector_factory: ConnectorFactory = create_connector,
        price_oracle: PriceOracle | None = None,
        reconciler_factory: ReconcilerFactory = ReconciliationEngine,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher
        self._connector_factory = connector_factory
        self._price_oracle = price_oracle
        self._reconciler_factory = reconciler_factory
        self._now = now

    def run(self, connection_id: str, *, full_sync: bool = False) -> SyncReport:
        with self._session_factory() as session:
            connections = ConnectionRepository(session)
            connection = connections.get(connection_id)
            if connection is None:
                raise JobError(f"Connection {connection_id} not found", connection_id=connection_id)

            try:
                connector = self._connector_factory(connection.exchange_name, self._credentials(connection))
            except JobError as exc:
                connections.update_status(connection_id, ConnectionStatus.ERROR, last_error=str(exc))
                exc.connection_id = connection_id
                raise

            connections.update_status(connection_id, ConnectionStatus.SYNCING)
            try:
                report = self._run_phases(session, connection, connector, full_sync=full_sync)
            except Exception as exc:
                logger.exception("Sync of connection %s aborted", connection_id)
                connections.update_status(connection_id, ConnectionStatus.ERROR, last_error=str(exc) or type(exc).__name__)
                raise

            self._refresh_balances(connections, connection_id, connector)
            self._harvest_deposit_addresses(session, connection, connector)
            self._finish(connections, connection_id, report)
            report.reconciliation = self._reconcile(session, connection_id)
            return report

    def _credentials(self, connection: ExchangeConnection) -> ApiCredentials:
        cipher = self._cipher or CredentialCipher(config().credentials_key)
        return ApiCredentials(
            api_key=cipher.decrypt(connection.encrypted_api_key),
            api_secret=cipher.decrypt(connection.encrypted_api_secret),
            passphrase=cipher.decrypt(connection.encrypted_passphrase) if connection.encrypted_passphrase else None,
        )

    def _run_phases(
        self,
        session: Session,
        connection: ExchangeConnection,
        connector: ExchangeConnector,
        *,
        full_sync: bool,
    ) -> SyncReport:
        connections = ConnectionRepository(session)
        transactions = TransactionRepository(session)
        mapper = ExchangeRecordMapper(AssetMappingRepository(session).resolver())
        cursor = SyncCursor(connection.sync_cursor)
        since = None if full_sync else connection.last_sync_at
        report = SyncReport(connection_id=connection.id)

        for phase in range(1, TOTAL_PHASES + 1):
            if full_sync:
                cursor.reset_phase(phase)
            cursor.set_phase_status(phase, PhaseStatus.IN_PROGRESS)
            connections.save_cursor(connection.id, cursor.to_json())

            options = SyncOptions(since=since, cursor=cursor.phase_cursor(phase), full_sync=full_sync)
            try:
                result = connector.fetch_phase(phase, options)
                self._store_records(result.records, connection, mapper, transactions, report)
            except JobError:
                raise
            except Exception as exc:
                session.rollback()
                logger.error("Phase %s of connection %s failed: %s", phase, connection.id, exc, exc_info=True)
                cursor.set_phase_status(phase, PhaseStatus.FAILED)
                connections.save_cursor(connection.id, cursor.to_json())
                report.phase_status[phase] = PhaseStatus.FAILED
                continue

            status = PhaseStatus.PARTIAL if result.errors else PhaseStatus.DONE
            cursor.set_phase_cursor(phase, result.cursor)
            cursor.set_phase_status(phase, status)
            connections.save_cursor(connection.id, cursor.to_json())
            report.phase_status[phase] = status
            report.errors.extend(result.errors)
            logger.info(
                "Connection %s phase %s %s: %s records, %s endpoint errors",
                connection.id,
                phase,
                status.value,
                len(result.records),
                len(result.errors),
            )

        return report

    def _store_records(
        self,
        records: list[ExchangeRecord],
        connection: ExchangeConnection,
        mapper: ExchangeRecordMapper,
        transactions: TransactionRepository,
        report: SyncReport,
    ) -> None:
        mapped = mapper.map_batch(records, connection_id=connection.id, exchange_name=connection.exchange_name)
        for tx in mapped:
            if self._price_oracle is not None:
                tx = enrich_prices(tx, self._price_oracle)
            if transactions.create_with_flows(tx):
                report.inserted += 1
            else:
                report.duplicates += 1

    def _refresh_balances(self, connections: ConnectionRepository, connection_id: str, connector: ExchangeConnector) -> None:
        if not isinstance(connector, SupportsRealTimeBalances):
            return
        try:
            balances = connector.fetch_real_time_balances()
        except Exception as exc:
            logger.warning("Balance refresh for connection %s failed: %s", connection_id, exc)
            return
        connections.save_balances(connection_id, [b.model_dump(mode="json") for b in balances], self._now())

    def _harvest_deposit_addresses(
        self, session: Session, connection: ExchangeConnection, connector: ExchangeConnector
    ) -> None:
        exchange = connection.exchange_name.lower()
        found = [(deposit, f"{exchange}-history") for deposit in self._stored_deposit_addresses(session, connection.id)]
        if isinstance(connector, SupportsDepositAddresses):
            try:
                found.extend((deposit, f"{exchange}-api") for deposit in connector.fetch_deposit_addresses())
            except Exception as exc:
                logger.warning("Deposit address query for connection %s failed: %s", connection.id, exc)

        known = KnownAddressRepository(session)
        created = 0
        for deposit, source in found:
            created += known.upsert(
                KnownAddress(
                    address=deposit.address,
                    network=deposit.network,
                    name=f"{exchange.capitalize()} Deposit",
                    label=f"{exchange.upper()}_DEPOSIT_{deposit.network.upper()}",
                    entity_type=EntityType.EXCHANGE,
                    source=source,
                )
            )
        logger.info("Harvested %s deposit addresses for connection %s (%s new)", len(found), connection.id, created)

    @staticmethod
    def _stored_deposit_addresses(session: Session, connection_id: str) -> list[DepositAddress]:
        """Addresses recorded on past deposits, including coins no longer held."""
        deposits = TransactionRepository(session).list_for_connection(
            connection_id, types=(TransactionType.EXCHANGE_DEPOSIT,)
        )
        seen: dict[str, DepositAddress] = {}
        for tx in deposits:
            raw = tx.raw or {}
            address = next((raw[key] for key in DEPOSIT_ADDRESS_KEYS if raw.get(key)), None)
            if not isinstance(address, str) or address.lower() in seen:
                continue
            inbound = next((f for f in tx.flows if not f.is_fee), None)
            network = raw.get("network") or raw.get("chain") or (inbound.network if inbound else None) or ""
            coin = inbound.symbol if inbound else ""
            seen[address.lower()] = DepositAddress(coin=coin, network=str(network), address=address)
        return list(seen.values())

    def _finish(self, connections: ConnectionRepository, connection_id: str, report: SyncReport) -> None:
        failed = report.failed_phases
        if failed:
            message = f"phases {', '.join(map(str, failed))} failed"
            if report.errors:
                message += f"; {len(report.errors)} endpoint errors"
            connections.update_status(connection_id, ConnectionStatus.ERROR, last_error=message)
            return

        last_error = f"{len(report.errors)} endpoint errors" if report.errors else None
        connections.update_status(
            connection_id,
            ConnectionStatus.ACTIVE,
            last_error=last_error,
            last_sync_at=self._now(),
        )

    def _reconcile(self, session: Session, connection_id: str) -> ReconciliationSummary | None:
        try:
            return self._reconciler_factory(session).reconcile_connection(connection_id)
        except Exception:
            session.rollback()
            logger.exception("Reconciliation after sync of connection %s failed", connection_id)
            return None


__all__ = ["ConnectorFactory", "SyncOrchestrator", "SyncReport"]
