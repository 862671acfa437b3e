from __future__ import annotations

import argparse
import logging
from typing import Sequence

from sqlalchemy.orm import Session, sessionmaker

from config import config
from connectors.base import ApiCredentials
from connectors.registry import create_connector, supported_exchanges
from db.db import init_db
from db.repositories import (
    AssetMappingRepository,
    ConnectionRepository,
    KnownAddressRepository,
    SnapshotRepository,
    WalletRepository,
)
from domain.accounts import ExchangeConnection, Wallet
from domain.cost_basis import CostBasisMethod
from domain.ledger import UserId
from importers.moralis.moralis_importer import OnChainImporter
from reconciliation.known_addresses import seed_exchange_addresses
from services.price_oracle import build_default_oracle
from sync.jobs import JobState
from sync.orchestrator import SyncOrchestrator
from sync.service import SyncService
from utils.credentials import CredentialCipher

logger = logging.getLogger(__name__)


def build_service(session_factory: sessionmaker[Session], cipher: CredentialCipher) -> SyncService:
    with session_factory() as session:
        symbols = {mapping.asset_id: mapping.symbol for mapping in AssetMappingRepository(session).list()}
    orchestrator = SyncOrchestrator(session_factory, cipher=cipher, price_oracle=build_default_oracle(symbols))
    return SyncService(session_factory, orchestrator=orchestrator)


def add_connection(session_factory: sessionmaker[Session], cipher: CredentialCipher, args: argparse.Namespace) -> None:
    credentials = ApiCredentials(api_key=args.api_key, api_secret=args.api_secret, passphrase=args.passphrase)
    if args.test:
        result = create_connector(args.exchange, credentials).test_connection()
        if not result.valid:
            raise SystemExit(f"Credentials rejected by {args.exchange}: {result.error}")
        print(f"Credentials valid, permissions: {', '.join(result.permissions) or '-'}")

    connection = ExchangeConnection(
        user_id=UserId(args.user),
        exchange_name=args.exchange,
        encrypted_api_key=cipher.encrypt(args.api_key),
        encrypted_api_secret=cipher.encrypt(args.api_secret),
        encrypted_passphrase=cipher.encrypt(args.passphrase) if args.passphrase else None,
    )
    with session_factory() as session:
        created = ConnectionRepository(session).create(connection)
    print(created.id)


def add_wallet(session_factory: sessionmaker[Session], args: argparse.Namespace) -> None:
    with session_factory() as session:
        wallet = WalletRepository(session).add(
            Wallet(user_id=UserId(args.user), chain=args.chain, address=args.address, label=args.label)
        )
    print(wallet.id)


def run_sync(service: SyncService, args: argparse.Namespace) -> None:
    job_id = service.start_sync(args.connection_id, full_sync=args.full)
    job = service.queue.wait(job_id)
    if job.state != JobState.SUCCEEDED:
        raise SystemExit(f"Sync failed after {job.attempts} attempts: {job.error}")
    report = job.result
    print(f"Inserted {report.inserted} transactions ({report.duplicates} already stored)")
    for phase, status in sorted(report.phase_status.items()):
        print(f"  phase {phase}: {status.value}")
    for error in report.errors:
        print(f"  {error.endpoint}: {error.error}")
    if report.reconciliation is not None:
        print(f"Reconciliation: matched={report.reconciliation.matched} unmatched={report.reconciliation.unmatched}")


def print_status(service: SyncService, args: argparse.Namespace) -> None:
    status = service.get_sync_status(args.connection_id)
    print(f"Connection {status.connection_id}: {status.overall_status.value}")
    print(f"  transactions: {status.total_transactions}")
    print(f"  last sync:    {status.last_sync_at.isoformat() if status.last_sync_at else '-'}")
    print(f"  last error:   {status.last_error or '-'}")
    for phase, phase_status in sorted(status.phase_status.items()):
        print(f"  phase {phase}: {phase_status.value}")


def run_reconcile(service: SyncService, args: argparse.Namespace) -> None:
    job = service.queue.wait(service.trigger_reconciliation(args.connection_id))
    if job.state != JobState.SUCCEEDED:
        raise SystemExit(f"Reconciliation failed: {job.error}")
    summary = job.result
    print(
        f"matched={summary.matched} unmatched={summary.unmatched} "
        f"offramps={summary.offramps} address_classified={summary.address_classified}"
    )


def run_tax_lots(service: SyncService, session_factory: sessionmaker[Session], args: argparse.Namespace) -> None:
    job = service.queue.wait(service.compute_tax_lots(UserId(args.user), tax_year=args.year))
    if job.state != JobState.SUCCEEDED:
        raise SystemExit(f"Tax lot computation failed: {job.error}")
    method = CostBasisMethod(args.method)
    with session_factory() as session:
        snapshots = SnapshotRepository(session).list_for_user(UserId(args.user), method=method, tax_year=args.year)
    print(f"{'asset':<24} {'remaining':>18} {'cost basis':>14} {'proceeds':>14} {'gain/loss':>14}")
    for snapshot in snapshots:
        print(
            f"{snapshot.asset_id:<24} {snapshot.remaining_amount:>18.8f} {snapshot.total_cost_basis:>14.2f} "
            f"{snapshot.total_proceeds:>14.2f} {snapshot.realized_gain_loss:>14.2f}"
        )


def ingest_onchain(session_factory: sessionmaker[Session], args: argparse.Namespace) -> None:
    with session_factory() as session:
        importer = OnChainImporter(session)
        wallets = WalletRepository(session).list_for_user(UserId(args.user))
        for wallet in wallets:
            inserted = importer.ingest_wallet(wallet, full=args.full)
            print(f"{wallet.chain}:{wallet.address} +{inserted}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync exchange and on-chain history into one ledger.")
    parser.add_argument("--database-url", default=None)
    parser.add_argument("-v", "--verbose", action="store_true")
    commands = parser.add_subparsers(dest="command", required=True)

    cmd = commands.add_parser("add-connection", help="Store encrypted exchange API credentials")
    cmd.add_argument("--user", required=True)
    cmd.add_argument("--exchange", required=True, choices=supported_exchanges())
    cmd.add_argument("--api-key", required=True)
    cmd.add_argument("--api-secret", required=True)
    cmd.add_argument("--passphrase")
    cmd.add_argument("--test", action="store_true", help="Validate credentials before saving")

    cmd = commands.add_parser("add-wallet", help="Register a self-custodied wallet")
    cmd.add_argument("--user", required=True)
    cmd.add_argument("--chain", required=True)
    cmd.add_argument("--address", required=True)
    cmd.add_argument("--label")

    cmd = commands.add_parser("sync", help="Run a sync for one connection and wait for it")
    cmd.add_argument("connection_id")
    cmd.add_argument("--full", action="store_true", help="Ignore stored cursors and refetch everything")

    cmd = commands.add_parser("status", help="Show the sync status of one connection")
    cmd.add_argument("connection_id")

    cmd = commands.add_parser("reconcile", help="Link exchange transfers with on-chain transactions")
    cmd.add_argument("connection_id")

    cmd = commands.add_parser("tax-lots", help="Recompute cost basis snapshots for a user")
    cmd.add_argument("user")
    cmd.add_argument("--year", type=int, default=None)
    cmd.add_argument("--method", default=CostBasisMethod.FIFO.value, choices=[m.value for m in CostBasisMethod])

    cmd = commands.add_parser("ingest-onchain", help="Fetch wallet history for all of a user's wallets")
    cmd.add_argument("user")
    cmd.add_argument("--full", action="store_true")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    session_factory = init_db(args.database_url)
    with session_factory() as session:
        seed_exchange_addresses(KnownAddressRepository(session))

    if args.command == "add-wallet":
        add_wallet(session_factory, args)
        return
    if args.command == "ingest-onchain":
        ingest_onchain(session_factory, args)
        return

    cipher = CredentialCipher(config().credentials_key)
    if args.command == "add-connection":
        add_connection(session_factory, cipher, args)
        return

    service = build_service(session_factory, cipher)
    try:
        if args.command == "sync":
            run_sync(service, args)
        elif args.command == "status":
            print_status(service, args)
        elif args.command == "reconcile":
            run_reconcile(service, args)
        elif args.command == "tax-lots":
            run_tax_lots(service, session_factory, args)
    finally:
        service.queue.shutdown()


if __name__ == "__main__":
    main()
