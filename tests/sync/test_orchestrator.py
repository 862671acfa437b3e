from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session, sessionmaker

from db.repositories import ConnectionRepository, KnownAddressRepository, TransactionRepository
from domain.accounts import ConnectionStatus, EntityType
from domain.errors import CredentialsError, JobError
from domain.ledger import TransactionType
from domain.records import DepositAddress, ExchangeRecordType, PhaseStatus, RealTimeBalance, TradeSide
from domain.sync_cursor import SyncCursor
from sync.orchestrator import SyncOrchestrator
from tests.helpers.factories import at, make_connection, record
from tests.helpers.fake_connector import FakeConnector
from utils.credentials import CredentialCipher, generate_key

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _records() -> dict[int, list]:
    return {
        1: [
            record(ExchangeRecordType.DEPOSIT, "dep-1", timestamp=at(1), asset="ETH", amount="2"),
            record(
                ExchangeRecordType.TRADE,
                "trade-ETHUSDT-1",
                timestamp=at(5),
                asset="ETH",
                amount="1",
                side=TradeSide.SELL,
                pair="ETHUSDT",
                quote_asset="USDT",
                quote_amount="2000",
            ),
            record(ExchangeRecordType.WITHDRAWAL, "wd-1", timestamp=at(9), asset="USDT", amount="500"),
        ],
        2: [
            record(
                ExchangeRecordType.CONVERT,
                "convert-1",
                timestamp=at(20),
                asset="BNB",
                amount="1",
                quote_asset="USDT",
                quote_amount="300",
            )
        ],
        3: [record(ExchangeRecordType.INTEREST, "flexreward-1", timestamp=at(30), asset="USDT", amount="0.5")],
        4: [],
    }


def _orchestrator(
    session_factory: sessionmaker[Session], cipher: CredentialCipher, connector: FakeConnector
) -> SyncOrchestrator:
    return SyncOrchestrator(
        session_factory,
        cipher=cipher,
        connector_factory=lambda name, credentials: connector,
        now=lambda: NOW,
    )


def test_sync_persists_all_phases_and_marks_connection_active(
    test_session: Session, test_session_factory: sessionmaker[Session], cipher: CredentialCipher
) -> None:
    connection = make_connection(test_session, cipher)
    connector = FakeConnector(_records())

    report = _orchestrator(test_session_factory, cipher, connector).run(connection.id)

    assert report.inserted == 5
    assert report.duplicates == 0
    assert report.phase_status == {phase: PhaseStatus.DONE for phase in range(1, 5)}
    assert [phase for phase, _ in connector.calls] == [1, 2, 3, 4]

    stored = ConnectionRepository(test_session).get(connection.id)
    assert stored is not None
    assert stored.status == ConnectionStatus.ACTIVE
    assert stored.last_error is None
    assert stored.last_sync_at == NOW
    assert TransactionRepository(test_session).count_for_connection(connection.id) == 5


def test_sync_is_idempotent_when_replayed_from_scratch(
    test_session: Session, test_session_factory: sessionmaker[Session], cipher: CredentialCipher
) -> None:
    connection = make_connection(test_session, cipher)
    orchestrator = _orchestrator(test_session_factory, cipher, FakeConnector(_records()))

    orchestrator.run(connection.id)
    replay = orchestrator.run(connection.id, full_sync=True)

    assert replay.inserted == 0
    assert replay.duplicates == 5
    assert TransactionRepository(test_session).count_for_connection(connection.id) == 5


def test_unexpected_phase_error_fails_only_that_phase(
    test_session: Session, test_session_factory: sessionmaker[Session], cipher: CredentialCipher
) -> None:
    connection = make_connection(test_session, cipher)
    crashing = FakeConnector(_records(), crashing_phases={3})

    report = _orchestrator(test_session_factory, cipher, crashing).run(connection.id)

    assert [phase for phase, _ in crashing.calls] == [1, 2, 3, 4]
    assert report.phase_status == {
        1: PhaseStatus.DONE,
        2: PhaseStatus.DONE,
        3: PhaseStatus.FAILED,
        4: PhaseStatus.DONE,
    }
    assert report.inserted == 4

    stored = ConnectionRepository(test_session).get(connection.id)
    assert stored is not None
    assert stored.status == ConnectionStatus.ERROR
    assert stored.last_error == "phases 3 failed"
    assert stored.last_sync_at is None
    cursor = SyncCursor(stored.sync_cursor)
    assert cursor.phase_status(3) == PhaseStatus.FAILED
    assert cursor.phase_cursor(1) == {"offset": 3}
    assert cursor.phase_cursor(3) == {}

    healthy = FakeConnector(_records())
    report = _orchestrator(test_session_factory, cipher, healthy).run(connection.id)

    resumed_cursors = {phase: options.cursor for phase, options in healthy.calls}
    assert resumed_cursors[1] == {"offset": 3}
    assert resumed_cursors[2] == {"offset": 1}
    assert resumed_cursors[3] == {}
    assert report.inserted == 1
    assert TransactionRepository(test_session).count_for_connection(connection.id) == 5


class _EthPriceOutage:
    def usd_price(self, asset_id: str, timestamp: datetime) -> Decimal | None:
        if asset_id.endswith("ETH"):
            raise RuntimeError("price backend down")
        return None


def test_error_while_storing_records_fails_the_phase_without_advancing_it(
    test_session: Session, test_session_factory: sessionmaker[Session], cipher: CredentialCipher
) -> None:
    connection = make_connection(test_session, cipher)
    connector = FakeConnector(_records())
    orchestrator = SyncOrchestrator(
        test_session_factory,
        cipher=cipher,
        connector_factory=lambda name, credentials: connector,
        price_oracle=_EthPriceOutage(),
        now=lambda: NOW,
    )

    report = orchestrator.run(connection.id)

    assert report.phase_status[1] == PhaseStatus.FAILED
    assert report.phase_status[2] == PhaseStatus.DONE
    assert report.phase_status[4] == PhaseStatus.DONE
    stored = ConnectionRepository(test_session).get(connection.id)
    assert stored is not None
    assert stored.status == ConnectionStatus.ERROR
    assert SyncCursor(stored.sync_cursor).phase_cursor(1) == {}
    assert TransactionRepository(test_session).list_for_connection(
        connection.id, types=(TransactionType.EXCHANGE_DEPOSIT,)
    ) == []


def test_paged_connector_reaches_everything_over_several_runs(
    test_session: Session, test_session_factory: sessionmaker[Session], cipher: CredentialCipher
) -> None:
    connection = make_connection(test_session, cipher)
    orchestrator = _orchestrator(test_session_factory, cipher, FakeConnector(_records(), page_size=1))

    inserted = sum(orchestrator.run(connection.id).inserted for _ in range(4))

    assert inserted == 5
    assert TransactionRepository(test_session).count_for_connection(connection.id) == 5


def test_full_sync_resets_phase_cursors_and_since(
    test_session: Session, test_session_factory: sessionmaker[Session], cipher: CredentialCipher
) -> None:
    connection = make_connection(test_session, cipher)
    _orchestrator(test_session_factory, cipher, FakeConnector(_records())).run(connection.id)

    incremental = FakeConnector(_records())
    _orchestrator(test_session_factory, cipher, incremental).run(connection.id)
    assert incremental.calls[0][1].since == NOW
    assert incremental.calls[0][1].cursor == {"offset": 3}

    full = FakeConnector(_records())
    _orchestrator(test_session_factory, cipher, full).run(connection.id, full_sync=True)
    assert full.calls[0][1].since is None
    assert full.calls[0][1].cursor == {}
    assert full.calls[0][1].full_sync is True


def test_endpoint_errors_mark_phase_partial_and_record_last_error(
    test_session: Session, test_session_factory: sessionmaker[Session], cipher: CredentialCipher
) -> None:
    connection = make_connection(test_session, cipher)
    connector = FakeConnector(_records(), endpoint_errors={2: ["convert", "dust"]})

    report = _orchestrator(test_session_factory, cipher, connector).run(connection.id)

    assert report.phase_status[2] == PhaseStatus.PARTIAL
    assert report.phase_status[3] == PhaseStatus.DONE
    stored = ConnectionRepository(test_session).get(connection.id)
    assert stored is not None
    assert stored.status == ConnectionStatus.ACTIVE
    assert stored.last_error == "2 endpoint errors"


def test_failed_phase_does_not_stop_later_phases(
    test_session: Session, test_session_factory: sessionmaker[Session], cipher: CredentialCipher
) -> None:
    connection = make_connection(test_session, cipher)
    connector = FakeConnector(_records(), failing_phases={2})

    report = _orchestrator(test_session_factory, cipher, connector).run(connection.id)

    assert report.phase_status[2] == PhaseStatus.FAILED
    assert report.phase_status[3] == PhaseStatus.DONE
    assert report.phase_status[4] == PhaseStatus.DONE
    assert report.inserted == 4

    stored = ConnectionRepository(test_session).get(connection.id)
    assert stored is not None
    assert stored.status == ConnectionStatus.ERROR
    assert stored.last_sync_at is None
    assert SyncCursor(stored.sync_cursor).phase_status(2) == PhaseStatus.FAILED


def test_balances_and_deposit_addresses_are_cached(
    test_session: Session, test_session_factory: sessionmaker[Session], cipher: CredentialCipher
) -> None:
    connection = make_connection(test_session, cipher)
    connector = FakeConnector(
        _records(),
        balances=[RealTimeBalance(asset="ETH", free="1.5")],
        deposit_addresses=[DepositAddress(coin="ETH", network="ETH", address="0xABCDEF")],
    )

    _orchestrator(test_session_factory, cipher, connector).run(connection.id)

    stored = ConnectionRepository(test_session).get(connection.id)
    assert stored is not None
    assert stored.balances == [{"asset": "ETH", "free": "1.5", "locked": "0", "source": "spot"}]
    assert stored.balances_updated_at == NOW

    known = KnownAddressRepository(test_session).by_entity_type(EntityType.EXCHANGE)
    assert known["0xabcdef"].name == "Binance Deposit"
    assert known["0xabcdef"].label == "BINANCE_DEPOSIT_ETH"


def test_undecryptable_credentials_mark_connection_errored(
    test_session: Session, test_session_factory: sessionmaker[Session], cipher: CredentialCipher
) -> None:
    connection = make_connection(test_session, cipher)
    other_cipher = CredentialCipher(generate_key())

    with pytest.raises(CredentialsError):
        _orchestrator(test_session_factory, other_cipher, FakeConnector(_records())).run(connection.id)

    stored = ConnectionRepository(test_session).get(connection.id)
    assert stored is not None
    assert stored.status == ConnectionStatus.ERROR
    assert stored.last_error == "Credential decryption failed"


def test_missing_connection_raises_job_error(
    test_session_factory: sessionmaker[Session], cipher: CredentialCipher
) -> None:
    with pytest.raises(JobError):
        _orchestrator(test_session_factory, cipher, FakeConnector()).run("does-not-exist")


def test_deposit_addresses_are_recovered_from_stored_deposit_history(
    test_session: Session, test_session_factory: sessionmaker[Session], cipher: CredentialCipher
) -> None:
    connection = make_connection(test_session, cipher)
    history = {
        1: [
            record(
                ExchangeRecordType.DEPOSIT,
                "dep-sol",
                timestamp=at(1),
                asset="SOL",
                amount="10",
                network="SOL",
                raw={"id": "dep-sol", "address": "SoLDepositAddr111", "network": "SOL"},
            ),
            record(
                ExchangeRecordType.DEPOSIT,
                "dep-sol-2",
                timestamp=at(2),
                asset="SOL",
                amount="4",
                network="SOL",
                raw={"id": "dep-sol-2", "address": "SoLDepositAddr111", "network": "SOL"},
            ),
            record(ExchangeRecordType.DEPOSIT, "dep-no-address", timestamp=at(3), asset="ETH", amount="1"),
        ]
    }
    connector = FakeConnector(
        history,
        deposit_addresses=[DepositAddress(coin="ETH", network="ETH", address="0xCurrentEthAddr")],
    )

    _orchestrator(test_session_factory, cipher, connector).run(connection.id)

    known = KnownAddressRepository(test_session).by_entity_type(EntityType.EXCHANGE)
    assert set(known) == {"soldepositaddr111", "0xcurrentethaddr"}
    assert known["soldepositaddr111"].label == "BINANCE_DEPOSIT_SOL"
    assert known["soldepositaddr111"].name == "Binance Deposit"
    assert known["soldepositaddr111"].source == "binance-history"
    assert known["0xcurrentethaddr"].source == "binance-api"
