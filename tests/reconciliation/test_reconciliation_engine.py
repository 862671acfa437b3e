from __future__ import annotations

from decimal import Decimal
from uuid import UUID

import pytest
from sqlalchemy.orm import Session

from db.repositories import KnownAddressRepository, ReviewItemRepository, TransactionRepository
from domain.accounts import EntityType, KnownAddress, ReviewItemType
from domain.errors import JobError
from domain.ledger import FlowDirection, TransactionCategory, TransactionType
from reconciliation.engine import ReconciliationEngine, ReconciliationSettings, amount_difference
from tests.helpers.factories import (
    USER,
    WALLET_ADDRESS,
    at,
    exchange_tx,
    flow,
    make_connection,
    make_wallet,
    onchain_tx,
    store,
)
from tests.helpers.fake_connector import FakeOnChainIndex
from utils.credentials import CredentialCipher

BINANCE_HOT_WALLET = "0x28C6c06298d514Db089934071355E5743bf21d60"


@pytest.fixture
def connection(test_session: Session, cipher: CredentialCipher):
    make_wallet(test_session)
    return make_connection(test_session, cipher)


def _engine(session: Session, **kwargs) -> ReconciliationEngine:
    return ReconciliationEngine(session, settings=ReconciliationSettings(), **kwargs)


def _deposit(connection_id: str, external_id: str, amount: str = "1", minutes: float = 60, tx_hash: str | None = None):
    return exchange_tx(
        connection_id,
        external_id,
        TransactionType.EXCHANGE_DEPOSIT,
        [flow(amount, FlowDirection.IN)],
        timestamp=at(minutes),
        tx_hash=tx_hash,
    )


def _sent(tx_hash: str, amount: str = "1", minutes: float = 40, counterparty: str | None = None):
    return onchain_tx(
        WALLET_ADDRESS,
        tx_hash,
        TransactionType.TRANSFER_OUT,
        [flow(amount, FlowDirection.OUT, counterparty=counterparty), flow("0.0005", FlowDirection.OUT, is_fee=True)],
        timestamp=at(minutes),
    )


def test_deposit_with_tx_hash_links_directly(test_session: Session, connection) -> None:
    deposit = _deposit(connection.id, "dep-1", tx_hash="0xAAA1", minutes=600)
    sent = _sent("0xaaa1", amount="1.5", minutes=10)
    store(test_session, deposit, sent)

    summary = _engine(test_session).reconcile_connection(connection.id)

    assert summary.matched == 1
    link = summary.links[0]
    assert (link.exchange_transaction_id, link.onchain_transaction_id) == (deposit.id, sent.id)
    assert link.confidence == Decimal(1)
    assert link.method == "tx_hash"

    repo = TransactionRepository(test_session)
    assert repo.get(deposit.id).linked_transaction_id == sent.id
    assert repo.get(sent.id).linked_transaction_id == deposit.id


def test_deposit_matches_closest_candidate_within_tolerance(test_session: Session, connection) -> None:
    deposit = _deposit(connection.id, "dep-1", amount="1")
    earlier = _sent("0x01", amount="1", minutes=10)
    closer = _sent("0x02", amount="0.995", minutes=50)
    off_amount = _sent("0x03", amount="1.5", minutes=59)
    store(test_session, deposit, earlier, closer, off_amount)

    summary = _engine(test_session).reconcile_connection(connection.id)

    assert summary.matched == 1
    assert summary.links[0].onchain_transaction_id == closer.id
    assert summary.links[0].method == "amount_time"
    assert Decimal(0) < summary.links[0].confidence < Decimal(1)
    assert TransactionRepository(test_session).get(earlier.id).linked_transaction_id is None


def test_equal_scores_prefer_lower_id(test_session: Session, connection) -> None:
    deposit = _deposit(connection.id, "dep-1")
    high = _sent("0x0b").model_copy(update={"id": UUID("ffffffff-0000-0000-0000-000000000000")})
    low = _sent("0x0a").model_copy(update={"id": UUID("00000000-0000-0000-0000-00000000000a")})
    store(test_session, deposit, high, low)

    summary = _engine(test_session).reconcile_connection(connection.id)

    assert summary.links[0].onchain_transaction_id == low.id


def test_candidates_outside_window_are_ignored(test_session: Session, connection) -> None:
    deposit = _deposit(connection.id, "dep-1", minutes=120)
    too_early = _sent("0x01", minutes=30)
    after_deposit = _sent("0x02", minutes=125)
    store(test_session, deposit, too_early, after_deposit)

    summary = _engine(test_session).reconcile_connection(connection.id)

    assert summary.matched == 0
    assert summary.unmatched == 1


def test_withdrawal_looks_forward_for_incoming_transfer(test_session: Session, connection) -> None:
    withdrawal = exchange_tx(
        connection.id,
        "wd-1",
        TransactionType.EXCHANGE_WITHDRAWAL,
        [flow("0.99", FlowDirection.OUT), flow("0.01", FlowDirection.OUT, is_fee=True)],
        timestamp=at(0),
    )
    before = onchain_tx(WALLET_ADDRESS, "0x01", TransactionType.TRANSFER_IN, [flow("0.99", FlowDirection.IN)], timestamp=at(-10))
    after = onchain_tx(WALLET_ADDRESS, "0x02", TransactionType.TRANSFER_IN, [flow("0.99", FlowDirection.IN)], timestamp=at(90))
    store(test_session, withdrawal, before, after)

    summary = _engine(test_session).reconcile_connection(connection.id)

    assert [link.onchain_transaction_id for link in summary.links] == [after.id]


def test_linked_transfer_is_not_reused(test_session: Session, connection) -> None:
    first = _deposit(connection.id, "dep-1", minutes=60)
    second = _deposit(connection.id, "dep-2", minutes=61)
    sent = _sent("0x01", minutes=45)
    store(test_session, first, second, sent)

    summary = _engine(test_session).reconcile_connection(connection.id)

    assert summary.matched == 1
    assert summary.unmatched == 1
    assert summary.links[0].exchange_transaction_id == first.id


def test_second_run_changes_nothing(test_session: Session, connection) -> None:
    store(test_session, _deposit(connection.id, "dep-1"), _sent("0x01"))
    engine = _engine(test_session)

    first = engine.reconcile_connection(connection.id)
    second = engine.reconcile_connection(connection.id)

    assert first.matched == 1
    assert (second.matched, second.unmatched, second.offramps, second.address_classified) == (0, 0, 0, 0)


def test_sell_after_linked_deposit_creates_offramp_review(test_session: Session, connection) -> None:
    deposit = _deposit(connection.id, "dep-1", tx_hash="0xabc")
    sell = exchange_tx(
        connection.id,
        "trade-ETHUSDT-1",
        TransactionType.EXCHANGE_TRADE,
        [flow("1", FlowDirection.OUT), flow("3000", FlowDirection.IN, asset_id="exchange:USDT", symbol="USDT")],
        timestamp=at(180),
        total_value_usd="3000",
    )
    late_sell = exchange_tx(
        connection.id,
        "trade-ETHUSDT-2",
        TransactionType.EXCHANGE_TRADE,
        [flow("1", FlowDirection.OUT), flow("3100", FlowDirection.IN, asset_id="exchange:USDT", symbol="USDT")],
        timestamp=at(60, days=2),
    )
    store(test_session, deposit, _sent("0xabc"), sell, late_sell)

    summary = _engine(test_session).reconcile_connection(connection.id)

    assert summary.offramps == 1
    items = ReviewItemRepository(test_session).list_for_user(USER)
    assert len(items) == 1
    item = items[0]
    assert item.type == ReviewItemType.OFFRAMP
    assert item.transaction_id == sell.id
    assert item.related_transaction_id == deposit.id
    assert item.priority == 10
    assert item.suggested_category == TransactionCategory.DISPOSAL_SALE
    assert item.estimated_value_usd == Decimal("3000")


def test_sale_of_another_asset_after_linked_deposit_is_still_flagged(test_session: Session, connection) -> None:
    deposit = _deposit(connection.id, "dep-1", tx_hash="0xabc")
    btc_sale = exchange_tx(
        connection.id,
        "trade-BTCUSDT-1",
        TransactionType.EXCHANGE_TRADE,
        [
            flow("0.1", FlowDirection.OUT, asset_id="exchange:BTC", symbol="BTC"),
            flow("6000", FlowDirection.IN, asset_id="exchange:USDT", symbol="USDT"),
        ],
        timestamp=at(120),
    )
    store(test_session, deposit, _sent("0xabc"), btc_sale)

    summary = _engine(test_session).reconcile_connection(connection.id)

    assert summary.offramps == 1
    (item,) = ReviewItemRepository(test_session).list_for_user(USER)
    assert item.transaction_id == btc_sale.id
    assert item.related_transaction_id == deposit.id


def test_transfers_to_known_exchange_addresses_are_classified(test_session: Session, connection) -> None:
    KnownAddressRepository(test_session).upsert(
        KnownAddress(address=BINANCE_HOT_WALLET, name="Binance 14", label="BINANCE_HOT", entity_type=EntityType.EXCHANGE)
    )
    to_exchange = _sent("0x01", minutes=0, counterparty=BINANCE_HOT_WALLET)
    elsewhere = _sent("0x02", minutes=5, counterparty="0x000000000000000000000000000000000000dead")
    store(test_session, to_exchange, elsewhere)

    engine = _engine(test_session)
    summary = engine.reconcile_connection(connection.id)

    repo = TransactionRepository(test_session)
    assert summary.address_classified == 1
    assert repo.get(to_exchange.id).category == TransactionCategory.TRANSFER_TO_EXCHANGE
    assert repo.get(elsewhere.id).category is None
    assert engine.reconcile_connection(connection.id).address_classified == 0


def test_search_windows_follow_transfer_direction(test_session: Session, connection) -> None:
    store(
        test_session,
        _deposit(connection.id, "dep-1", minutes=60),
        exchange_tx(connection.id, "wd-1", TransactionType.EXCHANGE_WITHDRAWAL, [flow("1", FlowDirection.OUT)], timestamp=at(300)),
    )
    index = FakeOnChainIndex()

    summary = _engine(test_session, index=index).reconcile_connection(connection.id)

    assert summary.unmatched == 2
    assert index.queries == [
        {"asset_id": "exchange:ETH", "tx_type": TransactionType.TRANSFER_OUT, "start": at(0), "end": at(60)},
        {"asset_id": "exchange:ETH", "tx_type": TransactionType.TRANSFER_IN, "start": at(300), "end": at(420)},
    ]


def test_amount_tolerance_boundary(test_session: Session, connection) -> None:
    engine = _engine(test_session)
    deposit = _deposit(connection.id, "dep-1")
    inside = _sent("0x01", amount="0.98", minutes=60)
    outside = _sent("0x02", amount="0.97", minutes=60)

    ranked = engine.rank_candidates(deposit, Decimal("1"), [inside, outside], engine.settings.deposit_window)

    assert amount_difference(Decimal("1"), Decimal("0.98")) == Decimal("0.02")
    assert [c.tx.id for c in ranked] == [inside.id]


def test_unknown_connection_raises(test_session: Session) -> None:
    with pytest.raises(JobError):
        _engine(test_session).reconcile_connection("missing")
