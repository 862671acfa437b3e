from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from db.repositories import ConnectionRepository, TransactionRepository, WalletRepository
from domain.accounts import ExchangeConnection, Wallet
from domain.ledger import (
    AssetId,
    CanonicalTransaction,
    ConnectionId,
    Flow,
    FlowDirection,
    TransactionSource,
    TransactionType,
    UserId,
    WalletId,
)
from domain.records import ExchangeRecord, ExchangeRecordType, TradeSide
from importers.exchange_mapper import exchange_wallet_id
from utils.credentials import CredentialCipher

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
USER = UserId("user-1")
WALLET_ADDRESS = "0x3c9219f44ead8154dee4e0854d67601fc2334c67"
ETH = AssetId("exchange:ETH")


def at(minutes: float = 0, *, days: float = 0) -> datetime:
    return T0 + timedelta(minutes=minutes, days=days)


def make_connection(
    session: Session,
    cipher: CredentialCipher,
    *,
    user_id: str = USER,
    exchange: str = "binance",
    passphrase: str | None = None,
) -> ExchangeConnection:
    connection = ExchangeConnection(
        user_id=UserId(user_id),
        exchange_name=exchange,
        encrypted_api_key=cipher.encrypt("key"),
        encrypted_api_secret=cipher.encrypt("secret"),
        encrypted_passphrase=cipher.encrypt(passphrase) if passphrase else None,
    )
    return ConnectionRepository(session).create(connection)


def make_wallet(session: Session, *, user_id: str = USER, address: str = WALLET_ADDRESS, chain: str = "eth") -> Wallet:
    return WalletRepository(session).add(Wallet(user_id=UserId(user_id), chain=chain, address=address))


def record(
    record_type: ExchangeRecordType,
    external_id: str,
    *,
    timestamp: datetime = T0,
    asset: str = "ETH",
    amount: str = "1",
    side: TradeSide | None = None,
    **extra: Any,
) -> ExchangeRecord:
    return ExchangeRecord(
        type=record_type,
        external_id=external_id,
        timestamp=timestamp,
        asset=asset,
        amount=Decimal(amount),
        side=side,
        **extra,
    )


def flow(
    amount: str,
    direction: FlowDirection,
    *,
    asset_id: str = ETH,
    symbol: str = "ETH",
    wallet_id: str | None = None,
    value_usd: str | None = None,
    counterparty: str | None = None,
    is_fee: bool = False,
) -> Flow:
    value = Decimal(amount)
    return Flow(
        asset_id=AssetId(asset_id),
        symbol=symbol,
        decimals=8,
        raw_amount=str(int(value * 10**8)),
        amount=value,
        direction=direction,
        value_usd=Decimal(value_usd) if value_usd is not None else None,
        wallet_id=WalletId(wallet_id) if wallet_id else None,
        counterparty=counterparty,
        is_fee=is_fee,
    )


def exchange_tx(
    connection_id: str,
    external_id: str,
    tx_type: TransactionType,
    flows: list[Flow],
    *,
    timestamp: datetime = T0,
    tx_hash: str | None = None,
    total_value_usd: str | None = None,
) -> CanonicalTransaction:
    wallet_id = exchange_wallet_id(connection_id)
    return CanonicalTransaction(
        source=TransactionSource.EXCHANGE,
        external_id=external_id,
        type=tx_type,
        timestamp=timestamp,
        connection_id=ConnectionId(connection_id),
        wallet_id=wallet_id,
        exchange_name="binance",
        tx_hash=tx_hash,
        total_value_usd=Decimal(total_value_usd) if total_value_usd is not None else None,
        flows=[f.model_copy(update={"wallet_id": wallet_id}) for f in flows],
    )


def onchain_tx(
    wallet_id: str,
    tx_hash: str,
    tx_type: TransactionType,
    flows: list[Flow],
    *,
    timestamp: datetime = T0,
) -> CanonicalTransaction:
    return CanonicalTransaction(
        source=TransactionSource.ONCHAIN,
        external_id=tx_hash,
        type=tx_type,
        timestamp=timestamp,
        wallet_id=WalletId(wallet_id),
        tx_hash=tx_hash,
        flows=[f.model_copy(update={"wallet_id": WalletId(wallet_id)}) for f in flows],
    )


def store(session: Session, *transactions: CanonicalTransaction) -> list[CanonicalTransaction]:
    repo = TransactionRepository(session)
    for tx in transactions:
        assert repo.create_with_flows(tx)
    return list(transactions)
