from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, cast

from sqlalchemy.orm import Session

from clients.moralis import MoralisClient
from db.repositories import AssetMappingRepository, TransactionRepository
from domain.accounts import Wallet
from domain.assets import AssetResolver
from domain.ledger import (
    CanonicalTransaction,
    ChainId,
    Flow,
    FlowDirection,
    TransactionSource,
    TransactionType,
    WalletAddress,
    WalletId,
)

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18
NATIVE_SYMBOLS: dict[str, str] = {
    "eth": "ETH",
    "ethereum": "ETH",
    "arbitrum": "ETH",
    "base": "ETH",
    "optimism": "ETH",
    "linea": "ETH",
    "polygon": "POL",
    "bsc": "BNB",
    "avalanche": "AVAX",
}
# Re-read a day of history on incremental runs; inserts are deduplicated.
OVERLAP = timedelta(days=1)


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


def _obtain_value(transfer: dict[str, Any], decimals: int) -> Decimal | None:
    try:
        formatted = Decimal(str(transfer.get("value_formatted")))
        if formatted.is_finite():
            return formatted
    except InvalidOperation:
        pass
    try:
        raw = Decimal(str(transfer.get("value")))
    except InvalidOperation:
        return None
    return raw.scaleb(-decimals) if raw.is_finite() else None


def _native_transfer_key(transfer: dict[str, Any]) -> tuple[str, str, str]:
    return (
        str(transfer.get("from_address") or "").lower(),
        str(transfer.get("to_address") or "").lower(),
        str(transfer.get("value")),
    )


def _dedupe_native_transfers(transfers: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Moralis reports some native transfers both as external and internal; keep one external copy."""
    transfers = list(transfers)
    flags: dict[tuple[str, str, str], set[bool]] = {}
    for transfer in transfers:
        flags.setdefault(_native_transfer_key(transfer), set()).add(transfer.get("internal_transaction") is True)

    kept_external: set[tuple[str, str, str]] = set()
    deduped: list[dict[str, Any]] = []
    for transfer in transfers:
        key = _native_transfer_key(transfer)
        if flags[key] == {False, True}:
            if transfer.get("internal_transaction") is True or key in kept_external:
                continue
            kept_external.add(key)
        deduped.append(transfer)
    return deduped


class OnChainImporter:
    """Ingests one wallet's history as ONCHAIN canonical transactions.

    Every Moralis transaction touching the wallet becomes one transaction keyed
    by its hash; flows carry the other party's address as ``counterparty``.
    """

    def __init__(
        self,
        session: Session,
        client: MoralisClient | None = None,
        *,
        resolver: AssetResolver | None = None,
    ) -> None:
        self.client = client or MoralisClient()
        self._transactions = TransactionRepository(session)
        self._resolver = resolver or AssetMappingRepository(session).resolver()

    def ingest_wallet(self, wallet: Wallet, *, full: bool = False) -> int:
        latest = None if full else self._transactions.latest_onchain_timestamp(wallet.id)
        from_date = (latest - OVERLAP).date() if latest else None
        raw = self.client.fetch_transactions(ChainId(wallet.chain), WalletAddress(wallet.address), from_date)

        inserted = 0
        for entry in raw:
            tx = self.build_transaction(entry, wallet)
            if tx is not None and self._transactions.create_with_flows(tx):
                inserted += 1
        logger.info("Ingested %s new transactions for wallet %s on %s", inserted, wallet.address, wallet.chain)
        return inserted

    def build_transaction(self, entry: dict[str, Any], wallet: Wallet) -> CanonicalTransaction | None:
        chain = str(entry.get("chain") or wallet.chain).lower()
        native_symbol = NATIVE_SYMBOLS.get(chain)
        if native_symbol is None:
            logger.info("Skipping transaction %s with unsupported chain %s", entry.get("hash"), chain)
            return None

        address = wallet.address
        wallet_id = WalletId(wallet.id)
        failed = str(entry.get("receipt_status", "1")) == "0"
        flows: list[Flow] = []

        if not failed:
            for transfer in _dedupe_native_transfers(cast(list, entry.get("native_transfers") or [])):
                flow = self._transfer_flow(transfer, address, wallet_id, chain, native_symbol, NATIVE_DECIMALS)
                if flow is not None:
                    flows.append(flow)

            for transfer in cast(list, entry.get("erc20_transfers") or []):
                symbol = str(transfer.get("token_symbol") or transfer.get("address") or "").upper()
                try:
                    decimals = int(str(transfer.get("token_decimals")))
                except ValueError:
                    decimals = NATIVE_DECIMALS
                flow = self._transfer_flow(transfer, address, wallet_id, chain, symbol, decimals)
                if flow is not None:
                    flows.append(flow)

        is_my_tx = str(entry.get("from_address") or "").lower() == address
        if is_my_tx:
            fee = _obtain_value({"value_formatted": entry.get("transaction_fee")}, NATIVE_DECIMALS)
            if fee is not None and fee > 0:
                flows.append(self._flow(native_symbol, chain, NATIVE_DECIMALS, fee, FlowDirection.OUT, wallet_id, None, True))

        directions = {flow.direction for flow in flows if not flow.is_fee}
        if directions == {FlowDirection.IN, FlowDirection.OUT}:
            tx_type = TransactionType.SWAP
        elif directions == {FlowDirection.IN}:
            tx_type = TransactionType.TRANSFER_IN
        elif directions == {FlowDirection.OUT}:
            tx_type = TransactionType.TRANSFER_OUT
        elif flows:
            tx_type = TransactionType.UNKNOWN
        else:
            # Spam airdrops and NFT-only activity.
            return None

        tx_hash = str(entry["hash"]).lower()
        return CanonicalTransaction(
            source=TransactionSource.ONCHAIN,
            external_id=tx_hash,
            type=tx_type,
            timestamp=_parse_timestamp(str(entry["block_timestamp"])),
            wallet_id=wallet_id,
            tx_hash=tx_hash,
            raw={
                "chain": chain,
                "category": entry.get("category"),
                "summary": entry.get("summary"),
                "block_number": entry.get("block_number"),
            },
            flows=flows,
        )

    def _transfer_flow(
        self,
        transfer: dict[str, Any],
        address: str,
        wallet_id: WalletId,
        chain: str,
        symbol: str,
        decimals: int,
    ) -> Flow | None:
        from_addr = str(transfer.get("from_address") or "").lower()
        to_addr = str(transfer.get("to_address") or "").lower()
        if address not in (from_addr, to_addr) or from_addr == to_addr:
            return None
        amount = _obtain_value(transfer, decimals)
        if amount is None or amount <= 0:
            return None
        if from_addr == address:
            return self._flow(symbol, chain, decimals, amount, FlowDirection.OUT, wallet_id, to_addr or None, False)
        return self._flow(symbol, chain, decimals, amount, FlowDirection.IN, wallet_id, from_addr or None, False)

    def _flow(
        self,
        symbol: str,
        chain: str,
        decimals: int,
        amount: Decimal,
        direction: FlowDirection,
        wallet_id: WalletId,
        counterparty: str | None,
        is_fee: bool,
    ) -> Flow:
        resolved = self._resolver.resolve(symbol, chain)
        return Flow(
            asset_id=resolved.asset_id,
            symbol=symbol,
            decimals=decimals,
            raw_amount=str(int(amount.scaleb(decimals).to_integral_value(rounding=ROUND_HALF_UP))),
            amount=amount,
            direction=direction,
            is_fee=is_fee,
            wallet_id=wallet_id,
            network=chain,
            counterparty=counterparty,
        )


__all__ = ["NATIVE_SYMBOLS", "OnChainImporter"]
