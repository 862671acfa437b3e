from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Iterable

from pydantic import BaseModel, Field

from .ledger import AssetId, CanonicalTransaction, FlowDirection, TransactionId, UserId

LOT_EPSILON = Decimal("0.000000001")
DEFAULT_LONG_TERM_DAYS = 365


class CostBasisMethod(StrEnum):
    FIFO = "FIFO"
    LIFO = "LIFO"
    WAC = "WAC"


class CostBasisEntry(BaseModel):
    """One flow as seen by the cost-basis replay."""

    timestamp: datetime
    asset_id: AssetId
    direction: FlowDirection
    amount: Decimal
    value_usd: Decimal | None = None


@dataclass
class TaxLot:
    amount: Decimal
    remaining: Decimal
    cost_basis_per_unit: Decimal
    acquired_at: datetime


class RealizedGain(BaseModel):
    disposed_at: datetime
    acquired_at: datetime
    amount: Decimal
    proceeds: Decimal
    cost_basis: Decimal
    is_long_term: bool

    @property
    def gain_loss(self) -> Decimal:
        return self.proceeds - self.cost_basis


class AssetCostBasis(BaseModel):
    asset_id: AssetId
    method: CostBasisMethod
    tax_year: int | None = None
    total_acquired: Decimal = Decimal(0)
    total_disposed: Decimal = Decimal(0)
    total_cost_basis: Decimal = Decimal(0)
    total_proceeds: Decimal = Decimal(0)
    realized_gain_loss: Decimal = Decimal(0)
    short_term_gain_loss: Decimal = Decimal(0)
    long_term_gain_loss: Decimal = Decimal(0)
    remaining_amount: Decimal = Decimal(0)
    unrealized_cost_basis: Decimal = Decimal(0)
    holdings_count: int = 0
    unmatched_disposed: Decimal = Decimal(0)
    realized: list[RealizedGain] = Field(default_factory=list)


class PortfolioSnapshot(BaseModel):
    """Persisted per-asset summary, keyed by ``(user_id, asset_id, method, tax_year)``."""

    user_id: UserId
    asset_id: AssetId
    method: CostBasisMethod
    tax_year: int | None = None
    total_acquired: Decimal = Decimal(0)
    total_disposed: Decimal = Decimal(0)
    total_cost_basis: Decimal = Decimal(0)
    total_proceeds: Decimal = Decimal(0)
    realized_gain_loss: Decimal = Decimal(0)
    short_term_gain_loss: Decimal = Decimal(0)
    long_term_gain_loss: Decimal = Decimal(0)
    remaining_amount: Decimal = Decimal(0)
    unrealized_cost_basis: Decimal = Decimal(0)
    holdings_count: int = 0
    is_stale: bool = False
    computed_at: datetime

    @classmethod
    def from_cost_basis(cls, user_id: UserId, result: AssetCostBasis, computed_at: datetime) -> PortfolioSnapshot:
        return cls(
            user_id=user_id,
            computed_at=computed_at,
            **result.model_dump(exclude={"realized", "unmatched_disposed"}),
        )


class CostBasisEngine:
    """Replay flows into tax lots and realized gains.

    Every call builds its lot pools from scratch, so results never depend on
    previous runs. When ``tax_year`` is given, history before that year still
    feeds the lot pools but only activity inside the year is reported.
    """

    def __init__(self, *, long_term_days: int = DEFAULT_LONG_TERM_DAYS) -> None:
        self._long_term = timedelta(days=long_term_days)

    def compute(
        self,
        entries: Iterable[CostBasisEntry],
        method: CostBasisMethod,
        *,
        tax_year: int | None = None,
    ) -> dict[AssetId, AssetCostBasis]:
        by_asset: dict[AssetId, list[CostBasisEntry]] = defaultdict(list)
        for entry in entries:
            by_asset[entry.asset_id].append(entry)

        return {
            asset_id: self.compute_asset(asset_id, asset_entries, method, tax_year=tax_year)
            for asset_id, asset_entries in by_asset.items()
        }

    def compute_asset(
        self,
        asset_id: AssetId,
        entries: Iterable[CostBasisEntry],
        method: CostBasisMethod,
        *,
        tax_year: int | None = None,
    ) -> AssetCostBasis:
        ordered = sorted(entries, key=lambda e: (e.timestamp, 0 if e.direction == FlowDirection.IN else 1))
        year_start, year_end = _year_bounds(tax_year)
        result = AssetCostBasis(asset_id=asset_id, method=method, tax_year=tax_year)
        lots: list[TaxLot] = []

        for entry in ordered:
            if year_end is not None and entry.timestamp >= year_end:
                break
            in_scope = year_start is None or entry.timestamp >= year_start

            if entry.direction == FlowDirection.IN:
                self._acquire(lots, entry, method)
                if in_scope:
                    result.total_acquired += entry.amount
                continue

            realized, unmatched = self._dispose(lots, entry, method)
            if not in_scope:
                continue
            result.total_disposed += entry.amount
            result.total_proceeds += entry.value_usd or Decimal(0)
            result.unmatched_disposed += unmatched
            for gain in realized:
                result.realized.append(gain)
                result.total_cost_basis += gain.cost_basis
                result.realized_gain_loss += gain.gain_loss
                if gain.is_long_term:
                    result.long_term_gain_loss += gain.gain_loss
                else:
                    result.short_term_gain_loss += gain.gain_loss

        result.remaining_amount = sum((lot.remaining for lot in lots), Decimal(0))
        result.unrealized_cost_basis = sum((lot.remaining * lot.cost_basis_per_unit for lot in lots), Decimal(0))
        result.holdings_count = len(lots)
        return result

    def _acquire(self, lots: list[TaxLot], entry: CostBasisEntry, method: CostBasisMethod) -> None:
        cost_total = entry.value_usd or Decimal(0)
        lots.append(
            TaxLot(
                amount=entry.amount,
                remaining=entry.amount,
                cost_basis_per_unit=cost_total / entry.amount,
                acquired_at=entry.timestamp,
            )
        )
        if method == CostBasisMethod.WAC:
            _reprice_pool(lots)

    def _dispose(
        self,
        lots: list[TaxLot],
        entry: CostBasisEntry,
        method: CostBasisMethod,
    ) -> tuple[list[RealizedGain], Decimal]:
        proceeds_per_unit = (entry.value_usd or Decimal(0)) / entry.amount
        remaining = entry.amount
        realized: list[RealizedGain] = []

        while remaining > LOT_EPSILON and lots:
            # LIFO takes the newest lot; FIFO and the WAC pool consume oldest first.
            index = len(lots) - 1 if method == CostBasisMethod.LIFO else 0
            lot = lots[index]
            take = min(remaining, lot.remaining)

            lot.remaining -= take
            remaining -= take
            realized.append(
                RealizedGain(
                    disposed_at=entry.timestamp,
                    acquired_at=lot.acquired_at,
                    amount=take,
                    proceeds=proceeds_per_unit * take,
                    cost_basis=lot.cost_basis_per_unit * take,
                    is_long_term=entry.timestamp - lot.acquired_at > self._long_term,
                )
            )
            if lot.remaining <= LOT_EPSILON:
                lots.pop(index)

        unmatched = remaining if remaining > LOT_EPSILON else Decimal(0)
        return realized, unmatched


def build_entries(
    transactions: Iterable[CanonicalTransaction],
    owned_wallet_ids: Iterable[str],
) -> list[CostBasisEntry]:
    """Flatten transactions into cost-basis entries, dropping internal transfers.

    A transaction whose flows touch two or more wallets owned by the user is
    an internal transfer and contributes nothing. A linked exchange/on-chain
    pair counts as one transaction for that check, and a flow counterparty that
    is one of the owned wallet ids (on-chain wallets are keyed by address)
    counts as touching that wallet.
    """
    owned = set(owned_wallet_ids)
    txs = list(transactions)

    groups: dict[TransactionId, list[CanonicalTransaction]] = defaultdict(list)
    for tx in txs:
        key = tx.id
        if tx.linked_transaction_id is not None:
            key = min(tx.id, tx.linked_transaction_id)
        groups[key].append(tx)

    entries: list[CostBasisEntry] = []
    for group in groups.values():
        touched = set()
        for tx in group:
            for flow in tx.flows:
                for wallet in (flow.wallet_id, flow.counterparty.lower() if flow.counterparty else None):
                    if wallet in owned:
                        touched.add(wallet)
        if len(touched) >= 2:
            continue
        for tx in group:
            for flow in tx.flows:
                entries.append(
                    CostBasisEntry(
                        timestamp=tx.timestamp,
                        asset_id=flow.asset_id,
                        direction=flow.direction,
                        amount=flow.amount,
                        value_usd=flow.value_usd,
                    )
                )
    return entries


def _reprice_pool(lots: list[TaxLot]) -> None:
    total_amount = sum((lot.remaining for lot in lots), Decimal(0))
    if total_amount <= 0:
        return
    total_cost = sum((lot.remaining * lot.cost_basis_per_unit for lot in lots), Decimal(0))
    average = total_cost / total_amount
    for lot in lots:
        lot.cost_basis_per_unit = average


def _year_bounds(tax_year: int | None) -> tuple[datetime | None, datetime | None]:
    if tax_year is None:
        return None, None
    return (
        datetime(tax_year, 1, 1, tzinfo=timezone.utc),
        datetime(tax_year + 1, 1, 1, tzinfo=timezone.utc),
    )


__all__ = [
    "AssetCostBasis",
    "CostBasisEngine",
    "CostBasisEntry",
    "CostBasisMethod",
    "LOT_EPSILON",
    "PortfolioSnapshot",
    "RealizedGain",
    "TaxLot",
    "build_entries",
]
