from __future__ import annotations

from domain.errors import PhaseError
from domain.records import (
    ConnectionTestResult,
    DepositAddress,
    EndpointError,
    ExchangeRecord,
    PhaseResult,
    RealTimeBalance,
    SyncOptions,
)


class FakeConnector:
    """Serves fixed records per phase, ``page_size`` at a time, tracking progress in the phase cursor."""

    exchange_name = "binance"

    def __init__(
        self,
        records_by_phase: dict[int, list[ExchangeRecord]] | None = None,
        *,
        page_size: int | None = None,
        failing_phases: set[int] | None = None,
        crashing_phases: set[int] | None = None,
        endpoint_errors: dict[int, list[str]] | None = None,
        balances: list[RealTimeBalance] | None = None,
        deposit_addresses: list[DepositAddress] | None = None,
    ) -> None:
        self.records_by_phase = records_by_phase or {}
        self.page_size = page_size
        self.failing_phases = failing_phases or set()
        self.crashing_phases = crashing_phases or set()
        self.endpoint_errors = endpoint_errors or {}
        self.balances = balances or []
        self.deposit_addresses = deposit_addresses or []
        self.calls: list[tuple[int, SyncOptions]] = []

    def fetch_phase(self, phase: int, options: SyncOptions) -> PhaseResult:
        self.calls.append((phase, options))
        if phase in self.failing_phases:
            raise PhaseError(f"phase {phase} exploded", phase=phase)
        if phase in self.crashing_phases:
            raise RuntimeError("worker lost")

        records = self.records_by_phase.get(phase, [])
        offset = int(options.cursor.get("offset", 0))
        end = len(records) if self.page_size is None else min(len(records), offset + self.page_size)
        return PhaseResult(
            phase=phase,
            records=records[offset:end],
            cursor={**options.cursor, "offset": end},
            errors=[EndpointError(endpoint=name, error="HTTP 500") for name in self.endpoint_errors.get(phase, [])],
        )

    def test_connection(self) -> ConnectionTestResult:
        return ConnectionTestResult(valid=True, permissions=["READ"])

    def fetch_real_time_balances(self) -> list[RealTimeBalance]:
        return self.balances

    def fetch_deposit_addresses(self) -> list[DepositAddress]:
        return self.deposit_addresses


class FakeOnChainIndex:
    """In-memory ``OnChainIndex`` used to exercise candidate selection without the database."""

    def __init__(self, transactions=None) -> None:
        self.transactions = list(transactions or [])
        self.queries: list[dict] = []

    def find_transfers(self, *, wallet_ids, asset_id, tx_type, start, end):
        self.queries.append({"asset_id": asset_id, "tx_type": tx_type, "start": start, "end": end})
        owned = set(wallet_ids)
        return [
            tx
            for tx in self.transactions
            if tx.wallet_id in owned
            and tx.type == tx_type
            and start <= tx.timestamp <= end
            and any(f.asset_id == asset_id for f in tx.flows)
        ]

    def find_by_hash(self, tx_hash):
        return [tx for tx in self.transactions if tx.tx_hash == tx_hash]
