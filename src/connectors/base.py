from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable

from domain.records import ConnectionTestResult, DepositAddress, EndpointError, PhaseResult, RealTimeBalance, SyncOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")


def to_decimal(value: Any, default: Decimal = Decimal(0)) -> Decimal:
    if value is None or value == "":
        return default
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        return default
    return parsed if parsed.is_finite() else default


@dataclass(frozen=True)
class ApiCredentials:
    api_key: str
    api_secret: str
    passphrase: str | None = None


class ExchangeConnector(Protocol):
    exchange_name: str

    def fetch_phase(self, phase: int, options: SyncOptions) -> PhaseResult: ...

    def test_connection(self) -> ConnectionTestResult: ...


@runtime_checkable
class SupportsRealTimeBalances(Protocol):
    def fetch_real_time_balances(self) -> list[RealTimeBalance]: ...


@runtime_checkable
class SupportsDepositAddresses(Protocol):
    def fetch_deposit_addresses(self) -> list[DepositAddress]: ...


class EndpointGuard:
    """Runs endpoint calls, turning failures into ``EndpointError`` entries.

    One failing endpoint never stops the rest of the phase.
    """

    def __init__(self, exchange_name: str) -> None:
        self.exchange_name = exchange_name
        self.errors: list[EndpointError] = []

    def run(self, endpoint: str, fn: Callable[[], T]) -> T | None:
        try:
            return fn()
        except Exception as exc:
            logger.warning("%s endpoint %s failed: %s", self.exchange_name, endpoint, exc)
            self.errors.append(EndpointError(endpoint=endpoint, error=str(exc) or type(exc).__name__))
            return None


__all__ = [
    "ApiCredentials",
    "EndpointGuard",
    "ExchangeConnector",
    "SupportsDepositAddresses",
    "SupportsRealTimeBalances",
    "to_decimal",
]
