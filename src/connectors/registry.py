from __future__ import annotations

from typing import Callable

from domain.errors import JobError

from .base import ApiCredentials, ExchangeConnector
from .binance import BinanceConnector
from .bybit import BybitConnector
from .okx import OkxConnector

ConnectorFactory = Callable[[ApiCredentials], ExchangeConnector]

CONNECTORS: dict[str, ConnectorFactory] = {
    "binance": BinanceConnector,
    "okx": OkxConnector,
    "bybit": BybitConnector,
}

PASSPHRASE_EXCHANGES = frozenset({"okx"})


def supported_exchanges() -> list[str]:
    return sorted(CONNECTORS)


def create_connector(exchange_name: str, credentials: ApiCredentials) -> ExchangeConnector:
    factory = CONNECTORS.get(exchange_name.lower())
    if factory is None:
        raise JobError(f"Unsupported exchange: {exchange_name}")
    if exchange_name.lower() in PASSPHRASE_EXCHANGES and not credentials.passphrase:
        raise JobError(f"{exchange_name} connections require an API passphrase")
    return factory(credentials)


__all__ = ["CONNECTORS", "ConnectorFactory", "create_connector", "supported_exchanges"]
