from __future__ import annotations

import pytest

from connectors.base import ApiCredentials
from connectors.binance import BinanceConnector
from connectors.okx import OkxConnector
from connectors.registry import create_connector, supported_exchanges
from domain.errors import JobError


def test_supported_exchanges() -> None:
    assert supported_exchanges() == ["binance", "bybit", "okx"]


def test_create_connector_is_case_insensitive() -> None:
    connector = create_connector("Binance", ApiCredentials(api_key="k", api_secret="s"))

    assert isinstance(connector, BinanceConnector)
    assert connector.exchange_name == "binance"


def test_okx_requires_passphrase() -> None:
    with pytest.raises(JobError, match="passphrase"):
        create_connector("okx", ApiCredentials(api_key="k", api_secret="s"))

    assert isinstance(create_connector("okx", ApiCredentials(api_key="k", api_secret="s", passphrase="p")), OkxConnector)


def test_unknown_exchange_is_rejected() -> None:
    with pytest.raises(JobError, match="Unsupported exchange"):
        create_connector("kraken", ApiCredentials(api_key="k", api_secret="s"))
