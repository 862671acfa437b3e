from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Protocol

from .ledger import AssetId

PSEUDO_ASSET_PREFIX = "exchange:"
DEFAULT_DECIMALS = 8

STABLECOINS = frozenset(
    {
        "USDT",
        "USDC",
        "BUSD",
        "FDUSD",
        "USD1",
        "DAI",
        "TUSD",
        "USDP",
        "GUSD",
        "FRAX",
        "PYUSD",
        "USDD",
        "CUSD",
        "SUSD",
        "LUSD",
        "EURC",
        "AEUR",
    }
)

FIAT_CURRENCIES = frozenset(
    {"USD", "EUR", "GBP", "BRL", "TRY", "AUD", "CAD", "JPY", "KRW", "RUB", "UAH", "NGN", "ARS", "PLN", "CHF"}
)

EUR_STABLECOINS = frozenset({"EURC", "AEUR"})

KNOWN_QUOTES = ("USDT", "USDC", "BUSD", "FDUSD", "BTC", "ETH", "BNB", "BRL", "EUR", "USD", "TRY")


def is_usd_like(symbol: str | None) -> bool:
    if not symbol:
        return False
    upper = symbol.upper()
    return upper == "USD" or (upper in STABLECOINS and upper not in EUR_STABLECOINS)


def is_fiat(symbol: str | None) -> bool:
    if not symbol:
        return False
    return symbol.upper() in FIAT_CURRENCIES


def pseudo_asset_id(symbol: str) -> AssetId:
    return AssetId(f"{PSEUDO_ASSET_PREFIX}{symbol.upper()}")


def symbol_from_asset_id(asset_id: str) -> str | None:
    if asset_id.startswith(PSEUDO_ASSET_PREFIX):
        return asset_id[len(PSEUDO_ASSET_PREFIX) :]
    return None


def split_pair(pair: str | None, base: str | None = None) -> tuple[str, str] | None:
    """Split ``BTC/USDT``, ``BTC-USDT`` or ``BTCUSDT`` into (base, quote)."""
    if not pair:
        return None
    for separator in ("/", "-", "_"):
        if separator in pair:
            parts = pair.upper().split(separator)
            return parts[0], parts[1]
    upper = pair.upper()
    for quote in KNOWN_QUOTES:
        if upper.endswith(quote) and len(upper) > len(quote):
            candidate_base = upper[: -len(quote)]
            if base is None or candidate_base == base.upper():
                return candidate_base, quote
    return None


@dataclass(frozen=True)
class ResolvedAsset:
    asset_id: AssetId
    decimals: int


class AssetResolver(Protocol):
    """Maps an exchange ticker (optionally per network) to a canonical asset."""

    def resolve(self, symbol: str, network: str | None = None) -> ResolvedAsset: ...


class StaticAssetResolver:
    def __init__(self, mappings: Mapping[tuple[str, str | None], ResolvedAsset] | None = None) -> None:
        self._mappings = dict(mappings or {})

    def resolve(self, symbol: str, network: str | None = None) -> ResolvedAsset:
        upper = symbol.upper()
        found = self._mappings.get((upper, network)) or self._mappings.get((upper, None))
        if found is not None:
            return found
        return ResolvedAsset(asset_id=pseudo_asset_id(upper), decimals=DEFAULT_DECIMALS)


__all__ = [
    "AssetResolver",
    "DEFAULT_DECIMALS",
    "FIAT_CURRENCIES",
    "KNOWN_QUOTES",
    "ResolvedAsset",
    "STABLECOINS",
    "StaticAssetResolver",
    "is_fiat",
    "is_usd_like",
    "pseudo_asset_id",
    "split_pair",
    "symbol_from_asset_id",
]
