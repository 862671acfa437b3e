from __future__ import annotations

import logging

from db.repositories import KnownAddressRepository
from domain.accounts import EntityType, KnownAddress

logger = logging.getLogger(__name__)

SEED_SOURCE = "seed"

# Public exchange hot wallets on Ethereum-compatible chains.
EXCHANGE_HOT_WALLETS: tuple[tuple[str, str, str], ...] = (
    ("0x28c6c06298d514db089934071355e5743bf21d60", "Binance 14", "BINANCE_HOT_WALLET"),
    ("0x21a31ee1afc51d94c2efccaa2092ad1028285549", "Binance 15", "BINANCE_HOT_WALLET"),
    ("0xdfd5293d8e347dfe59e90efd55b2956a1343963d", "Binance 16", "BINANCE_HOT_WALLET"),
    ("0xbe0eb53f46cd790cd13851d5eff43d12404d33e8", "Binance 7", "BINANCE_HOT_WALLET"),
    ("0x6cc5f688a315f3dc28a7781717a9a798a59fda7b", "OKX", "OKX_HOT_WALLET"),
    ("0xf89d7b9c864f589bbf53a82105107622b35eaa40", "Bybit", "BYBIT_HOT_WALLET"),
    ("0x2910543af39aba0cd09dbb2d50200b3e800a63d2", "Kraken", "KRAKEN_HOT_WALLET"),
    ("0x71660c4005ba85c37ccec55d0c4493e66fe775d3", "Coinbase 1", "COINBASE_HOT_WALLET"),
    ("0x503828976d22510aad0201ac7ec88293211d23da", "Coinbase 2", "COINBASE_HOT_WALLET"),
)


def seed_exchange_addresses(repository: KnownAddressRepository) -> int:
    """Insert the bundled hot wallets that are not known yet. Returns how many were added."""
    added = 0
    for address, name, label in EXCHANGE_HOT_WALLETS:
        if repository.get(address) is not None:
            continue
        repository.upsert(
            KnownAddress(
                address=address,
                network="eth",
                name=name,
                label=label,
                entity_type=EntityType.EXCHANGE,
                source=SEED_SOURCE,
            )
        )
        added += 1
    if added:
        logger.info("Seeded %s exchange hot wallet addresses", added)
    return added


__all__ = ["EXCHANGE_HOT_WALLETS", "seed_exchange_addresses"]
