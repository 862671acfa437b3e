from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable

from moralis import evm_api  # type: ignore

from config import config
from connectors.pagination import paginate_cursor
from connectors.rate_limiter import TokenBucket, shared_limiter
from domain.ledger import ChainId, WalletAddress

logger = logging.getLogger(__name__)

WalletHistoryCall = Callable[..., dict[str, Any]]


class MoralisClient:
    # https://docs.moralis.com/web3-data-api/evm/reference/wallet-api/get-wallet-history
    def __init__(
        self,
        api_key: str | None = None,
        *,
        limiter: TokenBucket | None = None,
        wallet_history: WalletHistoryCall | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else config().moralis_api_key
        if not self.api_key:
            raise ValueError("Moralis API key must be provided")
        self._limiter = limiter or shared_limiter("moralis", config().moralis_requests_per_second)
        self._wallet_history = wallet_history or evm_api.wallets.get_wallet_history

    def fetch_transactions(
        self,
        chain: ChainId,
        address: WalletAddress,
        from_date: date | None = None,
    ) -> list[dict[str, Any]]:
        """Wallet history for one chain, newest first, tagged with the chain it came from."""
        base_params: dict[str, Any] = {"chain": str(chain), "address": str(address)}
        if from_date is not None:
            base_params["from_date"] = from_date.isoformat()
        logger.info("Fetching Moralis history chain=%s address=%s from_date=%s", chain, address, from_date)

        def page(cursor: str | None) -> tuple[list[dict[str, Any]], str | None]:
            self._limiter.acquire()
            params = {**base_params, "cursor": cursor} if cursor else base_params
            response = self._wallet_history(api_key=self.api_key, params=params)
            return response.get("result") or [], response.get("cursor") or None

        entries: list[dict[str, Any]] = []
        for batch, _ in paginate_cursor(page):
            entries.extend({**entry, "chain": str(chain)} for entry in batch)
            logger.debug("Moralis batch size=%d total=%d chain=%s", len(batch), len(entries), chain)
        logger.info("Fetched %d Moralis transactions for %s on %s", len(entries), address, chain)
        return entries


__all__ = ["MoralisClient"]
