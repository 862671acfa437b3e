from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from domain.errors import ExchangeAPIError, TransientUpstreamError

from .rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

RETRY_STATUSES = frozenset({418, 429, 500, 502, 503, 504})


class RequestSigner(Protocol):
    def sign(
        self, method: str, path: str, params: dict[str, Any]
    ) -> tuple[dict[str, Any], dict[str, str]]: ...


class ExchangeHttpClient:
    """Rate-limited, retrying JSON client for one exchange's REST API.

    429 and 5xx responses are retried with backoff by the mounted adapter;
    only once retries are exhausted does the caller see a
    ``TransientUpstreamError``.
    """

    def __init__(
        self,
        *,
        exchange: str,
        base_url: str,
        limiter: TokenBucket,
        signer: RequestSigner | None = None,
        unwrap: Callable[[Any], Any] | None = None,
        timeout: float = 15.0,
        session: requests.Session | None = None,
        retry_attempts: int = 5,
        retry_backoff_seconds: float = 1.0,
    ) -> None:
        self.exchange = exchange
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._limiter = limiter
        self._signer = signer
        self._unwrap = unwrap
        self._session = session or requests.Session()

        retry = Retry(
            total=retry_attempts,
            backoff_factor=retry_backoff_seconds,
            status_forcelist=RETRY_STATUSES,
            allowed_methods={"GET"},
            respect_retry_after_header=True,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def get(self, path: str, params: dict[str, Any] | None = None, *, signed: bool = True, weight: float = 1.0) -> Any:
        return self.request("GET", path, params=params, signed=signed, weight=weight)

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        signed: bool = True,
        weight: float = 1.0,
    ) -> Any:
        query = {key: value for key, value in (params or {}).items() if value is not None}
        headers: dict[str, str] = {}
        if signed:
            if self._signer is None:
                raise ExchangeAPIError("Signed request without credentials", exchange=self.exchange)
            query, headers = self._signer.sign(method, path, query)

        # Heavy endpoints drain the whole bucket rather than exceeding it.
        self._limiter.acquire(min(weight, self._limiter.capacity))
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, params=query, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RetryError as exc:
            raise TransientUpstreamError(f"{self.exchange} {path}: retries exhausted") from exc
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientUpstreamError(f"{self.exchange} {path}: {exc}") from exc
        except requests.HTTPError as exc:
            resp = exc.response
            message, payload = self._extract_error(resp)
            status_code = resp.status_code if resp is not None else None
            raise ExchangeAPIError(message, exchange=self.exchange, status_code=status_code, payload=payload) from exc
        except requests.RequestException as exc:
            raise ExchangeAPIError(f"{self.exchange} request failed", exchange=self.exchange) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ExchangeAPIError(
                f"{self.exchange} returned invalid JSON", exchange=self.exchange, payload=response.text
            ) from exc

        if self._unwrap is not None:
            return self._unwrap(payload)
        return payload

    def _extract_error(self, response: Response | None) -> tuple[str, Any]:
        message = f"{self.exchange} API request failed"
        if response is None:
            return message, None
        try:
            payload = response.json()
        except ValueError:
            return message, response.text
        if isinstance(payload, dict):
            detail = payload.get("msg") or payload.get("retMsg") or payload.get("message")
            if detail:
                message = f"{self.exchange}: {detail}"
        return message, payload


__all__ = ["ExchangeHttpClient", "RequestSigner"]
