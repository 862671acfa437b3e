from __future__ import annotations

from typing import Any


class TransientUpstreamError(RuntimeError):
    """Rate limit or network failure that is retried below the connector."""


class ExchangeAPIError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        exchange: str,
        status_code: int | None = None,
        payload: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.exchange = exchange
        self.status_code = status_code
        self.payload = payload


class PhaseError(RuntimeError):
    def __init__(self, message: str, *, phase: int) -> None:
        super().__init__(message)
        self.phase = phase


class JobError(RuntimeError):
    """Job-level failure that should mark the connection as errored."""

    def __init__(self, message: str, *, connection_id: str | None = None) -> None:
        super().__init__(message)
        self.connection_id = connection_id


class CredentialsError(JobError):
    pass


__all__ = ["CredentialsError", "ExchangeAPIError", "JobError", "PhaseError", "TransientUpstreamError"]
