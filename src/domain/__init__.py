"""Domain models and types for the exchange ledger.

This package contains in-memory (Pydantic) models describing accounts, the
canonical ledger, upstream exchange records and cost-basis results. They are
independent from persistence models so that business logic and testing can
evolve without DB coupling.
"""

__all__ = [
    "accounts",
    "assets",
    "cost_basis",
    "errors",
    "ledger",
    "pricing",
    "records",
    "sync_cursor",
]
