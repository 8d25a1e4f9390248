"""Domain models and rules for the portfolio ledger.

In-memory (Pydantic) models of ledger rows plus the pure engines that work on
them: transfer matching, FIFO cost-basis replay, reconciliation planning and
price resolution. They are independent from persistence models so that
business logic and testing can evolve without DB coupling.
"""

__all__ = [
    "cost_basis",
    "ledger",
    "pricing",
    "reconciliation",
    "transfers",
]
