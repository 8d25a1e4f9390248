from __future__ import annotations

from typing import Iterable


class LedgerError(Exception):
    """Base class for errors raised by ledger operations."""


class ValidationError(LedgerError):
    """Input rejected before any ledger mutation."""


class NotFoundError(LedgerError):
    def __init__(self, entity: str, ids: Iterable[object]) -> None:
        self.entity = entity
        self.ids = sorted(ids, key=str)
        joined = ", ".join(str(value) for value in self.ids)
        super().__init__(f"{entity} not found: {joined}")
