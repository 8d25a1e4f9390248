from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol

from domain.base_types import AccountId, AssetId, TransactionId, TxType
from domain.ledger import Account, Asset, LedgerTransaction


class LedgerStore(Protocol):
    """Append-only, queryable log of ledger transactions.

    ``query`` returns rows ordered by ``(date_time, id)``; ``as_of`` is inclusive.
    ``replace`` deletes and appends in a single storage transaction and returns
    the deleted row count with the appended rows.
    """

    def append(self, tx: LedgerTransaction) -> LedgerTransaction: ...

    def append_many(self, txs: Iterable[LedgerTransaction]) -> list[LedgerTransaction]: ...

    def get_many(self, ids: Iterable[TransactionId]) -> list[LedgerTransaction]: ...

    def query(
        self,
        *,
        account_id: AccountId | None = None,
        asset_id: AssetId | None = None,
        tx_type: TxType | None = None,
        as_of: datetime | None = None,
    ) -> list[LedgerTransaction]: ...

    def update(self, ids: Iterable[TransactionId], **fields: Any) -> int: ...

    def delete(self, ids: Iterable[TransactionId]) -> int: ...

    def replace(
        self, delete_ids: Iterable[TransactionId], txs: Iterable[LedgerTransaction]
    ) -> tuple[int, list[LedgerTransaction]]: ...


class AccountRegistry(Protocol):
    def get_many(self, ids: Iterable[AccountId]) -> list[Account]: ...


class AssetRegistry(Protocol):
    def get(self, asset_id: AssetId) -> Asset | None: ...

    def get_many(self, ids: Iterable[AssetId]) -> list[Asset]: ...
