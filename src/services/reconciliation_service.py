from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from time import perf_counter

from pydantic import BaseModel

from domain.base_types import TxType
from domain.errors import NotFoundError
from domain.ledger import LedgerTransaction
from domain.reconciliation import ReconciliationRow, ReconciliationTarget, ensure_unique_targets, plan_reconciliation
from domain.store import AccountRegistry, AssetRegistry, LedgerStore
from utils.time_utils import parse_as_of

logger = logging.getLogger(__name__)


class ReconciliationPreview(BaseModel):
    as_of: datetime
    rows: list[ReconciliationRow]


class ReconciliationCommit(BaseModel):
    as_of: datetime
    created: int
    deleted: int
    rows: list[ReconciliationRow]


class ReconciliationService:
    """True-up balances to observed targets with RECONCILIATION rows.

    Concurrent commits are last-writer-wins: a commit recomputes deltas from the
    ledger at commit time, not from an earlier preview.
    """

    def __init__(
        self,
        *,
        store: LedgerStore,
        accounts: AccountRegistry,
        assets: AssetRegistry,
        epsilon: Decimal,
    ) -> None:
        self._store = store
        self._accounts = accounts
        self._assets = assets
        self._epsilon = epsilon

    def preview_reconcile(
        self,
        targets: list[ReconciliationTarget],
        as_of: str | datetime | None = None,
        *,
        replace_existing: bool = True,
    ) -> ReconciliationPreview:
        resolved_as_of = self._validate(targets, as_of)
        rows, _ = plan_reconciliation(
            self._store.query(as_of=resolved_as_of),
            targets,
            as_of=resolved_as_of,
            epsilon=self._epsilon,
            replace_existing=replace_existing,
        )
        return ReconciliationPreview(as_of=resolved_as_of, rows=rows)

    def commit_reconcile(
        self,
        targets: list[ReconciliationTarget],
        as_of: str | datetime | None = None,
        *,
        replace_existing: bool = True,
        external_reference: str | None = None,
        notes: str | None = None,
    ) -> ReconciliationCommit:
        resolved_as_of = self._validate(targets, as_of)
        started = perf_counter()
        rows, replaced_ids = plan_reconciliation(
            self._store.query(as_of=resolved_as_of),
            targets,
            as_of=resolved_as_of,
            epsilon=self._epsilon,
            replace_existing=replace_existing,
        )

        target_notes = {(target.account_id, target.asset_id): target.notes for target in targets}
        new_rows = [
            LedgerTransaction(
                date_time=resolved_as_of,
                account_id=row.account_id,
                asset_id=row.asset_id,
                tx_type=TxType.RECONCILIATION,
                quantity=row.delta_quantity,
                external_reference=external_reference,
                notes=target_notes[(row.account_id, row.asset_id)] or notes,
            )
            for row in rows
            if row.will_create
        ]
        deleted, created = self._store.replace(replaced_ids, new_rows)
        logger.info(
            "Reconciled %d targets as of %s: created=%d deleted=%d in %.2fs",
            len(targets),
            resolved_as_of.isoformat(),
            len(created),
            deleted,
            perf_counter() - started,
        )
        return ReconciliationCommit(as_of=resolved_as_of, created=len(created), deleted=deleted, rows=rows)

    def _validate(self, targets: list[ReconciliationTarget], as_of: str | datetime | None) -> datetime:
        resolved_as_of = parse_as_of(as_of)
        ensure_unique_targets(targets)

        account_ids = {target.account_id for target in targets}
        missing_accounts = account_ids - {account.id for account in self._accounts.get_many(account_ids)}
        if missing_accounts:
            raise NotFoundError("Account", missing_accounts)

        asset_ids = {target.asset_id for target in targets}
        missing_assets = asset_ids - {asset.id for asset in self._assets.get_many(asset_ids)}
        if missing_assets:
            raise NotFoundError("Asset", missing_assets)
        return resolved_as_of
