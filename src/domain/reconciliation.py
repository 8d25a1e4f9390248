from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel

from domain.base_types import AccountId, AssetId, TransactionId, TxType
from domain.errors import ValidationError
from domain.ledger import LedgerTransaction


class ReconciliationTarget(BaseModel):
    account_id: AccountId
    asset_id: AssetId
    target_quantity: Decimal
    notes: str | None = None


class ReconciliationRow(BaseModel):
    account_id: AccountId
    asset_id: AssetId
    current_quantity: Decimal
    target_quantity: Decimal
    delta_quantity: Decimal
    will_create: bool


def ensure_unique_targets(targets: list[ReconciliationTarget]) -> None:
    if not targets:
        raise ValidationError("targets must not be empty")
    seen: set[tuple[AccountId, AssetId]] = set()
    for target in targets:
        key = (target.account_id, target.asset_id)
        if key in seen:
            raise ValidationError(f"Duplicate target for account={target.account_id} asset={target.asset_id}")
        seen.add(key)


def is_replaceable(tx: LedgerTransaction, as_of: datetime) -> bool:
    return tx.tx_type == TxType.RECONCILIATION and tx.date_time == as_of


def plan_reconciliation(
    transactions: Iterable[LedgerTransaction],
    targets: list[ReconciliationTarget],
    *,
    as_of: datetime,
    epsilon: Decimal,
    replace_existing: bool = False,
) -> tuple[list[ReconciliationRow], list[TransactionId]]:
    """Compute per-target deltas against the ledger at ``as_of`` (inclusive).

    With ``replace_existing`` the RECONCILIATION rows already sitting at
    ``as_of`` for a targeted (account, asset) are left out of the current
    quantity and their ids are returned for deletion.
    """
    targeted = {(target.account_id, target.asset_id) for target in targets}
    current: dict[tuple[AccountId, AssetId], Decimal] = defaultdict(lambda: Decimal(0))
    replaced_ids: list[TransactionId] = []

    for tx in transactions:
        key = (tx.account_id, tx.asset_id)
        if key not in targeted or tx.date_time > as_of:
            continue
        if replace_existing and is_replaceable(tx, as_of):
            if tx.id is not None:
                replaced_ids.append(tx.id)
            continue
        current[key] += tx.quantity

    rows = []
    for target in targets:
        current_quantity = current[(target.account_id, target.asset_id)]
        delta = target.target_quantity - current_quantity
        rows.append(
            ReconciliationRow(
                account_id=target.account_id,
                asset_id=target.asset_id,
                current_quantity=current_quantity,
                target_quantity=target.target_quantity,
                delta_quantity=delta,
                will_create=abs(delta) > epsilon,
            )
        )
    return rows, replaced_ids
