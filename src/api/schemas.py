from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel

from domain.base_types import AssetId, TransactionId
from domain.reconciliation import ReconciliationTarget


class ResolveTransferRequest(BaseModel):
    leg_ids: list[TransactionId]
    action: str


class RecalcRequest(BaseModel):
    mode: str = "PURE"
    as_of: str | None = None
    external_reference: str | None = None
    notes: str | None = None


class CostBasisResetRequest(BaseModel):
    asset_id: AssetId
    date_time: str | None = None
    unit_price: Decimal | None = None
    total_value: Decimal | None = None
    external_reference: str | None = None
    notes: str | None = None


class ReconcileRequest(BaseModel):
    as_of: str | None = None
    targets: list[ReconciliationTarget]
    replace_existing: bool = True
    external_reference: str | None = None
    notes: str | None = None
