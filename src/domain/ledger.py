from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, field_validator, model_validator

from domain.base_types import AccountId, AssetId, PricingMode, TransactionId, TransferGroupId, TxType


class LedgerTransaction(BaseModel):
    """A single signed movement of one asset in one account.

    Quantity sign convention:
    - Positive quantity indicates an asset/position increase.
    - Negative quantity indicates an asset/position decrease.

    COST_BASIS_RESET rows never move balances: their quantity is zero and the
    checkpointed resting quantity lives in ``checkpoint_quantity``.
    """

    id: TransactionId | None = None
    date_time: datetime
    account_id: AccountId
    asset_id: AssetId
    tx_type: TxType
    quantity: Decimal
    notes: str | None = None
    external_reference: str | None = None
    transfer_group_id: TransferGroupId | None = None
    separated: bool = False
    unit_price_in_base: Decimal | None = None
    total_value_in_base: Decimal | None = None
    checkpoint_quantity: Decimal | None = None
    auto_generated: bool = False

    @field_validator("date_time")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _validate_fields(self) -> LedgerTransaction:
        if self.tx_type == TxType.COST_BASIS_RESET:
            if self.quantity != 0:
                raise ValueError("COST_BASIS_RESET quantity must be zero")
        elif self.quantity == 0:
            raise ValueError("LedgerTransaction.quantity must be non-zero")

        if self.tx_type == TxType.RECONCILIATION and (
            self.unit_price_in_base is not None or self.total_value_in_base is not None
        ):
            raise ValueError("RECONCILIATION rows cannot carry a valuation")

        if self.tx_type != TxType.TRANSFER and (self.transfer_group_id is not None or self.separated):
            raise ValueError("Only TRANSFER rows can be grouped or separated")
        if self.transfer_group_id is not None and self.separated:
            raise ValueError("A transfer leg cannot be both grouped and separated")
        return self

    @property
    def is_unresolved_transfer(self) -> bool:
        return self.tx_type == TxType.TRANSFER and self.transfer_group_id is None and not self.separated

    def base_value(self) -> Decimal | None:
        """Absolute base-currency value carried by the row, if any."""
        if self.total_value_in_base is not None:
            return abs(self.total_value_in_base)
        if self.unit_price_in_base is not None:
            return abs(self.unit_price_in_base * self.quantity)
        return None


class Account(BaseModel):
    id: AccountId
    name: str
    platform: str = ""


class Asset(BaseModel):
    id: AssetId
    symbol: str
    name: str
    asset_type: str = "CRYPTO"
    volatility_bucket: str = "VOLATILE"
    pricing_mode: PricingMode = PricingMode.AUTO
    manual_price: Decimal | None = None


def ledger_sort_key(tx: LedgerTransaction) -> tuple[datetime, int]:
    return tx.date_time, tx.id if tx.id is not None else 0
