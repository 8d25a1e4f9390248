from __future__ import annotations

from enum import StrEnum
from typing import NewType

TransactionId = NewType("TransactionId", int)
AccountId = NewType("AccountId", str)
AssetId = NewType("AssetId", str)
TransferGroupId = NewType("TransferGroupId", str)


class TxType(StrEnum):
    TRADE = "TRADE"
    TRANSFER = "TRANSFER"
    HEDGE = "HEDGE"
    FEE = "FEE"
    RECONCILIATION = "RECONCILIATION"
    COST_BASIS_RESET = "COST_BASIS_RESET"


class PricingMode(StrEnum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class RecalcMode(StrEnum):
    PURE = "PURE"
    HONOR_RESETS = "HONOR_RESETS"


class TransferAction(StrEnum):
    MATCH = "MATCH"
    SEPARATE = "SEPARATE"


class TransferIssueKind(StrEnum):
    UNMATCHED = "UNMATCHED"
    AMBIGUOUS = "AMBIGUOUS"
    INVALID_LEGS = "INVALID_LEGS"
    FEE_MISMATCH = "FEE_MISMATCH"
