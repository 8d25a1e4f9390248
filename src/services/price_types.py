from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from domain.base_types import AssetId


@dataclass(frozen=True)
class SpotQuote:
    """Current spot price of one asset in the base currency."""

    asset_id: AssetId
    price_in_base: Decimal
    source: str
    timestamp: datetime


__all__ = ["SpotQuote"]
