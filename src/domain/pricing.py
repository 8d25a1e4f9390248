from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Protocol

from domain.base_types import AssetId, PricingMode


@dataclass(frozen=True)
class LatestPrice:
    price_in_base: Decimal
    last_updated: datetime
    source: str = ""


@dataclass(frozen=True)
class PriceResolution:
    """Resolved price for one asset. ``price`` is None when the asset is unpriced."""

    price: Decimal | None
    is_stale: bool
    source: PricingMode
    last_updated: datetime | None = None

    @property
    def is_priced(self) -> bool:
        return self.price is not None


class PriceProvider(Protocol):
    """Lookup interface for the current base-currency price of an asset."""

    def resolve_price(self, asset_id: AssetId) -> PriceResolution: ...


def valid_price(value: Decimal | None) -> Decimal | None:
    if value is None or not value.is_finite() or value <= 0:
        return None
    return value


def is_price_stale(last_updated: datetime | None, refresh_interval: timedelta, now: datetime) -> bool:
    if last_updated is None:
        return True
    return now - last_updated > refresh_interval


def resolve_asset_price(
    *,
    pricing_mode: PricingMode,
    manual_price: Decimal | None,
    latest: LatestPrice | None,
    refresh_interval: timedelta,
    now: datetime,
) -> PriceResolution:
    if pricing_mode == PricingMode.MANUAL:
        price = valid_price(manual_price)
        return PriceResolution(price=price, is_stale=price is None, source=PricingMode.MANUAL)

    if latest is None:
        return PriceResolution(price=None, is_stale=True, source=PricingMode.AUTO)

    return PriceResolution(
        price=valid_price(latest.price_in_base),
        is_stale=is_price_stale(latest.last_updated, refresh_interval, now),
        source=PricingMode.AUTO,
        last_updated=latest.last_updated,
    )
