from __future__ import annotations

import logging
from datetime import datetime, timedelta
from time import perf_counter
from typing import Iterable

from db.repositories import AssetRepository, PriceLatestRepository
from domain.base_types import AssetId, PricingMode
from domain.errors import NotFoundError
from domain.pricing import LatestPrice, PriceResolution, resolve_asset_price
from utils.time_utils import utc_now

from .coingecko_client import CoinGeckoAPIError
from .price_sources import PriceSnapshotSource

logger = logging.getLogger(__name__)


class PriceResolver:
    """Current base-currency price per asset from the registry and the latest-price cache."""

    def __init__(
        self,
        *,
        asset_repository: AssetRepository,
        price_repository: PriceLatestRepository,
        refresh_interval: timedelta,
        now: datetime | None = None,
    ) -> None:
        self._assets = asset_repository
        self._prices = price_repository
        self._refresh_interval = refresh_interval
        self._now = now

    def resolve_price(self, asset_id: AssetId) -> PriceResolution:
        asset = self._assets.get(asset_id)
        if asset is None:
            return PriceResolution(price=None, is_stale=True, source=PricingMode.AUTO)
        return resolve_asset_price(
            pricing_mode=asset.pricing_mode,
            manual_price=asset.manual_price,
            latest=self._prices.get(asset_id) if asset.pricing_mode == PricingMode.AUTO else None,
            refresh_interval=self._refresh_interval,
            now=self._now or utc_now(),
        )


def refresh_prices(
    *,
    source: PriceSnapshotSource,
    asset_repository: AssetRepository,
    price_repository: PriceLatestRepository,
    quote_currency: str,
    asset_ids: Iterable[AssetId] | None = None,
) -> int:
    """Fetch spot prices for AUTO assets and update the cache. Returns the number of prices written.

    A failed fetch is logged and leaves the cache as it was.
    """
    if asset_ids is None:
        assets = asset_repository.list()
    else:
        wanted = set(asset_ids)
        assets = asset_repository.get_many(wanted)
        missing = wanted - {asset.id for asset in assets}
        if missing:
            raise NotFoundError("Asset", missing)

    auto_assets = [asset for asset in assets if asset.pricing_mode == PricingMode.AUTO]
    if not auto_assets:
        return 0

    started = perf_counter()
    try:
        quotes = source.fetch_spot(auto_assets, quote_currency)
    except CoinGeckoAPIError as exc:
        logger.warning("Price refresh failed for %d assets: %s (status=%s)", len(auto_assets), exc, exc.status_code)
        return 0

    for quote in quotes:
        price_repository.upsert(
            quote.asset_id,
            LatestPrice(price_in_base=quote.price_in_base, last_updated=quote.timestamp, source=quote.source),
        )

    unpriced = sorted({asset.id for asset in auto_assets} - {quote.asset_id for quote in quotes})
    if unpriced:
        logger.warning("No spot price returned for %s", ", ".join(unpriced))
    logger.info("Refreshed %d prices in %.2fs", len(quotes), perf_counter() - started)
    return len(quotes)


__all__ = ["PriceResolver", "refresh_prices"]
