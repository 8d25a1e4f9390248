from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

from domain.ledger import Asset

from .coingecko_client import CoinGeckoClient, resolve_coingecko_id
from .price_types import SpotQuote


class PriceSnapshotSource(Protocol):
    def fetch_spot(self, assets: list[Asset], quote_currency: str) -> list[SpotQuote]: ...


class CoinGeckoSource(PriceSnapshotSource):
    def __init__(self, *, client: CoinGeckoClient | None = None, source_name: str = "coingecko") -> None:
        self.client = client or CoinGeckoClient()
        self.source_name = source_name

    def fetch_spot(self, assets: list[Asset], quote_currency: str) -> list[SpotQuote]:
        coin_ids = {asset.id: resolve_coingecko_id(asset.symbol) for asset in assets}
        prices = self.client.get_simple_prices(coin_ids.values(), quote_currency)
        fetched_at = datetime.now(timezone.utc)
        return [
            SpotQuote(asset_id=asset_id, price_in_base=prices[coin_id], source=self.source_name, timestamp=fetched_at)
            for asset_id, coin_id in coin_ids.items()
            if coin_id in prices
        ]


__all__ = [
    "CoinGeckoSource",
    "PriceSnapshotSource",
]
