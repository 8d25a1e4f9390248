from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Iterable

from domain.balance_tracker import BalanceTracker
from domain.base_types import AccountId, AssetId, PricingMode, TxType
from domain.pricing import PriceProvider
from domain.store import AccountRegistry, AssetRegistry, LedgerStore
from utils.holdings_summary import (
    HedgeExposureRow,
    HoldingRow,
    HoldingsResult,
    consolidate_holdings,
    sort_by_market_value,
    summarize_holdings,
)


class HoldingsService:
    def __init__(
        self,
        *,
        store: LedgerStore,
        accounts: AccountRegistry,
        assets: AssetRegistry,
        price_provider: PriceProvider,
    ) -> None:
        self._store = store
        self._accounts = accounts
        self._assets = assets
        self._price_provider = price_provider

    def get_holdings(
        self,
        account_ids: Iterable[AccountId] | None = None,
        consolidated: bool = False,
    ) -> HoldingsResult:
        """Per-account quantities joined with price resolution.

        Zero balances and rows whose account or asset is not registered are left out.
        """
        wanted = set(account_ids) if account_ids else None
        tracker = BalanceTracker()
        tracker.apply_transactions(
            tx for tx in self._store.query() if wanted is None or tx.account_id in wanted
        )
        positions = {key: quantity for key, quantity in tracker.positions().items() if quantity != 0}

        accounts = {account.id: account for account in self._accounts.get_many({key[0] for key in positions})}
        assets = {asset.id: asset for asset in self._assets.get_many({key[1] for key in positions})}

        rows: list[HoldingRow] = []
        for (account_id, asset_id), quantity in positions.items():
            account = accounts.get(account_id)
            asset = assets.get(asset_id)
            if account is None or asset is None:
                continue
            resolution = self._price_provider.resolve_price(asset_id)
            rows.append(
                HoldingRow(
                    asset_id=asset.id,
                    asset_symbol=asset.symbol,
                    asset_name=asset.name,
                    asset_type=asset.asset_type,
                    volatility_bucket=asset.volatility_bucket,
                    pricing_mode=asset.pricing_mode,
                    account_id=account.id,
                    account_name=account.name,
                    quantity=quantity,
                    price=resolution.price,
                    last_updated=resolution.last_updated,
                    is_manual=resolution.source == PricingMode.MANUAL,
                    is_stale=resolution.is_stale,
                    market_value=quantity * resolution.price if resolution.price is not None else None,
                )
            )

        rows = consolidate_holdings(rows) if consolidated else sort_by_market_value(rows)
        return HoldingsResult(rows=rows, summary=summarize_holdings(rows))

    def hedge_exposure(self) -> list[HedgeExposureRow]:
        spot: dict[AssetId, Decimal] = defaultdict(lambda: Decimal(0))
        hedge: dict[AssetId, Decimal] = defaultdict(lambda: Decimal(0))
        for tx in self._store.query():
            if tx.tx_type == TxType.HEDGE:
                hedge[tx.asset_id] += tx.quantity
            else:
                spot[tx.asset_id] += tx.quantity

        hedged_assets = {asset_id for asset_id, quantity in hedge.items() if quantity != 0}
        assets = {asset.id: asset for asset in self._assets.get_many(hedged_assets)}

        rows: list[HedgeExposureRow] = []
        for asset_id in sorted(hedged_assets):
            net_quantity = spot[asset_id] + hedge[asset_id]
            price = self._price_provider.resolve_price(asset_id).price
            asset = assets.get(asset_id)
            rows.append(
                HedgeExposureRow(
                    asset_id=asset_id,
                    asset_symbol=asset.symbol if asset is not None else asset_id,
                    spot_quantity=spot[asset_id],
                    hedge_quantity=hedge[asset_id],
                    net_quantity=net_quantity,
                    price=price,
                    net_value=net_quantity * price if price is not None else None,
                )
            )
        return rows
