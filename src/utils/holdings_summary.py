from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from domain.base_types import AccountId, AssetId, PricingMode

from .formatting import format_currency, format_decimal, render_table

CONSOLIDATED_ACCOUNT_ID = AccountId("consolidated")


class HoldingRow(BaseModel):
    asset_id: AssetId
    asset_symbol: str
    asset_name: str
    asset_type: str
    volatility_bucket: str
    pricing_mode: PricingMode
    account_id: AccountId
    account_name: str
    quantity: Decimal
    price: Decimal | None
    last_updated: datetime | None
    is_manual: bool
    is_stale: bool
    market_value: Decimal | None


class HoldingsSummary(BaseModel):
    total_value: Decimal = Decimal(0)
    by_type: dict[str, Decimal] = {}
    by_volatility: dict[str, Decimal] = {}
    updated_at: datetime | None = None


class HoldingsResult(BaseModel):
    rows: list[HoldingRow]
    summary: HoldingsSummary


class HedgeExposureRow(BaseModel):
    asset_id: AssetId
    asset_symbol: str
    spot_quantity: Decimal
    hedge_quantity: Decimal
    net_quantity: Decimal
    price: Decimal | None
    net_value: Decimal | None


def sort_by_market_value(rows: list[HoldingRow]) -> list[HoldingRow]:
    """Descending by market value; unpriced rows sort as zero."""
    return sorted(rows, key=lambda row: row.market_value if row.market_value is not None else Decimal(0), reverse=True)


def summarize_holdings(rows: list[HoldingRow]) -> HoldingsSummary:
    """Totals cover priced rows only."""
    summary = HoldingsSummary(by_type={}, by_volatility={})
    for row in rows:
        if row.price is None or row.market_value is None:
            continue
        summary.total_value += row.market_value
        summary.by_type[row.asset_type] = summary.by_type.get(row.asset_type, Decimal(0)) + row.market_value
        summary.by_volatility[row.volatility_bucket] = (
            summary.by_volatility.get(row.volatility_bucket, Decimal(0)) + row.market_value
        )
        if row.last_updated is not None and (summary.updated_at is None or row.last_updated > summary.updated_at):
            summary.updated_at = row.last_updated
    return summary


def consolidate_holdings(rows: list[HoldingRow]) -> list[HoldingRow]:
    """Merge account rows per asset. A consolidated row is stale only when all its rows are."""
    grouped: dict[AssetId, list[HoldingRow]] = defaultdict(list)
    for row in rows:
        grouped[row.asset_id].append(row)

    consolidated: list[HoldingRow] = []
    for asset_rows in grouped.values():
        reference = asset_rows[0]
        priced = next((row for row in asset_rows if row.price is not None), None)
        updated = [row.last_updated for row in asset_rows if row.last_updated is not None]
        consolidated.append(
            reference.model_copy(
                update={
                    "account_id": CONSOLIDATED_ACCOUNT_ID,
                    "account_name": "Consolidated",
                    "quantity": sum((row.quantity for row in asset_rows), Decimal(0)),
                    "price": priced.price if priced is not None else None,
                    "is_manual": priced.is_manual if priced is not None else False,
                    "is_stale": all(row.is_stale for row in asset_rows),
                    "last_updated": max(updated) if updated else None,
                    "market_value": (
                        sum((row.market_value or Decimal(0) for row in asset_rows), Decimal(0))
                        if priced is not None
                        else None
                    ),
                }
            )
        )
    return sort_by_market_value(consolidated)


def render_holdings(result: HoldingsResult) -> None:
    print("Holdings:")
    if not result.rows:
        print("  (empty)")
        return

    rows = [
        [
            row.asset_symbol,
            row.account_name,
            format_decimal(row.quantity),
            format_currency(row.price),
            format_currency(row.market_value),
            ("manual" if row.is_manual else "") + (" stale" if row.is_stale else ""),
        ]
        for row in result.rows
    ]
    print(render_table(["Asset", "Account", "Quantity", "Price", "Value", "Flags"], rows, numeric_from=2))
    print(f"Total value: {format_currency(result.summary.total_value)}")
    for asset_type, value in sorted(result.summary.by_type.items()):
        print(f"  {asset_type}: {format_currency(value)}")


def render_hedge_exposure(rows: list[HedgeExposureRow]) -> None:
    print("Hedge exposure:")
    if not rows:
        print("  (empty)")
        return

    table_rows = [
        [
            row.asset_symbol,
            format_decimal(row.spot_quantity),
            format_decimal(row.hedge_quantity),
            format_decimal(row.net_quantity),
            format_currency(row.net_value),
        ]
        for row in rows
    ]
    print(render_table(["Asset", "Spot", "Hedge", "Net", "Net value"], table_rows))
