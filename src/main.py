from __future__ import annotations

import argparse
import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from time import perf_counter
from typing import Sequence

from sqlalchemy.orm import Session

from config import AppSettings, config
from db.db import init_db
from db.repositories import AccountRepository, AssetRepository, LedgerTransactionRepository, PriceLatestRepository
from domain.base_types import AccountId, AssetId, TransactionId
from domain.cost_basis import CostBasisEngine
from domain.errors import LedgerError
from domain.reconciliation import ReconciliationTarget
from domain.transfers import TransferMatcher
from importers.ledger_csv import load_accounts_csv, load_assets_csv, load_ledger_csv
from services.coingecko_client import CoinGeckoClient
from services.cost_basis_service import CostBasisService
from services.holdings_service import HoldingsService
from services.price_service import PriceResolver, refresh_prices
from services.price_sources import CoinGeckoSource
from services.reconciliation_service import ReconciliationService
from services.transfer_service import TransferService, transfer_tolerance
from utils.formatting import format_decimal, render_table
from utils.holdings_summary import render_hedge_exposure, render_holdings

logger = logging.getLogger(__name__)


class Services:
    """Repositories and services bound to one session."""

    def __init__(self, session: Session, settings: AppSettings) -> None:
        self.store = LedgerTransactionRepository(session)
        self.accounts = AccountRepository(session)
        self.assets = AssetRepository(session)
        self.prices = PriceLatestRepository(session)
        self.resolver = PriceResolver(
            asset_repository=self.assets,
            price_repository=self.prices,
            refresh_interval=timedelta(minutes=settings.price_refresh_interval_minutes),
        )
        tolerance = transfer_tolerance(settings)
        self.transfers = TransferService(
            store=self.store, matcher=TransferMatcher(tolerance), accounts=self.accounts, assets=self.assets
        )
        self.cost_basis = CostBasisService(
            store=self.store,
            engine=CostBasisEngine(tolerance=tolerance),
            accounts=self.accounts,
            assets=self.assets,
            epsilon=settings.transfer_quantity_epsilon,
        )
        self.reconciliation = ReconciliationService(
            store=self.store, accounts=self.accounts, assets=self.assets, epsilon=settings.reconcile_epsilon
        )
        self.holdings = HoldingsService(
            store=self.store, accounts=self.accounts, assets=self.assets, price_provider=self.resolver
        )


def cmd_import_csv(services: Services, args: argparse.Namespace) -> None:
    if args.accounts:
        accounts = services.accounts.create_many(load_accounts_csv(args.accounts))
        logger.info("Stored %d accounts from %s", len(accounts), args.accounts)
    if args.assets:
        assets = services.assets.create_many(load_assets_csv(args.assets))
        logger.info("Stored %d assets from %s", len(assets), args.assets)
    if args.ledger:
        started = perf_counter()
        transactions = services.store.append_many(load_ledger_csv(args.ledger))
        logger.info("Imported %d ledger rows from %s in %.2fs", len(transactions), args.ledger, perf_counter() - started)
        print(f"Imported {len(transactions)} ledger rows from {args.ledger}")


def cmd_issues(services: Services, args: argparse.Namespace) -> None:
    result = services.transfers.list_transfer_issues(asset_ids=args.asset, account_ids=args.account)
    print(f"Transfer issues: {result.total}")
    rows = [
        [
            issue.key,
            issue.date_time.isoformat(),
            issue.asset_id,
            issue.issue,
            ", ".join(f"#{leg.id} {leg.account_name or leg.account_id} {format_decimal(leg.quantity)}" for leg in issue.legs),
        ]
        for issue in result.diagnostics
    ]
    if rows:
        print(render_table(["Key", "Date", "Asset", "Issue", "Legs"], rows, numeric_from=len(rows[0])))


def cmd_resolve(services: Services, args: argparse.Namespace) -> None:
    resolution = services.transfers.resolve_transfer([TransactionId(leg_id) for leg_id in args.leg_ids], args.action)
    print(f"{resolution.action}: updated {resolution.updated} legs")
    if resolution.transfer_group_id:
        print(f"Transfer group: {resolution.transfer_group_id}")


def cmd_recalc(services: Services, args: argparse.Namespace) -> None:
    result = services.cost_basis.recalc_cost_basis(
        mode=args.mode, as_of=args.as_of, external_reference=args.external_reference, notes=args.notes
    )
    print(f"Recalc ({result.mode}) as of {result.as_of.isoformat()}")
    print(f"  Created resets:        {result.created}")
    print(f"  Skipped (unknown):     {result.skipped_unknown}")
    print(f"  Skipped (zero qty):    {result.skipped_zero_quantity}")
    print(f"  Transfer diagnostics:  {len(result.diagnostics)}")


def cmd_reset(services: Services, args: argparse.Namespace) -> None:
    result = services.cost_basis.create_cost_basis_reset(
        AssetId(args.asset),
        args.date_time,
        unit_price=args.unit_price,
        total_value=args.total_value,
        external_reference=args.external_reference,
        notes=args.notes,
    )
    print(f"Created {result.created} cost basis resets for {result.asset_id} at {result.date_time.isoformat()}")


def cmd_reconcile(services: Services, args: argparse.Namespace) -> None:
    targets: list[ReconciliationTarget] = args.target
    if args.commit:
        committed = services.reconciliation.commit_reconcile(
            targets,
            args.as_of,
            replace_existing=not args.keep_existing,
            external_reference=args.external_reference,
            notes=args.notes,
        )
        as_of, rows = committed.as_of, committed.rows
        print(f"Committed: created={committed.created} deleted={committed.deleted}")
    else:
        preview = services.reconciliation.preview_reconcile(
            targets, args.as_of, replace_existing=not args.keep_existing
        )
        as_of, rows = preview.as_of, preview.rows

    print(f"Reconciliation as of {as_of.isoformat()}")
    table_rows = [
        [
            row.account_id,
            row.asset_id,
            format_decimal(row.current_quantity),
            format_decimal(row.target_quantity),
            format_decimal(row.delta_quantity),
            "yes" if row.will_create else "no",
        ]
        for row in rows
    ]
    print(render_table(["Account", "Asset", "Current", "Target", "Delta", "Write"], table_rows, numeric_from=2))


def cmd_holdings(services: Services, args: argparse.Namespace) -> None:
    render_holdings(services.holdings.get_holdings(account_ids=args.account, consolidated=args.consolidated))
    if args.hedges:
        render_hedge_exposure(services.holdings.hedge_exposure())


def cmd_refresh_prices(services: Services, args: argparse.Namespace, settings: AppSettings) -> None:
    source = CoinGeckoSource(client=CoinGeckoClient(base_url=settings.coingecko_base_url))
    refreshed = refresh_prices(
        source=source,
        asset_repository=services.assets,
        price_repository=services.prices,
        quote_currency=settings.base_currency,
        asset_ids=[AssetId(asset_id) for asset_id in args.asset] if args.asset else None,
    )
    print(f"Refreshed {refreshed} prices")


def _parse_target(raw: str) -> ReconciliationTarget:
    """ACCOUNT:ASSET=QUANTITY"""
    position, sep, quantity = raw.partition("=")
    account_id, colon, asset_id = position.partition(":")
    if not sep or not colon:
        raise argparse.ArgumentTypeError(f"Target must look like ACCOUNT:ASSET=QUANTITY, got {raw!r}")
    try:
        target_quantity = Decimal(quantity.strip())
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid target quantity in {raw!r}") from exc
    return ReconciliationTarget(
        account_id=AccountId(account_id.strip()),
        asset_id=AssetId(asset_id.strip()),
        target_quantity=target_quantity,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Portfolio ledger reconciliation.")
    parser.add_argument("--database-url", default=None, help="Overrides DATABASE_URL from settings.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import-csv", help="Load accounts, assets and ledger rows from CSV files.")
    import_parser.add_argument("--accounts", type=Path)
    import_parser.add_argument("--assets", type=Path)
    import_parser.add_argument("--ledger", type=Path)

    issues_parser = subparsers.add_parser("issues", help="List transfer issues.")
    issues_parser.add_argument("--asset", action="append")
    issues_parser.add_argument("--account", action="append")

    resolve_parser = subparsers.add_parser("resolve", help="MATCH or SEPARATE transfer legs.")
    resolve_parser.add_argument("action", choices=["MATCH", "SEPARATE"])
    resolve_parser.add_argument("leg_ids", type=int, nargs="+")

    recalc_parser = subparsers.add_parser("recalc", help="Recalculate cost basis and write checkpoint resets.")
    recalc_parser.add_argument("--mode", default="PURE", choices=["PURE", "HONOR_RESETS"])
    recalc_parser.add_argument("--as-of")
    recalc_parser.add_argument("--external-reference")
    recalc_parser.add_argument("--notes")

    reset_parser = subparsers.add_parser("reset", help="Write manual cost basis resets for an asset.")
    reset_parser.add_argument("asset")
    reset_parser.add_argument("--date-time")
    valuation = reset_parser.add_mutually_exclusive_group(required=True)
    valuation.add_argument("--unit-price", type=Decimal)
    valuation.add_argument("--total-value", type=Decimal)
    reset_parser.add_argument("--external-reference")
    reset_parser.add_argument("--notes")

    reconcile_parser = subparsers.add_parser("reconcile", help="Preview or commit target balances.")
    reconcile_parser.add_argument("target", nargs="+", type=_parse_target, help="ACCOUNT:ASSET=QUANTITY")
    reconcile_parser.add_argument("--as-of")
    reconcile_parser.add_argument("--commit", action="store_true")
    reconcile_parser.add_argument("--keep-existing", action="store_true", help="Stack on earlier reconciliations.")
    reconcile_parser.add_argument("--external-reference")
    reconcile_parser.add_argument("--notes")

    holdings_parser = subparsers.add_parser("holdings", help="Show valued holdings.")
    holdings_parser.add_argument("--account", action="append")
    holdings_parser.add_argument("--consolidated", action="store_true")
    holdings_parser.add_argument("--hedges", action="store_true")

    prices_parser = subparsers.add_parser("refresh-prices", help="Fetch spot prices for AUTO assets.")
    prices_parser.add_argument("--asset", action="append")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = config()
    database_url = args.database_url or settings.database_url
    logger.info("Opening database %s", database_url)

    with init_db(database_url) as session:
        services = Services(session, settings)
        try:
            if args.command == "import-csv":
                cmd_import_csv(services, args)
            elif args.command == "issues":
                cmd_issues(services, args)
            elif args.command == "resolve":
                cmd_resolve(services, args)
            elif args.command == "recalc":
                cmd_recalc(services, args)
            elif args.command == "reset":
                cmd_reset(services, args)
            elif args.command == "reconcile":
                cmd_reconcile(services, args)
            elif args.command == "holdings":
                cmd_holdings(services, args)
            elif args.command == "refresh-prices":
                cmd_refresh_prices(services, args, settings)
        except LedgerError as exc:
            logger.error("%s failed: %s", args.command, exc)
            print(f"Error: {exc}")
            return 1
    return 0


if __name__ == "__main__":
    logging.basicConfig(
        level=config().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    raise SystemExit(main())
