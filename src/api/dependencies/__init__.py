from datetime import timedelta
from typing import Annotated, Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from config import AppSettings, config
from db.repositories import AccountRepository, AssetRepository, LedgerTransactionRepository, PriceLatestRepository
from domain.cost_basis import CostBasisEngine
from domain.transfers import TransferMatcher
from services.cost_basis_service import CostBasisService
from services.holdings_service import HoldingsService
from services.price_service import PriceResolver
from services.reconciliation_service import ReconciliationService
from services.transfer_service import TransferService, transfer_tolerance


def get_settings() -> AppSettings:
    return config()


def get_session(request: Request) -> Generator[Session, None, None]:
    with request.app.state.sessionmaker() as session:
        yield session


def get_ledger_repository(session: Annotated[Session, Depends(get_session)]) -> LedgerTransactionRepository:
    return LedgerTransactionRepository(session)


def get_account_repository(session: Annotated[Session, Depends(get_session)]) -> AccountRepository:
    return AccountRepository(session)


def get_asset_repository(session: Annotated[Session, Depends(get_session)]) -> AssetRepository:
    return AssetRepository(session)


def get_price_resolver(
    session: Annotated[Session, Depends(get_session)],
    assets: Annotated[AssetRepository, Depends(get_asset_repository)],
    settings: Annotated[AppSettings, Depends(get_settings)],
) -> PriceResolver:
    return PriceResolver(
        asset_repository=assets,
        price_repository=PriceLatestRepository(session),
        refresh_interval=timedelta(minutes=settings.price_refresh_interval_minutes),
    )


def get_transfer_service(
    store: Annotated[LedgerTransactionRepository, Depends(get_ledger_repository)],
    accounts: Annotated[AccountRepository, Depends(get_account_repository)],
    assets: Annotated[AssetRepository, Depends(get_asset_repository)],
    settings: Annotated[AppSettings, Depends(get_settings)],
) -> TransferService:
    return TransferService(
        store=store,
        matcher=TransferMatcher(transfer_tolerance(settings)),
        accounts=accounts,
        assets=assets,
    )


def get_cost_basis_service(
    store: Annotated[LedgerTransactionRepository, Depends(get_ledger_repository)],
    accounts: Annotated[AccountRepository, Depends(get_account_repository)],
    assets: Annotated[AssetRepository, Depends(get_asset_repository)],
    settings: Annotated[AppSettings, Depends(get_settings)],
) -> CostBasisService:
    return CostBasisService(
        store=store,
        engine=CostBasisEngine(tolerance=transfer_tolerance(settings)),
        accounts=accounts,
        assets=assets,
        epsilon=settings.transfer_quantity_epsilon,
    )


def get_reconciliation_service(
    store: Annotated[LedgerTransactionRepository, Depends(get_ledger_repository)],
    accounts: Annotated[AccountRepository, Depends(get_account_repository)],
    assets: Annotated[AssetRepository, Depends(get_asset_repository)],
    settings: Annotated[AppSettings, Depends(get_settings)],
) -> ReconciliationService:
    return ReconciliationService(store=store, accounts=accounts, assets=assets, epsilon=settings.reconcile_epsilon)


def get_holdings_service(
    store: Annotated[LedgerTransactionRepository, Depends(get_ledger_repository)],
    accounts: Annotated[AccountRepository, Depends(get_account_repository)],
    assets: Annotated[AssetRepository, Depends(get_asset_repository)],
    prices: Annotated[PriceResolver, Depends(get_price_resolver)],
) -> HoldingsService:
    return HoldingsService(store=store, accounts=accounts, assets=assets, price_provider=prices)
