from datetime import timedelta
from decimal import Decimal
from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import AppSettings
from db.models import Base
from db.repositories import AccountRepository, AssetRepository, LedgerTransactionRepository, PriceLatestRepository
from domain.base_types import PricingMode
from domain.cost_basis import CostBasisEngine
from domain.ledger import Account, Asset
from domain.transfers import TransferMatcher, TransferTolerance
from services.cost_basis_service import CostBasisService
from services.holdings_service import HoldingsService
from services.reconciliation_service import ReconciliationService
from services.transfer_service import TransferService, transfer_tolerance
from tests.constants import BROKER, BTC, COLD, ETH, EXCHANGE, USDC
from tests.helpers.fixed_price_provider import FixedPriceProvider
from tests.helpers.time_utils import DEFAULT_TIME_GEN

engine: Engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
session_factory = sessionmaker(engine)


@pytest.fixture(scope="function")
def db_sessionmaker() -> sessionmaker[Session]:
    return session_factory


@pytest.fixture(scope="function")
def test_session() -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session


@pytest.fixture(scope="function", autouse=True)
def reset_db() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _reset_default_time_gen() -> None:
    DEFAULT_TIME_GEN.reset()


@pytest.fixture(scope="function")
def settings() -> AppSettings:
    return AppSettings(
        database_url="sqlite://",
        transfer_match_window_seconds=0,
        transfer_quantity_epsilon=Decimal("0.000001"),
        transfer_fee_tolerance=Decimal("0.5"),
        transfer_fee_tolerance_ratio=Decimal("0"),
        reconcile_epsilon=Decimal("0.000000001"),
        price_refresh_interval_minutes=60,
    )


@pytest.fixture(scope="function")
def tolerance(settings: AppSettings) -> TransferTolerance:
    return transfer_tolerance(settings)


@pytest.fixture(scope="function")
def store(test_session: Session) -> LedgerTransactionRepository:
    return LedgerTransactionRepository(test_session)


@pytest.fixture(scope="function")
def account_repo(test_session: Session) -> AccountRepository:
    return AccountRepository(test_session)


@pytest.fixture(scope="function")
def asset_repo(test_session: Session) -> AssetRepository:
    return AssetRepository(test_session)


@pytest.fixture(scope="function")
def price_repo(test_session: Session) -> PriceLatestRepository:
    return PriceLatestRepository(test_session)


@pytest.fixture(scope="function")
def registries(account_repo: AccountRepository, asset_repo: AssetRepository) -> None:
    account_repo.create_many(
        [
            Account(id=EXCHANGE, name="Exchange", platform="kraken"),
            Account(id=COLD, name="Cold Storage", platform="ledger"),
            Account(id=BROKER, name="Broker", platform="ibkr"),
        ]
    )
    asset_repo.create_many(
        [
            Asset(id=BTC, symbol="BTC", name="Bitcoin"),
            Asset(id=ETH, symbol="ETH", name="Ethereum"),
            Asset(
                id=USDC,
                symbol="USDC",
                name="USD Coin",
                asset_type="STABLE",
                volatility_bucket="CASH_LIKE",
                pricing_mode=PricingMode.MANUAL,
                manual_price=Decimal("1"),
            ),
        ]
    )


@pytest.fixture(scope="function")
def price_provider() -> FixedPriceProvider:
    return FixedPriceProvider({BTC: Decimal("40000"), ETH: Decimal("2000"), USDC: Decimal("1")})


@pytest.fixture(scope="function")
def transfer_service(
    store: LedgerTransactionRepository,
    account_repo: AccountRepository,
    asset_repo: AssetRepository,
    tolerance: TransferTolerance,
) -> TransferService:
    return TransferService(store=store, matcher=TransferMatcher(tolerance), accounts=account_repo, assets=asset_repo)


@pytest.fixture(scope="function")
def cost_basis_service(
    store: LedgerTransactionRepository,
    account_repo: AccountRepository,
    asset_repo: AssetRepository,
    tolerance: TransferTolerance,
    settings: AppSettings,
) -> CostBasisService:
    return CostBasisService(
        store=store,
        engine=CostBasisEngine(tolerance=tolerance),
        accounts=account_repo,
        assets=asset_repo,
        epsilon=settings.transfer_quantity_epsilon,
    )


@pytest.fixture(scope="function")
def reconciliation_service(
    store: LedgerTransactionRepository,
    account_repo: AccountRepository,
    asset_repo: AssetRepository,
    settings: AppSettings,
) -> ReconciliationService:
    return ReconciliationService(
        store=store, accounts=account_repo, assets=asset_repo, epsilon=settings.reconcile_epsilon
    )


@pytest.fixture(scope="function")
def holdings_service(
    store: LedgerTransactionRepository,
    account_repo: AccountRepository,
    asset_repo: AssetRepository,
    price_provider: FixedPriceProvider,
) -> HoldingsService:
    return HoldingsService(store=store, accounts=account_repo, assets=asset_repo, price_provider=price_provider)


@pytest.fixture(scope="function")
def refresh_interval(settings: AppSettings) -> timedelta:
    return timedelta(minutes=settings.price_refresh_interval_minutes)
