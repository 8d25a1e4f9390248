import logging
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Annotated, AsyncGenerator, Awaitable, Callable

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from api.dependencies import (
    get_cost_basis_service,
    get_holdings_service,
    get_reconciliation_service,
    get_transfer_service,
)
from api.schemas import CostBasisResetRequest, ReconcileRequest, RecalcRequest, ResolveTransferRequest
from config import config
from db.db import create_db_engine
from domain.base_types import AccountId, AssetId
from domain.errors import NotFoundError, ValidationError
from services.cost_basis_service import CostBasisService, RecalcResult, ResetResult
from services.holdings_service import HoldingsService
from services.reconciliation_service import ReconciliationCommit, ReconciliationPreview, ReconciliationService
from services.transfer_service import TransferIssueList, TransferResolution, TransferService
from utils.holdings_summary import HedgeExposureRow, HoldingsResult

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI) -> AsyncGenerator[None, None]:
    engine = create_db_engine(config().database_url)
    fastapi_app.state.sessionmaker = sessionmaker(engine)
    yield
    engine.dispose()


app = FastAPI(lifespan=lifespan)


@app.middleware("http")
async def log_process_time(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    start_time = perf_counter()
    response = await call_next(request)
    process_time = perf_counter() - start_time
    logger.info("Request time: %s %s: %.4fs", request.method, request.url, process_time)
    return response


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.get("/transfer-issues")
def list_transfer_issues(
    ts: Annotated[TransferService, Depends(get_transfer_service)],
    asset_ids: Annotated[list[str] | None, Query()] = None,
    account_ids: Annotated[list[str] | None, Query()] = None,
) -> TransferIssueList:
    return ts.list_transfer_issues(
        asset_ids=[AssetId(asset_id) for asset_id in asset_ids] if asset_ids else None,
        account_ids=[AccountId(account_id) for account_id in account_ids] if account_ids else None,
    )


@app.post("/transfer-issues/resolve")
def resolve_transfer(
    body: ResolveTransferRequest,
    ts: Annotated[TransferService, Depends(get_transfer_service)],
) -> TransferResolution:
    return ts.resolve_transfer(body.leg_ids, body.action)


@app.post("/cost-basis/recalc")
def recalc_cost_basis(
    body: RecalcRequest,
    cs: Annotated[CostBasisService, Depends(get_cost_basis_service)],
) -> RecalcResult:
    return cs.recalc_cost_basis(
        mode=body.mode,
        as_of=body.as_of,
        external_reference=body.external_reference,
        notes=body.notes,
    )


@app.post("/cost-basis/reset")
def create_cost_basis_reset(
    body: CostBasisResetRequest,
    cs: Annotated[CostBasisService, Depends(get_cost_basis_service)],
) -> ResetResult:
    return cs.create_cost_basis_reset(
        body.asset_id,
        body.date_time,
        unit_price=body.unit_price,
        total_value=body.total_value,
        external_reference=body.external_reference,
        notes=body.notes,
    )


@app.post("/reconcile/preview")
def preview_reconcile(
    body: ReconcileRequest,
    rs: Annotated[ReconciliationService, Depends(get_reconciliation_service)],
) -> ReconciliationPreview:
    return rs.preview_reconcile(body.targets, body.as_of, replace_existing=body.replace_existing)


@app.post("/reconcile/commit")
def commit_reconcile(
    body: ReconcileRequest,
    rs: Annotated[ReconciliationService, Depends(get_reconciliation_service)],
) -> ReconciliationCommit:
    return rs.commit_reconcile(
        body.targets,
        body.as_of,
        replace_existing=body.replace_existing,
        external_reference=body.external_reference,
        notes=body.notes,
    )


@app.get("/holdings")
def get_holdings(
    hs: Annotated[HoldingsService, Depends(get_holdings_service)],
    account_ids: Annotated[list[str] | None, Query()] = None,
    consolidated: bool = False,
) -> HoldingsResult:
    return hs.get_holdings(
        account_ids=[AccountId(account_id) for account_id in account_ids] if account_ids else None,
        consolidated=consolidated,
    )


@app.get("/hedges")
def hedge_exposure(hs: Annotated[HoldingsService, Depends(get_holdings_service)]) -> list[HedgeExposureRow]:
    return hs.hedge_exposure()
