from __future__ import annotations

import hmac
from collections.abc import Iterator
from typing import Annotated

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from loguru import logger

from feeds.ledger import LedgerClient, LedgerError
from pipelines.context import JobContext
from pipelines.market_creation_run import MarketCreationPipeline
from pipelines.resolution_run import ResolutionPipeline

from . import schemas
from .core.config import Settings, get_settings, settings
from .db import get_db, init_db
from .services.automation_service import AutomationService, treasury_balance

app = FastAPI(title="Market Automation API", version="0.1.0", debug=settings.debug)


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database connections when the API boots."""

    init_db()


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


def _settings() -> Settings:
    return get_settings()


def require_job_secret(
    x_job_secret: Annotated[str | None, Header()] = None,
    authorization: Annotated[str | None, Header()] = None,
    config: Settings = Depends(_settings),
) -> None:
    """Accept the shared job secret as ``x-job-secret`` or a bearer token."""

    if not config.job_secret:
        raise HTTPException(status_code=503, detail="JOB_SECRET is not configured")
    provided = x_job_secret
    if provided is None and authorization and authorization.lower().startswith("bearer "):
        provided = authorization[len("bearer ") :].strip()
    if not provided or not hmac.compare_digest(provided, config.job_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _automation_service(db=Depends(get_db)) -> AutomationService:
    return AutomationService(db)


def _job_context() -> Iterator[JobContext]:
    context = JobContext.from_settings(get_settings())
    try:
        yield context
    finally:
        context.close()


def _creation_pipeline(context: JobContext = Depends(_job_context)) -> MarketCreationPipeline:
    return MarketCreationPipeline(context)


def _resolution_pipeline(context: JobContext = Depends(_job_context)) -> ResolutionPipeline:
    return ResolutionPipeline(context)


def _ledger_client(config: Settings = Depends(_settings)) -> Iterator[LedgerClient | None]:
    if not config.on_chain_payouts_enabled:
        yield None
        return
    with LedgerClient() as ledger:
        yield ledger


Authorized = Depends(require_job_secret)


@app.get(
    "/automation/config",
    response_model=schemas.AutomationConfig,
    tags=["automation"],
    dependencies=[Authorized],
)
def get_automation_config(service: AutomationService = Depends(_automation_service)):
    return service.get_config()


@app.put(
    "/automation/config",
    response_model=schemas.AutomationConfig,
    tags=["automation"],
    dependencies=[Authorized],
)
def update_automation_config(
    payload: schemas.AutomationConfigUpdate,
    service: AutomationService = Depends(_automation_service),
):
    """Enable or disable automated market creation."""

    config = service.set_enabled(payload.enabled)
    logger.info("Automated market creation {}", "enabled" if config.enabled else "disabled")
    return config


@app.get(
    "/automation/logs",
    response_model=schemas.AutomationLogList,
    tags=["automation"],
    dependencies=[Authorized],
)
def list_automation_logs(
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    service: AutomationService = Depends(_automation_service),
):
    """Most recent creation attempts, newest first."""

    return service.list_logs(limit=limit)


@app.post(
    "/automation/markets",
    response_model=schemas.CreationResult,
    tags=["automation"],
    dependencies=[Authorized],
)
def create_automated_market(
    payload: schemas.CreateMarketRequest,
    pipeline: MarketCreationPipeline = Depends(_creation_pipeline),
):
    """Run one creation cycle now; a forced market type gets no fallback."""

    result = pipeline.run(forced_type=payload.market_type, test_mode=payload.test_mode)
    return schemas.CreationResult.model_validate(result.to_dict())


@app.post(
    "/jobs/automated-markets",
    response_model=schemas.CreationResult,
    tags=["jobs"],
    dependencies=[Authorized],
)
def run_automated_markets_job(pipeline: MarketCreationPipeline = Depends(_creation_pipeline)):
    result = pipeline.run()
    return schemas.CreationResult.model_validate(result.to_dict())


@app.post(
    "/jobs/automated-resolutions",
    response_model=schemas.ResolutionSummary,
    tags=["jobs"],
    dependencies=[Authorized],
)
def run_automated_resolutions_job(pipeline: ResolutionPipeline = Depends(_resolution_pipeline)):
    summary = pipeline.run()
    return schemas.ResolutionSummary.model_validate(summary.to_dict())


@app.get(
    "/treasury/balance",
    response_model=schemas.TreasuryBalance,
    tags=["treasury"],
    dependencies=[Authorized],
)
def get_treasury_balance(
    ledger: LedgerClient | None = Depends(_ledger_client),
    config: Settings = Depends(_settings),
):
    if ledger is None or not config.treasury_private_key:
        raise HTTPException(status_code=503, detail="On-chain payouts are not configured")
    try:
        return treasury_balance(ledger, config.treasury_private_key, config.payout_fee_reserve)
    except LedgerError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.get(
    "/markets/{market_id}/commitment",
    response_model=schemas.CommitmentAudit,
    tags=["markets"],
)
def get_market_commitment(
    market_id: int, service: AutomationService = Depends(_automation_service)
):
    """Public audit of a market's outcome commitment."""

    audit = service.get_commitment(market_id)
    if audit is None:
        raise HTTPException(status_code=404, detail="Market not found")
    return audit
