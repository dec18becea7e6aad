from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from . import schemas
from .core.config import Settings, get_settings
from .core.logging import configure_logging
from .db import build_session_factory, init_db
from .errors import MarketError, MarketNotFound
from .services.ledger import LedgerGateway, XrplGateway
from .services.market_store import MarketStore, configured_options, market_end_time
from .services.monitor import IncomingTransferMonitor
from .services.retry import Sleep
from .services.settlement_service import SettlementEngine
from .services.vote_service import VoteIntake

API_TITLE = "XRP Prediction Market API"
API_VERSION = "0.1.0"

router = APIRouter()


def _error_body(error: str, details: str | None, extra: dict[str, Any] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = schemas.ErrorResponse(error=error, details=details).model_dump()
    if extra:
        body.update(extra)
    return body


async def _market_error_handler(request: Request, exc: MarketError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("{} {} failed: {} ({})", request.method, request.url.path, exc.code, exc.message)
    else:
        logger.info("{} {} rejected: {} ({})", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.message, exc.details))


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content=_error_body("validation_error", str(exc.errors())))


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on {} {}", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body("internal_error", str(exc)))


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _store(request: Request) -> MarketStore:
    return request.app.state.store


def _vote_intake(request: Request) -> VoteIntake:
    return request.app.state.vote_intake


def _settlement_engine(request: Request) -> SettlementEngine:
    return request.app.state.settlement


@router.get("/", tags=["system"])
def root() -> dict[str, Any]:
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "status": "running",
        "endpoints": [
            "GET /api/prediction",
            "POST /api/process-vote",
            "POST /api/vote",
            "POST /api/resolve",
            "GET /health",
        ],
    }


@router.get("/health", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Liveness probe; does not touch the ledger."""

    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/api/prediction", response_model=schemas.Market, tags=["prediction"])
def get_prediction(store: MarketStore = Depends(_store)):
    """Return the current market snapshot."""

    snapshot = store.snapshot()
    if snapshot is None:
        raise MarketNotFound("No prediction found")
    return snapshot


@router.post("/api/process-vote", response_model=schemas.VoteReceipt, tags=["votes"])
async def process_vote(payload: schemas.VoteRequest, intake: VoteIntake = Depends(_vote_intake)):
    """Sign and submit the voter's stake, then record it."""

    return await intake.submit_vote(
        option_id=payload.option_id,
        amount=payload.amount,
        voter_address=payload.sender_address,
        voter_credential=payload.wallet_secret,
        destination_address=payload.destination_address,
        destination_tag=payload.destination_tag,
    )


@router.post("/api/vote", response_model=schemas.VoteReceipt, tags=["votes"])
async def record_vote(payload: schemas.LegacyVoteRequest, intake: VoteIntake = Depends(_vote_intake)):
    """Record a stake the client already transferred itself."""

    return await intake.record_verified_vote(
        option_id=payload.option_id,
        amount=payload.amount,
        voter_address=payload.sender_address,
        tx_hash=payload.transaction_hash,
    )


@router.post("/api/resolve", response_model=schemas.ResolutionResponse, tags=["resolution"])
async def resolve_prediction(
    payload: schemas.ResolveRequest,
    authorization: Annotated[str | None, Header()] = None,
    engine: SettlementEngine = Depends(_settlement_engine),
):
    return await engine.resolve(payload.outcome, _bearer_token(authorization))


def create_app(
    settings: Settings | None = None,
    *,
    gateway: LedgerGateway | None = None,
    sleep: Sleep = asyncio.sleep,
) -> FastAPI:
    """Build the API; settings are resolved here so a bad environment fails at start-up."""

    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        logger.info("Starting {} environment={}", API_TITLE, settings.environment)

        engine, session_factory = build_session_factory(settings.resolved_database_url, echo=settings.debug)
        init_db(engine)

        store = MarketStore(session_factory)
        store.bootstrap(
            question=settings.prediction_question,
            end_time=market_end_time(settings),
            options=configured_options(settings),
        )

        ledger = gateway or XrplGateway(
            str(settings.xrpl_rpc_url),
            timeout=settings.ledger_request_timeout_seconds,
            poll_interval=settings.monitor_poll_interval_seconds,
        )
        monitor = IncomingTransferMonitor(ledger, store)

        app.state.settings = settings
        app.state.store = store
        app.state.monitor = monitor
        app.state.vote_intake = VoteIntake(store, ledger, settings, sleep=sleep)
        app.state.settlement = SettlementEngine(store, ledger, settings, sleep=sleep)

        if settings.monitor_enabled:
            try:
                await monitor.start(address for _, _, address in configured_options(settings))
            except Exception as exc:  # noqa: BLE001
                logger.warning("Incoming transfer monitor unavailable: {}", exc)

        try:
            yield
        finally:
            logger.info("Shutting down {}", API_TITLE)
            await monitor.close()
            engine.dispose()

    app = FastAPI(title=API_TITLE, version=API_VERSION, debug=settings.debug, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(MarketError, _market_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    config = get_settings()
    uvicorn.run(
        "predmarket.main:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=config.is_development,
    )
