"""
FastAPI host surface for the odds desk engine.
Exposes the current odds page, the bet slip, notifications and the
settlement poll schedule.
"""

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional
import logging
import os

from oddsdesk.core.engine_config import EngineConfig
from oddsdesk.exceptions import (
    AuthenticationError,
    BetValidationError,
    PartialBatchError,
    ServiceError,
)
from oddsdesk.schemas import (
    FilterUpdate,
    LocationChange,
    MarketSwitchRequest,
    SlipToggleRequest,
    StakeUpdate,
)
from oddsdesk.services.session import BettingSession

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SETTLEMENT_JOB_ID = "settlement_poll"

router = APIRouter()


def get_session(request: Request) -> BettingSession:
    return request.app.state.session


def _error_response(exc: Exception) -> HTTPException:
    """Map the engine's error taxonomy onto HTTP status codes."""
    if isinstance(exc, AuthenticationError):
        return HTTPException(status_code=401, detail={"code": "authentication", "message": str(exc)})
    if isinstance(exc, BetValidationError):
        status = 409 if exc.code in ("duplicate_bet", "confirmation_in_progress") else 422
        return HTTPException(status_code=status, detail={"code": exc.code, "message": exc.message})
    if isinstance(exc, PartialBatchError):
        return HTTPException(
            status_code=502,
            detail={
                "code": "partial_batch",
                "message": str(exc),
                "created_ids": [r.id for r in exc.created],
                "failed": {"match_id": exc.failed.match_id, "outcome": exc.failed.outcome},
            },
        )
    if isinstance(exc, ServiceError):
        return HTTPException(status_code=502, detail={"code": "service", "message": str(exc)})
    return HTTPException(status_code=500, detail={"code": "internal", "message": str(exc)})


# ============================================================================
# HEALTH
# ============================================================================

@router.get("/health")
async def health_check(request: Request, session: BettingSession = Depends(get_session)):
    """Health check endpoint"""
    scheduler = getattr(request.app.state, "scheduler", None)
    health = {
        "status": "healthy",
        "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
        "settlement_watcher": session.watcher.get_status(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if health["scheduler"] != "running":
        health["status"] = "degraded"
    return health


# ============================================================================
# MARKET / FILTERS
# ============================================================================

@router.get("/api/matches")
async def get_matches(session: BettingSession = Depends(get_session)):
    """Current odds page with pagination and loading / switching flags."""
    return session.market.view().to_dict()


@router.post("/api/filters")
async def update_filters(payload: FilterUpdate, session: BettingSession = Depends(get_session)):
    """Debounced filter change; unchanged filters do not refetch."""
    changes = payload.model_dump(exclude_unset=True)
    for key in ("page", "page_size"):
        if key in changes and changes[key] is None:
            del changes[key]
    changed = session.market.update_filters(**changes)
    return {"changed": changed, **session.market.view().to_dict()}


@router.post("/api/market")
async def switch_market(payload: MarketSwitchRequest, session: BettingSession = Depends(get_session)):
    accepted = session.market.switch_market(payload.market)
    return {"accepted": accepted, **session.market.view().to_dict()}


@router.post("/api/location")
async def location_changed(payload: LocationChange, session: BettingSession = Depends(get_session)):
    changed = session.market.on_location_changed(payload.location)
    return {"changed": changed, **session.market.view().to_dict()}


# ============================================================================
# BET SLIP
# ============================================================================

@router.get("/api/slip")
async def get_slip(session: BettingSession = Depends(get_session)):
    return session.slip.to_dict()


@router.post("/api/slip/toggle")
async def toggle_selection(payload: SlipToggleRequest, session: BettingSession = Depends(get_session)):
    """Add or remove one (match, outcome) selection."""
    match = session.market.match(payload.match_id)
    teams = payload.teams or (match.teams if match else "")
    selected = session.slip.toggle(
        payload.match_id,
        payload.outcome,
        payload.odds,
        teams=teams,
        league=payload.league or (match.league if match else None),
        match_date=payload.match_date or (match.date if match else None),
        match_time=payload.match_time or (match.time if match else None),
    )
    return {"selected": selected, **session.slip.to_dict()}


@router.put("/api/slip/stake")
async def set_stake(payload: StakeUpdate, session: BettingSession = Depends(get_session)):
    if payload.match_id is None:
        session.slip.set_stake_for_all(payload.amount)
    elif not session.slip.set_stake_for_one(payload.match_id, payload.outcome, payload.amount):
        raise HTTPException(status_code=404, detail="Selection not on slip")
    return session.slip.to_dict()


@router.post("/api/slip/confirm")
async def confirm_slip(session: BettingSession = Depends(get_session)):
    try:
        created = await session.confirm_slip()
    except (AuthenticationError, BetValidationError, PartialBatchError, ServiceError) as exc:
        raise _error_response(exc) from exc
    return {
        "message": f"{len(created)} bet(s) placed",
        "created": [r.model_dump(mode="json") for r in created],
        "slip": session.slip.to_dict(),
    }


# ============================================================================
# BETS / NOTIFICATIONS / SETTLEMENT
# ============================================================================

@router.get("/api/bets/stats")
async def bet_stats(session: BettingSession = Depends(get_session)):
    try:
        stats = await session.stats()
    except (AuthenticationError, ServiceError) as exc:
        raise _error_response(exc) from exc
    return stats.model_dump()


@router.get("/api/notifications")
async def list_notifications(session: BettingSession = Depends(get_session)):
    return session.notifications.to_dict()


@router.post("/api/notifications/{bet_record_id}/read")
async def mark_notification_read(bet_record_id: int, session: BettingSession = Depends(get_session)):
    session.notifications.mark_as_read(bet_record_id)
    return session.notifications.to_dict()


@router.post("/api/notifications/acknowledge")
async def acknowledge_notifications(session: BettingSession = Depends(get_session)):
    cleared = session.notifications.acknowledge()
    return {"cleared": cleared, **session.notifications.to_dict()}


@router.post("/api/settlement/check")
async def trigger_settlement_check(session: BettingSession = Depends(get_session)):
    """Out-of-cycle settlement poll ("match result updated")."""
    return await session.watcher.trigger_check()


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(session_factory: Optional[Callable[[], BettingSession]] = None) -> FastAPI:
    """
    Build the app.  ``session_factory`` is called once at startup; the
    default reads ``EngineConfig`` from the environment.
    """
    if session_factory is None:
        session_factory = lambda: BettingSession(EngineConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        logger.info("Starting odds desk")
        session = session_factory()
        app.state.session = session
        await session.start()

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            session.watcher.poll,
            IntervalTrigger(seconds=session.config.settlement_poll_s),
            id=SETTLEMENT_JOB_ID,
            name="Bet Settlement Poll",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info("Scheduler started: settlement poll every %ds", session.config.settlement_poll_s)

        yield

        logger.info("Shutting down odds desk")
        scheduler.shutdown(wait=False)
        await session.close()

    app = FastAPI(
        title="Odds Desk",
        description="Odds browsing, bet slip and settlement tracking",
        version="1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("ODDSDESK_CORS_ORIGINS", "http://localhost:3000").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Catch-all exception handler"""
        logger.error("Unhandled exception: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "type": type(exc).__name__},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
