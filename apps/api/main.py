"""
SmartAudit Credits - FastAPI Backend
Main application entry point: credit ledger, purchases and audit sessions.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import audit, auth, billing, credits, health
from routers.rate_limit import close_rate_limit_client
from services.audit_sessions import get_audit_session_manager
from services.packages import ensure_default_packages
from services.recovery import recover_after_restart, run_watchdog_pass

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("smartaudit")


async def _periodic_watchdog() -> None:
    interval_seconds = max(int(settings.AUDIT_WATCHDOG_INTERVAL_SECONDS), 0)
    if interval_seconds <= 0:
        return
    manager = get_audit_session_manager()
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await run_watchdog_pass(manager)
            if any(result.values()):
                logger.info(
                    "Watchdog tick: audits_timed_out=%s purchases_expired=%s",
                    result["audit_sessions_timed_out"],
                    result["purchase_sessions_expired"],
                )
        except Exception:
            logger.exception("Watchdog tick failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting SmartAudit Credits API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified.")
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Database bootstrap skipped: %s", exc)
    try:
        async with async_session_maker() as db:
            await ensure_default_packages(db)
    except SQLAlchemyError as exc:
        logger.warning("Package seeding skipped: %s", exc)

    manager = get_audit_session_manager()
    try:
        recovered = await recover_after_restart(manager)
        if any(recovered.values()):
            logger.info(
                "Recovered %s unsettled audit sessions and expired %s purchase sessions after startup.",
                recovered["audit_sessions_recovered"],
                recovered["purchase_sessions_expired"],
            )
    except SQLAlchemyError as exc:
        logger.warning("Startup recovery skipped: %s", exc)

    watchdog_task = None
    if int(settings.AUDIT_WATCHDOG_INTERVAL_SECONDS) > 0:
        watchdog_task = asyncio.create_task(_periodic_watchdog())
        logger.info(
            "Audit watchdog enabled (every %ss, timeout %ss).",
            int(settings.AUDIT_WATCHDOG_INTERVAL_SECONDS),
            int(settings.AUDIT_WATCHDOG_SECONDS),
        )
    yield
    if watchdog_task is not None:
        watchdog_task.cancel()
        try:
            await watchdog_task
        except asyncio.CancelledError:
            pass
    # Open sessions are settled by recovery on the next start.
    await manager.shutdown()
    await close_rate_limit_client()
    logger.info("Shutting down API...")


app = FastAPI(
    title="SmartAudit Credits API",
    description="Prepaid credit ledger, package purchases and credit-backed smart contract audits",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(audit.router, prefix="/audit", tags=["Audit"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "SmartAudit Credits API",
        "version": "0.1.0",
        "status": "running"
    }
