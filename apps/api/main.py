"""
PrepodavAI generation API - FastAPI Backend
Main application entry point: generation requests, credits and delivery callbacks.
"""

import asyncio
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    generations,
    subscriptions,
    webhooks,
)
from services.credits import seed_billing_catalog
from services.errors import PipelineError
from services.job_queue import recover_stalled_generations

logger = logging.getLogger(__name__)


async def _periodic_stale_sweep() -> None:
    interval_minutes = max(int(settings.STALE_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            recovered = await recover_stalled_generations()
            if recovered:
                logger.info("Stale sweep: failed and refunded %s generations", recovered)
        except Exception:
            logger.exception("Stale generation sweep tick failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting PrepodavAI API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified.")
        except Exception as exc:
            logger.warning("Database bootstrap skipped: %s", exc)
    try:
        async with async_session_maker() as db:
            await seed_billing_catalog(db)
    except Exception as exc:
        logger.warning("Billing catalog seeding skipped: %s", exc)
    try:
        recovered = await recover_stalled_generations()
        if recovered:
            logger.info("Recovered %s stalled generations after startup.", recovered)
    except Exception as exc:
        logger.warning("Stalled generation recovery skipped: %s", exc)

    sweep_task = None
    if int(settings.STALE_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_stale_sweep())
        logger.info("Stale generation sweep enabled (every %s min).", int(settings.STALE_SWEEP_INTERVAL_MINUTES))
    yield
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    logger.info("Shutting down API...")


app = FastAPI(
    title="PrepodavAI Generation API",
    description="Credit-metered content generation for teachers with Telegram delivery",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message, exc_info=exc.original_error)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(generations.router, prefix="/generate", tags=["Generation"])
app.include_router(subscriptions.router, prefix="/subscriptions", tags=["Subscriptions"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "PrepodavAI Generation API",
        "version": "0.1.0",
        "status": "running"
    }
