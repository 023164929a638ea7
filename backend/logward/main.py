"""Logward backend application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from logward.api.routes import alerts, events, ingest, retention
from logward.config import settings
from logward.db import dispose_db, init_db
from logward.services.enrichment import enrichment_pipeline
from logward.services.evaluation_queue import evaluation_queue
from logward.services.notifier import discord_notifier
from logward.services.retention import retention_scheduler

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    await evaluation_queue.start()
    if settings.RETENTION_ENABLED:
        retention_scheduler.start()
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started")
    yield
    await evaluation_queue.stop(drain=True)
    await retention_scheduler.stop()
    await discord_notifier.cleanup()
    await enrichment_pipeline.cleanup()
    await dispose_db()
    logger.info(f"{settings.APP_NAME} stopped")


# Create FastAPI application
app = FastAPI(
    title="Logward API",
    description="Multi-tenant security log ingestion, normalization and alerting",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routes
app.include_router(ingest.router)
app.include_router(events.router)
app.include_router(alerts.router)
app.include_router(retention.router)


@app.get("/", tags=["health"])
async def root():
    """API health check."""
    return {
        "service": "Logward API",
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health():
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "enrichment": enrichment_pipeline.status(),
        "evaluation_queue": evaluation_queue.get_stats(),
        "retention_scheduler": retention_scheduler.is_running,
    }
