# /telepharma/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from telepharma.config.settings import settings
from telepharma.jobs.session_sweep import SessionSweeper
from telepharma.services.cache_service import cache_service
from telepharma.services.contact_locks import contact_locks
from telepharma.services.conversation_service import flow_engine
from telepharma.services.db_service import db_service
from telepharma.services.whatsapp_service import whatsapp_service
from telepharma.utils.alerting import alerting_service
from telepharma.utils.logging import setup_logging
from telepharma.workflows.validator import validate_catalog

# This file manages the application's lifespan: startup validates the flow
# catalog, prepares the database and starts the stale session sweep;
# shutdown stops the sweep and closes every client.

logger = logging.getLogger(__name__)

session_sweeper = SessionSweeper(
    db_service,
    contact_locks,
    flow_engine,
    interval_minutes=settings.sweep_interval_minutes,
    stale_minutes=settings.stale_session_minutes,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger.info("Application starting up...")

    # A malformed catalog must stop the boot, not surface mid-conversation.
    validate_catalog(
        flow_engine.workflows,
        flow_engine.reserved_tokens,
        settings.max_quick_replies,
        settings.max_quick_reply_length,
    )
    await db_service.create_indexes()
    session_sweeper.start()

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    session_sweeper.stop()
    await whatsapp_service.close()
    await alerting_service.cleanup()
    await cache_service.close()
    if db_service.client:
        db_service.client.close()
