# /iqflow/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from iqflow.config.settings import settings
from iqflow.services.onboarding_actions import build_dispatcher
from iqflow.services.platform_client import PlatformClient
from iqflow.services.snapshot_store import SnapshotStore
from iqflow.utils.logging import setup_logging
from iqflow.workflows.definitions import FLOWS
from iqflow.workflows.session import SessionRegistry
from iqflow.workflows.triggers import default_trigger_table

# This file manages the application's lifespan: it builds the platform
# client, the snapshot store and the session registry on startup, and
# closes their connections on shutdown.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info("Application starting up...")

    platform_client = PlatformClient()
    snapshot_store = SnapshotStore.from_url(settings.redis_url)
    # Fails startup on a flow, action or trigger that points nowhere.
    registry = SessionRegistry(
        FLOWS,
        build_dispatcher(platform_client),
        store=snapshot_store,
        triggers=default_trigger_table(FLOWS),
        max_auto_advance_steps=settings.max_auto_advance_steps,
    )

    app.state.platform_client = platform_client
    app.state.snapshot_store = snapshot_store
    app.state.sessions = registry

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    await platform_client.close()
    await snapshot_store.close()
