"""
Application lifecycle event handlers.

Manages startup and shutdown tasks for the database connection and the
vote-token signing key.
"""

from typing import Callable

import structlog
from fastapi import FastAPI

from core.config import settings
from core.security import get_vote_signing_key
from db.session import close_db, init_db

logger = structlog.get_logger(__name__)


def create_start_app_handler(app: FastAPI) -> Callable:
    """Create startup event handler."""

    async def start_app() -> None:
        logger.info("app_starting", app_name=settings.APP_NAME, app_env=settings.APP_ENV)

        await init_db()
        logger.info("database_initialized")

        # Raises in production when VOTE_TOKEN_SECRET is unset
        signing_key = get_vote_signing_key()
        logger.info("vote_signing_key_loaded", ephemeral=signing_key.ephemeral)

        logger.info("app_started")

    return start_app


def create_stop_app_handler(app: FastAPI) -> Callable:
    """Create shutdown event handler."""

    async def stop_app() -> None:
        logger.info("app_stopping")
        await close_db()
        logger.info("app_stopped")

    return stop_app
