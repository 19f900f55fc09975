"""
Liveness and readiness endpoint.

Does not require authentication.
"""

import logging

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from umbrella import __version__
from umbrella.database.session import get_session_factory
from umbrella.platform.errors import ConfigurationError

router = APIRouter(tags=["health"])
logger = logging.getLogger(__name__)


def _check_database() -> str:
    try:
        session = get_session_factory()()
    except ConfigurationError:
        return "not_configured"
    try:
        session.execute(text("SELECT 1"))
        return "ok"
    except SQLAlchemyError as e:
        logger.warning("Health check database query failed", extra={"error": str(e)})
        return "unavailable"
    finally:
        session.close()


@router.get("/health")
def health():
    database = _check_database()
    return {
        "status": "healthy" if database == "ok" else "degraded",
        "version": __version__,
        "database": database,
    }
