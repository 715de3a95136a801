"""GET /health: liveness plus a database round trip."""
from __future__ import annotations

import logging

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from onboarding.core.settings import get_settings
from onboarding.db.session import get_engine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def database_status() -> str:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Health check: database unavailable (%s)", type(exc).__name__)
        return "unavailable"
    return "ok"


@router.get("/health", summary="Service and database health")
def health_check() -> dict[str, str]:
    settings = get_settings()
    database = database_status()
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.app_env,
    }
