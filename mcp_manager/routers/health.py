"""Unauthenticated liveness/readiness endpoint."""

import logging

from fastapi import APIRouter
from sqlalchemy import text

from mcp_manager.config import get_settings
from mcp_manager.database import get_session_factory

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", operation_id="health_check_get")
@router.head("/health", operation_id="health_check_head", include_in_schema=False)
async def health_check():
    """Report configuration and database reachability."""
    health_status = {"status": "healthy", "message": "MCP Manager API is running"}
    checks = {}

    settings = get_settings()
    env_issues = []
    if not settings.encryption_secret:
        env_issues.append("API_MCP_MANAGER_ENCRYPTION_SECRET missing")
    if not settings.redirect_uri:
        env_issues.append("API_MCP_MANAGER_REDIRECT_URI missing")
    checks["environment"] = {
        "status": "pass" if not env_issues else "fail",
        "issues": env_issues,
        "providers": settings.enabled_providers,
    }

    try:
        factory = get_session_factory()
        with factory() as session:
            row = session.execute(text("SELECT 1")).fetchone()
        checks["database"] = {"status": "pass" if row and row[0] == 1 else "fail"}
    except Exception as e:
        logger.error(f"Health check database probe failed: {e}")
        checks["database"] = {"status": "fail", "error": str(e)}
        health_status["status"] = "unhealthy"

    health_status["checks"] = checks
    return health_status
