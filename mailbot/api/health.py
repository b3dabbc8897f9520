"""
Health check endpoints
"""

import subprocess
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from mailbot import __version__

router = APIRouter()
logger = structlog.get_logger()


@router.get("")
async def health_check(request: Request) -> JSONResponse:
    """
    Health check endpoint for monitoring
    """
    settings = request.app.state.settings
    git_available = check_git_availability()
    health_data = {
        "status": "healthy" if git_available else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "service": "commit-email-bot",
        "git": git_available,
        "stdout_mode": settings.stdout_mode,
        "app_auth": settings.app_auth_configured,
    }
    return JSONResponse(content=health_data, status_code=200 if git_available else 503)


@router.get("/stats")
async def usage_stats(request: Request) -> JSONResponse:
    """
    Usage counters folded from the stats log
    """
    try:
        summary = await request.app.state.stats.summary()
    except OSError as e:
        logger.error("Reading stats failed", error=str(e))
        return JSONResponse(content={"error": "stats unavailable"}, status_code=503)
    return JSONResponse(content=summary)


def check_git_availability() -> bool:
    """Check if git is available"""
    try:
        result = subprocess.run(
            ["git", "--version"], capture_output=True, text=True, timeout=5
        )
        return result.returncode == 0
    except (OSError, subprocess.SubprocessError):
        return False
