"""
Health Check Endpoints
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request
from pydantic import BaseModel

from margin_engine.config import get_settings

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """
    Health check.

    Reports the recalculation controller, queue and queue worker wired at
    startup.
    """
    settings = get_settings()
    checks: Dict[str, Any] = {}
    overall_status = "healthy"

    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        checks["recalculation"] = {"status": "unhealthy", "error": "controller not initialized"}
        overall_status = "degraded"
    else:
        checks["recalculation"] = {"status": "healthy"}

    queue = getattr(request.app.state, "queue", None)
    if queue is not None:
        worker = getattr(request.app.state, "worker", None)
        if worker is not None and not worker.done():
            checks["queue"] = {"status": "healthy", "size": len(queue), "worker": "running"}
        else:
            checks["queue"] = {"status": "unhealthy", "size": len(queue), "worker": "stopped"}
            overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=settings.version,
        environment=settings.app_env,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """Liveness check; 200 while the process runs"""
    return {"status": "alive"}
