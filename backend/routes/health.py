# Health check endpoints for system monitoring

from fastapi import APIRouter
from datetime import datetime, timezone

from core.database import get_db_health
from core.utils.logging import SERVICE_NAME
from core.utils.response import Response

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live")
async def liveness_check():
    """
    Basic liveness check - returns 200 if the service is running
    Used by load balancers and orchestrators
    """
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME
    }


@router.get("/ready")
async def readiness_check():
    """Readiness check - the database must answer"""
    database = await get_db_health()
    healthy = database.get("status") == "healthy"
    return Response(
        success=healthy,
        data={"database": database},
        message="ready" if healthy else "not ready",
        status_code=200 if healthy else 503,
    )
