"""
Health check endpoints for monitoring and orchestration.
Provides liveness and readiness probes for the operator Deployment.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from dbcluster.config.redis import RedisConnection
from dbcluster.config.settings import settings

router = APIRouter()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/")
async def health_check(request: Request):
    """
    Basic health check endpoint.
    Returns current status, version and whether this replica leads.
    """
    election = getattr(request.app.state, "leader_election", None)
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "leader": bool(election and election.is_leader),
        "timestamp": _timestamp(),
    }


@router.get("/live")
async def liveness():
    """
    Kubernetes liveness probe.
    Indicates whether the operator should be restarted.
    """
    return {"status": "alive", "timestamp": _timestamp()}


@router.get("/ready")
async def readiness(request: Request):
    """
    Kubernetes readiness probe.
    Checks Redis (leader election) and the Kubernetes API server.
    """
    store = getattr(request.app.state, "store", None)
    kubernetes_healthy = store is not None and await store.ping()
    redis_healthy = await RedisConnection.ping()

    content = {
        "status": "ready",
        "kubernetes": "healthy" if kubernetes_healthy else "unhealthy",
        "redis": "healthy" if redis_healthy else "unhealthy",
        "timestamp": _timestamp(),
    }
    if not kubernetes_healthy or not redis_healthy:
        content["status"] = "not_ready"
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=content)
    return content
