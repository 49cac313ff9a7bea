"""
Health check endpoints for monitoring and orchestration.
Provides liveness, readiness, and startup probes for the operator pod.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from memcached_operator.config.redis import RedisConnection
from memcached_operator.config.settings import settings

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _controller_state(request: Request) -> str:
    """One of: synced, syncing, standby (not the leader), stopped."""
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        return "standby" if settings.leader_election_enabled else "stopped"
    if controller.ready:
        return "synced"
    return "syncing" if controller.running else "stopped"


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    Returns current status and version.
    """
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": _now(),
    }


@router.get("/live")
async def liveness():
    """
    Kubernetes liveness probe.
    Indicates whether the operator should be restarted.
    """
    return {"status": "alive", "timestamp": _now()}


@router.get("/ready")
async def readiness(request: Request):
    """
    Kubernetes readiness probe.
    Ready once the Kubernetes client is configured and the controller has
    listed Memcached objects (or waits as a standby replica). Checks Redis
    when leader election is enabled.
    """
    kube_healthy = getattr(request.app.state, "cluster", None) is not None
    controller = _controller_state(request)
    redis_healthy = True
    if settings.leader_election_enabled:
        redis_healthy = await RedisConnection.ping()

    content = {
        "kubernetes": "healthy" if kube_healthy else "unhealthy",
        "controller": controller,
        "timestamp": _now(),
    }
    if settings.leader_election_enabled:
        content["redis"] = "healthy" if redis_healthy else "unhealthy"

    if not kube_healthy or not redis_healthy or controller not in ("synced", "standby"):
        content["status"] = "not_ready"
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=content)

    content["status"] = "ready"
    return content


@router.get("/startup")
async def startup(request: Request):
    """
    Kubernetes startup probe.
    Indicates whether the operator has connected to the cluster.
    """
    if getattr(request.app.state, "cluster", None) is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "starting", "timestamp": _now()},
        )
    return {"status": "started", "timestamp": _now()}
