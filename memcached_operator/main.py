"""
Operator entry point.

Runs the reconcile controller as a background task of a small FastAPI app
that serves health probes and Prometheus metrics.
"""
import asyncio
import os
import signal
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import sentry_sdk
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from memcached_operator.api import health
from memcached_operator.config.logging import configure_logging, get_logger
from memcached_operator.config.redis import RedisConnection
from memcached_operator.config.settings import settings
from memcached_operator.exceptions import InvariantViolation
from memcached_operator.services.kube_client import ClusterClient, load_client_set
from memcached_operator.workers.controller import Controller
from memcached_operator.workers.leader_election import LeaderElection

# Configure logging
configure_logging()
logger = get_logger(__name__)

# Initialize Sentry for error tracking (production)
if settings.sentry_dsn and settings.is_production:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        environment=settings.environment,
        release=settings.app_version,
    )


def _on_controller_exit(app: FastAPI, task: asyncio.Task) -> None:
    """Bring the process down when the controller dies of an invariant violation."""
    if task.cancelled():
        return
    error = task.exception()
    if error is None:
        return
    app.state.fatal_error = error
    if isinstance(error, InvariantViolation):
        logger.critical("controller_invariant_violation", error=str(error))
    else:
        logger.critical("controller_crashed", error_type=type(error).__name__, error=str(error))
    os.kill(os.getpid(), signal.SIGTERM)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    Connects to the cluster, then runs the controller directly or behind
    Redis leader election.
    """
    logger.info(
        "operator_starting",
        version=settings.app_version,
        environment=settings.environment,
        watch_namespace=settings.watch_namespace or "*",
    )

    app.state.controller = None
    app.state.fatal_error = None
    cluster = ClusterClient(await load_client_set())
    app.state.cluster = cluster

    election: Optional[LeaderElection] = None

    async def start_controller() -> None:
        controller = Controller(cluster)
        app.state.controller = controller
        try:
            await controller.start()
        finally:
            app.state.controller = None

    async def stop_controller() -> None:
        controller = app.state.controller
        if controller is not None:
            await controller.stop()

    if settings.leader_election_enabled:
        await RedisConnection.connect()
        election = LeaderElection(instance_id=settings.instance_id, lease_duration=settings.leader_lease_seconds)
        task = asyncio.create_task(election.run(start_controller, stop_controller))
    else:
        task = asyncio.create_task(start_controller())
    task.add_done_callback(lambda t: _on_controller_exit(app, t))

    logger.info("operator_started", leader_election=settings.leader_election_enabled)

    yield

    logger.info("operator_shutting_down")
    if election is not None:
        election.stop()
    await stop_controller()
    if not task.done():
        task.cancel()
    try:
        await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), timeout=30.0)
    except asyncio.TimeoutError:
        logger.warning("controller_shutdown_timeout")

    if settings.leader_election_enabled:
        await RedisConnection.close()
    await cluster.close()
    logger.info("operator_shutdown_complete")


def create_app(with_lifespan: bool = True) -> FastAPI:
    """Build the probe and metrics app."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Kubernetes operator for Memcached databases",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan if with_lifespan else None,
    )
    app.state.controller = None
    app.state.cluster = None
    app.state.fatal_error = None

    Instrumentator().instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)
    app.include_router(health.router, prefix="/health", tags=["Health"])
    return app


app = create_app()


def run() -> None:
    """Serve probes and run the controller until a signal arrives."""
    import uvicorn

    try:
        uvicorn.run(
            app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        logger.info("operator_stopped")

    if app.state.fatal_error is not None:
        sys.exit(1)


if __name__ == "__main__":
    run()
