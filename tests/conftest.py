"""
Pytest configuration and fixtures.
"""
import os

os.environ.setdefault("ENVIRONMENT", "testing")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from typing import AsyncGenerator

from fake_cluster import FakeCluster
from memcached_operator.config.settings import settings
from memcached_operator.main import app
from memcached_operator.services.handlers import MemcachedHandler
from memcached_operator.services.termination import TerminationPolicyEngine
from memcached_operator.workers.reconciler import LifecycleReconciler


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Override settings for testing: no real waiting anywhere."""
    monkeypatch.setattr(settings, "environment", "testing")
    monkeypatch.setattr(settings, "leader_election_enabled", False)
    monkeypatch.setattr(settings, "readiness_requeue_seconds", 0.01)
    monkeypatch.setattr(settings, "terminating_requeue_seconds", 0.01)
    monkeypatch.setattr(settings, "backoff_base_seconds", 0.01)
    monkeypatch.setattr(settings, "backoff_max_seconds", 0.05)
    monkeypatch.setattr(settings, "cleanup_verify_attempts", 2)
    monkeypatch.setattr(settings, "cleanup_verify_delay_seconds", 0.0)
    monkeypatch.setattr(settings, "cleanup_verify_max_delay_seconds", 0.0)
    monkeypatch.setattr(settings, "resync_period_seconds", 3600)
    return settings


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def protected_cluster() -> FakeCluster:
    """Cluster whose PVCs keep a protection finalizer until it is stripped."""
    return FakeCluster(pvc_protection=True)


def make_reconciler(cluster: FakeCluster) -> LifecycleReconciler:
    engine = TerminationPolicyEngine(cluster, verify_attempts=2, verify_delay=0.0, verify_max_delay=0.0)
    return LifecycleReconciler(cluster, handler=MemcachedHandler(cluster, engine), readiness_requeue=0.01)


@pytest.fixture
def reconciler(cluster: FakeCluster) -> LifecycleReconciler:
    return make_reconciler(cluster)


@pytest.fixture
def protected_reconciler(protected_cluster: FakeCluster) -> LifecycleReconciler:
    return make_reconciler(protected_cluster)


@pytest_asyncio.fixture
async def test_client() -> AsyncGenerator[AsyncClient, None]:
    """Create test client. The lifespan does not run, so no cluster is attached."""
    app.state.cluster = None
    app.state.controller = None
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
