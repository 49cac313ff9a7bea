"""
Tests for the controller: event intake, error mapping and the worker loop.
"""
import asyncio

import pytest

from memcached_operator.core import constants
from memcached_operator.core.state_machine import DatabasePhase
from memcached_operator.exceptions import (
    ConflictError,
    InvariantViolation,
    PartialCleanupError,
    TransientAPIError,
)
from memcached_operator.workers.controller import Controller
from memcached_operator.workers.reconciler import ReconcileResult


class StubReconciler:
    """Returns (or raises) queued outcomes, one per pass."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def reconcile(self, namespace, name):
        self.calls.append(f"{namespace}/{name}")
        outcome = self.outcomes.pop(0) if self.outcomes else ReconcileResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def database(name, rv, namespace="demo"):
    return {
        "kind": constants.KIND,
        "metadata": {"name": name, "namespace": namespace, "resourceVersion": str(rv)},
    }


async def next_key(controller, timeout=1.0):
    key = await asyncio.wait_for(controller.queue.get(), timeout)
    controller.queue.done(key)
    return key


@pytest.mark.asyncio
async def test_success_forgets_failures(cluster):
    controller = Controller(cluster, reconciler=StubReconciler(TransientAPIError("boom"), ReconcileResult()))

    assert await controller.process("demo/mc1") == "error"
    assert controller.queue.failures("demo/mc1") == 1

    assert await controller.process("demo/mc1") == "success"
    assert controller.queue.failures("demo/mc1") == 0


@pytest.mark.asyncio
async def test_requeue_after_is_honoured(cluster):
    result = ReconcileResult(phase=DatabasePhase.PROVISIONING, requeue_after=0.01)
    controller = Controller(cluster, reconciler=StubReconciler(result))

    assert await controller.process("demo/mc1") == "success"
    assert len(controller.queue) == 0
    assert await next_key(controller) == "demo/mc1"


@pytest.mark.asyncio
async def test_errors_back_off_exponentially(cluster):
    controller = Controller(
        cluster, reconciler=StubReconciler(TransientAPIError("a"), TransientAPIError("b"))
    )

    await controller.process("demo/mc1")
    first = controller.queue.failures("demo/mc1")
    await controller.process("demo/mc1")
    assert controller.queue.failures("demo/mc1") == first + 1
    assert await next_key(controller) == "demo/mc1"


@pytest.mark.asyncio
async def test_partial_cleanup_requeues_after_terminating_delay(cluster):
    error = PartialCleanupError("data", ["PersistentVolumeClaim/data-mc1-0"])
    controller = Controller(cluster, reconciler=StubReconciler(error), terminating_requeue=0.01)

    assert await controller.process("demo/mc1") == "partial_cleanup"
    assert controller.queue.failures("demo/mc1") == 0
    assert await next_key(controller) == "demo/mc1"


@pytest.mark.asyncio
async def test_conflict_invalidates_cache_and_requeues_immediately(cluster):
    controller = Controller(cluster, reconciler=StubReconciler(ConflictError(constants.KIND, "mc1")))
    controller.cache.upsert(database("mc1", 5))

    assert await controller.process("demo/mc1") == "conflict"
    assert "demo/mc1" not in controller.cache
    assert len(controller.queue) == 1


@pytest.mark.asyncio
async def test_invariant_violation_propagates(cluster):
    controller = Controller(cluster, reconciler=StubReconciler(InvariantViolation("Halted -> WipedOut")))
    with pytest.raises(InvariantViolation):
        await controller.process("demo/mc1")


@pytest.mark.asyncio
async def test_database_events_deduplicated_by_resource_version(cluster):
    controller = Controller(cluster, reconciler=StubReconciler())

    await controller.handle_database_event("ADDED", database("mc1", 1))
    assert await next_key(controller) == "demo/mc1"

    await controller.handle_database_event("MODIFIED", database("mc1", 1))
    assert len(controller.queue) == 0

    await controller.handle_database_event("MODIFIED", database("mc1", 2))
    assert await next_key(controller) == "demo/mc1"

    await controller.handle_database_event("DELETED", database("mc1", 2))
    assert "demo/mc1" not in controller.cache
    assert await next_key(controller) == "demo/mc1"


@pytest.mark.asyncio
async def test_dependent_events_map_to_owner(cluster):
    controller = Controller(cluster, reconciler=StubReconciler())
    sts = {
        "metadata": {
            "name": "mc1",
            "namespace": "demo",
            "labels": {constants.LABEL_DATABASE_NAME: "mc1", constants.LABEL_DATABASE_KIND: constants.KIND},
        }
    }
    await controller.handle_dependent_event("MODIFIED", sts)
    assert await next_key(controller) == "demo/mc1"

    foreign = {"metadata": {"name": "web", "namespace": "demo", "labels": {"app": "web"}}}
    await controller.handle_dependent_event("MODIFIED", foreign)
    assert len(controller.queue) == 0


@pytest.mark.asyncio
async def test_relist_enqueues_seen_and_vanished_identities(cluster):
    controller = Controller(cluster, reconciler=StubReconciler())
    controller.cache.upsert(database("old", 1))

    await controller.handle_database_relist([database("mc1", 3)])

    assert controller.cache.synced
    assert sorted([await next_key(controller), await next_key(controller)]) == ["demo/mc1", "demo/old"]
    assert controller.cache.keys() == ["demo/mc1"]


@pytest.mark.asyncio
async def test_controller_drives_database_to_running(cluster, reconciler):
    cluster.create_database("mc1", "demo")
    controller = Controller(cluster, reconciler=reconciler, workers=2)
    task = asyncio.create_task(controller.start(watch=False))

    phase = None
    for _ in range(200):
        await asyncio.sleep(0.01)
        if ("StatefulSet", "demo", "mc1") in cluster.objects:
            cluster.simulate_statefulset_ready("demo", "mc1")
        phase = ((await cluster.get_database("demo", "mc1")).get("status") or {}).get("phase")
        if phase == "Running":
            break

    assert controller.ready
    await controller.stop()
    await asyncio.wait_for(task, 1.0)
    assert phase == "Running"
    assert not controller.ready


@pytest.mark.asyncio
async def test_controller_stops_on_invariant_violation(cluster):
    cluster.create_database("mc1", "demo")
    controller = Controller(cluster, reconciler=StubReconciler(InvariantViolation("illegal")), workers=1)

    with pytest.raises(InvariantViolation):
        await asyncio.wait_for(controller.start(watch=False), 1.0)
    assert not controller.running
