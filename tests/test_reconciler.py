"""
Lifecycle tests for the Memcached reconciler against the in-memory cluster.
"""
import pytest

from memcached_operator.core import constants
from memcached_operator.core.state_machine import DatabasePhase
from memcached_operator.exceptions import (
    ConflictError,
    InvariantViolation,
    KubernetesError,
    PartialCleanupError,
    TransientAPIError,
)


async def settle(reconciler, cluster, name="mc1", namespace="demo", passes=10):
    """Reconcile until no requeue is requested, playing the StatefulSet controller in between."""
    for _ in range(passes):
        result = await reconciler.reconcile(namespace, name)
        if result.requeue_after is None:
            return result
        if ("StatefulSet", namespace, name) in cluster.objects:
            cluster.simulate_statefulset_ready(namespace, name)
    raise AssertionError(f"{namespace}/{name} did not settle in {passes} passes")


async def status_of(cluster, name="mc1", namespace="demo"):
    obj = await cluster.get_database(namespace, name)
    return obj.get("status", {}) if obj else None


def condition(status, type_):
    for c in status.get("conditions", []):
        if c["type"] == type_:
            return c
    return None


@pytest.mark.asyncio
async def test_absent_object_is_a_no_op(reconciler, cluster):
    result = await reconciler.reconcile("demo", "missing")
    assert result.phase is None and result.requeue_after is None
    assert cluster.writes == []


@pytest.mark.asyncio
async def test_fresh_object_provisions_then_runs(reconciler, cluster):
    cluster.create_database("mc1", "demo")

    result = await reconciler.reconcile("demo", "mc1")
    assert result.phase == DatabasePhase.PROVISIONING
    assert result.requeue_after == pytest.approx(0.01)
    obj = await cluster.get_database("demo", "mc1")
    assert obj["metadata"]["finalizers"] == [constants.FINALIZER]
    assert obj["status"]["observedGeneration"] == 1
    assert condition(obj["status"], "Ready")["reason"] == constants.REASON_PROVISIONING

    cluster.simulate_statefulset_ready("demo", "mc1")
    result = await reconciler.reconcile("demo", "mc1")
    assert result.phase == DatabasePhase.RUNNING
    assert result.requeue_after is None
    status = await status_of(cluster)
    assert status["phase"] == "Running"
    assert condition(status, "Ready")["status"] == "True"
    assert cluster.phase_history["demo/mc1"] == ["Provisioning", "Running"]


@pytest.mark.asyncio
async def test_converged_pass_performs_zero_writes(reconciler, cluster):
    cluster.create_database("mc1", "demo", replicas=3)
    await settle(reconciler, cluster)

    cluster.reset_writes()
    await reconciler.reconcile("demo", "mc1")
    await reconciler.reconcile("demo", "mc1")
    assert cluster.writes == []


@pytest.mark.asyncio
async def test_waiting_pass_performs_zero_writes(reconciler, cluster):
    cluster.create_database("mc1", "demo")
    await reconciler.reconcile("demo", "mc1")

    cluster.reset_writes()
    result = await reconciler.reconcile("demo", "mc1")
    assert result.phase == DatabasePhase.PROVISIONING
    assert cluster.writes == []


@pytest.mark.asyncio
async def test_invalid_spec_fails_until_generation_changes(reconciler, cluster):
    cluster.create_database("mc1", "demo", replicas=0)

    result = await reconciler.reconcile("demo", "mc1")
    assert result.phase == DatabasePhase.FAILED
    assert result.requeue_after is None
    status = await status_of(cluster)
    ready = condition(status, "Ready")
    assert ready["status"] == "False"
    assert ready["reason"] == constants.REASON_VALIDATION_FAILED
    assert "replicas" in ready["message"]
    assert ("StatefulSet", "demo", "mc1") not in cluster.objects

    cluster.reset_writes()
    await reconciler.reconcile("demo", "mc1")
    assert cluster.writes == []

    cluster.update_database_spec("demo", "mc1", replicas=1)
    result = await reconciler.reconcile("demo", "mc1")
    assert result.phase == DatabasePhase.PROVISIONING


@pytest.mark.asyncio
async def test_halted_with_do_not_terminate_is_rejected(reconciler, cluster):
    cluster.create_database("mc1", "demo", halted=True, terminationPolicy="DoNotTerminate")

    result = await reconciler.reconcile("demo", "mc1")
    assert result.phase == DatabasePhase.FAILED
    status = await status_of(cluster)
    assert condition(status, "Ready")["message"] == "Can't halt, since termination policy is 'DoNotTerminate'"


@pytest.mark.asyncio
async def test_do_not_terminate_blocks_deletion(reconciler, cluster):
    cluster.create_database("mc1", "demo", terminationPolicy="DoNotTerminate")
    await settle(reconciler, cluster)

    await cluster.delete_database("demo", "mc1")
    result = await reconciler.reconcile("demo", "mc1")

    assert result.phase == DatabasePhase.RUNNING
    obj = await cluster.get_database("demo", "mc1")
    assert obj is not None
    assert obj["metadata"]["finalizers"] == [constants.FINALIZER]
    assert condition(obj["status"], constants.COND_DELETION_BLOCKED)["status"] == "True"
    assert "PersistentVolumeClaim/data-mc1-0" in cluster.labelled("demo", "mc1")
    assert "Secret/mc1-auth" in cluster.labelled("demo", "mc1")

    cluster.reset_writes()
    await reconciler.reconcile("demo", "mc1")
    assert cluster.writes == []


@pytest.mark.asyncio
async def test_halt_policy_delete_then_recreate_resumes_on_data(reconciler, cluster):
    cluster.create_database("mc1", "demo")
    await settle(reconciler, cluster)
    cluster.write_item("demo", "data-mc1-0", "greeting", "hello")

    await cluster.delete_database("demo", "mc1")
    result = await reconciler.reconcile("demo", "mc1")
    assert result.phase == DatabasePhase.HALTED
    assert await cluster.get_database("demo", "mc1") is None
    assert cluster.labelled("demo", "mc1") == [
        "AppBinding/mc1",
        "PersistentVolumeClaim/data-mc1-0",
        "Secret/mc1-auth",
    ]

    cluster.create_database("mc1", "demo")
    result = await reconciler.reconcile("demo", "mc1")
    assert result.phase == DatabasePhase.HALTED
    assert condition(await status_of(cluster), "Ready")["reason"] == constants.REASON_RESUMING

    result = await settle(reconciler, cluster)
    assert result.phase == DatabasePhase.RUNNING
    assert cluster.read_item("demo", "data-mc1-0", "greeting") == "hello"
    assert cluster.phase_history["demo/mc1"] == [
        "Provisioning", "Running", "Terminating", "Halted", "Halted", "Running",
    ]


@pytest.mark.asyncio
async def test_wipe_out_leaves_no_labelled_objects(protected_reconciler, protected_cluster):
    cluster = protected_cluster
    cluster.create_database("mc1", "demo", terminationPolicy="WipeOut", replicas=2)
    await settle(protected_reconciler, cluster)
    cluster.write_item("demo", "data-mc1-0", "greeting", "hello")

    await cluster.delete_database("demo", "mc1")
    result = await protected_reconciler.reconcile("demo", "mc1")

    assert result.phase == DatabasePhase.WIPED_OUT
    assert cluster.labelled("demo", "mc1") == []
    assert await cluster.get_database("demo", "mc1") is None
    assert cluster.phase_history["demo/mc1"][-2:] == ["Terminating", "WipedOut"]

    # A new instance starts from an empty volume
    cluster.create_database("mc1", "demo")
    await settle(protected_reconciler, cluster)
    assert cluster.read_item("demo", "data-mc1-0", "greeting") is None


@pytest.mark.asyncio
async def test_delete_policy_removes_object_and_dependents(reconciler, cluster):
    cluster.create_database("mc1", "demo", terminationPolicy="Delete")
    await settle(reconciler, cluster)

    await cluster.delete_database("demo", "mc1")
    result = await reconciler.reconcile("demo", "mc1")

    assert result.phase is None
    assert await cluster.get_database("demo", "mc1") is None
    assert cluster.labelled("demo", "mc1") == []
    assert cluster.phase_history["demo/mc1"][-1] == "Terminating"


@pytest.mark.asyncio
async def test_partial_cleanup_keeps_finalizer_and_retries(protected_reconciler, protected_cluster):
    cluster = protected_cluster
    cluster.create_database("mc1", "demo", terminationPolicy="Delete")
    await settle(protected_reconciler, cluster)

    await cluster.delete_database("demo", "mc1")
    with pytest.raises(PartialCleanupError):
        await protected_reconciler.reconcile("demo", "mc1")

    obj = await cluster.get_database("demo", "mc1")
    assert obj["metadata"]["finalizers"] == [constants.FINALIZER]
    assert obj["status"]["phase"] == "Terminating"
    cleanup = condition(obj["status"], constants.COND_CLEANUP)
    assert cleanup["status"] == "False"
    assert cleanup["reason"] == constants.REASON_PARTIAL_CLEANUP

    # The PVC protection controller lets go
    await cluster.patch("PersistentVolumeClaim", "demo", "data-mc1-0", {"metadata": {"finalizers": None}})
    await protected_reconciler.reconcile("demo", "mc1")
    assert await cluster.get_database("demo", "mc1") is None
    assert cluster.labelled("demo", "mc1") == []


@pytest.mark.asyncio
async def test_three_create_delete_cycles_converge(reconciler, cluster):
    for cycle in range(3):
        cluster.create_database("mc1", "demo")
        result = await settle(reconciler, cluster)
        assert result.phase == DatabasePhase.RUNNING, f"cycle {cycle}"
        if cycle == 0:
            cluster.write_item("demo", "data-mc1-0", "cycle", "first")

        await cluster.delete_database("demo", "mc1")
        await reconciler.reconcile("demo", "mc1")
        assert await cluster.get_database("demo", "mc1") is None

    assert cluster.read_item("demo", "data-mc1-0", "cycle") == "first"


@pytest.mark.asyncio
async def test_halted_toggle_keeps_data(reconciler, cluster):
    cluster.create_database("mc1", "demo", terminationPolicy="Halt")
    await settle(reconciler, cluster)
    cluster.write_item("demo", "data-mc1-0", "greeting", "hello")

    cluster.update_database_spec("demo", "mc1", halted=True)
    result = await settle(reconciler, cluster)
    assert result.phase == DatabasePhase.HALTED
    assert cluster.labelled("demo", "mc1") == [
        "PersistentVolumeClaim/data-mc1-0",
        "Secret/mc1-auth",
    ]
    assert condition(await status_of(cluster), constants.COND_HALTED)["status"] == "True"

    cluster.update_database_spec("demo", "mc1", halted=False)
    result = await settle(reconciler, cluster)
    assert result.phase == DatabasePhase.RUNNING
    assert cluster.phase_history["demo/mc1"] == ["Provisioning", "Running", "Halted", "Running"]
    assert cluster.read_item("demo", "data-mc1-0", "greeting") == "hello"
    assert condition(await status_of(cluster), constants.COND_HALTED)["status"] == "False"


@pytest.mark.asyncio
async def test_status_write_conflict_is_retried_with_fresh_object(reconciler, cluster):
    cluster.create_database("mc1", "demo")
    cluster.inject_error("patch_status", constants.KIND, ConflictError(constants.KIND, "mc1"))

    result = await reconciler.reconcile("demo", "mc1")

    assert result.phase == DatabasePhase.PROVISIONING
    assert (await status_of(cluster))["phase"] == "Provisioning"


@pytest.mark.asyncio
async def test_illegal_transition_is_fatal(reconciler, cluster):
    cluster.create_database("mc1", "demo")
    cluster.objects[(constants.KIND, "demo", "mc1")]["status"] = {"phase": "WipedOut"}

    with pytest.raises(InvariantViolation):
        await reconciler.reconcile("demo", "mc1")


@pytest.mark.asyncio
async def test_failed_finalizer_release_after_wipe_out_is_retried(protected_reconciler, protected_cluster):
    cluster = protected_cluster
    cluster.create_database("mc1", "demo", terminationPolicy="WipeOut")
    await settle(protected_reconciler, cluster)

    await cluster.delete_database("demo", "mc1")
    cluster.inject_error("patch", constants.KIND, TransientAPIError("service unavailable", status=503))
    with pytest.raises(TransientAPIError):
        await protected_reconciler.reconcile("demo", "mc1")
    assert (await status_of(cluster))["phase"] == "WipedOut"
    assert cluster.labelled("demo", "mc1") == []

    result = await protected_reconciler.reconcile("demo", "mc1")
    assert result.phase == DatabasePhase.WIPED_OUT
    assert await cluster.get_database("demo", "mc1") is None


@pytest.mark.asyncio
async def test_wiped_out_object_is_released_even_if_policy_changes(reconciler, cluster):
    cluster.create_database("mc1", "demo", terminationPolicy="WipeOut")
    await settle(reconciler, cluster)

    await cluster.delete_database("demo", "mc1")
    cluster.inject_error("patch", constants.KIND, KubernetesError("forbidden", status=403))
    with pytest.raises(KubernetesError):
        await reconciler.reconcile("demo", "mc1")

    cluster.update_database_spec("demo", "mc1", terminationPolicy="DoNotTerminate")
    await reconciler.reconcile("demo", "mc1")
    assert await cluster.get_database("demo", "mc1") is None


@pytest.mark.asyncio
async def test_policy_switched_to_do_not_terminate_mid_deletion_can_fail(reconciler, cluster):
    cluster.create_database("mc1", "demo", terminationPolicy="Delete")
    await settle(reconciler, cluster)

    await cluster.delete_database("demo", "mc1")
    cluster.inject_error("list", "Secret", TransientAPIError("timeout", status=504))
    with pytest.raises(TransientAPIError):
        await reconciler.reconcile("demo", "mc1")
    assert (await status_of(cluster))["phase"] == "Terminating"

    cluster.update_database_spec("demo", "mc1", terminationPolicy="DoNotTerminate", replicas=0)
    result = await reconciler.reconcile("demo", "mc1")

    assert result.phase == DatabasePhase.FAILED
    obj = await cluster.get_database("demo", "mc1")
    assert obj["metadata"]["finalizers"] == [constants.FINALIZER]
    assert condition(obj["status"], constants.COND_DELETION_BLOCKED)["status"] == "True"
    assert condition(obj["status"], "Ready")["reason"] == constants.REASON_VALIDATION_FAILED

    cluster.update_database_spec("demo", "mc1", replicas=1)
    result = await reconciler.reconcile("demo", "mc1")
    assert result.phase == DatabasePhase.PROVISIONING


@pytest.mark.asyncio
async def test_skipped_first_status_write_does_not_look_like_resume(reconciler, cluster, monkeypatch):
    cluster.create_database("mc1", "demo")
    write_status = cluster.patch_database_status
    edited = []

    async def edit_then_write(db, status):
        if not edited:
            edited.append(cluster.update_database_spec("demo", "mc1", replicas=2))
        return await write_status(db, status)

    monkeypatch.setattr(cluster, "patch_database_status", edit_then_write)

    await reconciler.reconcile("demo", "mc1")
    assert (await status_of(cluster)).get("phase") is None
    assert ("create", "Secret", "mc1-auth") in cluster.writes

    result = await reconciler.reconcile("demo", "mc1")
    assert result.phase == DatabasePhase.PROVISIONING
    assert condition(await status_of(cluster), "Ready")["reason"] == constants.REASON_PROVISIONING
