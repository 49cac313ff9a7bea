"""
Lifecycle reconciler for Memcached resources.

One call to reconcile() is one bounded pass over one identity: read the
object, decide which lifecycle branch applies, delegate the work to the kind
handler and record the outcome in status. A pass never waits for the cluster
to converge; it returns a requeue delay instead.

Branches, in order:
    1. object gone                         -> nothing to do
    2. deletionTimestamp set               -> run the termination policy,
                                              release the finalizer
                                              (DoNotTerminate: block and carry on;
                                              already WipedOut: release only)
    3. finalizer missing                   -> add it
    4. Failed for the current generation   -> nothing to do
    5. spec invalid                        -> Failed
    6. spec.halted                         -> tear down compute, Halted
    7. otherwise                           -> apply workload, Running once ready
"""
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from memcached_operator.config.logging import get_logger
from memcached_operator.config.settings import settings
from memcached_operator.core import constants
from memcached_operator.core.state_machine import DatabasePhase, PhaseStateMachine
from memcached_operator.exceptions import PartialCleanupError, ValidationError
from memcached_operator.models.memcached import Memcached, MemcachedStatus, TerminationPolicy
from memcached_operator.services import metrics
from memcached_operator.services.handlers import DatabaseHandler, handler_for
from memcached_operator.services.kube_client import ClusterClient
from memcached_operator.utils.retry import retry_on_conflict

logger = get_logger(__name__)

FINAL_PHASES = {
    TerminationPolicy.HALT: DatabasePhase.HALTED,
    TerminationPolicy.WIPE_OUT: DatabasePhase.WIPED_OUT,
    TerminationPolicy.DELETE: None,
}

# Keys every status write carries so merge patch can clear them
STATUS_DEFAULTS = {"phase": None, "observedGeneration": None, "conditions": []}


@dataclass
class ReconcileResult:
    """Outcome of one pass. requeue_after is None when the resource converged."""

    phase: Optional[DatabasePhase] = None
    requeue_after: Optional[float] = None


class LifecycleReconciler:
    """Drives one Memcached identity toward its declared state."""

    def __init__(
        self,
        cluster: ClusterClient,
        handler: Optional[DatabaseHandler] = None,
        readiness_requeue: Optional[float] = None,
    ):
        self.cluster = cluster
        self.handler = handler or handler_for(constants.KIND, cluster)
        self.readiness_requeue = (
            settings.readiness_requeue_seconds if readiness_requeue is None else readiness_requeue
        )

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """
        Run one pass for namespace/name.

        Raises:
            PartialCleanupError: Termination left objects behind
            ConflictError: A write kept losing to concurrent updates
            TransientAPIError, KubernetesError: API failures
            InvariantViolation: An illegal phase transition was computed
        """
        raw = await self.cluster.get_database(namespace, name)
        if raw is None:
            logger.debug("database_absent", namespace=namespace, name=name)
            return ReconcileResult()

        db = Memcached(raw)
        current = PhaseStateMachine.parse(db.status.phase)
        status = db.status.model_copy(deep=True)

        if db.deleting:
            if current == DatabasePhase.WIPED_OUT:
                # Data is already destroyed; only the finalizer release is left
                logger.info("finalizer_release_resumed", database=db.key)
                await self._remove_finalizer(db)
                return ReconcileResult(phase=current)
            if db.termination_policy != TerminationPolicy.DO_NOT_TERMINATE:
                return await self._terminate(db, current, status)
            logger.info("deletion_blocked", database=db.key, policy=db.termination_policy.value)
            status.set_condition(
                constants.COND_DELETION_BLOCKED,
                True,
                constants.REASON_POLICY_DO_NOT_TERMINATE,
                "Deletion is blocked by terminationPolicy DoNotTerminate",
                db.generation,
            )
        else:
            status.remove_condition(constants.COND_DELETION_BLOCKED)
            if constants.FINALIZER not in db.finalizers:
                db = await self._add_finalizer(db)
                if db is None:
                    return ReconcileResult()

        if current == DatabasePhase.FAILED and db.status.observed_generation == db.generation:
            return await self._finish(db, status, current, current, None)

        try:
            self.handler.validate(db)
            if db.spec.halted:
                return await self._halt(db, current, status)
            return await self._run(db, current, status)
        except ValidationError as e:
            return await self._fail(db, current, status, e)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def _fail(
        self, db: Memcached, current: Optional[DatabasePhase], status: MemcachedStatus, error: ValidationError
    ) -> ReconcileResult:
        logger.warning(
            "database_validation_failed",
            database=db.key,
            generation=db.generation,
            field=error.field,
            error=error.message,
        )
        status.set_condition(
            constants.COND_READY, False, constants.REASON_VALIDATION_FAILED, error.message, db.generation
        )
        return await self._finish(db, status, current, DatabasePhase.FAILED, None)

    async def _halt(
        self, db: Memcached, current: Optional[DatabasePhase], status: MemcachedStatus
    ) -> ReconcileResult:
        done = await self.handler.halt(db)
        if not done:
            status.set_condition(
                constants.COND_HALTED, False, constants.REASON_HALTING,
                "Waiting for the workload to terminate", db.generation,
            )
            # Halted only once the workload is gone
            target = current
            if current in (None, DatabasePhase.FAILED):
                target = DatabasePhase.PROVISIONING
            return await self._finish(db, status, current, target, self.readiness_requeue)

        status.set_condition(
            constants.COND_HALTED, True, constants.REASON_HALTED,
            "Workload removed, data retained", db.generation,
        )
        status.set_condition(
            constants.COND_READY, False, constants.REASON_HALTED,
            "Database is halted", db.generation,
        )
        return await self._finish(db, status, current, DatabasePhase.HALTED, None)

    async def _run(
        self, db: Memcached, current: Optional[DatabasePhase], status: MemcachedStatus
    ) -> ReconcileResult:
        resuming = current == DatabasePhase.HALTED
        if current is None and await self.handler.has_dormant_data(db):
            logger.info("dormant_data_found_resuming", database=db.key)
            resuming = True

        ready = await self.handler.reconcile(db)

        if ready:
            status.set_condition(
                constants.COND_READY, True, constants.REASON_READY,
                "All replicas are ready", db.generation,
            )
            if status.get_condition(constants.COND_HALTED) is not None:
                status.set_condition(
                    constants.COND_HALTED, False, constants.REASON_READY,
                    "Database is running", db.generation,
                )
            return await self._finish(db, status, current, DatabasePhase.RUNNING, None)

        if resuming:
            reason, message, target = (
                constants.REASON_RESUMING, "Resuming on retained data", DatabasePhase.HALTED,
            )
            status.set_condition(constants.COND_HALTED, False, reason, message, db.generation)
        else:
            reason, message, target = (
                constants.REASON_PROVISIONING, "Waiting for replicas to become ready",
                DatabasePhase.PROVISIONING,
            )
        status.set_condition(constants.COND_READY, False, reason, message, db.generation)
        return await self._finish(db, status, current, target, self.readiness_requeue)

    async def _terminate(
        self, db: Memcached, current: Optional[DatabasePhase], status: MemcachedStatus
    ) -> ReconcileResult:
        policy = db.termination_policy
        if constants.FINALIZER not in db.finalizers:
            # Someone else released it; the API server removes the object
            return ReconcileResult()

        if current != DatabasePhase.TERMINATING:
            PhaseStateMachine.validate_transition(current, DatabasePhase.TERMINATING, db.key)
            status.phase = DatabasePhase.TERMINATING.value
            status.set_condition(
                constants.COND_READY, False, "Terminating",
                f"Running termination policy {policy.value}", db.generation,
            )
            db = await self._write_status(db, status, current)
            if db is None:
                return ReconcileResult()
            current = DatabasePhase.TERMINATING

        try:
            result = await self.handler.cleanup(db)
        except PartialCleanupError as e:
            status.set_condition(
                constants.COND_CLEANUP, False, constants.REASON_PARTIAL_CLEANUP, e.message, db.generation,
            )
            await self._write_status(db, status, current)
            raise

        final = FINAL_PHASES[policy]
        if final is not None:
            PhaseStateMachine.validate_transition(current, final, db.key)
            status.phase = final.value
            status.set_condition(
                constants.COND_CLEANUP, True, policy.value,
                f"{len(result.deleted)} deleted, {len(result.retained)} retained", db.generation,
            )
            db = await self._write_status(db, status, current)
            if db is None:
                return ReconcileResult(phase=final)

        await self._remove_finalizer(db)
        logger.info(
            "database_terminated",
            database=db.key,
            policy=policy.value,
            final_phase=final.value if final else None,
        )
        return ReconcileResult(phase=final)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _finish(
        self,
        db: Memcached,
        status: MemcachedStatus,
        current: Optional[DatabasePhase],
        target: Optional[DatabasePhase],
        requeue_after: Optional[float],
    ) -> ReconcileResult:
        if target is not None:
            PhaseStateMachine.validate_transition(current, target, db.key)
            status.phase = target.value
        status.observed_generation = db.generation
        await self._write_status(db, status, current)
        return ReconcileResult(phase=target, requeue_after=requeue_after)

    async def _with_fresh(
        self, db: Memcached, write: Callable[[Memcached], Awaitable[Optional[Memcached]]]
    ) -> Optional[Memcached]:
        """
        Run a version-gated write, re-reading the object before each retry.

        Returns the object after the write, or None if it disappeared.
        """
        stale = False

        async def attempt() -> Optional[Memcached]:
            nonlocal stale
            latest = db
            if stale:
                raw = await self.cluster.get_database(db.namespace, db.name)
                if raw is None:
                    return None
                latest = Memcached(raw)
            stale = True
            return await write(latest)

        return await retry_on_conflict(attempt, attempts=settings.conflict_retry_attempts)

    async def _write_status(
        self, db: Memcached, status: MemcachedStatus, previous: Optional[DatabasePhase]
    ) -> Optional[Memcached]:
        """Write status if it differs from what is stored."""
        desired = dict(STATUS_DEFAULTS)
        desired.update(status.to_dict())

        async def write(latest: Memcached) -> Optional[Memcached]:
            if latest.generation != db.generation:
                # The spec moved on; the next pass computes a fresh status
                logger.info("status_write_skipped_generation_changed", database=db.key)
                return latest
            stored = dict(STATUS_DEFAULTS)
            stored.update(latest.status.to_dict())
            if stored == desired:
                return latest
            updated = await self.cluster.patch_database_status(latest.raw, desired)
            return Memcached(updated)

        result = await self._with_fresh(db, write)
        if status.phase and status.phase != (previous.value if previous else None):
            metrics.phase_transition_total.labels(
                from_phase=previous.value if previous else "none", to_phase=status.phase
            ).inc()
            logger.info(
                "database_phase_changed",
                database=db.key,
                from_phase=previous.value if previous else None,
                to_phase=status.phase,
            )
        return result

    async def _add_finalizer(self, db: Memcached) -> Optional[Memcached]:
        async def write(latest: Memcached) -> Optional[Memcached]:
            if constants.FINALIZER in latest.finalizers:
                return latest
            logger.info("finalizer_adding", database=db.key)
            updated = await self.cluster.set_database_finalizers(
                latest.raw, latest.finalizers + [constants.FINALIZER]
            )
            return Memcached(updated)

        return await self._with_fresh(db, write)

    async def _remove_finalizer(self, db: Memcached) -> Optional[Memcached]:
        async def write(latest: Memcached) -> Optional[Memcached]:
            if constants.FINALIZER not in latest.finalizers:
                return latest
            logger.info("finalizer_releasing", database=db.key)
            updated = await self.cluster.set_database_finalizers(
                latest.raw, [f for f in latest.finalizers if f != constants.FINALIZER]
            )
            return Memcached(updated)

        return await self._with_fresh(db, write)
