"""
Termination policy engine.

Runs when a Memcached carrying the operator finalizer is deleted. Dependents
are found by identity labels and handled by partition:

    workload  StatefulSet, PodDisruptionBudget, Pod
    network   Service
    data      PersistentVolumeClaim, Secret, AppBinding

Workload and network always go (except under DoNotTerminate, which never
reaches this module). What happens to data depends on the policy: Halt
keeps it so a later Memcached with the same name resumes on it, Delete
removes it, WipeOut strips finalizers and removes it without grace.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from memcached_operator.config.logging import get_logger
from memcached_operator.config.settings import settings
from memcached_operator.core import constants
from memcached_operator.exceptions import InvariantViolation, PartialCleanupError
from memcached_operator.models.memcached import Memcached, TerminationPolicy
from memcached_operator.services import metrics
from memcached_operator.services.kube_client import ClusterClient
from memcached_operator.utils.objects import describe, identity_labels, meta
from memcached_operator.utils.retry import backoff_delay, retry_on_conflict

logger = get_logger(__name__)

WORKLOAD_KINDS = ("StatefulSet", "PodDisruptionBudget", "Pod")
NETWORK_KINDS = ("Service",)
DATA_KINDS = ("PersistentVolumeClaim", "Secret", constants.APPBINDING_KIND)


@dataclass
class CleanupResult:
    """Outcome of a completed termination sweep."""

    policy: TerminationPolicy
    deleted: List[str] = field(default_factory=list)
    retained: List[str] = field(default_factory=list)


class TerminationPolicyEngine:
    """Executes the cleanup or retention action set for a termination policy."""

    def __init__(
        self,
        cluster: ClusterClient,
        verify_attempts: Optional[int] = None,
        verify_delay: Optional[float] = None,
        verify_max_delay: Optional[float] = None,
    ):
        self.cluster = cluster
        self.verify_attempts = verify_attempts or settings.cleanup_verify_attempts
        self.verify_delay = settings.cleanup_verify_delay_seconds if verify_delay is None else verify_delay
        self.verify_max_delay = (
            settings.cleanup_verify_max_delay_seconds if verify_max_delay is None else verify_max_delay
        )

    async def execute(self, db: Memcached) -> CleanupResult:
        """
        Run the sweep for db's termination policy.

        Raises:
            PartialCleanupError: If a partition is not empty after verification
            InvariantViolation: If called for DoNotTerminate
        """
        policy = db.termination_policy
        if policy == TerminationPolicy.DO_NOT_TERMINATE:
            raise InvariantViolation(
                f"termination engine invoked for {db.key} with policy DoNotTerminate"
            )

        labels = identity_labels(db.name)
        result = CleanupResult(policy=policy)
        logger.info("termination_started", database=db.key, policy=policy.value)

        result.deleted += await self._delete_partition(db.namespace, labels, WORKLOAD_KINDS)
        result.deleted += await self._delete_partition(db.namespace, labels, NETWORK_KINDS)
        await self._verify_empty("workload", db.namespace, labels, WORKLOAD_KINDS)
        await self._verify_empty("network", db.namespace, labels, NETWORK_KINDS)

        if policy == TerminationPolicy.HALT:
            for kind in DATA_KINDS:
                result.retained += [describe(o) for o in await self.cluster.list(kind, db.namespace, labels)]
            logger.info(
                "termination_completed",
                database=db.key,
                policy=policy.value,
                deleted=len(result.deleted),
                retained=len(result.retained),
            )
            return result

        force = policy == TerminationPolicy.WIPE_OUT
        result.deleted += await self._delete_partition(db.namespace, labels, DATA_KINDS, force=force)
        await self._verify_empty("data", db.namespace, labels, DATA_KINDS)

        logger.info(
            "termination_completed",
            database=db.key,
            policy=policy.value,
            deleted=len(result.deleted),
            retained=0,
        )
        return result

    async def _delete_partition(
        self,
        namespace: str,
        labels: Dict[str, str],
        kinds: Sequence[str],
        force: bool = False,
    ) -> List[str]:
        deleted = []
        for kind in kinds:
            for obj in await self.cluster.list(kind, namespace, labels):
                name = meta(obj, "name")
                if force:
                    await self._strip_finalizers(kind, namespace, obj)
                elif meta(obj, "deletionTimestamp"):
                    continue

                gone = await self.cluster.delete(
                    kind,
                    namespace,
                    name,
                    propagation_policy="Foreground" if kind == "StatefulSet" else "Background",
                    grace_period_seconds=0 if force else None,
                )
                if gone:
                    deleted.append(describe(obj))
        return deleted

    async def _strip_finalizers(self, kind: str, namespace: str, obj: Dict[str, Any]) -> None:
        if not meta(obj, "finalizers"):
            return

        async def strip():
            current = await self.cluster.get(kind, namespace, meta(obj, "name"))
            if current is None or not meta(current, "finalizers"):
                return
            await self.cluster.patch(
                kind,
                namespace,
                meta(current, "name"),
                {"metadata": {
                    "finalizers": None,
                    "resourceVersion": meta(current, "resourceVersion"),
                }},
            )

        logger.info("finalizers_stripping", kind=kind, namespace=namespace, name=meta(obj, "name"))
        await retry_on_conflict(strip, attempts=settings.conflict_retry_attempts)

    async def _verify_empty(
        self,
        partition: str,
        namespace: str,
        labels: Dict[str, str],
        kinds: Sequence[str],
    ) -> None:
        """Re-list a partition with bounded backoff until nothing is left."""
        remaining: List[Dict[str, Any]] = []
        for attempt in range(self.verify_attempts):
            remaining = []
            for kind in kinds:
                remaining.extend(await self.cluster.list(kind, namespace, labels))
            if not remaining:
                return
            if attempt < self.verify_attempts - 1:
                await asyncio.sleep(
                    backoff_delay(attempt, self.verify_delay, self.verify_max_delay)
                )

        names = [describe(o) for o in remaining]
        metrics.cleanup_incomplete_total.labels(partition=partition).inc()
        logger.warning(
            "termination_partition_not_empty",
            partition=partition,
            namespace=namespace,
            remaining=names,
        )
        raise PartialCleanupError(partition, names)
