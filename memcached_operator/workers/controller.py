"""
Controller: queue, workers and watches for Memcached reconciliation.

Watch events land in the resource cache and enqueue the identity they
concern. A bounded pool of workers pulls identities from the deduplicating
work queue and runs one reconcile pass each; the queue guarantees that an
identity is never reconciled by two workers at once. Errors raised by a pass
decide when the identity is seen again.
"""
import asyncio
import time
from typing import Any, Dict, List, Optional

from memcached_operator.config.logging import get_logger
from memcached_operator.config.settings import settings
from memcached_operator.core import constants
from memcached_operator.core.cache import ResourceCache, object_key, split_key
from memcached_operator.core.work_queue import ShutDown, WorkQueue
from memcached_operator.exceptions import (
    ConflictError,
    InvariantViolation,
    PartialCleanupError,
)
from memcached_operator.services import metrics
from memcached_operator.services.kube_client import ClusterClient
from memcached_operator.utils.objects import meta
from memcached_operator.workers.event_watcher import EventWatcher
from memcached_operator.workers.reconciler import LifecycleReconciler

logger = get_logger(__name__)


class Controller:
    """
    Runs reconcile workers over a shared work queue.

    Features:
    - Deduplicated, per-identity serialized reconcile passes
    - Per-identity exponential backoff on failures
    - Delayed requeue while waiting for readiness or cleanup
    - Periodic resync of every cached identity
    - Watches on Memcached objects and their StatefulSets
    """

    def __init__(
        self,
        cluster: ClusterClient,
        reconciler: Optional[LifecycleReconciler] = None,
        workers: Optional[int] = None,
        resync_period: Optional[float] = None,
        terminating_requeue: Optional[float] = None,
    ):
        self.cluster = cluster
        self.reconciler = reconciler or LifecycleReconciler(cluster)
        self.queue = WorkQueue(
            backoff_base=settings.backoff_base_seconds,
            backoff_max=settings.backoff_max_seconds,
        )
        self.cache = ResourceCache()
        self.workers = workers or settings.reconcile_workers
        self.resync_period = resync_period or settings.resync_period_seconds
        self.terminating_requeue = (
            settings.terminating_requeue_seconds if terminating_requeue is None else terminating_requeue
        )
        self.running = False
        self._watchers: List[EventWatcher] = []
        self._tasks: List[asyncio.Task] = []

    @property
    def ready(self) -> bool:
        """True once the controller runs and has listed Memcached objects."""
        return self.running and self.cache.synced

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, watch: bool = True) -> None:
        """
        Run until stopped.

        Raises:
            InvariantViolation: If a worker hit an illegal phase transition
        """
        self.running = True
        logger.info("controller_started", workers=self.workers, resync_period_seconds=self.resync_period)

        if watch:
            self._watchers = [
                EventWatcher(
                    constants.KIND,
                    self.cluster,
                    self.handle_database_event,
                    on_relist=self.handle_database_relist,
                    namespace=settings.watch_namespace,
                ),
                EventWatcher(
                    "StatefulSet",
                    self.cluster,
                    self.handle_dependent_event,
                    namespace=settings.watch_namespace,
                    label_selector=f"{constants.LABEL_DATABASE_KIND}={constants.KIND}",
                ),
            ]
        else:
            await self.resync()

        self._tasks = [asyncio.create_task(self._worker(i)) for i in range(self.workers)]
        self._tasks.append(asyncio.create_task(self._resync_loop()))
        self._tasks += [asyncio.create_task(w.start()) for w in self._watchers]

        try:
            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
        finally:
            await self.stop()
            logger.info("controller_stopped")

    async def stop(self) -> None:
        """Stop watches and workers."""
        if not self.running and not self._tasks:
            return
        logger.info("controller_stopping")
        self.running = False
        self.queue.shutdown()
        for watcher in self._watchers:
            await watcher.stop()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def enqueue(self, key: str) -> None:
        self.queue.add(key)
        metrics.queue_depth.set(len(self.queue))

    async def handle_database_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        """Update the cache from a Memcached event; enqueue if it carries news."""
        key = object_key(obj)
        if event_type == "DELETED":
            self.cache.invalidate(key)
            self.enqueue(key)
            return
        if self.cache.upsert(obj):
            self.enqueue(key)
        else:
            logger.debug("stale_event_ignored", key=key, resource_version=meta(obj, "resourceVersion"))

    async def handle_dependent_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        """Enqueue the Memcached a dependent belongs to."""
        labels = meta(obj, "labels") or {}
        if labels.get(constants.LABEL_DATABASE_KIND) != constants.KIND:
            return
        name = labels.get(constants.LABEL_DATABASE_NAME)
        if name:
            self.enqueue(f"{meta(obj, 'namespace')}/{name}")

    async def handle_database_relist(self, objects: List[Dict[str, Any]]) -> None:
        """Replace the cache after a full list and enqueue every identity seen."""
        gone = self.cache.replace(objects)
        for obj in objects:
            self.enqueue(object_key(obj))
        for key in gone:
            self.enqueue(key)

    async def resync(self) -> None:
        """List Memcached objects through the API and feed them to the cache."""
        listing = await self.cluster.list_databases(settings.watch_namespace)
        items = listing.get("items", [])
        for item in items:
            item.setdefault("kind", constants.KIND)
        await self.handle_database_relist(items)

    async def _resync_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.resync_period)
            keys = self.cache.keys()
            logger.info("periodic_resync", identities=len(keys))
            for key in keys:
                self.enqueue(key)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, worker_id: int) -> None:
        logger.debug("reconcile_worker_started", worker_id=worker_id)
        while True:
            try:
                key = await self.queue.get()
            except ShutDown:
                logger.debug("reconcile_worker_stopped", worker_id=worker_id)
                return
            metrics.queue_processing.inc()
            try:
                await self.process(key)
            finally:
                self.queue.done(key)
                metrics.queue_processing.dec()
                metrics.queue_depth.set(len(self.queue))

    async def process(self, key: str) -> str:
        """
        Run one reconcile pass for key and schedule its next visit.

        Returns:
            The result label recorded in metrics

        Raises:
            InvariantViolation: Always propagated; it is fatal to the worker
        """
        namespace, name = split_key(key)
        started = time.monotonic()
        outcome = "success"

        try:
            result = await self.reconciler.reconcile(namespace, name)
        except InvariantViolation:
            outcome = "invariant_violation"
            logger.critical("reconcile_invariant_violation", key=key, exc_info=True)
            raise
        except PartialCleanupError as e:
            outcome = "partial_cleanup"
            logger.warning(
                "reconcile_cleanup_incomplete",
                key=key,
                partition=e.partition,
                remaining=e.remaining,
                requeue_after=self.terminating_requeue,
            )
            metrics.queue_requeue_total.labels(reason=outcome).inc()
            self.queue.add_after(key, self.terminating_requeue)
        except ConflictError as e:
            outcome = "conflict"
            logger.info("reconcile_conflict_requeue", key=key, kind=e.kind, name=e.name)
            self.cache.invalidate(key)
            metrics.queue_requeue_total.labels(reason=outcome).inc()
            self.queue.add(key)
        except Exception as e:
            outcome = "error"
            delay = self.queue.add_rate_limited(key)
            logger.error(
                "reconcile_failed",
                key=key,
                error_type=type(e).__name__,
                error=str(e),
                failures=self.queue.failures(key),
                requeue_after=delay,
                exc_info=not hasattr(e, "message"),
            )
            metrics.queue_requeue_total.labels(reason=outcome).inc()
        else:
            self.queue.forget(key)
            if result.requeue_after is not None:
                metrics.queue_requeue_total.labels(reason="waiting").inc()
                self.queue.add_after(key, result.requeue_after)
            logger.debug(
                "reconcile_completed",
                key=key,
                phase=result.phase.value if result.phase else None,
                requeue_after=result.requeue_after,
            )
        finally:
            elapsed = time.monotonic() - started
            metrics.reconcile_total.labels(result=outcome).inc()
            metrics.reconcile_duration_seconds.labels(result=outcome).observe(elapsed)

        return outcome
