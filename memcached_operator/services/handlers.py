"""
Per-kind database handlers.

The reconciler drives the lifecycle state machine; everything that depends on
the database kind goes through a DatabaseHandler resolved from the registry.
"""
from abc import ABC, abstractmethod
from typing import Dict, Type

from memcached_operator.core import constants
from memcached_operator.models.memcached import Memcached
from memcached_operator.services.appbinding_publisher import AppBindingPublisher
from memcached_operator.services.kube_client import ClusterClient
from memcached_operator.services.termination import CleanupResult, TerminationPolicyEngine
from memcached_operator.services.validator import validate_memcached
from memcached_operator.services.workload_manager import WorkloadManager


class DatabaseHandler(ABC):
    """Capabilities the reconciler needs from a database kind."""

    kind: str = ""

    def __init__(self, cluster: ClusterClient, engine: TerminationPolicyEngine = None):
        self.cluster = cluster
        self.engine = engine or TerminationPolicyEngine(cluster)

    @abstractmethod
    def validate(self, db) -> None:
        """Raise ValidationError if the spec cannot be satisfied."""

    @abstractmethod
    async def reconcile(self, db) -> bool:
        """Converge dependents; return True when the database is ready."""

    @abstractmethod
    async def halt(self, db) -> bool:
        """Remove compute and network; return True once the workload is gone."""

    @abstractmethod
    async def has_dormant_data(self, db) -> bool:
        """Whether data from an earlier instance with the same identity exists."""

    async def cleanup(self, db) -> CleanupResult:
        """Run the termination policy on deletion."""
        return await self.engine.execute(db)


class MemcachedHandler(DatabaseHandler):
    kind = constants.KIND

    def __init__(self, cluster: ClusterClient, engine: TerminationPolicyEngine = None):
        super().__init__(cluster, engine)
        self.workload = WorkloadManager(cluster)
        self.appbinding = AppBindingPublisher(cluster)

    def validate(self, db: Memcached) -> None:
        validate_memcached(db)

    async def reconcile(self, db: Memcached) -> bool:
        ready = await self.workload.reconcile(db)
        await self.appbinding.publish(db)
        return ready

    async def halt(self, db: Memcached) -> bool:
        await self.appbinding.remove(db)
        return await self.workload.teardown(db)

    async def has_dormant_data(self, db: Memcached) -> bool:
        return await self.workload.has_dormant_data(db)


HANDLERS: Dict[str, Type[DatabaseHandler]] = {
    MemcachedHandler.kind: MemcachedHandler,
}


def handler_for(kind: str, cluster: ClusterClient, **kwargs) -> DatabaseHandler:
    """
    Build the handler registered for a kind.

    Raises:
        KeyError: If no handler is registered for kind
    """
    try:
        handler_cls = HANDLERS[kind]
    except KeyError:
        raise KeyError(f"No database handler registered for kind {kind!r}")
    return handler_cls(cluster, **kwargs)
