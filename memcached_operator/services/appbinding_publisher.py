"""
AppBinding publisher.

Maintains the discovery object that tells clients how to reach a running
Memcached: which Service to dial, which Secret holds credentials and the
connection parameters.
"""
from typing import Any, Dict

from memcached_operator.config.logging import get_logger
from memcached_operator.config.settings import settings
from memcached_operator.core import constants
from memcached_operator.exceptions import ValidationError
from memcached_operator.models.memcached import Memcached
from memcached_operator.services.kube_client import ClusterClient
from memcached_operator.services.workload_manager import auth_secret_name
from memcached_operator.utils.objects import has_identity, identity_labels, is_subset, meta
from memcached_operator.utils.retry import retry_on_conflict

logger = get_logger(__name__)


def build_appbinding(db: Memcached) -> Dict[str, Any]:
    host = f"{db.name}.{db.namespace}.svc"
    return {
        "apiVersion": f"{constants.APPBINDING_GROUP}/{constants.APPBINDING_VERSION}",
        "kind": constants.APPBINDING_KIND,
        "metadata": {
            "name": db.name,
            "namespace": db.namespace,
            "labels": identity_labels(db.name),
        },
        "spec": {
            "type": constants.APPBINDING_TYPE,
            "version": db.spec.version,
            "clientConfig": {
                "service": {
                    "name": db.name,
                    "port": constants.MEMCACHED_PORT,
                    "scheme": "tcp",
                },
            },
            "secret": {"name": auth_secret_name(db)},
            "parameters": {
                "host": host,
                "port": constants.MEMCACHED_PORT,
                "protocol": "tcp",
            },
        },
    }


class AppBindingPublisher:
    """Upserts and removes the AppBinding of a Memcached."""

    def __init__(self, cluster: ClusterClient):
        self.cluster = cluster

    async def publish(self, db: Memcached) -> Dict[str, Any]:
        """Create or update the AppBinding. No write when content is unchanged."""
        return await retry_on_conflict(
            self._publish_once, db, attempts=settings.conflict_retry_attempts
        )

    async def _publish_once(self, db: Memcached) -> Dict[str, Any]:
        desired = build_appbinding(db)
        observed = await self.cluster.get(constants.APPBINDING_KIND, db.namespace, db.name)

        if observed is None:
            logger.info("appbinding_creating", database=db.key)
            return await self.cluster.create(constants.APPBINDING_KIND, db.namespace, desired)

        if not has_identity(observed, db.name):
            raise ValidationError(
                f"AppBinding {db.namespace}/{db.name} exists and is not owned by Memcached {db.name}",
                field="metadata.name",
            )

        body = {"metadata": desired["metadata"], "spec": desired["spec"]}
        if is_subset(body, observed):
            return observed

        body["metadata"] = {
            "labels": desired["metadata"]["labels"],
            "resourceVersion": meta(observed, "resourceVersion"),
        }
        logger.info("appbinding_updating", database=db.key)
        return await self.cluster.patch(constants.APPBINDING_KIND, db.namespace, db.name, body)

    async def remove(self, db: Memcached) -> bool:
        """Delete the AppBinding if this Memcached owns it."""
        observed = await self.cluster.get(constants.APPBINDING_KIND, db.namespace, db.name)
        if observed is None or not has_identity(observed, db.name):
            return False
        logger.info("appbinding_removing", database=db.key)
        return await self.cluster.delete(constants.APPBINDING_KIND, db.namespace, db.name)
