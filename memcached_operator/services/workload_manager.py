"""
Workload manager for Memcached.

Turns a Memcached spec into its dependent objects (auth Secret, client and
governing Services, StatefulSet, PodDisruptionBudget) and applies them with
patch semantics. Every write is preceded by a subset check against the
observed object, so a converged resource costs reads only.
"""
import base64
import copy
import secrets
from typing import Any, Dict, List, Optional

from memcached_operator.config.logging import get_logger
from memcached_operator.config.settings import settings
from memcached_operator.core import constants
from memcached_operator.exceptions import ValidationError
from memcached_operator.models.memcached import Memcached, StorageType
from memcached_operator.services.kube_client import ClusterClient
from memcached_operator.utils.objects import has_identity, identity_labels, is_subset, meta
from memcached_operator.utils.retry import retry_on_conflict

logger = get_logger(__name__)

CONTAINER_NAME = "memcached"

# Sent on create only; the API server rejects changes to them
IMMUTABLE_STATEFULSET_FIELDS = (
    "selector",
    "serviceName",
    "volumeClaimTemplates",
    "podManagementPolicy",
)
IMMUTABLE_SERVICE_FIELDS = ("clusterIP",)

# podTemplate.spec fields copied onto the pod template verbatim
POD_PASSTHROUGH_FIELDS = (
    "serviceAccountName",
    "nodeSelector",
    "affinity",
    "tolerations",
    "priorityClassName",
    "securityContext",
    "imagePullSecrets",
)


def auth_secret_name(db: Memcached) -> str:
    return f"{db.name}{constants.AUTH_SECRET_SUFFIX}"


def governing_service_name(db: Memcached) -> str:
    return f"{db.name}{constants.GOVERNING_SERVICE_SUFFIX}"


def image_for(db: Memcached) -> str:
    return f"{settings.memcached_image_registry}/memcached:{db.spec.version}"


def _object_meta(db: Memcached, name: str) -> Dict[str, Any]:
    return {
        "name": name,
        "namespace": db.namespace,
        "labels": identity_labels(db.name),
    }


def _instance_annotations(db: Memcached) -> Dict[str, str]:
    return {constants.ANNOTATION_INSTANCE_UID: db.uid or ""}


def build_auth_secret(db: Memcached) -> Dict[str, Any]:
    password = secrets.token_urlsafe(24)
    metadata = _object_meta(db, auth_secret_name(db))
    metadata["annotations"] = _instance_annotations(db)
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": metadata,
        "type": "Opaque",
        "data": {
            "username": base64.b64encode(constants.AUTH_USERNAME.encode()).decode(),
            "password": base64.b64encode(password.encode()).decode(),
        },
    }


def build_client_service(db: Memcached) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _object_meta(db, db.name),
        "spec": {
            "selector": identity_labels(db.name),
            "ports": [
                {
                    "name": constants.PORT_NAME,
                    "port": constants.MEMCACHED_PORT,
                    "targetPort": constants.PORT_NAME,
                }
            ],
        },
    }


def build_governing_service(db: Memcached) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _object_meta(db, governing_service_name(db)),
        "spec": {
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "selector": identity_labels(db.name),
            "ports": [
                {
                    "name": constants.PORT_NAME,
                    "port": constants.MEMCACHED_PORT,
                    "targetPort": constants.PORT_NAME,
                }
            ],
        },
    }


def build_pdb(db: Memcached) -> Dict[str, Any]:
    return {
        "apiVersion": "policy/v1",
        "kind": "PodDisruptionBudget",
        "metadata": _object_meta(db, db.name),
        "spec": {
            "maxUnavailable": 1,
            "selector": {"matchLabels": identity_labels(db.name)},
        },
    }


def _container_env(db: Memcached, user_env: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    env = copy.deepcopy(user_env)
    env.append({"name": constants.ENV_USERNAME, "value": constants.AUTH_USERNAME})
    env.append({
        "name": constants.ENV_PASSWORD,
        "valueFrom": {"secretKeyRef": {"name": auth_secret_name(db), "key": "password"}},
    })
    return env


def _data_claim_template(db: Memcached) -> Dict[str, Any]:
    storage = copy.deepcopy(db.spec.storage or {})
    storage.setdefault("accessModes", ["ReadWriteOnce"])
    if settings.memcached_default_storage_class and not storage.get("storageClassName"):
        storage["storageClassName"] = settings.memcached_default_storage_class
    return {
        "metadata": {
            "name": constants.DATA_VOLUME,
            "labels": identity_labels(db.name),
            "annotations": _instance_annotations(db),
        },
        "spec": storage,
    }


def build_statefulset(db: Memcached) -> Dict[str, Any]:
    """Desired StatefulSet, including the fields that are only sent on create."""
    template_meta = db.spec.pod_template.metadata
    pod_spec_in = db.spec.pod_template.spec
    labels = dict(template_meta.get("labels") or {})
    labels.update(identity_labels(db.name))

    container: Dict[str, Any] = {
        "name": CONTAINER_NAME,
        "image": image_for(db),
        "ports": [{"name": constants.PORT_NAME, "containerPort": constants.MEMCACHED_PORT}],
        "env": _container_env(db, pod_spec_in.get("env") or []),
        "volumeMounts": [{"name": constants.DATA_VOLUME, "mountPath": constants.DATA_MOUNT_PATH}],
    }
    if pod_spec_in.get("args"):
        container["args"] = list(pod_spec_in["args"])
    if pod_spec_in.get("resources"):
        container["resources"] = copy.deepcopy(pod_spec_in["resources"])

    volumes: List[Dict[str, Any]] = []
    if db.spec.config_source is not None:
        container["volumeMounts"].append({
            "name": constants.CONFIG_SOURCE_VOLUME,
            "mountPath": constants.CONFIG_SOURCE_MOUNT_PATH,
        })
        volume = {"name": constants.CONFIG_SOURCE_VOLUME}
        volume.update(copy.deepcopy(db.spec.config_source))
        volumes.append(volume)
    if db.spec.storage_type == StorageType.EPHEMERAL:
        volumes.append({"name": constants.DATA_VOLUME, "emptyDir": {}})

    pod_spec: Dict[str, Any] = {"containers": [container]}
    if volumes:
        pod_spec["volumes"] = volumes
    for field in POD_PASSTHROUGH_FIELDS:
        if pod_spec_in.get(field) is not None:
            pod_spec[field] = copy.deepcopy(pod_spec_in[field])

    template: Dict[str, Any] = {"metadata": {"labels": labels}, "spec": pod_spec}
    if template_meta.get("annotations"):
        template["metadata"]["annotations"] = dict(template_meta["annotations"])

    spec: Dict[str, Any] = {
        "replicas": db.spec.replicas,
        "serviceName": governing_service_name(db),
        "podManagementPolicy": "Parallel",
        "selector": {"matchLabels": identity_labels(db.name)},
        "template": template,
    }
    if db.spec.storage_type == StorageType.DURABLE:
        spec["volumeClaimTemplates"] = [_data_claim_template(db)]

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _object_meta(db, db.name),
        "spec": spec,
    }


def mutable_view(desired: Dict[str, Any], immutable_fields) -> Dict[str, Any]:
    """Copy of desired without spec fields that may only be set on create."""
    view = copy.deepcopy(desired)
    for field in immutable_fields:
        view.get("spec", {}).pop(field, None)
    return view


def is_statefulset_ready(sts: Optional[Dict[str, Any]]) -> bool:
    """
    A StatefulSet is ready once the controller has observed its latest
    generation and every desired replica reports ready.
    """
    if not sts:
        return False
    status = sts.get("status") or {}
    generation = meta(sts, "generation", 0) or 0
    desired = (sts.get("spec") or {}).get("replicas", 1)
    observed_generation = status.get("observedGeneration") or 0
    ready_replicas = status.get("readyReplicas") or 0
    return observed_generation >= generation and ready_replicas == desired


def _replace_list_directives(patch: Dict[str, Any]) -> None:
    """
    Mark operator-owned pod lists for wholesale replacement.

    Strategic merge keeps list entries missing from the patch, so a removed
    env var or a dropped config volume would otherwise survive.
    """
    pod_spec = patch["spec"]["template"]["spec"]
    pod_spec["volumes"] = list(pod_spec.get("volumes") or []) + [{"$patch": "replace"}]
    for container in pod_spec["containers"]:
        container["env"] = list(container.get("env") or []) + [{"$patch": "replace"}]
        container["volumeMounts"] = list(container.get("volumeMounts") or []) + [{"$patch": "replace"}]


class WorkloadManager:
    """Applies and tears down the compute and network dependents of a Memcached."""

    def __init__(self, cluster: ClusterClient):
        self.cluster = cluster

    async def reconcile(self, db: Memcached) -> bool:
        """
        Apply all dependents.

        Returns:
            True if the workload is ready

        Raises:
            ValidationError: If a same-named object not owned by db blocks a dependent
        """
        await self.ensure_auth_secret(db)
        await self.apply(db, build_governing_service(db), IMMUTABLE_SERVICE_FIELDS)
        await self.apply(db, build_client_service(db), IMMUTABLE_SERVICE_FIELDS)
        sts = await self.apply(db, build_statefulset(db), IMMUTABLE_STATEFULSET_FIELDS)
        await self.reconcile_pdb(db)
        return is_statefulset_ready(sts)

    async def ensure_auth_secret(self, db: Memcached) -> Dict[str, Any]:
        """Create the auth Secret once; an existing owned Secret is reused as is."""
        name = auth_secret_name(db)
        existing = await self.cluster.get("Secret", db.namespace, name)
        if existing is not None:
            if not has_identity(existing, db.name):
                raise ValidationError(
                    f"Secret {db.namespace}/{name} exists and is not owned by Memcached {db.name}",
                    field="metadata.name",
                )
            return existing
        logger.info("auth_secret_creating", database=db.key, secret=name)
        return await self.cluster.create("Secret", db.namespace, build_auth_secret(db))

    async def apply(
        self, db: Memcached, desired: Dict[str, Any], immutable_fields=()
    ) -> Dict[str, Any]:
        """Create or converge one dependent object, retrying on write conflicts."""
        return await retry_on_conflict(
            self._apply_once,
            db,
            desired,
            immutable_fields,
            attempts=settings.conflict_retry_attempts,
        )

    async def _apply_once(
        self, db: Memcached, desired: Dict[str, Any], immutable_fields
    ) -> Dict[str, Any]:
        kind = desired["kind"]
        name = desired["metadata"]["name"]
        observed = await self.cluster.get(kind, db.namespace, name)

        if observed is None:
            logger.info("dependent_creating", database=db.key, kind=kind, name=name)
            return await self.cluster.create(kind, db.namespace, desired)

        if not has_identity(observed, db.name):
            raise ValidationError(
                f"{kind} {db.namespace}/{name} exists and is not owned by Memcached {db.name}",
                field="metadata.name",
            )

        patch = mutable_view(desired, immutable_fields)
        patch.pop("apiVersion", None)
        patch.pop("kind", None)
        if is_subset(patch, observed):
            return observed
        if kind == "StatefulSet":
            _replace_list_directives(patch)

        patch["metadata"] = {
            "labels": patch["metadata"]["labels"],
            "resourceVersion": meta(observed, "resourceVersion"),
        }
        logger.info("dependent_drift_patching", database=db.key, kind=kind, name=name)
        return await self.cluster.patch(kind, db.namespace, name, patch)

    async def reconcile_pdb(self, db: Memcached) -> None:
        """Keep a PDB while there is more than one replica."""
        if db.spec.replicas > 1:
            await self.apply(db, build_pdb(db))
            return
        existing = await self.cluster.get("PodDisruptionBudget", db.namespace, db.name)
        if existing is not None and has_identity(existing, db.name):
            logger.info("pdb_removing_single_replica", database=db.key)
            await self.cluster.delete("PodDisruptionBudget", db.namespace, db.name)

    async def teardown(self, db: Memcached) -> bool:
        """
        Remove compute and network, keeping data.

        Returns:
            True once no StatefulSet or pod of db remains
        """
        labels = identity_labels(db.name)
        for kind in ("StatefulSet", "PodDisruptionBudget", "Service"):
            for obj in await self.cluster.list(kind, db.namespace, labels):
                if meta(obj, "deletionTimestamp"):
                    continue
                await self.cluster.delete(
                    kind,
                    db.namespace,
                    meta(obj, "name"),
                    propagation_policy="Foreground" if kind == "StatefulSet" else "Background",
                )

        remaining = []
        for kind in ("StatefulSet", "Pod"):
            remaining.extend(await self.cluster.list(kind, db.namespace, labels))
        if remaining:
            logger.info("workload_teardown_pending", database=db.key, remaining=len(remaining))
        return not remaining

    async def has_dormant_data(self, db: Memcached) -> bool:
        """
        Whether identity-labelled PVCs or Secrets survive from an earlier instance.

        Objects stamped with this instance's uid were created by it and do not
        count; unstamped objects predate the annotation and do.
        """
        labels = identity_labels(db.name)
        for kind in ("PersistentVolumeClaim", "Secret"):
            for obj in await self.cluster.list(kind, db.namespace, labels):
                annotations = meta(obj, "annotations") or {}
                if annotations.get(constants.ANNOTATION_INSTANCE_UID) != db.uid:
                    return True
        return False
