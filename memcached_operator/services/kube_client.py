"""
Kubernetes API access for the memcached operator.

Wraps kubernetes_asyncio behind a small dict-in/dict-out interface keyed by
object kind, translates API failures into the operator's error taxonomy and
applies version-gated writes. Everything above this module works with plain
dicts so the reconciler can be exercised against an in-memory cluster.
"""
import asyncio
import base64
import json
import os
import tempfile
from typing import Any, Dict, List, Optional

import aiohttp
import yaml
from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiException

from memcached_operator.config.logging import get_logger
from memcached_operator.config.settings import settings
from memcached_operator.core import constants
from memcached_operator.exceptions import (
    ConflictError,
    KubernetesError,
    TransientAPIError,
    ValidationError,
)
from memcached_operator.utils.objects import label_selector
from memcached_operator.utils.retry import RETRYABLE_STATUS_CODES, retry_on_k8s_error

logger = get_logger(__name__)

STRATEGIC_MERGE_PATCH = "application/strategic-merge-patch+json"
MERGE_PATCH = "application/merge-patch+json"

# kind -> (client attribute, method suffix, apiVersion)
BUILTIN_KINDS: Dict[str, tuple] = {
    "StatefulSet": ("apps_api", "stateful_set", "apps/v1"),
    "Service": ("core_api", "service", "v1"),
    "Secret": ("core_api", "secret", "v1"),
    "PersistentVolumeClaim": ("core_api", "persistent_volume_claim", "v1"),
    "Pod": ("core_api", "pod", "v1"),
    "PodDisruptionBudget": ("policy_api", "pod_disruption_budget", "policy/v1"),
}

# kind -> (group, version, plural)
CUSTOM_KINDS: Dict[str, tuple] = {
    constants.KIND: (constants.GROUP, constants.VERSION, constants.PLURAL),
    constants.APPBINDING_KIND: (
        constants.APPBINDING_GROUP,
        constants.APPBINDING_VERSION,
        constants.APPBINDING_PLURAL,
    ),
}


def translate_api_error(error: Exception, kind: str, name: str) -> Exception:
    """
    Map a client exception onto the operator's error taxonomy.

    404 is not translated here; callers decide whether absence is an error.
    """
    if isinstance(error, ApiException):
        status = error.status
        reason = error.reason
        body = error.body
        try:
            body = json.loads(error.body) if error.body else None
        except (json.JSONDecodeError, ValueError, TypeError):
            pass
        message = body.get("message", reason) if isinstance(body, dict) else reason

        if status == 409:
            return ConflictError(kind, name, details={"kind": kind, "name": name, "message": message})
        if status in (400, 422):
            return ValidationError(
                f"{kind} '{name}' rejected by the API server: {message}",
                details={"kind": kind, "name": name, "status": status},
            )
        if status in RETRYABLE_STATUS_CODES:
            return TransientAPIError(f"{kind} '{name}': {message}", status=status)
        return KubernetesError(f"{kind} '{name}': {message}", status=status)

    if isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)):
        return TransientAPIError(f"{kind} '{name}': {type(error).__name__}: {error}")

    return error


class KubernetesClientSet:
    """Container for Kubernetes API clients."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.custom_api = client.CustomObjectsApi(api_client)
        self.core_api = client.CoreV1Api(api_client)
        self.apps_api = client.AppsV1Api(api_client)
        self.policy_api = client.PolicyV1Api(api_client)

    async def close(self):
        """Close all API clients."""
        if self.api_client:
            await self.api_client.close()


async def load_client_set() -> KubernetesClientSet:
    """
    Build a client set from settings.

    Precedence: base64 kubeconfig content, in-cluster service account,
    kubeconfig path (or the default ~/.kube/config).

    Raises:
        KubernetesError: If the configuration cannot be loaded
    """
    configuration = client.Configuration()

    try:
        if settings.kubeconfig_content:
            try:
                decoded_content = base64.b64decode(settings.kubeconfig_content).decode("utf-8")
            except (ValueError, UnicodeDecodeError):
                decoded_content = settings.kubeconfig_content
                logger.warning(
                    "kubeconfig_not_base64_encoded",
                    message="Kubeconfig content should be base64 encoded",
                )

            kubeconfig_dict = yaml.safe_load(decoded_content)
            if not isinstance(kubeconfig_dict, dict):
                raise KubernetesError("Kubeconfig must be a YAML dictionary")

            # kubernetes_asyncio needs a file path
            with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
                f.write(decoded_content)
                temp_kubeconfig_path = f.name
            try:
                await config.load_kube_config(
                    config_file=temp_kubeconfig_path,
                    client_configuration=configuration,
                )
            finally:
                os.unlink(temp_kubeconfig_path)

        elif settings.k8s_in_cluster:
            config.load_incluster_config(client_configuration=configuration)

        else:
            await config.load_kube_config(
                config_file=settings.kubeconfig_path,
                client_configuration=configuration,
            )
    except yaml.YAMLError as e:
        raise KubernetesError(f"Invalid kubeconfig YAML: {e}")
    except config.ConfigException as e:
        raise KubernetesError(f"Failed to load kubeconfig: {e}")

    if not settings.k8s_verify_ssl:
        logger.warning(
            "ssl_verification_disabled",
            message="SSL verification disabled - use only for clusters with certificate issues",
        )
        configuration.verify_ssl = False

    logger.info(
        "kubernetes_configuration_loaded",
        host=configuration.host,
        verify_ssl=configuration.verify_ssl,
        in_cluster=settings.k8s_in_cluster,
    )
    return KubernetesClientSet(client.ApiClient(configuration=configuration))


class ClusterClient:
    """
    Dict-based access to the objects the operator reads and writes.

    Every write that carries metadata.resourceVersion is rejected by the API
    server with 409 if the object changed since it was read; that surfaces
    as ConflictError.
    """

    def __init__(self, client_set: KubernetesClientSet):
        self.client_set = client_set

    async def close(self) -> None:
        await self.client_set.close()

    # ------------------------------------------------------------------
    # Generic dependent-object access
    # ------------------------------------------------------------------

    def _to_dict(self, obj: Any, kind: str) -> Dict[str, Any]:
        if isinstance(obj, dict):
            data = obj
        else:
            data = self.client_set.api_client.sanitize_for_serialization(obj)
        data.setdefault("kind", kind)
        if kind in BUILTIN_KINDS:
            data.setdefault("apiVersion", BUILTIN_KINDS[kind][2])
        return data

    def _builtin(self, kind: str, verb: str):
        api_attr, suffix, _ = BUILTIN_KINDS[kind]
        return getattr(getattr(self.client_set, api_attr), f"{verb}_namespaced_{suffix}")

    @retry_on_k8s_error(max_retries=3, initial_delay=0.5, max_delay=5.0)
    async def get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Read an object, returning None if it does not exist."""
        try:
            if kind in CUSTOM_KINDS:
                group, version, plural = CUSTOM_KINDS[kind]
                obj = await self.client_set.custom_api.get_namespaced_custom_object(
                    group=group, version=version, namespace=namespace, plural=plural, name=name,
                )
            else:
                obj = await self._builtin(kind, "read")(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_error(e, kind, name) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise translate_api_error(e, kind, name) from e
        return self._to_dict(obj, kind)

    @retry_on_k8s_error(max_retries=3, initial_delay=0.5, max_delay=5.0)
    async def list(
        self, kind: str, namespace: str, labels: Optional[Dict[str, str]] = None
    ) -> List[Dict[str, Any]]:
        """List objects of a kind in a namespace, optionally by labels."""
        selector = label_selector(labels) if labels else None
        try:
            if kind in CUSTOM_KINDS:
                group, version, plural = CUSTOM_KINDS[kind]
                kwargs = {"label_selector": selector} if selector else {}
                result = await self.client_set.custom_api.list_namespaced_custom_object(
                    group=group, version=version, namespace=namespace, plural=plural, **kwargs,
                )
                items = result.get("items", [])
            else:
                kwargs = {"label_selector": selector} if selector else {}
                result = await self._builtin(kind, "list")(namespace=namespace, **kwargs)
                items = result.items
        except ApiException as e:
            if e.status == 404 and kind in CUSTOM_KINDS:
                # CRD not installed: nothing of this kind can exist
                logger.debug("custom_kind_not_served", kind=kind, namespace=namespace)
                return []
            raise translate_api_error(e, kind, selector or "*") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise translate_api_error(e, kind, selector or "*") from e
        return [self._to_dict(item, kind) for item in items]

    @retry_on_k8s_error(max_retries=3, initial_delay=0.5, max_delay=5.0)
    async def create(self, kind: str, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Create an object. An existing object surfaces as ConflictError."""
        name = body.get("metadata", {}).get("name", "")
        try:
            if kind in CUSTOM_KINDS:
                group, version, plural = CUSTOM_KINDS[kind]
                obj = await self.client_set.custom_api.create_namespaced_custom_object(
                    group=group, version=version, namespace=namespace, plural=plural, body=body,
                    field_manager=constants.FIELD_MANAGER,
                )
            else:
                obj = await self._builtin(kind, "create")(
                    namespace=namespace, body=body, field_manager=constants.FIELD_MANAGER,
                )
        except (ApiException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise translate_api_error(e, kind, name) from e
        logger.info("object_created", kind=kind, namespace=namespace, name=name)
        return self._to_dict(obj, kind)

    @retry_on_k8s_error(max_retries=3, initial_delay=0.5, max_delay=5.0)
    async def patch(
        self, kind: str, namespace: str, name: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Patch an object with merge semantics.

        Built-in kinds use strategic merge patch so list fields such as
        containers and volumes merge by name; custom kinds use JSON merge
        patch. Include metadata.resourceVersion in body to gate the write.
        """
        try:
            if kind in CUSTOM_KINDS:
                group, version, plural = CUSTOM_KINDS[kind]
                obj = await self.client_set.custom_api.patch_namespaced_custom_object(
                    group=group, version=version, namespace=namespace, plural=plural, name=name,
                    body=body, field_manager=constants.FIELD_MANAGER,
                    _content_type=MERGE_PATCH,
                )
            else:
                obj = await self._builtin(kind, "patch")(
                    name=name, namespace=namespace, body=body,
                    field_manager=constants.FIELD_MANAGER,
                    _content_type=STRATEGIC_MERGE_PATCH,
                )
        except (ApiException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise translate_api_error(e, kind, name) from e
        logger.info("object_patched", kind=kind, namespace=namespace, name=name)
        return self._to_dict(obj, kind)

    @retry_on_k8s_error(max_retries=3, initial_delay=0.5, max_delay=5.0)
    async def delete(
        self,
        kind: str,
        namespace: str,
        name: str,
        propagation_policy: str = "Background",
        grace_period_seconds: Optional[int] = None,
    ) -> bool:
        """
        Delete an object.

        Returns:
            False if the object was already gone
        """
        kwargs: Dict[str, Any] = {"propagation_policy": propagation_policy}
        if grace_period_seconds is not None:
            kwargs["grace_period_seconds"] = grace_period_seconds
        try:
            if kind in CUSTOM_KINDS:
                group, version, plural = CUSTOM_KINDS[kind]
                await self.client_set.custom_api.delete_namespaced_custom_object(
                    group=group, version=version, namespace=namespace, plural=plural, name=name,
                    **kwargs,
                )
            else:
                await self._builtin(kind, "delete")(name=name, namespace=namespace, **kwargs)
        except ApiException as e:
            if e.status == 404:
                return False
            raise translate_api_error(e, kind, name) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise translate_api_error(e, kind, name) from e
        logger.info(
            "object_deleted",
            kind=kind,
            namespace=namespace,
            name=name,
            propagation_policy=propagation_policy,
        )
        return True

    # ------------------------------------------------------------------
    # Database resource access
    # ------------------------------------------------------------------

    async def get_database(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return await self.get(constants.KIND, namespace, name)

    @retry_on_k8s_error(max_retries=3, initial_delay=0.5, max_delay=5.0)
    async def list_databases(self, namespace: Optional[str] = None) -> Dict[str, Any]:
        """List database objects; returns the raw list including metadata.resourceVersion."""
        group, version, plural = CUSTOM_KINDS[constants.KIND]
        try:
            if namespace:
                return await self.client_set.custom_api.list_namespaced_custom_object(
                    group=group, version=version, namespace=namespace, plural=plural,
                )
            return await self.client_set.custom_api.list_cluster_custom_object(
                group=group, version=version, plural=plural,
            )
        except (ApiException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise translate_api_error(e, constants.KIND, namespace or "*") from e

    @retry_on_k8s_error(max_retries=3, initial_delay=0.5, max_delay=5.0)
    async def patch_database_status(
        self, db: Dict[str, Any], status: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Write status through the status subresource, gated on resourceVersion."""
        meta = db["metadata"]
        group, version, plural = CUSTOM_KINDS[constants.KIND]
        body = {
            "metadata": {"resourceVersion": meta["resourceVersion"]},
            "status": status,
        }
        try:
            obj = await self.client_set.custom_api.patch_namespaced_custom_object_status(
                group=group, version=version, namespace=meta["namespace"], plural=plural,
                name=meta["name"], body=body, field_manager=constants.FIELD_MANAGER,
                _content_type=MERGE_PATCH,
            )
        except (ApiException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise translate_api_error(e, constants.KIND, meta["name"]) from e
        return obj

    async def set_database_finalizers(
        self, db: Dict[str, Any], finalizers: List[str]
    ) -> Dict[str, Any]:
        """Replace metadata.finalizers, gated on resourceVersion."""
        meta = db["metadata"]
        body = {
            "metadata": {
                "resourceVersion": meta["resourceVersion"],
                "finalizers": finalizers or None,
            }
        }
        return await self.patch(constants.KIND, meta["namespace"], meta["name"], body)
