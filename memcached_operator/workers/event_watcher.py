"""
Kubernetes event watcher.

Lists one kind, then streams watch events from the returned resourceVersion
and forwards each object (as a plain dict) to a callback. When the API
server answers 410 Gone the watcher relists; on connection failures it
reconnects with backoff. Events are at-least-once and may repeat after a
relist, so callbacks must be idempotent.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp
from kubernetes_asyncio import watch
from kubernetes_asyncio.client import ApiException

from memcached_operator.config.logging import get_logger
from memcached_operator.config.settings import settings
from memcached_operator.core import constants
from memcached_operator.services import metrics
from memcached_operator.services.kube_client import ClusterClient
from memcached_operator.utils.objects import meta
from memcached_operator.utils.retry import backoff_delay

logger = get_logger(__name__)

EventCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]
RelistCallback = Callable[[List[Dict[str, Any]]], Awaitable[None]]


class WatchExpired(Exception):
    """The resourceVersion we watched from is too old (410 Gone)."""


class EventWatcher:
    """
    Watches one kind and forwards its events.

    Memcached objects are watched through the custom objects API;
    StatefulSets through the apps API, narrowed by a label selector.
    """

    def __init__(
        self,
        kind: str,
        cluster: ClusterClient,
        on_event: EventCallback,
        on_relist: Optional[RelistCallback] = None,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ):
        self.kind = kind
        self.cluster = cluster
        self.on_event = on_event
        self.on_relist = on_relist
        self.namespace = namespace
        self.label_selector = label_selector
        self.resource_version: Optional[str] = None
        self.running = False
        self._watch: Optional[watch.Watch] = None
        logger.info("event_watcher_initialized", kind=kind, namespace=namespace or "*")

    async def start(self) -> None:
        """Watch until stopped."""
        self.running = True
        failures = 0
        logger.info("event_watcher_started", kind=self.kind)

        while self.running:
            try:
                if self.resource_version is None:
                    await self.relist()
                await self._stream()
                failures = 0
            except WatchExpired:
                logger.info("watch_expired_relisting", kind=self.kind, resource_version=self.resource_version)
                self.resource_version = None
            except (ApiException, aiohttp.ClientError, asyncio.TimeoutError) as e:
                delay = backoff_delay(failures, 1.0, 30.0)
                failures += 1
                logger.warning(
                    "watch_failed_reconnecting",
                    kind=self.kind,
                    error_type=type(e).__name__,
                    error=str(e),
                    delay_seconds=delay,
                )
                await asyncio.sleep(delay)

        logger.info("event_watcher_stopped", kind=self.kind)

    async def stop(self) -> None:
        """Stop watching events."""
        logger.info("event_watcher_stopping", kind=self.kind)
        self.running = False
        if self._watch is not None:
            self._watch.stop()

    # ------------------------------------------------------------------

    def _list_call(self) -> Tuple[Callable, Dict[str, Any]]:
        client_set = self.cluster.client_set
        kwargs: Dict[str, Any] = {}
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector

        if self.kind == constants.KIND:
            kwargs.update(group=constants.GROUP, version=constants.VERSION, plural=constants.PLURAL)
            if self.namespace:
                return client_set.custom_api.list_namespaced_custom_object, dict(kwargs, namespace=self.namespace)
            return client_set.custom_api.list_cluster_custom_object, kwargs

        if self.kind == "StatefulSet":
            if self.namespace:
                return client_set.apps_api.list_namespaced_stateful_set, dict(kwargs, namespace=self.namespace)
            return client_set.apps_api.list_stateful_set_for_all_namespaces, kwargs

        raise ValueError(f"Watching kind {self.kind!r} is not supported")

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        if not isinstance(obj, dict):
            obj = self.cluster.client_set.api_client.sanitize_for_serialization(obj)
        obj.setdefault("kind", self.kind)
        return obj

    async def relist(self) -> None:
        """List the kind and hand the full set to the relist callback."""
        func, kwargs = self._list_call()
        result = await func(**kwargs)
        if isinstance(result, dict):
            items = result.get("items", [])
            self.resource_version = (result.get("metadata") or {}).get("resourceVersion")
        else:
            items = result.items
            self.resource_version = result.metadata.resource_version

        objects = [self._to_dict(item) for item in items]
        logger.info("watch_relisted", kind=self.kind, objects=len(objects), resource_version=self.resource_version)

        if self.on_relist is not None:
            await self.on_relist(objects)
        else:
            for obj in objects:
                await self.on_event("ADDED", obj)

    async def _stream(self) -> None:
        func, kwargs = self._list_call()
        self._watch = watch.Watch()
        try:
            async for event in self._watch.stream(
                func,
                resource_version=self.resource_version,
                timeout_seconds=settings.watch_timeout_seconds,
                allow_watch_bookmarks=True,
                **kwargs,
            ):
                if not self.running:
                    break
                await self.handle_event(event)
        except ApiException as e:
            if e.status == 410:
                raise WatchExpired() from e
            raise
        finally:
            self._watch.stop()
            self._watch = None

    async def handle_event(self, event: Dict[str, Any]) -> None:
        """Process one raw watch event."""
        event_type = event.get("type")

        if event_type == "ERROR":
            raw = event.get("raw_object") or event.get("object") or {}
            if isinstance(raw, dict) and raw.get("code") == 410:
                raise WatchExpired()
            logger.warning("watch_error_event", kind=self.kind, error=raw)
            return

        obj = self._to_dict(event["object"])
        version = meta(obj, "resourceVersion")
        if version:
            self.resource_version = version
        if event_type == "BOOKMARK":
            return

        metrics.watch_events_total.labels(kind=self.kind, type=event_type).inc()
        logger.debug(
            "watch_event_received",
            kind=self.kind,
            type=event_type,
            namespace=meta(obj, "namespace"),
            name=meta(obj, "name"),
        )
        await self.on_event(event_type, obj)
