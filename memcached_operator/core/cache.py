"""
Local cache of Memcached objects populated by watch events.

The cache is an explicit object owned by the controller. It answers two
questions: "is this event news?" (resourceVersion comparison) and "which
identities exist?" (periodic resync). Reconcile passes always read the
authoritative object from the API.
"""
from typing import Any, Dict, List, Optional

from memcached_operator.config.logging import get_logger

logger = get_logger(__name__)


def object_key(obj: Dict[str, Any]) -> str:
    """Identity key "namespace/name" of an API object."""
    meta = obj.get("metadata", {})
    return f"{meta.get('namespace', '')}/{meta.get('name', '')}"


def split_key(key: str) -> tuple:
    namespace, _, name = key.partition("/")
    return namespace, name


class ResourceCache:
    """Identity-keyed store of the latest observed objects."""

    def __init__(self):
        self._objects: Dict[str, Dict[str, Any]] = {}
        self.synced = False

    def __len__(self) -> int:
        return len(self._objects)

    def __contains__(self, key: str) -> bool:
        return key in self._objects

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self._objects.get(key)

    def keys(self) -> List[str]:
        return list(self._objects)

    def upsert(self, obj: Dict[str, Any]) -> bool:
        """
        Store an object.

        Returns:
            True if the object is new or its resourceVersion changed
        """
        key = object_key(obj)
        new_version = obj.get("metadata", {}).get("resourceVersion")
        cached = self._objects.get(key)
        self._objects[key] = obj
        if cached is None:
            return True
        return cached.get("metadata", {}).get("resourceVersion") != new_version

    def invalidate(self, key: str) -> None:
        """Drop a cached object so the next event for it is treated as news."""
        if self._objects.pop(key, None) is not None:
            logger.debug("cache_entry_invalidated", key=key)

    def replace(self, objects: List[Dict[str, Any]]) -> List[str]:
        """
        Replace the whole cache after a relist.

        Returns:
            Keys that disappeared since the previous list
        """
        fresh = {object_key(obj): obj for obj in objects}
        gone = [key for key in self._objects if key not in fresh]
        self._objects = fresh
        self.synced = True
        logger.info("cache_replaced", objects=len(fresh), removed=len(gone))
        return gone
