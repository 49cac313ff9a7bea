from memcached_operator.models.memcached import (
    Condition,
    Memcached,
    MemcachedSpec,
    MemcachedStatus,
    StorageType,
    TerminationPolicy,
)

__all__ = [
    "Condition",
    "Memcached",
    "MemcachedSpec",
    "MemcachedStatus",
    "StorageType",
    "TerminationPolicy",
]
