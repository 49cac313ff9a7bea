"""
Core building blocks of the reconcile loop.

- Phase state machine for Memcached status
- Deduplicating work queue with per-key backoff
- Watch-fed resource cache

Import directly from submodules:
from memcached_operator.core.state_machine import DatabasePhase, PhaseStateMachine
from memcached_operator.core.work_queue import WorkQueue
from memcached_operator.core.cache import ResourceCache
"""
