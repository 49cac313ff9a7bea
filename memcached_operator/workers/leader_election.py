"""
Leader election using Redis for the controller.
Ensures only ONE operator replica reconciles at a time.
"""
import asyncio
from typing import Awaitable, Callable, Optional

from memcached_operator.config.logging import get_logger
from memcached_operator.config.redis import RedisConnection

logger = get_logger(__name__)


class LeaderElection:
    """
    Simple leader election using Redis SET with NX and EX.

    Ensures only ONE replica runs the controller even with multiple replicas.
    """

    def __init__(self, instance_id: str, lease_duration: int = 30, leader_key: str = "memcached-operator:leader"):
        """
        Initialize leader election.

        Args:
            instance_id: Unique instance identifier
            lease_duration: Lease duration in seconds
            leader_key: Redis key holding the current leader's id
        """
        self.instance_id = instance_id
        self.lease_duration = lease_duration
        self.leader_key = leader_key
        self.is_leader = False
        self.running = False

    async def acquire_leadership(self) -> bool:
        """Try to acquire leadership."""
        redis = await RedisConnection.get_client()

        acquired = await redis.set(
            self.leader_key,
            self.instance_id,
            nx=True,
            ex=self.lease_duration,
        )

        if acquired:
            if not self.is_leader:
                logger.info("leadership_acquired", instance_id=self.instance_id)
            self.is_leader = True
            return True

        current_leader = await redis.get(self.leader_key)
        if current_leader == self.instance_id:
            self.is_leader = True
            return True

        if self.is_leader:
            logger.info("leadership_lost", instance_id=self.instance_id)
        self.is_leader = False
        return False

    async def renew_lease(self) -> bool:
        """Renew leadership lease."""
        if not self.is_leader:
            return False

        redis = await RedisConnection.get_client()
        current_leader = await redis.get(self.leader_key)

        if current_leader == self.instance_id:
            await redis.expire(self.leader_key, self.lease_duration)
            logger.debug("leadership_lease_renewed", instance_id=self.instance_id)
            return True

        logger.warning("leadership_lease_lost", instance_id=self.instance_id, leader=current_leader)
        self.is_leader = False
        return False

    async def release_leadership(self) -> None:
        """Release leadership (on shutdown)."""
        if not self.is_leader:
            return

        redis = await RedisConnection.get_client()
        current_leader = await redis.get(self.leader_key)

        if current_leader == self.instance_id:
            await redis.delete(self.leader_key)
            logger.info("leadership_released", instance_id=self.instance_id)

        self.is_leader = False

    async def run(self, start: Callable[[], Awaitable[None]], stop: Callable[[], Awaitable[None]]) -> None:
        """
        Run start() while this instance holds the lease.

        start is awaited in a task for the length of each leadership term; on
        losing the lease stop() is awaited and the instance competes again.
        """
        self.running = True
        interval = max(self.lease_duration / 3, 1)
        term: Optional[asyncio.Task] = None

        try:
            while self.running:
                if not await self.acquire_leadership():
                    await asyncio.sleep(interval)
                    continue

                logger.info("became_leader_starting_controller", instance_id=self.instance_id)
                term = asyncio.create_task(start())
                while self.running and not term.done():
                    await asyncio.wait({term}, timeout=interval)
                    if term.done() or not await self.renew_lease():
                        break

                if not term.done():
                    logger.info("lost_leadership_stopping_controller", instance_id=self.instance_id)
                    await stop()
                # Surfaces a fatal controller error
                await term
                term = None
        finally:
            if term is not None and not term.done():
                await stop()
                await asyncio.gather(term, return_exceptions=True)
            await self.release_leadership()

    def stop(self) -> None:
        self.running = False
