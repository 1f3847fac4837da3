"""
Leader election using Redis for the reconciliation worker.
Ensures only ONE operator replica reconciles clusters at a time.
"""
import asyncio
from typing import Optional

from dbcluster.config.logging import get_logger
from dbcluster.config.redis import RedisConnection
from dbcluster.workers.reconciliation_worker import ReconciliationWorker

logger = get_logger(__name__)

LEADER_KEY = "dbcluster:leader:reconciler"


class LeaderElection:
    """
    Simple leader election using Redis SET with NX and EX.

    The lease is renewed well before it expires; a replica that fails to
    renew stops its worker, so two workers never overlap for longer than one
    renew interval.
    """

    def __init__(self, instance_id: str, lease_duration: int = 30, leader_key: str = LEADER_KEY):
        """
        Initialize leader election.

        Args:
            instance_id: Unique instance identifier
            lease_duration: Lease duration in seconds
            leader_key: Redis key holding the current leader
        """
        self.instance_id = instance_id
        self.lease_duration = lease_duration
        self.leader_key = leader_key
        self.is_leader = False
        self._worker_task: Optional[asyncio.Task] = None

    async def acquire_leadership(self) -> bool:
        """Try to acquire leadership, or confirm we still hold it."""
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
            logger.info("leadership_lost", instance_id=self.instance_id, leader=current_leader)
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

        logger.info("leadership_lease_lost", instance_id=self.instance_id, leader=current_leader)
        self.is_leader = False
        return False

    async def release_leadership(self):
        """Release leadership (on shutdown)."""
        if not self.is_leader:
            return

        redis = await RedisConnection.get_client()
        current_leader = await redis.get(self.leader_key)

        if current_leader == self.instance_id:
            await redis.delete(self.leader_key)
            logger.info("leadership_released", instance_id=self.instance_id)

        self.is_leader = False

    async def run(self, worker: ReconciliationWorker, renew_interval: float = 10, retry_interval: float = 5):
        """
        Run ``worker`` while this replica is the leader (runs until cancelled).

        Followers keep trying to acquire the lease every ``retry_interval``
        seconds; the leader renews it every ``renew_interval`` seconds.
        """
        while True:
            try:
                if await self.acquire_leadership():
                    if not worker.running:
                        logger.info("became_leader_starting_reconciler", instance_id=self.instance_id)
                        self._worker_task = asyncio.create_task(worker.start())
                    await asyncio.sleep(renew_interval)
                    if not await self.renew_lease() and worker.running:
                        logger.info("lost_leadership_stopping_reconciler", instance_id=self.instance_id)
                        await worker.stop()
                else:
                    if worker.running:
                        logger.info("lost_leadership_stopping_reconciler", instance_id=self.instance_id)
                        await worker.stop()
                    await asyncio.sleep(retry_interval)
            except asyncio.CancelledError:
                if worker.running:
                    await worker.stop()
                await self.release_leadership()
                break
            except Exception as e:
                logger.error("leader_election_error", instance_id=self.instance_id, error=str(e))
                # Without Redis the lease cannot be proven, so another replica may take over.
                if worker.running:
                    await worker.stop()
                self.is_leader = False
                await asyncio.sleep(renew_interval)
