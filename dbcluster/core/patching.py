"""
Read-modify-write patches of the cluster object.

Mutations are applied to a copy of the last read object, diffed into a JSON
merge patch and sent with the copy's resourceVersion. When the API server
rejects the version the object is read again and the same mutation is
re-applied, so concurrent writers never overwrite each other blindly.
"""
from typing import Callable

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_none

from dbcluster.config.logging import get_logger
from dbcluster.exceptions import ConflictError
from dbcluster.models.cluster import Cluster, ClusterSpec, ClusterStatus
from dbcluster.services.object_store import ObjectStore
from dbcluster.utils.patch import create_merge_patch

logger = get_logger(__name__)

StatusMutation = Callable[[ClusterStatus], None]
SpecMutation = Callable[[ClusterSpec], None]


class ClusterPatcher:
    """Applies status and spec mutations with conflict retries."""

    def __init__(self, store: ObjectStore, conflict_retries: int = 5):
        self.store = store
        self.conflict_retries = conflict_retries

    async def patch_status(self, cluster: Cluster, mutate: StatusMutation) -> Cluster:
        """
        Apply ``mutate`` to the cluster status and persist the difference.

        ``cluster`` is updated in place with what the server returned, so
        later phases of the same pass see the new status.
        """
        return await self._patch(cluster, mutate, status=True)

    async def patch_spec(self, cluster: Cluster, mutate: SpecMutation) -> Cluster:
        """Apply ``mutate`` to the cluster spec and persist the difference."""
        return await self._patch(cluster, mutate, status=False)

    async def _patch(self, cluster: Cluster, mutate, status: bool) -> Cluster:
        current = cluster
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.conflict_retries),
            wait=wait_none(),
            retry=retry_if_exception_type(ConflictError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "cluster_patch_conflict_retrying",
                        cluster=cluster.key,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    current = await self.store.get_cluster(cluster.namespace, cluster.name)
                current = await self._apply(current, mutate, status)

        cluster.metadata = current.metadata
        cluster.spec = current.spec
        cluster.status = current.status
        return cluster

    async def _apply(self, current: Cluster, mutate, status: bool) -> Cluster:
        original = current.status if status else current.spec
        desired = original.model_copy(deep=True)
        mutate(desired)

        patch = create_merge_patch(original.to_wire(), desired.to_wire())
        if not patch:
            return current

        if status:
            return await self.store.patch_cluster_status(
                current.namespace, current.name, patch, current.metadata.resource_version
            )
        return await self.store.patch_cluster(
            current.namespace, current.name, {"spec": patch}, current.metadata.resource_version
        )
