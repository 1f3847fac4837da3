"""
Tests for the storage resize choreography.
"""
import pytest

from dbcluster.core import conditions
from dbcluster.core.result import OutcomeKind
from dbcluster.exceptions import NotFoundError, ReconcileError, StorageShrinkError
from dbcluster.models.cluster import ConditionReason, ConditionStatus, ConditionType
from dbcluster.services.cluster_reconciler import ClusterReconciler
from dbcluster.services.storage import StorageResizeCoordinator
from dbcluster.utils.quantity import compare_quantities
from tests.fakes import make_cluster


@pytest.fixture
def coordinator(store, patcher, config, clock):
    return StorageResizeCoordinator(store, patcher, config, clock)


def _cluster_with_storage(store, desired="2Gi", existing="1Gi", **spec):
    cluster = store.add_cluster(make_cluster(replicas=3, storage=desired, **spec))
    store.add_stateful_set(cluster, 3, size=existing)
    for ordinal in range(3):
        store.add_claim(cluster, ordinal, size=existing)
    return cluster


@pytest.mark.asyncio
async def test_grow_storage(store, coordinator):
    cluster = _cluster_with_storage(store)

    outcome = await coordinator.reconcile(cluster)

    # Recreated StatefulSet is not ready yet.
    assert outcome.is_requeue
    assert store.calls_named("resize_volume_claim") == [
        ("resize_volume_claim", "storage-mariadb-0", "2Gi"),
        ("resize_volume_claim", "storage-mariadb-1", "2Gi"),
        ("resize_volume_claim", "storage-mariadb-2", "2Gi"),
    ]
    assert store.calls_named("delete_stateful_set") == [("delete_stateful_set", "mariadb", True)]
    assert store.calls_named("create_stateful_set") == [("create_stateful_set", "mariadb", 3)]
    assert store.stateful_sets[("default", "mariadb")].storage_size == "2Gi"
    assert store.cluster(cluster).is_waiting_for_storage_resize

    store.stateful_sets[("default", "mariadb")].ready_replicas = 3
    outcome = await coordinator.reconcile(cluster)

    assert outcome.kind == OutcomeKind.PROCEED
    stored = store.cluster(cluster)
    assert stored.status.is_condition_true(ConditionType.STORAGE_RESIZED)
    assert stored.status.storage_size == "2Gi"
    # Waiting resumed without recreating the StatefulSet again.
    assert len(store.calls_named("create_stateful_set")) == 1

    calls = len(store.calls)
    outcome = await coordinator.reconcile(cluster)

    assert outcome.kind == OutcomeKind.PROCEED
    assert len(store.calls) == calls


@pytest.mark.asyncio
async def test_waits_for_claims_to_finish_resizing(store, coordinator):
    cluster = _cluster_with_storage(store)
    await coordinator.reconcile(cluster)
    store.stateful_sets[("default", "mariadb")].ready_replicas = 3
    store.claims[("default", "storage-mariadb-1")].resizing = True

    outcome = await coordinator.reconcile(cluster)

    assert outcome.is_requeue
    assert store.cluster(cluster).is_waiting_for_storage_resize

    store.claims[("default", "storage-mariadb-1")].resizing = False
    outcome = await coordinator.reconcile(cluster)

    assert outcome.kind == OutcomeKind.PROCEED


@pytest.mark.asyncio
async def test_claims_untouched_without_in_use_resize(store, coordinator):
    cluster = make_cluster(storage="2Gi")
    cluster.spec.storage.resize_in_use_volumes = False
    cluster = store.add_cluster(cluster)
    store.add_stateful_set(cluster, 3, size="1Gi")
    for ordinal in range(3):
        store.add_claim(cluster, ordinal, size="1Gi")

    await coordinator.reconcile(cluster)

    assert store.calls_named("resize_volume_claim") == []
    assert store.calls_named("create_stateful_set") == [("create_stateful_set", "mariadb", 3)]


@pytest.mark.asyncio
async def test_already_large_claims_are_not_patched(store, coordinator):
    cluster = _cluster_with_storage(store)
    store.add_claim(cluster, 1, size="4Gi")

    await coordinator.reconcile(cluster)

    resized = {call[1] for call in store.calls_named("resize_volume_claim")}
    assert resized == {"storage-mariadb-0", "storage-mariadb-2"}


@pytest.mark.asyncio
async def test_shrinking_storage_is_rejected(store, coordinator):
    cluster = _cluster_with_storage(store, desired="512Mi", existing="1Gi")

    with pytest.raises(StorageShrinkError) as exc_info:
        await coordinator.reconcile(cluster)

    assert exc_info.value.details == {"existing_size": "1Gi", "desired_size": "512Mi"}
    assert store.calls == []
    assert store.cluster(cluster).status.storage_size is None


@pytest.mark.asyncio
async def test_equal_size_records_storage_size(store, coordinator):
    cluster = _cluster_with_storage(store, desired="1024Mi", existing="1Gi")

    outcome = await coordinator.reconcile(cluster)

    assert outcome.kind == OutcomeKind.PROCEED
    assert store.cluster(cluster).status.storage_size == "1Gi"
    assert store.calls_named("delete_stateful_set") == []


@pytest.mark.asyncio
async def test_recreates_missing_stateful_set_mid_resize(store, coordinator, clock):
    cluster = make_cluster(replicas=3, storage="2Gi")
    conditions.set_storage_resizing(cluster.status, clock.now)
    cluster = store.add_cluster(cluster)

    outcome = await coordinator.reconcile(cluster)

    assert outcome.is_requeue
    assert store.calls_named("create_stateful_set") == [("create_stateful_set", "mariadb", 3)]
    assert store.cluster(cluster).is_waiting_for_storage_resize


@pytest.mark.asyncio
async def test_resumes_waiting_when_stateful_set_already_recreated(store, coordinator, clock):
    # Crashed after recreating the StatefulSet, before recording the wait.
    cluster = _cluster_with_storage(store, desired="2Gi", existing="2Gi")
    conditions.set_storage_resizing(cluster.status, clock.now)
    cluster = store.add_cluster(cluster)
    store.claims[("default", "storage-mariadb-0")].resizing = True

    outcome = await coordinator.reconcile(cluster)

    assert outcome.is_requeue
    stored = store.cluster(cluster)
    assert stored.is_waiting_for_storage_resize
    assert stored.status.storage_size is None

    store.claims[("default", "storage-mariadb-0")].resizing = False
    outcome = await coordinator.reconcile(stored)

    assert outcome.kind == OutcomeKind.PROCEED
    stored = store.cluster(cluster)
    assert not stored.is_resizing_storage
    assert stored.status.is_condition_true(ConditionType.STORAGE_RESIZED)
    assert stored.status.storage_size == "2Gi"
    assert store.calls_named("create_stateful_set") == []
    assert store.calls_named("delete_stateful_set") == []


@pytest.mark.asyncio
async def test_missing_stateful_set_outside_resize_is_not_found(store, coordinator):
    cluster = store.add_cluster(make_cluster())

    with pytest.raises(NotFoundError):
        await coordinator.reconcile(cluster)


@pytest.mark.asyncio
async def test_skipped_while_switching_primary(store, coordinator, clock):
    cluster = make_cluster(storage="2Gi")
    cluster.status.set_condition(
        ConditionType.PRIMARY_SWITCHED,
        ConditionStatus.FALSE,
        ConditionReason.SWITCHING,
        "Switching primary to 'mariadb-1'",
        clock.now,
    )
    cluster = store.add_cluster(cluster)
    store.add_stateful_set(cluster, 3, size="1Gi")

    outcome = await coordinator.reconcile(cluster)

    assert outcome.kind == OutcomeKind.SKIP
    assert store.calls == []


@pytest.mark.asyncio
async def test_storage_size_never_decreases_across_passes(store, db_clients, config, clock):
    cluster = store.add_cluster(make_cluster(replicas=1, replicated=False, storage="1Gi"))
    store.add_stateful_set(cluster, 1)
    store.add_claim(cluster, 0)
    reconciler = ClusterReconciler(store, db_clients, config, clock)
    recorded = []

    async def run_pass(size=None):
        if size is not None:
            store.clusters[("default", "mariadb")]["spec"]["storage"]["size"] = size
        try:
            await reconciler.reconcile("default", "mariadb")
        finally:
            recorded.append(store.cluster(cluster).status.storage_size)

    await run_pass()
    # Grow: the recreated StatefulSet is not ready yet.
    await run_pass("2Gi")
    store.stateful_sets[("default", "mariadb")].ready_replicas = 1
    await run_pass()
    with pytest.raises(ReconcileError) as exc_info:
        await run_pass("1Gi")

    assert exc_info.value.phase == "Storage"
    assert isinstance(exc_info.value.errors[0], StorageShrinkError)
    assert recorded == ["1Gi", "1Gi", "2Gi", "2Gi"]
    for previous, current in zip(recorded, recorded[1:]):
        assert compare_quantities(current, previous) >= 0
    stored = store.cluster(cluster)
    assert stored.status.get_condition(ConditionType.READY).reason == ConditionReason.FAILED.value
    assert store.stateful_sets[("default", "mariadb")].storage_size == "2Gi"
