"""
Tests for outcomes, bounded waits, state machines and cluster patching.
"""
from datetime import timedelta

import pytest

from dbcluster.core import conditions
from dbcluster.core.result import Outcome
from dbcluster.core.state_machine import (
    FailoverState,
    FailoverStateMachine,
    ReplicaRecoveryState,
    ReplicaRecoveryStateMachine,
    ScaleOutState,
    ScaleOutStateMachine,
    StorageResizeState,
    StorageResizeStateMachine,
)
from dbcluster.core.wait import poll_until
from dbcluster.exceptions import ConflictError, DatabaseUnreachableError, WaitTimeoutError
from dbcluster.models.cluster import ConditionStatus, ConditionType
from tests.fakes import make_cluster


def test_outcome_helpers():
    assert Outcome.requeue().is_immediate
    assert not Outcome.requeue(timedelta(seconds=1)).is_immediate
    assert Outcome.fail(RuntimeError("x")).stops_pass
    assert not Outcome.skip().stops_pass
    assert str(Outcome.requeue(timedelta(seconds=5))) == "requeue(after=5s)"


@pytest.mark.asyncio
async def test_poll_until_succeeds_after_retries():
    attempts = []

    async def check():
        attempts.append(1)
        return len(attempts) >= 3

    await poll_until(check, description="thing", timeout=timedelta(seconds=5), interval=timedelta(0))

    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_poll_until_zero_timeout_makes_one_attempt():
    attempts = []

    async def check():
        attempts.append(1)
        return False

    with pytest.raises(WaitTimeoutError) as exc_info:
        await poll_until(check, description="thing", timeout=timedelta(0), interval=timedelta(0))

    assert len(attempts) == 1
    assert exc_info.value.message == "Timed out after 0s waiting for thing"


@pytest.mark.asyncio
async def test_poll_until_keeps_last_retryable_error():
    async def check():
        raise DatabaseUnreachableError("mariadb-1", "connection refused")

    with pytest.raises(WaitTimeoutError) as exc_info:
        await poll_until(check, description="replica", timeout=timedelta(0), interval=timedelta(0))

    assert isinstance(exc_info.value.last_error, DatabaseUnreachableError)


@pytest.mark.asyncio
async def test_poll_until_propagates_other_errors():
    async def check():
        raise RuntimeError("bug")

    with pytest.raises(RuntimeError):
        await poll_until(check, description="thing", timeout=timedelta(seconds=5), interval=timedelta(0))


def test_failover_state_is_derived_from_status(clock):
    cluster = make_cluster(replication={"primary": {"podIndex": 0}})
    cluster.status.current_primary_pod_index = 0
    assert FailoverStateMachine.current_state(cluster) == FailoverState.HEALTHY

    cluster.status.primary_failing_since = clock.now
    assert FailoverStateMachine.current_state(cluster) == FailoverState.FAILING

    cluster.spec.replication.primary.pod_index = 1
    assert FailoverStateMachine.current_state(cluster) == FailoverState.SWITCHING


def test_storage_state_is_derived_from_status(clock):
    cluster = make_cluster()
    assert StorageResizeStateMachine.current_state(cluster) == StorageResizeState.IDLE

    conditions.set_storage_resizing(cluster.status, clock.now)
    assert StorageResizeStateMachine.current_state(cluster) == StorageResizeState.RESIZING

    conditions.set_waiting_storage_resize(cluster.status, clock.now)
    assert StorageResizeStateMachine.current_state(cluster) == StorageResizeState.WAITING

    conditions.set_storage_resized(cluster.status, clock.now)
    assert StorageResizeStateMachine.current_state(cluster) == StorageResizeState.RESIZED


def test_scale_out_and_recovery_states(clock):
    cluster = make_cluster()
    conditions.set_scale_out_error(cluster.status, "boom", clock.now)
    assert ScaleOutStateMachine.current_state(cluster) == ScaleOutState.ERROR

    conditions.set_replica_recovering(cluster.status, clock.now)
    assert ReplicaRecoveryStateMachine.current_state(cluster) == ReplicaRecoveryState.RECOVERING


@pytest.mark.parametrize(
    "machine,from_state,to_state",
    [
        (FailoverStateMachine, FailoverState.SWITCHING, FailoverState.FAILING),
        (StorageResizeStateMachine, StorageResizeState.IDLE, StorageResizeState.WAITING),
        (StorageResizeStateMachine, StorageResizeState.WAITING, StorageResizeState.RESIZING),
        (ScaleOutStateMachine, ScaleOutState.IDLE, ScaleOutState.SCALED_OUT),
        (ReplicaRecoveryStateMachine, ReplicaRecoveryState.IDLE, ReplicaRecoveryState.RECOVERED),
    ],
)
def test_invalid_transitions_raise(machine, from_state, to_state):
    assert not machine.can_transition(from_state, to_state)
    with pytest.raises(ValueError):
        machine.validate_transition(from_state, to_state, "default/mariadb")


def test_condition_transition_time_moves_only_on_status_change(clock):
    cluster = make_cluster()
    conditions.set_storage_resizing(cluster.status, clock.now)
    started = clock.now

    clock.advance(10)
    conditions.set_waiting_storage_resize(cluster.status, clock.now)
    condition = cluster.status.get_condition(ConditionType.STORAGE_RESIZED)
    assert condition.last_transition_time == started

    clock.advance(10)
    conditions.set_storage_resized(cluster.status, clock.now)
    condition = cluster.status.get_condition(ConditionType.STORAGE_RESIZED)
    assert condition.status == ConditionStatus.TRUE
    assert condition.last_transition_time == clock.now


@pytest.mark.asyncio
async def test_patch_status_retries_conflicts(store, patcher):
    cluster = store.add_cluster(make_cluster())
    store.inject_conflicts = 2

    def mutate(status):
        status.storage_size = "1Gi"

    await patcher.patch_status(cluster, mutate)

    assert cluster.status.storage_size == "1Gi"
    assert store.cluster(cluster).status.storage_size == "1Gi"
    assert cluster.metadata.resource_version == store.clusters[("default", "mariadb")]["metadata"]["resourceVersion"]


@pytest.mark.asyncio
async def test_patch_status_gives_up_after_retries(store, patcher):
    cluster = store.add_cluster(make_cluster())
    store.inject_conflicts = 3

    def mutate(status):
        status.storage_size = "1Gi"

    with pytest.raises(ConflictError):
        await patcher.patch_status(cluster, mutate)


@pytest.mark.asyncio
async def test_patch_without_changes_writes_nothing(store, patcher):
    cluster = store.add_cluster(make_cluster())

    await patcher.patch_status(cluster, lambda status: None)

    assert store.calls == []


@pytest.mark.asyncio
async def test_patch_spec_sends_spec_diff(store, patcher):
    cluster = store.add_cluster(make_cluster(replication={"primary": {"podIndex": 0}}))

    def mutate(spec):
        spec.replication.primary.pod_index = 2

    await patcher.patch_spec(cluster, mutate)

    assert store.calls == [("patch_cluster", "mariadb", {"spec": {"replication": {"primary": {"podIndex": 2}}}})]
    assert cluster.spec.replication.primary.pod_index == 2
