"""
Pytest configuration and fixtures.
"""
from datetime import timedelta

import pytest

from dbcluster.config.reconciler import ReconcilerConfig
from dbcluster.core.patching import ClusterPatcher
from tests.fakes import FakeClock, FakeDatabaseClientFactory, FakeObjectStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def db_clients() -> FakeDatabaseClientFactory:
    return FakeDatabaseClientFactory()


@pytest.fixture
def config() -> ReconcilerConfig:
    """Reconciler config with bounded waits collapsed to a single attempt."""
    zero = timedelta(0)
    return ReconcilerConfig(
        volume_termination_timeout=zero,
        volume_termination_interval=zero,
        workload_deletion_timeout=zero,
        workload_deletion_interval=zero,
        pod_initializing_timeout=zero,
        pod_initializing_interval=zero,
        replication_configured_timeout=zero,
        replica_recovered_timeout=zero,
        poll_interval=zero,
    )


@pytest.fixture
def patcher(store: FakeObjectStore) -> ClusterPatcher:
    return ClusterPatcher(store, conflict_retries=3)

