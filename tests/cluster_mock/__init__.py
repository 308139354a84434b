"""In-memory cluster for integration testing.

This module provides fake implementations of every collaborator the
reconcile engine talks to, so complete resource lifecycles can be driven
without an API server.

Key Features:
- resourceVersion bookkeeping with optimistic concurrency conflicts
- Build definitions whose build phases tests move by hand
- Services, routes, deployments and secrets kept in dictionaries
- Error injection for the store, builds, services and routes
- A manually advanced clock for timeout behavior

Usage:
    from cluster_mock import MockCluster, make_vdb

    cluster = MockCluster()
    key = cluster.store.put(make_vdb()).key
    await cluster.engine.reconcile(key)
    assert cluster.store.current(key).status.digest
"""

from .builds import MockBuild, MockBuildTrigger
from .context import MockClock, MockCluster
from .factories import SAMPLE_DDL, make_vdb
from .store import MockResourceStore
from .workloads import MockCacheStore, MockKeystoreBuilder, MockMetrics, MockWorkloads

__all__ = [
    "MockBuild",
    "MockBuildTrigger",
    "MockCacheStore",
    "MockClock",
    "MockCluster",
    "MockKeystoreBuilder",
    "MockMetrics",
    "MockResourceStore",
    "MockWorkloads",
    "SAMPLE_DDL",
    "make_vdb",
]
