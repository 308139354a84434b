"""Mock cluster wiring every fake behind one object."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from vdb_operator import manifests
from vdb_operator.actions import ActionContext
from vdb_operator.builds import BuildPhase, TarArtifactPackager
from vdb_operator.config import Config
from vdb_operator.engine import ReconcileEngine, ReconcileResult
from vdb_operator.models import Phase, ResourceKey

from .builds import MockBuildTrigger
from .store import MockResourceStore
from .workloads import MockCacheStore, MockKeystoreBuilder, MockMetrics, MockWorkloads


class MockClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class MockCluster:
    """A complete in-memory cluster for driving the engine.

    Usage:
        cluster = MockCluster()
        key = cluster.store.put(vdb).key
        result = await cluster.engine.reconcile(key)
        assert cluster.store.current(key).status.phase == Phase.CREATE_CACHE_STORE
    """

    def __init__(self, config: Config | None = None) -> None:
        self.config = config or Config(operator_version="test")
        self.store = MockResourceStore()
        self.builds = MockBuildTrigger()
        self.workloads = MockWorkloads()
        self.keystores = MockKeystoreBuilder()
        self.cache_store = MockCacheStore()
        self.metrics = MockMetrics()
        self.clock = MockClock()
        self.context = ActionContext(
            config=self.config,
            resolver=self.store,
            builds=self.builds,
            packager=TarArtifactPackager(),
            workloads=self.workloads,
            keystores=self.keystores,
            cache_store=self.cache_store,
            metrics=self.metrics,
            clock=self.clock,
        )
        self.engine = ReconcileEngine(self.store, self.context)

    async def drive_to_running(
        self, key: ResourceKey, max_passes: int = 30
    ) -> list[ReconcileResult]:
        """Reconcile ``key`` until Running, completing builds and rollouts on the way."""
        results: list[ReconcileResult] = []
        for _ in range(max_passes):
            vdb = self.store.current(key)
            phase = vdb.status.phase
            if phase is Phase.RUNNING:
                return results
            if phase is Phase.BUILDER_IMAGE:
                builder = manifests.builder_name(vdb)
                self.builds.set_phase(key.namespace, builder, BuildPhase.COMPLETE)
            elif phase is Phase.SERVICE_IMAGE:
                self.builds.set_phase(key.namespace, key.name, BuildPhase.COMPLETE)
            elif phase is Phase.SERVICE_CREATED:
                self.workloads.issue_certificate(key.namespace, key.name)
            elif phase is Phase.DEPLOYING and key in self.workloads.deployments:
                self.workloads.set_available(key)
            results.append(await self.engine.reconcile(key))
        raise AssertionError(f"{key} did not reach Running in {max_passes} passes")
