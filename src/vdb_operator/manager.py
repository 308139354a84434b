"""Controller manager: watch streams, work queue and worker pool.

Events never carry state into the engine; they only say "look at this key
again". The queue guarantees that a key is processed by at most one worker
at a time, while different keys proceed concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from kubernetes_asyncio import client, watch
from kubernetes_asyncio.client import ApiException

from .builds import BUILD_GROUP, IMAGE_GROUP, OPENSHIFT_API_VERSION
from .config import CRD_GROUP, CRD_KIND, CRD_PLURAL, CRD_VERSION, Config
from .engine import ReconcileEngine, ReconcileResult
from .models import ResourceKey
from .store import ResourceStore, StoreError

logger = logging.getLogger(__name__)

OWNER_LABEL = "teiid.io/vdb"

# Server-side watch timeout; the stream is re-established afterwards
WATCH_TIMEOUT_SECONDS = 300
WATCH_RETRY_SECONDS = 5


class WorkQueue:
    """De-duplicating, rate-limited queue of resource keys.

    - A key is queued at most once.
    - A key handed to a worker is not handed out again until ``done``; adds
      that arrive meanwhile are replayed afterwards.
    - ``add_rate_limited`` applies per-key exponential backoff, reset by
      ``forget``.
    """

    def __init__(self, backoff_base_seconds: float, backoff_max_seconds: float) -> None:
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._queue: asyncio.Queue[ResourceKey] = asyncio.Queue()
        self._queued: set[ResourceKey] = set()
        self._processing: set[ResourceKey] = set()
        self._dirty: set[ResourceKey] = set()
        self._failures: dict[ResourceKey, int] = {}
        self._timers: dict[ResourceKey, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queued)

    def add(self, key: ResourceKey) -> None:
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def add_after(self, key: ResourceKey, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= due:
                return
            existing.cancel()
        self._timers[key] = loop.call_at(due, self._fire, key)

    def _fire(self, key: ResourceKey) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: ResourceKey) -> float:
        """Schedule ``key`` after its backoff delay and return the delay."""
        failures = self._failures.get(key, 0)
        delay = min(self._backoff_base * (2**failures), self._backoff_max)
        self._failures[key] = failures + 1
        self.add_after(key, delay)
        return delay

    def failures(self, key: ResourceKey) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: ResourceKey) -> None:
        self._failures.pop(key, None)

    def discard(self, key: ResourceKey) -> None:
        """Drop every trace of a key whose resource is gone."""
        self.forget(key)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._dirty.discard(key)

    async def get(self) -> ResourceKey:
        key = await self._queue.get()
        self._queued.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: ResourceKey) -> None:
        self._processing.discard(key)
        self._queue.task_done()
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def shutdown(self) -> None:
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()


def owner_key(obj: dict[str, Any]) -> ResourceKey | None:
    """Map an owned object back to the VirtualDatabase it belongs to."""
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace")
    if not namespace:
        return None
    for ref in metadata.get("ownerReferences") or []:
        if ref.get("kind") == CRD_KIND and ref.get("name"):
            return ResourceKey(namespace=namespace, name=ref["name"])
    owner = (metadata.get("labels") or {}).get(OWNER_LABEL)
    if owner:
        return ResourceKey(namespace=namespace, name=owner)
    return None


def primary_key(obj: dict[str, Any]) -> ResourceKey | None:
    metadata = obj.get("metadata") or {}
    if not metadata.get("namespace") or not metadata.get("name"):
        return None
    return ResourceKey(namespace=metadata["namespace"], name=metadata["name"])


@dataclass
class WatchSource:
    """A list function to stream, and how to turn its objects into keys."""

    description: str
    list_func: Callable[..., Awaitable[Any]]
    key_func: Callable[[dict[str, Any]], ResourceKey | None]
    kwargs: dict[str, Any] = field(default_factory=dict)


# OpenShift objects owned by a VirtualDatabase, as (plural, group)
OWNED_OPENSHIFT_KINDS = (
    ("builds", BUILD_GROUP),
    ("buildconfigs", BUILD_GROUP),
    ("imagestreams", IMAGE_GROUP),
)


def default_watch_sources(api_client: client.ApiClient, config: Config) -> list[WatchSource]:
    """VirtualDatabases plus the owned objects whose changes matter to a pass."""
    custom = client.CustomObjectsApi(api_client)
    apps = client.AppsV1Api(api_client)
    owned = {"label_selector": OWNER_LABEL}

    if config.all_namespaces:
        sources = [
            WatchSource(
                "virtualdatabases",
                custom.list_cluster_custom_object,
                primary_key,
                {"group": CRD_GROUP, "version": CRD_VERSION, "plural": CRD_PLURAL},
            ),
        ]
        sources.extend(
            WatchSource(
                plural,
                custom.list_cluster_custom_object,
                owner_key,
                {"group": group, "version": OPENSHIFT_API_VERSION, "plural": plural, **owned},
            )
            for plural, group in OWNED_OPENSHIFT_KINDS
        )
        sources.append(
            WatchSource("deployments", apps.list_deployment_for_all_namespaces, owner_key, owned)
        )
        return sources

    namespace = config.watch_namespace
    sources = [
        WatchSource(
            "virtualdatabases",
            custom.list_namespaced_custom_object,
            primary_key,
            {
                "group": CRD_GROUP,
                "version": CRD_VERSION,
                "namespace": namespace,
                "plural": CRD_PLURAL,
            },
        ),
    ]
    sources.extend(
        WatchSource(
            plural,
            custom.list_namespaced_custom_object,
            owner_key,
            {
                "group": group,
                "version": OPENSHIFT_API_VERSION,
                "namespace": namespace,
                "plural": plural,
                **owned,
            },
        )
        for plural, group in OWNED_OPENSHIFT_KINDS
    )
    sources.append(
        WatchSource(
            "deployments",
            apps.list_namespaced_deployment,
            owner_key,
            {"namespace": namespace, **owned},
        )
    )
    return sources


class Controller:
    """Runs workers and watches until shutdown.

    Every finished pass schedules a periodic re-check of its key, so the
    system converges even if a watch event is lost.
    """

    def __init__(
        self,
        config: Config,
        store: ResourceStore,
        engine: ReconcileEngine,
        watch_sources: list[WatchSource] | None = None,
        queue: WorkQueue | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._engine = engine
        self._watch_sources = watch_sources or []
        self._queue = queue or WorkQueue(
            config.retry_backoff_base_seconds, config.retry_backoff_max_seconds
        )
        self._shutdown_event = asyncio.Event()
        self._engine.add_deletion_hook(self._on_deleted)

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    async def run(self) -> None:
        """Run until ``shutdown`` is called."""
        logger.info(
            "Starting controller",
            extra={
                "namespace": self._config.watch_namespace or "*",
                "workers": self._config.workers,
                "interval_seconds": self._config.reconcile_interval_seconds,
                "watches": [s.description for s in self._watch_sources],
            },
        )

        await self._enqueue_existing()

        tasks = [
            asyncio.create_task(self._worker(i), name=f"worker-{i}")
            for i in range(self._config.workers)
        ]
        tasks.extend(
            asyncio.create_task(self._watch(source), name=f"watch-{source.description}")
            for source in self._watch_sources
        )

        try:
            await self._shutdown_event.wait()
        finally:
            self._queue.shutdown()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info("Controller shutdown complete")

    def shutdown(self) -> None:
        """Signal the controller to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def _enqueue_existing(self) -> None:
        try:
            resources = await self._store.list(self._config.watch_namespace or None)
        except StoreError as e:
            # Watches deliver ADDED events for everything anyway
            logger.warning("Initial list failed", extra={"error": str(e)})
            return
        for vdb in resources:
            self._queue.add(vdb.key)

    async def _worker(self, index: int) -> None:
        while True:
            key = await self._queue.get()
            try:
                result = await self._engine.reconcile(key)
            except Exception as e:
                logger.exception(
                    "Unhandled exception in reconcile pass",
                    extra={"resource": str(key), "worker": index, "error": str(e)},
                )
                self._queue.done(key)
                self._queue.add_rate_limited(key)
                continue
            self._queue.done(key)
            self.schedule(key, result)

    def schedule(self, key: ResourceKey, result: ReconcileResult) -> None:
        """Decide when ``key`` is looked at next, based on the pass result."""
        if result.deleted:
            return
        if result.error is not None:
            delay = self._queue.add_rate_limited(key)
            logger.info(
                "Retrying after backoff",
                extra={
                    "resource": str(key),
                    "delay_seconds": delay,
                    "attempt": self._queue.failures(key),
                },
            )
            return
        self._queue.forget(key)
        self._queue.add_after(key, result.requeue_after or self._engine.interval)

    async def _on_deleted(self, key: ResourceKey) -> None:
        self._queue.discard(key)

    async def _watch(self, source: WatchSource) -> None:
        while not self._shutdown_event.is_set():
            try:
                async with watch.Watch() as w:
                    async for event in w.stream(
                        source.list_func,
                        timeout_seconds=WATCH_TIMEOUT_SECONDS,
                        **source.kwargs,
                    ):
                        obj = event.get("raw_object") or event.get("object")
                        if not isinstance(obj, dict):
                            continue
                        key = source.key_func(obj)
                        if key is not None:
                            self._queue.add(key)
            except ApiException as e:
                if e.status == 410:
                    # History expired; reconnect from the current state
                    continue
                logger.warning(
                    "Watch failed, restarting",
                    extra={"watch": source.description, "status": e.status, "error": e.reason},
                )
                await asyncio.sleep(WATCH_RETRY_SECONDS)
            except (aiohttp.ClientError, TimeoutError) as e:
                logger.warning(
                    "Watch connection lost, restarting",
                    extra={"watch": source.description, "error": str(e)},
                )
                await asyncio.sleep(WATCH_RETRY_SECONDS)
