"""Runtime objects owned by a VirtualDatabase.

Services, routes, deployments, secrets, the cache store and the metrics
monitor. Each collaborator is a Protocol so the actions can be exercised
against in-memory fakes; the Kubernetes-backed implementations follow.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiException

from . import manifests
from .models import VirtualDatabase
from .store import NotFoundError, translate_api_error

logger = logging.getLogger(__name__)

ROUTE_GROUP = "route.openshift.io"
MONITORING_GROUP = "monitoring.coreos.com"
CACHE_GROUP = "infinispan.org"
CACHE_VERSION = "v2alpha1"
DEFAULT_CACHE_CLUSTER = "teiid-cache"


class CacheStoreUnavailable(Exception):
    """Raised when no cache store operator is installed in the cluster."""

    pass


@dataclass
class DeploymentState:
    """The parts of a live Deployment the actions reason about."""

    name: str
    replicas: int = 0
    available: bool = False
    stalled: bool = False
    config_digest: str = ""
    spec_digest: str = ""
    env: list[dict[str, Any]] = field(default_factory=list)


class Workloads(Protocol):
    async def ensure_service(self, vdb: VirtualDatabase) -> None: ...

    async def ensure_route(self, vdb: VirtualDatabase) -> None: ...

    async def get_route_host(self, vdb: VirtualDatabase) -> str | None: ...

    async def get_deployment(self, vdb: VirtualDatabase) -> DeploymentState | None: ...

    async def ensure_deployment(self, vdb: VirtualDatabase, config_digest: str) -> None: ...

    async def update_deployment(
        self,
        vdb: VirtualDatabase,
        replicas: int,
        env: list[dict[str, Any]],
        config_digest: str,
    ) -> None: ...

    async def get_secret(self, namespace: str, name: str) -> dict[str, bytes] | None: ...

    async def ensure_secret(self, manifest: dict[str, Any]) -> None: ...


class CacheStoreProvisioner(Protocol):
    async def ensure(self, vdb: VirtualDatabase) -> str:
        """Provision the cache for ``vdb`` and return its name.

        Raises:
            CacheStoreUnavailable: If the cluster has no cache store support.
        """
        ...


class MetricsRegistrar(Protocol):
    async def ensure_monitor(self, vdb: VirtualDatabase) -> bool:
        """Register the scrape target; False when monitoring is not installed."""
        ...


def _rolled_out(metadata: dict[str, Any], spec: dict[str, Any], status: dict[str, Any]) -> bool:
    """True once every replica runs the current pod template.

    The Available condition alone stays True on the old pods while a new
    template is still rolling out.
    """
    if (status.get("observedGeneration") or 0) < (metadata.get("generation") or 0):
        return False
    replicas = spec.get("replicas", 1)
    updated = status.get("updatedReplicas") or 0
    if updated < replicas:
        return False
    if (status.get("replicas") or 0) > updated:
        # Old pods are still terminating
        return False
    return (status.get("availableReplicas") or 0) >= updated


def parse_deployment(obj: dict[str, Any]) -> DeploymentState:
    """Extract a DeploymentState from a serialized Deployment."""
    spec = obj.get("spec", {})
    template = spec.get("template", {})
    annotations = template.get("metadata", {}).get("annotations") or {}
    containers = template.get("spec", {}).get("containers") or [{}]

    status = obj.get("status") or {}
    available = False
    stalled = False
    for condition in status.get("conditions") or []:
        if condition.get("type") == "Available" and condition.get("status") == "True":
            available = True
        if condition.get("type") == "Progressing" and condition.get("status") == "False":
            stalled = True

    return DeploymentState(
        name=obj.get("metadata", {}).get("name", ""),
        replicas=spec.get("replicas", 0),
        available=available and _rolled_out(obj.get("metadata") or {}, spec, status),
        stalled=stalled,
        config_digest=annotations.get(manifests.CONFIG_DIGEST_ANNOTATION, ""),
        spec_digest=annotations.get(manifests.SPEC_DIGEST_ANNOTATION, ""),
        env=containers[0].get("env") or [],
    )


class KubernetesWorkloads:
    """Workloads backed by the core, apps and route APIs."""

    def __init__(self, api_client: client.ApiClient) -> None:
        self._api_client = api_client
        self._core = client.CoreV1Api(api_client)
        self._apps = client.AppsV1Api(api_client)
        self._custom = client.CustomObjectsApi(api_client)

    async def ensure_service(self, vdb: VirtualDatabase) -> None:
        namespace, name = vdb.metadata.namespace, vdb.metadata.name
        try:
            await self._core.read_namespaced_service(name=name, namespace=namespace)
            return
        except ApiException as e:
            if e.status != 404:
                raise translate_api_error(e, f"read service {namespace}/{name}") from e
        try:
            await self._core.create_namespaced_service(
                namespace=namespace, body=manifests.service(vdb)
            )
        except ApiException as e:
            if e.status != 409:
                raise translate_api_error(e, f"create service {namespace}/{name}") from e
        logger.info("Service created", extra={"namespace": namespace, "object_name": name})

    async def ensure_route(self, vdb: VirtualDatabase) -> None:
        namespace, name = vdb.metadata.namespace, vdb.metadata.name
        if await self._read_route(namespace, name) is not None:
            return
        try:
            await self._custom.create_namespaced_custom_object(
                ROUTE_GROUP, "v1", namespace, "routes", manifests.route(vdb)
            )
        except ApiException as e:
            if e.status != 409:
                raise translate_api_error(e, f"create route {namespace}/{name}") from e
        logger.info("Route created", extra={"namespace": namespace, "object_name": name})

    async def get_route_host(self, vdb: VirtualDatabase) -> str | None:
        route = await self._read_route(vdb.metadata.namespace, vdb.metadata.name)
        if route is None:
            return None
        for ingress in route.get("status", {}).get("ingress") or []:
            if ingress.get("host"):
                return ingress["host"]
        return route.get("spec", {}).get("host") or None

    async def _read_route(self, namespace: str, name: str) -> dict[str, Any] | None:
        try:
            return await self._custom.get_namespaced_custom_object(
                ROUTE_GROUP, "v1", namespace, "routes", name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_error(e, f"read route {namespace}/{name}") from e

    async def _read_deployment(self, namespace: str, name: str) -> dict[str, Any] | None:
        try:
            deployment = await self._apps.read_namespaced_deployment(
                name=name, namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_error(e, f"read deployment {namespace}/{name}") from e
        return self._api_client.sanitize_for_serialization(deployment)

    async def get_deployment(self, vdb: VirtualDatabase) -> DeploymentState | None:
        obj = await self._read_deployment(vdb.metadata.namespace, vdb.metadata.name)
        return parse_deployment(obj) if obj is not None else None

    async def ensure_deployment(self, vdb: VirtualDatabase, config_digest: str) -> None:
        namespace, name = vdb.metadata.namespace, vdb.metadata.name
        if await self._read_deployment(namespace, name) is not None:
            return
        body = manifests.deployment(vdb, f"{name}:latest", config_digest)
        try:
            await self._apps.create_namespaced_deployment(namespace=namespace, body=body)
        except ApiException as e:
            if e.status != 409:
                raise translate_api_error(e, f"create deployment {namespace}/{name}") from e
        logger.info("Deployment created", extra={"namespace": namespace, "object_name": name})

    async def update_deployment(
        self,
        vdb: VirtualDatabase,
        replicas: int,
        env: list[dict[str, Any]],
        config_digest: str,
    ) -> None:
        namespace, name = vdb.metadata.namespace, vdb.metadata.name
        obj = await self._read_deployment(namespace, name)
        if obj is None:
            raise NotFoundError(f"update deployment {namespace}/{name}: not found", status=404)

        template = obj["spec"]["template"]
        obj["spec"]["replicas"] = replicas
        annotations = template.setdefault("metadata", {}).setdefault("annotations", {})
        annotations[manifests.CONFIG_DIGEST_ANNOTATION] = config_digest
        annotations[manifests.SPEC_DIGEST_ANNOTATION] = vdb.status.digest
        template["spec"]["containers"][0]["env"] = env
        try:
            # resourceVersion from the read makes this a conditional write
            await self._apps.replace_namespaced_deployment(
                name=name, namespace=namespace, body=obj
            )
        except ApiException as e:
            raise translate_api_error(e, f"replace deployment {namespace}/{name}") from e
        logger.info(
            "Deployment updated",
            extra={"namespace": namespace, "object_name": name, "replicas": replicas},
        )

    async def get_secret(self, namespace: str, name: str) -> dict[str, bytes] | None:
        try:
            secret = await self._core.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_error(e, f"read secret {namespace}/{name}") from e
        return {key: base64.b64decode(value) for key, value in (secret.data or {}).items()}

    async def ensure_secret(self, manifest: dict[str, Any]) -> None:
        namespace = manifest["metadata"]["namespace"]
        name = manifest["metadata"]["name"]
        try:
            await self._core.create_namespaced_secret(namespace=namespace, body=manifest)
        except ApiException as e:
            if e.status != 409:
                raise translate_api_error(e, f"create secret {namespace}/{name}") from e


class InfinispanCacheStore:
    """Cache store provisioning through the Infinispan operator's Cache resource."""

    def __init__(self, api_client: client.ApiClient, cluster_name: str = DEFAULT_CACHE_CLUSTER):
        self._custom = client.CustomObjectsApi(api_client)
        self._cluster_name = cluster_name

    async def ensure(self, vdb: VirtualDatabase) -> str:
        namespace, name = vdb.metadata.namespace, vdb.metadata.name
        try:
            await self._custom.list_namespaced_custom_object(
                CACHE_GROUP, CACHE_VERSION, namespace, "caches", limit=1
            )
        except ApiException as e:
            if e.status == 404:
                raise CacheStoreUnavailable("Cache resource type is not installed") from e
            raise translate_api_error(e, f"list caches {namespace}") from e

        try:
            await self._custom.create_namespaced_custom_object(
                CACHE_GROUP,
                CACHE_VERSION,
                namespace,
                "caches",
                manifests.cache(vdb, self._cluster_name),
            )
        except ApiException as e:
            if e.status != 409:
                raise translate_api_error(e, f"create cache {namespace}/{name}") from e
        return name


class ServiceMonitorRegistrar:
    """Registers the metrics endpoint with the Prometheus operator."""

    def __init__(self, api_client: client.ApiClient) -> None:
        self._custom = client.CustomObjectsApi(api_client)

    async def ensure_monitor(self, vdb: VirtualDatabase) -> bool:
        namespace = vdb.metadata.namespace
        try:
            await self._custom.create_namespaced_custom_object(
                MONITORING_GROUP, "v1", namespace, "servicemonitors", manifests.service_monitor(vdb)
            )
        except ApiException as e:
            if e.status == 404:
                logger.info(
                    "Monitoring is not installed, skipping metrics registration",
                    extra={"namespace": namespace, "object_name": vdb.metadata.name},
                )
                return False
            if e.status != 409:
                raise translate_api_error(e, f"create servicemonitor {vdb.key}") from e
        return True
