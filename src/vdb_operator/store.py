"""Resource store and configuration resolver backed by the Kubernetes API.

The API server is the only source of truth. Every write carries the
resourceVersion that was read, so a concurrent writer makes the write fail
with ConflictError instead of silently overwriting newer state.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Protocol

from kubernetes_asyncio import client
from kubernetes_asyncio import config as kube_config
from kubernetes_asyncio.client import ApiException
from pydantic import ValidationError

from .config import CRD_GROUP, CRD_PLURAL, CRD_VERSION, Config
from .models import ResourceKey, VirtualDatabase

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the API server rejects or fails a request."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(StoreError):
    """Raised when the requested object does not exist."""

    pass


class ConflictError(StoreError):
    """Raised when a write used a stale resourceVersion."""

    pass


def translate_api_error(e: ApiException, what: str) -> StoreError:
    """Map an ApiException to the store error taxonomy."""
    message = f"{what}: {e.status} {e.reason}"
    if e.status == 404:
        return NotFoundError(message, status=404)
    if e.status == 409:
        return ConflictError(message, status=409)
    return StoreError(message, status=e.status)


class ResourceStore(Protocol):
    """Read and write access to VirtualDatabase objects."""

    async def get(self, key: ResourceKey) -> VirtualDatabase: ...

    async def list(self, namespace: str | None = None) -> list[VirtualDatabase]: ...

    async def update(self, vdb: VirtualDatabase) -> VirtualDatabase: ...

    async def update_status(self, vdb: VirtualDatabase) -> VirtualDatabase: ...


class ConfigResolver(Protocol):
    """Returns the current value of one key of a Secret or ConfigMap.

    Implementations raise NotFoundError when either the object or the key is
    missing.
    """

    async def resolve_secret_field(self, namespace: str, name: str, key: str) -> str: ...

    async def resolve_config_field(self, namespace: str, name: str, key: str) -> str: ...


def parse_resource(obj: dict[str, Any]) -> VirtualDatabase:
    """Parse an API object, reporting schema violations as StoreError."""
    try:
        return VirtualDatabase.from_k8s(obj)
    except ValidationError as e:
        name = obj.get("metadata", {}).get("name", "<unknown>")
        raise StoreError(f"invalid {CRD_PLURAL} object {name}: {e}") from e


async def create_api_client(config: Config) -> client.ApiClient:
    """Load cluster credentials and build an API client."""
    if config.in_cluster:
        kube_config.load_incluster_config()
    else:
        await kube_config.load_kube_config()
    return client.ApiClient()


class KubernetesStore:
    """ResourceStore and ConfigResolver over the cluster API."""

    def __init__(self, api_client: client.ApiClient) -> None:
        self._custom = client.CustomObjectsApi(api_client)
        self._core = client.CoreV1Api(api_client)

    async def get(self, key: ResourceKey) -> VirtualDatabase:
        try:
            obj = await self._custom.get_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=key.namespace,
                plural=CRD_PLURAL,
                name=key.name,
            )
        except ApiException as e:
            raise translate_api_error(e, f"get {key}") from e
        return parse_resource(obj)

    async def list(self, namespace: str | None = None) -> list[VirtualDatabase]:
        try:
            if namespace:
                result = await self._custom.list_namespaced_custom_object(
                    group=CRD_GROUP,
                    version=CRD_VERSION,
                    namespace=namespace,
                    plural=CRD_PLURAL,
                )
            else:
                result = await self._custom.list_cluster_custom_object(
                    group=CRD_GROUP,
                    version=CRD_VERSION,
                    plural=CRD_PLURAL,
                )
        except ApiException as e:
            raise translate_api_error(e, f"list {CRD_PLURAL}") from e

        resources: list[VirtualDatabase] = []
        for item in result.get("items", []):
            try:
                resources.append(parse_resource(item))
            except StoreError as e:
                # One malformed object must not hide the others
                logger.warning("Skipping unparseable resource", extra={"error": str(e)})
        return resources

    async def update(self, vdb: VirtualDatabase) -> VirtualDatabase:
        try:
            obj = await self._custom.replace_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=vdb.metadata.namespace,
                plural=CRD_PLURAL,
                name=vdb.metadata.name,
                body=vdb.to_k8s(),
            )
        except ApiException as e:
            raise translate_api_error(e, f"update {vdb.key}") from e
        return parse_resource(obj)

    async def update_status(self, vdb: VirtualDatabase) -> VirtualDatabase:
        try:
            obj = await self._custom.replace_namespaced_custom_object_status(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=vdb.metadata.namespace,
                plural=CRD_PLURAL,
                name=vdb.metadata.name,
                body=vdb.to_k8s(),
            )
        except ApiException as e:
            raise translate_api_error(e, f"update status {vdb.key}") from e
        return parse_resource(obj)

    async def resolve_secret_field(self, namespace: str, name: str, key: str) -> str:
        try:
            secret = await self._core.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            raise translate_api_error(e, f"read secret {namespace}/{name}") from e

        data = secret.data or {}
        if key not in data:
            raise NotFoundError(f"secret {namespace}/{name} has no key {key}", status=404)
        try:
            return base64.b64decode(data[key]).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise StoreError(f"secret {namespace}/{name} key {key} is not valid text") from e

    async def resolve_config_field(self, namespace: str, name: str, key: str) -> str:
        try:
            config_map = await self._core.read_namespaced_config_map(
                name=name, namespace=namespace
            )
        except ApiException as e:
            raise translate_api_error(e, f"read configmap {namespace}/{name}") from e

        data = config_map.data or {}
        if key not in data:
            raise NotFoundError(f"configmap {namespace}/{name} has no key {key}", status=404)
        return data[key]
