"""Tests for the Kubernetes-backed resource store."""

import base64
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from kubernetes_asyncio.client import ApiException

from cluster_mock import make_vdb
from vdb_operator.models import Phase, ResourceKey
from vdb_operator.store import (
    ConflictError,
    KubernetesStore,
    NotFoundError,
    StoreError,
    translate_api_error,
)

KEY = ResourceKey("dev", "portfolio")


def _store() -> tuple[KubernetesStore, AsyncMock, AsyncMock]:
    store = KubernetesStore(MagicMock())
    custom = AsyncMock()
    core = AsyncMock()
    store._custom = custom
    store._core = core
    return store, custom, core


class TestTranslateApiError:
    """Tests for translate_api_error."""

    @pytest.mark.parametrize(
        "status,error_type",
        [(404, NotFoundError), (409, ConflictError), (500, StoreError), (403, StoreError)],
    )
    def test_mapping(self, status: int, error_type: type) -> None:
        """Test that HTTP statuses map onto the error taxonomy."""
        error = translate_api_error(ApiException(status=status, reason="x"), "get dev/a")

        assert type(error) is error_type
        assert error.status == status
        assert str(error).startswith("get dev/a:")


class TestKubernetesStore:
    """Tests for KubernetesStore."""

    @pytest.mark.asyncio
    async def test_get(self) -> None:
        """Test reading a resource."""
        store, custom, _ = _store()
        custom.get_namespaced_custom_object.return_value = make_vdb().to_k8s()

        vdb = await store.get(KEY)

        assert vdb.key == KEY
        kwargs = custom.get_namespaced_custom_object.call_args.kwargs
        assert kwargs["group"] == "teiid.io"
        assert kwargs["plural"] == "virtualdatabases"

    @pytest.mark.asyncio
    async def test_get_not_found(self) -> None:
        """Test that a missing resource raises NotFoundError."""
        store, custom, _ = _store()
        custom.get_namespaced_custom_object.side_effect = ApiException(status=404)

        with pytest.raises(NotFoundError):
            await store.get(KEY)

    @pytest.mark.asyncio
    async def test_get_invalid_object(self) -> None:
        """Test that an object failing validation raises StoreError."""
        store, custom, _ = _store()
        obj = make_vdb().to_k8s()
        obj["spec"]["replicas"] = -3
        custom.get_namespaced_custom_object.return_value = obj

        with pytest.raises(StoreError) as exc_info:
            await store.get(KEY)

        assert "invalid virtualdatabases object portfolio" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_list_skips_invalid(self) -> None:
        """Test that one malformed object does not hide the others."""
        store, custom, _ = _store()
        bad = make_vdb(name="broken").to_k8s()
        bad["spec"]["replicas"] = -1
        custom.list_namespaced_custom_object.return_value = {
            "items": [make_vdb().to_k8s(), bad]
        }

        resources = await store.list("dev")

        assert [r.metadata.name for r in resources] == ["portfolio"]

    @pytest.mark.asyncio
    async def test_list_cluster_wide(self) -> None:
        """Test that no namespace lists across the cluster."""
        store, custom, _ = _store()
        custom.list_cluster_custom_object.return_value = {"items": []}

        assert await store.list() == []
        custom.list_namespaced_custom_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_status_conflict(self) -> None:
        """Test that a stale write raises ConflictError."""
        store, custom, _ = _store()
        custom.replace_namespaced_custom_object_status.side_effect = ApiException(status=409)

        with pytest.raises(ConflictError):
            await store.update_status(make_vdb(status={"phase": "Running"}))

    @pytest.mark.asyncio
    async def test_update_status_body(self) -> None:
        """Test that the status subresource receives the wire format."""
        store, custom, _ = _store()
        vdb = make_vdb(status={"phase": "Running", "configdigest": "c1"})
        custom.replace_namespaced_custom_object_status.return_value = vdb.to_k8s()

        updated = await store.update_status(vdb)

        body = custom.replace_namespaced_custom_object_status.call_args.kwargs["body"]
        assert body["status"]["configdigest"] == "c1"
        assert updated.status.phase is Phase.RUNNING

    @pytest.mark.asyncio
    async def test_resolve_secret_field(self) -> None:
        """Test that secret values are decoded."""
        store, _, core = _store()
        core.read_namespaced_secret.return_value = SimpleNamespace(
            data={"pw": base64.b64encode(b"s3cret").decode()}
        )

        assert await store.resolve_secret_field("dev", "db", "pw") == "s3cret"

    @pytest.mark.asyncio
    async def test_resolve_secret_missing_key(self) -> None:
        """Test that a missing key raises NotFoundError."""
        store, _, core = _store()
        core.read_namespaced_secret.return_value = SimpleNamespace(data={})

        with pytest.raises(NotFoundError):
            await store.resolve_secret_field("dev", "db", "pw")

    @pytest.mark.asyncio
    async def test_resolve_config_field(self) -> None:
        """Test reading a config map key."""
        store, _, core = _store()
        core.read_namespaced_config_map.return_value = SimpleNamespace(data={"url": "jdbc:x"})

        assert await store.resolve_config_field("dev", "settings", "url") == "jdbc:x"

    @pytest.mark.asyncio
    async def test_resolve_config_missing_object(self) -> None:
        """Test that a missing config map raises NotFoundError."""
        store, _, core = _store()
        core.read_namespaced_config_map.side_effect = ApiException(status=404)

        with pytest.raises(NotFoundError):
            await store.resolve_config_field("dev", "settings", "url")
