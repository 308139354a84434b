"""Tests for spec and config digests."""

import re

import pytest

from cluster_mock import MockResourceStore, make_vdb
from vdb_operator.digest import (
    ConfigResolutionError,
    compute_config_digest,
    compute_spec_digest,
    resolve_env_value,
)
from vdb_operator.models import EnvVar, VirtualDatabaseSpec

DIGEST_PATTERN = re.compile(r"^v[A-Za-z0-9_-]{43}$")


def _spec(**source: object) -> VirtualDatabaseSpec:
    return VirtualDatabaseSpec.model_validate({"build": {"source": source}})


class TestSpecDigest:
    """Tests for compute_spec_digest."""

    def test_format(self) -> None:
        """Test the prefix and encoding of the digest."""
        digest = compute_spec_digest(_spec(ddl="CREATE DATABASE a;"))
        assert DIGEST_PATTERN.match(digest)

    def test_deterministic(self) -> None:
        """Test that equal inputs give equal digests."""
        assert compute_spec_digest(_spec(ddl="CREATE DATABASE a;")) == compute_spec_digest(
            _spec(ddl="CREATE DATABASE a;")
        )

    def test_ddl_change(self) -> None:
        """Test that any DDL edit changes the digest."""
        assert compute_spec_digest(_spec(ddl="CREATE DATABASE a;")) != compute_spec_digest(
            _spec(ddl="CREATE DATABASE b;")
        )

    def test_field_boundaries(self) -> None:
        """Test that moving text between fields changes the digest."""
        a = _spec(ddl="ab", openapi="c")
        b = _spec(ddl="a", openapi="bc")
        assert compute_spec_digest(a) != compute_spec_digest(b)

    def test_version_marker(self) -> None:
        """Test that the operator version participates."""
        spec = _spec(ddl="CREATE DATABASE a;")
        assert compute_spec_digest(spec, "1.0") != compute_spec_digest(spec, "1.1")

    def test_deployment_fields_ignored(self) -> None:
        """Test that replicas and env do not trigger rebuilds."""
        base = {"build": {"source": {"ddl": "CREATE DATABASE a;"}}}
        scaled = {**base, "replicas": 5, "env": [{"name": "A", "value": "1"}]}
        assert compute_spec_digest(
            VirtualDatabaseSpec.model_validate(base)
        ) == compute_spec_digest(VirtualDatabaseSpec.model_validate(scaled))

    @pytest.mark.parametrize(
        "build",
        [
            {"git": {"uri": "https://example.com/vdb.git", "reference": "main"}},
            {"sourceFileChanges": [{"relativePath": "pom.xml", "contents": "<project/>"}]},
            {"source": {"ddl": "CREATE DATABASE a;", "dependencies": ["g:a:1"]}},
            {"source": {"ddl": "CREATE DATABASE a;", "maven": "g:a:1"}},
            {"source": {"ddl": "CREATE DATABASE a;"}, "env": [{"name": "A", "value": "1"}]},
            {
                "source": {
                    "ddl": "CREATE DATABASE a;",
                    "mavenRepositories": {"corp": "https://repo.example.com"},
                }
            },
        ],
    )
    def test_other_build_inputs(self, build: dict) -> None:
        """Test that every build input participates."""
        base = VirtualDatabaseSpec.model_validate(
            {"build": {"source": {"ddl": "CREATE DATABASE a;"}}}
        )
        changed = VirtualDatabaseSpec.model_validate({"build": build})
        assert compute_spec_digest(base) != compute_spec_digest(changed)

    def test_runtime(self) -> None:
        """Test that the runtime baked into the image participates."""
        build = {"build": {"source": {"ddl": "CREATE DATABASE a;"}}}
        base = VirtualDatabaseSpec.model_validate(build)
        other = VirtualDatabaseSpec.model_validate({**build, "runtime": {"type": "quarkus"}})
        newer = VirtualDatabaseSpec.model_validate({**build, "runtime": {"version": "3.2"}})

        assert len({compute_spec_digest(s) for s in (base, other, newer)}) == 3


class TestResolveEnvValue:
    """Tests for resolve_env_value."""

    @pytest.mark.asyncio
    async def test_literal(self) -> None:
        """Test that literals resolve without lookups."""
        store = MockResourceStore()
        env = EnvVar(name="MODE", value="fast")

        assert await resolve_env_value(env, "dev", store) == "fast"
        assert store.lookups == []

    @pytest.mark.asyncio
    async def test_secret(self) -> None:
        """Test resolving a secret key."""
        store = MockResourceStore()
        store.secrets[("dev", "db")] = {"pw": "s3cret"}
        env = EnvVar.model_validate(
            {"name": "PW", "valueFrom": {"secretKeyRef": {"name": "db", "key": "pw"}}}
        )

        assert await resolve_env_value(env, "dev", store) == "s3cret"

    @pytest.mark.asyncio
    async def test_config_map(self) -> None:
        """Test resolving a config map key."""
        store = MockResourceStore()
        store.config_maps[("dev", "settings")] = {"url": "jdbc:h2:mem"}
        env = EnvVar.model_validate(
            {"name": "URL", "valueFrom": {"configMapKeyRef": {"name": "settings", "key": "url"}}}
        )

        assert await resolve_env_value(env, "dev", store) == "jdbc:h2:mem"

    @pytest.mark.asyncio
    async def test_missing_reference(self) -> None:
        """Test that a missing required reference raises error."""
        store = MockResourceStore()
        env = EnvVar.model_validate(
            {"name": "PW", "valueFrom": {"secretKeyRef": {"name": "db", "key": "pw"}}}
        )

        with pytest.raises(ConfigResolutionError) as exc_info:
            await resolve_env_value(env, "dev", store)

        assert exc_info.value.env_name == "PW"
        assert exc_info.value.kind == "secret"
        assert "db" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_optional_reference(self) -> None:
        """Test that a missing optional reference resolves to a marker."""
        store = MockResourceStore()
        env = EnvVar.model_validate(
            {
                "name": "PW",
                "valueFrom": {"secretKeyRef": {"name": "db", "key": "pw", "optional": True}},
            }
        )

        value = await resolve_env_value(env, "dev", store)
        assert value is not None
        assert value != ""

    @pytest.mark.asyncio
    async def test_field_ref_not_resolved(self) -> None:
        """Test that downward API references are skipped."""
        store = MockResourceStore()
        env = EnvVar.model_validate(
            {"name": "POD", "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}}}
        )

        assert await resolve_env_value(env, "dev", store) is None


class TestConfigDigest:
    """Tests for compute_config_digest."""

    @staticmethod
    def _vdb():
        return make_vdb(
            env=[{"name": "PW", "valueFrom": {"secretKeyRef": {"name": "db", "key": "pw"}}}],
            datasources=[
                {
                    "name": "sales",
                    "type": "postgresql",
                    "properties": [
                        {
                            "name": "url",
                            "valueFrom": {"configMapKeyRef": {"name": "sales", "key": "url"}},
                        }
                    ],
                }
            ],
        )

    @staticmethod
    def _store(password: str = "one", url: str = "jdbc:postgresql://db/sales"):
        store = MockResourceStore()
        store.secrets[("dev", "db")] = {"pw": password}
        store.config_maps[("dev", "sales")] = {"url": url}
        return store

    @pytest.mark.asyncio
    async def test_format(self) -> None:
        """Test the prefix of the config digest."""
        digest = await compute_config_digest(self._vdb(), self._store())
        assert digest.startswith("c")
        assert len(digest) == 44

    @pytest.mark.asyncio
    async def test_secret_value_change(self) -> None:
        """Test that a changed secret value changes the digest."""
        vdb = self._vdb()
        before = await compute_config_digest(vdb, self._store(password="one"))
        after = await compute_config_digest(vdb, self._store(password="two"))
        assert before != after

    @pytest.mark.asyncio
    async def test_datasource_value_change(self) -> None:
        """Test that a changed data source property changes the digest."""
        vdb = self._vdb()
        before = await compute_config_digest(vdb, self._store(url="jdbc:postgresql://a/s"))
        after = await compute_config_digest(vdb, self._store(url="jdbc:postgresql://b/s"))
        assert before != after

    @pytest.mark.asyncio
    async def test_stable(self) -> None:
        """Test that unchanged values give an unchanged digest."""
        vdb = self._vdb()
        assert await compute_config_digest(vdb, self._store()) == await compute_config_digest(
            vdb, self._store()
        )

    @pytest.mark.asyncio
    async def test_value_not_in_digest(self) -> None:
        """Test that secret values never appear in the digest."""
        digest = await compute_config_digest(self._vdb(), self._store(password="hunter2"))
        assert "hunter2" not in digest

    @pytest.mark.asyncio
    async def test_missing_reference(self) -> None:
        """Test that a missing reference fails the digest."""
        store = MockResourceStore()
        with pytest.raises(ConfigResolutionError):
            await compute_config_digest(self._vdb(), store)
