"""Change detection fingerprints.

Two independent fingerprints are kept in status:

- the spec digest covers everything that goes into the service image, and a
  change forces a full rebuild;
- the config digest covers the *values* behind environment and data source
  references, and a change only rolls the running pods.

Both are SHA-256 based. Every hashed field is written with a tag and a length
prefix so that moving bytes between adjacent fields always changes the
result.
"""

from __future__ import annotations

import base64
import hashlib
import logging

from .models import EnvVar, VirtualDatabase, VirtualDatabaseSpec
from .store import ConfigResolver, NotFoundError

logger = logging.getLogger(__name__)

SPEC_DIGEST_PREFIX = "v"
CONFIG_DIGEST_PREFIX = "c"

_MISSING_OPTIONAL = "\x00optional-missing"


class ConfigResolutionError(Exception):
    """Raised when a referenced Secret or ConfigMap value cannot be read."""

    def __init__(self, env_name: str, kind: str, object_name: str, key: str) -> None:
        super().__init__(
            f"Failed to resolve {env_name}: {kind} {object_name} key {key} not found"
        )
        self.env_name = env_name
        self.kind = kind
        self.object_name = object_name
        self.key = key


class _Hasher:
    def __init__(self) -> None:
        self._sha = hashlib.sha256()

    def field(self, tag: str, value: str | None) -> None:
        data = (value or "").encode("utf-8")
        self._sha.update(tag.encode("utf-8"))
        self._sha.update(len(data).to_bytes(8, "big"))
        self._sha.update(data)

    def encode(self, prefix: str) -> str:
        return prefix + base64.urlsafe_b64encode(self._sha.digest()).decode("ascii").rstrip("=")


def compute_spec_digest(spec: VirtualDatabaseSpec, version_marker: str = "") -> str:
    """Fingerprint the build inputs of a spec.

    Args:
        spec: The desired state.
        version_marker: Operator version; a new operator release rebuilds images.

    Returns:
        ``"v"`` followed by the unpadded URL-safe base64 SHA-256.
    """
    h = _Hasher()
    source = spec.build.source
    h.field("marker", version_marker)
    h.field("ddl", source.ddl)
    h.field("maven", source.maven)
    h.field("openapi", source.openapi)
    for dependency in source.dependencies:
        h.field("dependency", dependency)
    for repo_id, url in sorted(source.maven_repositories.items()):
        h.field("repository.id", repo_id)
        h.field("repository.url", url)
    h.field("runtime.type", spec.runtime.type)
    h.field("runtime.version", spec.runtime.version)
    for env in spec.build.env:
        h.field("build.env.name", env.name)
        h.field("build.env.value", env.value)
        if env.value_from is not None:
            h.field("build.env.valueFrom", env.value_from.model_dump_json(by_alias=True))
    git = spec.build.git
    if git is not None:
        h.field("git.uri", git.uri)
        h.field("git.reference", git.reference)
        h.field("git.contextDir", git.context_dir)
    for change in spec.build.source_file_changes:
        h.field("file.path", change.relative_path)
        h.field("file.contents", change.contents)
    return h.encode(SPEC_DIGEST_PREFIX)


async def resolve_env_value(
    env: EnvVar, namespace: str, resolver: ConfigResolver
) -> str | None:
    """Resolve one environment entry to its current value.

    Returns None for entries the operator does not resolve (downward API).

    Raises:
        ConfigResolutionError: If a non-optional reference is missing.
    """
    if env.value_from is None:
        return env.value or ""

    source = env.value_from
    if source.secret_key_ref is not None:
        ref, kind = source.secret_key_ref, "secret"
        lookup = resolver.resolve_secret_field
    elif source.config_map_key_ref is not None:
        ref, kind = source.config_map_key_ref, "configmap"
        lookup = resolver.resolve_config_field
    else:
        return None

    try:
        return await lookup(namespace, ref.name, ref.key)
    except NotFoundError as e:
        if ref.optional:
            return _MISSING_OPTIONAL
        raise ConfigResolutionError(env.name, kind, ref.name, ref.key) from e


async def compute_config_digest(vdb: VirtualDatabase, resolver: ConfigResolver) -> str:
    """Fingerprint the resolved configuration values of a resource.

    Covers runtime env, build env, and every data source property. Values are
    hashed, never stored, so secrets do not leak into status.

    Raises:
        ConfigResolutionError: If a referenced value cannot be read.
    """
    namespace = vdb.metadata.namespace
    h = _Hasher()

    async def fold(tag: str, entries: list[EnvVar]) -> None:
        for env in entries:
            value = await resolve_env_value(env, namespace, resolver)
            if value is None:
                continue
            h.field(f"{tag}.name", env.name)
            h.field(f"{tag}.value", value)

    await fold("env", vdb.spec.env)
    await fold("build.env", vdb.spec.build.env)
    for datasource in vdb.spec.datasources:
        h.field("datasource", datasource.name)
        await fold(f"datasource.{datasource.name}", datasource.properties)

    return h.encode(CONFIG_DIGEST_PREFIX)
