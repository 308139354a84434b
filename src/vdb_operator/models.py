"""Pydantic models for the VirtualDatabase custom resource.

These models provide:
1. Type-safe parsing of the objects returned by the API server
2. Validation at the boundary (fail fast, fail loudly)
3. Lossless conversion back to the camelCase wire format for writes
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, Field

from .config import CRD_GROUP, CRD_KIND, CRD_VERSION, MAX_INLINE_DDL_BYTES

_MODEL_CONFIG = {"extra": "ignore", "populate_by_name": True}


@dataclass(frozen=True)
class ResourceKey:
    """Namespace/name pair identifying one VirtualDatabase."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceKey:
        """Parse a ``namespace/name`` string."""
        namespace, sep, name = value.partition("/")
        if not sep or not namespace or not name:
            raise ValueError(f"Resource key must be <namespace>/<name>: {value!r}")
        return cls(namespace=namespace, name=name)


class Phase(str, Enum):
    """Lifecycle phase of a VirtualDatabase.

    The values are the strings persisted in ``status.phase`` and must stay
    stable across operator versions.
    """

    INITIAL = ""
    CREATE_CACHE_STORE = "Creating Cache Store"
    S2I_READY = "Ready For S2I"
    BUILDER_IMAGE = "Building Base Builder Image"
    BUILDER_IMAGE_FINISHED = "Builder Image Finished"
    BUILDER_IMAGE_FAILED = "Builder Image Failed"
    SERVICE_IMAGE = "Building Service Image"
    SERVICE_IMAGE_FINISHED = "Service Image Finished"
    SERVICE_IMAGE_FAILED = "Service Image Failed"
    SERVICE_CREATED = "Service Created"
    KEYSTORE_CREATED = "Keystore Created"
    DEPLOYING = "Deploying"
    RUNNING = "Running"
    ERROR = "Error"
    DELETING = "Deleting"

    @property
    def parked(self) -> bool:
        """True for phases that wait for a spec change before moving again."""
        return self in (
            Phase.BUILDER_IMAGE_FAILED,
            Phase.SERVICE_IMAGE_FAILED,
            Phase.ERROR,
            Phase.DELETING,
        )


class ExposeType(str, Enum):
    """Ways the service can be published outside its namespace."""

    ROUTE = "Route"
    LOAD_BALANCER = "LoadBalancer"
    NODE_PORT = "NodePort"
    THREE_SCALE = "ExposeVia3scale"


# =============================================================================
# Environment and configuration references
# =============================================================================


class KeySelector(BaseModel):
    """Reference to one key of a Secret or ConfigMap."""

    model_config = _MODEL_CONFIG

    name: Annotated[str, Field(min_length=1)]
    key: Annotated[str, Field(min_length=1)]
    optional: bool = False


class FieldSelector(BaseModel):
    """Downward API reference, resolved by the kubelet rather than the operator."""

    model_config = _MODEL_CONFIG

    field_path: str = Field(alias="fieldPath")


class EnvVarSource(BaseModel):
    model_config = _MODEL_CONFIG

    secret_key_ref: KeySelector | None = Field(None, alias="secretKeyRef")
    config_map_key_ref: KeySelector | None = Field(None, alias="configMapKeyRef")
    field_ref: FieldSelector | None = Field(None, alias="fieldRef")


class EnvVar(BaseModel):
    """Environment variable with either a literal value or a reference."""

    model_config = _MODEL_CONFIG

    name: Annotated[str, Field(min_length=1)]
    value: str | None = None
    value_from: EnvVarSource | None = Field(None, alias="valueFrom")


# =============================================================================
# Build inputs
# =============================================================================


class GitSource(BaseModel):
    """Git coordinates for builds sourced from a repository."""

    model_config = _MODEL_CONFIG

    uri: Annotated[str, Field(min_length=1)]
    reference: str = ""
    context_dir: str = Field("", alias="contextDir")


class SourceFileChange(BaseModel):
    """A file overlaid onto the checked out sources before the build."""

    model_config = _MODEL_CONFIG

    relative_path: str = Field(min_length=1, alias="relativePath")
    contents: str = ""


class BuildSource(BaseModel):
    """Artifact inputs of the service image build."""

    model_config = _MODEL_CONFIG

    ddl: str | None = Field(
        None, validation_alias=AliasChoices("ddl", "inlineText"), serialization_alias="ddl"
    )
    openapi: str | None = Field(
        None,
        validation_alias=AliasChoices("openapi", "openApiRef"),
        serialization_alias="openapi",
    )
    maven: str | None = None
    version: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    maven_repositories: dict[str, str] = Field(default_factory=dict, alias="mavenRepositories")


class BuildSpec(BaseModel):
    model_config = _MODEL_CONFIG

    env: list[EnvVar] = Field(default_factory=list)
    git: GitSource | None = None
    source: BuildSource = Field(default_factory=BuildSource)
    source_file_changes: list[SourceFileChange] = Field(
        default_factory=list, alias="sourceFileChanges"
    )

    @property
    def has_source(self) -> bool:
        """True when at least one buildable input is declared."""
        return bool(self.source.ddl or self.source.maven or self.git is not None)


# =============================================================================
# Runtime shape
# =============================================================================


class Runtime(BaseModel):
    model_config = _MODEL_CONFIG

    type: str = "springboot"
    version: str = ""


class Resources(BaseModel):
    model_config = _MODEL_CONFIG

    requests: dict[str, str] = Field(default_factory=dict)
    limits: dict[str, str] = Field(default_factory=dict)


class DataSource(BaseModel):
    """Named data source whose properties are injected into the runtime."""

    model_config = _MODEL_CONFIG

    name: Annotated[str, Field(min_length=1)]
    type: str = ""
    properties: list[EnvVar] = Field(default_factory=list)


class Expose(BaseModel):
    model_config = _MODEL_CONFIG

    types: list[ExposeType] = Field(default_factory=list)


class VirtualDatabaseSpec(BaseModel):
    """Desired state, written by users and never mutated by the operator."""

    model_config = _MODEL_CONFIG

    replicas: Annotated[int, Field(ge=0)] = 1
    expose: Expose | None = None
    expose_externally: bool | None = Field(None, alias="exposeExternally")
    env: list[EnvVar] = Field(default_factory=list)
    runtime: Runtime = Field(default_factory=Runtime)
    resources: Resources = Field(default_factory=Resources)
    datasources: list[DataSource] = Field(default_factory=list)
    jaeger: str | None = None
    build: BuildSpec = Field(default_factory=BuildSpec)

    @property
    def exposed_externally(self) -> bool:
        """True when a Route should publish the service."""
        if self.expose_externally:
            return True
        return self.expose is not None and ExposeType.ROUTE in self.expose.types

    @property
    def service_type(self) -> str:
        """Kubernetes Service type derived from the expose list."""
        if self.expose is not None:
            if ExposeType.LOAD_BALANCER in self.expose.types:
                return "LoadBalancer"
            if ExposeType.NODE_PORT in self.expose.types:
                return "NodePort"
        return "ClusterIP"


SUPPORTED_RUNTIME = "springboot"


def spec_errors(spec: VirtualDatabaseSpec) -> list[str]:
    """Problems that make a spec unbuildable until the user edits it.

    Parsing is lenient so that an invalid object can still be reconciled into
    the Error phase with a message instead of failing every read.
    """
    errors: list[str] = []
    build = spec.build
    source = build.source

    if not build.has_source:
        errors.append(
            "No build source defined: set build.source.ddl, build.source.maven or build.git"
        )
    if spec.runtime.type != SUPPORTED_RUNTIME:
        errors.append(f"runtime type must be {SUPPORTED_RUNTIME}, got {spec.runtime.type!r}")
    if source.ddl is not None and len(source.ddl.encode("utf-8")) > MAX_INLINE_DDL_BYTES:
        errors.append(f"build.source.ddl exceeds maximum size of {MAX_INLINE_DDL_BYTES} bytes")
    if source.maven and len(source.maven.split(":")) < 3:
        errors.append("build.source.maven must be a groupId:artifactId:version coordinate")
    for change in build.source_file_changes:
        path = change.relative_path
        if path.startswith("/") or ".." in path.split("/"):
            errors.append(f"sourceFileChanges path {path!r} must stay inside the source tree")

    return errors


def env_conflicts(spec: VirtualDatabaseSpec) -> list[str]:
    """Environment entries that set both a literal value and a reference."""
    entries = [("env", e) for e in spec.env]
    entries.extend(("build.env", e) for e in spec.build.env)
    for datasource in spec.datasources:
        entries.extend((f"datasource {datasource.name}", p) for p in datasource.properties)
    return [
        f"{where} {env.name} cannot set both value and valueFrom"
        for where, env in entries
        if env.value is not None and env.value_from is not None
    ]


class VirtualDatabaseStatus(BaseModel):
    """Observed state, owned exclusively by the reconciliation engine."""

    model_config = _MODEL_CONFIG

    phase: Phase = Phase.INITIAL
    digest: str = ""
    config_digest: str = Field("", alias="configdigest")
    failure: str = ""
    version: str = ""
    route: str = ""
    cache_store: str = Field("", alias="cachestore")
    last_transition_time: str = Field("", alias="lastTransitionTime")


class ObjectMeta(BaseModel):
    model_config = _MODEL_CONFIG

    name: Annotated[str, Field(min_length=1)]
    namespace: str = "default"
    uid: str = ""
    resource_version: str = Field("", alias="resourceVersion")
    generation: int = 0
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    deletion_timestamp: str | None = Field(None, alias="deletionTimestamp")


class VirtualDatabase(BaseModel):
    """The VirtualDatabase custom resource."""

    model_config = _MODEL_CONFIG

    api_version: str = Field(f"{CRD_GROUP}/{CRD_VERSION}", alias="apiVersion")
    kind: str = CRD_KIND
    metadata: ObjectMeta
    spec: VirtualDatabaseSpec = Field(default_factory=VirtualDatabaseSpec)
    status: VirtualDatabaseStatus = Field(default_factory=VirtualDatabaseStatus)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(namespace=self.metadata.namespace, name=self.metadata.name)

    @property
    def being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def owner_reference(self) -> dict[str, Any]:
        """Owner reference stamped onto every object created for this resource."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.metadata.name,
            "uid": self.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def to_k8s(self) -> dict[str, Any]:
        """Convert to the camelCase dictionary the API server expects."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    @classmethod
    def from_k8s(cls, obj: dict[str, Any]) -> VirtualDatabase:
        """Parse an object returned by the API server."""
        return cls.model_validate(obj)
