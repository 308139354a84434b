"""Image builds: artifact packaging and the OpenShift build API.

The engine only needs three things from the build system: make sure a build
definition exists, start a build, and report the phase of the latest build.
Everything OpenShift-specific stays in OpenShiftBuildTrigger.
"""

from __future__ import annotations

import io
import logging
import tarfile
from enum import Enum
from typing import Any, Protocol
from xml.sax.saxutils import escape

from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiException

from . import manifests
from .models import VirtualDatabase
from .store import NotFoundError, translate_api_error

logger = logging.getLogger(__name__)

BUILD_GROUP = "build.openshift.io"
IMAGE_GROUP = "image.openshift.io"
OPENSHIFT_API_VERSION = "v1"
BUILDCONFIG_PATH = "/apis/build.openshift.io/v1/namespaces/{namespace}/buildconfigs/{name}"

DDL_PATH = "src/main/resources/teiid.ddl"
OPENAPI_PATH = "src/main/resources/openapi.json"
POM_PATH = "pom.xml"
SETTINGS_PATH = "configuration/settings.xml"


class BuildPhase(str, Enum):
    """Phases reported by OpenShift builds."""

    NEW = "New"
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETE = "Complete"
    FAILED = "Failed"
    ERROR = "Error"
    CANCELLED = "Cancelled"

    @property
    def succeeded(self) -> bool:
        return self is BuildPhase.COMPLETE

    @property
    def failed(self) -> bool:
        return self in (BuildPhase.FAILED, BuildPhase.ERROR, BuildPhase.CANCELLED)


class BuildError(Exception):
    """Raised when a build cannot be defined or started."""

    pass


class BuildTrigger(Protocol):
    """Build system operations used by the image actions."""

    async def ensure_build_definition(self, manifest: dict[str, Any]) -> int:
        """Create or update a build definition; return its last build version."""
        ...

    async def trigger_build(
        self, namespace: str, name: str, payload: bytes | None = None
    ) -> str:
        """Start a build, uploading ``payload`` as binary input when given."""
        ...

    async def poll_build_phase(self, namespace: str, name: str) -> BuildPhase | None:
        """Phase of the latest build of a definition, None if it never ran."""
        ...


class ArtifactPackager(Protocol):
    def package(self, files: dict[str, str]) -> bytes: ...


class TarArtifactPackager:
    """Packs build inputs into an uncompressed tar archive.

    Entries are sorted and carry a fixed mtime so identical inputs produce
    identical archives.
    """

    def package(self, files: dict[str, str]) -> bytes:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as archive:
            for path in sorted(files):
                data = files[path].encode("utf-8")
                info = tarfile.TarInfo(name=path.lstrip("/"))
                info.size = len(data)
                info.mode = 0o644
                info.mtime = 0
                archive.addfile(info, io.BytesIO(data))
        return buffer.getvalue()


def render_pom(vdb: VirtualDatabase) -> str:
    """Minimal project descriptor declaring the artifact and its dependencies."""
    source = vdb.spec.build.source
    version = vdb.status.version or "1"
    dependencies = []
    for coordinate in ([source.maven] if source.maven else []) + source.dependencies:
        parts = coordinate.split(":")
        if len(parts) < 3:
            raise BuildError(f"dependency must be groupId:artifactId:version: {coordinate}")
        group, artifact, dep_version = parts[0], parts[1], parts[-1]
        dependencies.append(
            "    <dependency>\n"
            f"      <groupId>{escape(group)}</groupId>\n"
            f"      <artifactId>{escape(artifact)}</artifactId>\n"
            f"      <version>{escape(dep_version)}</version>\n"
            "    </dependency>"
        )
    body = "\n".join(dependencies)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<project>\n"
        "  <modelVersion>4.0.0</modelVersion>\n"
        "  <groupId>io.teiid.vdb</groupId>\n"
        f"  <artifactId>{escape(vdb.metadata.name)}</artifactId>\n"
        f"  <version>{escape(version)}</version>\n"
        f"  <dependencies>\n{body}\n  </dependencies>\n"
        "</project>\n"
    )


def render_settings(repositories: dict[str, str]) -> str:
    entries = "".join(
        f"        <repository><id>{escape(repo_id)}</id><url>{escape(url)}</url></repository>\n"
        for repo_id, url in sorted(repositories.items())
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<settings>\n"
        "  <profiles>\n"
        "    <profile>\n"
        "      <id>vdb</id>\n"
        f"      <repositories>\n{entries}      </repositories>\n"
        "    </profile>\n"
        "  </profiles>\n"
        "  <activeProfiles><activeProfile>vdb</activeProfile></activeProfiles>\n"
        "</settings>\n"
    )


def artifact_files(vdb: VirtualDatabase) -> dict[str, str]:
    """Files uploaded as binary input of the service image build."""
    source = vdb.spec.build.source
    files: dict[str, str] = {POM_PATH: render_pom(vdb)}
    if source.ddl:
        files[DDL_PATH] = source.ddl
    if source.openapi:
        files[OPENAPI_PATH] = source.openapi
    if source.maven_repositories:
        files[SETTINGS_PATH] = render_settings(source.maven_repositories)
    for change in vdb.spec.build.source_file_changes:
        files[change.relative_path] = change.contents
    return files


def latest_build(builds: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Pick the build with the highest build number annotation."""

    def number(build: dict[str, Any]) -> int:
        annotations = build.get("metadata", {}).get("annotations") or {}
        try:
            return int(annotations.get(manifests.BUILD_NUMBER_ANNOTATION, "0"))
        except ValueError:
            return 0

    if not builds:
        return None
    return max(builds, key=number)


class OpenShiftBuildTrigger:
    """BuildTrigger backed by the build.openshift.io API."""

    def __init__(self, api_client: client.ApiClient) -> None:
        self._api_client = api_client
        self._custom = client.CustomObjectsApi(api_client)

    async def ensure_image_stream(self, manifest: dict[str, Any]) -> None:
        namespace = manifest["metadata"]["namespace"]
        name = manifest["metadata"]["name"]
        try:
            await self._custom.get_namespaced_custom_object(
                IMAGE_GROUP, OPENSHIFT_API_VERSION, namespace, "imagestreams", name
            )
            return
        except ApiException as e:
            if e.status != 404:
                raise translate_api_error(e, f"get imagestream {namespace}/{name}") from e
        try:
            await self._custom.create_namespaced_custom_object(
                IMAGE_GROUP, OPENSHIFT_API_VERSION, namespace, "imagestreams", manifest
            )
        except ApiException as e:
            if e.status != 409:
                raise translate_api_error(e, f"create imagestream {namespace}/{name}") from e

    async def ensure_build_definition(self, manifest: dict[str, Any]) -> int:
        namespace = manifest["metadata"]["namespace"]
        name = manifest["metadata"]["name"]
        output = manifest["spec"]["output"]["to"]["name"].split(":")[0]
        await self.ensure_image_stream(
            {
                "apiVersion": f"{IMAGE_GROUP}/{OPENSHIFT_API_VERSION}",
                "kind": "ImageStream",
                "metadata": {**manifest["metadata"], "name": output},
                "spec": {"lookupPolicy": {"local": True}},
            }
        )

        try:
            existing = await self._custom.get_namespaced_custom_object(
                BUILD_GROUP, OPENSHIFT_API_VERSION, namespace, "buildconfigs", name
            )
        except ApiException as e:
            if e.status != 404:
                raise translate_api_error(e, f"get buildconfig {namespace}/{name}") from e
            existing = None

        try:
            if existing is None:
                logger.info(
                    "Creating build definition",
                    extra={"namespace": namespace, "object_name": name},
                )
                created = await self._custom.create_namespaced_custom_object(
                    BUILD_GROUP, OPENSHIFT_API_VERSION, namespace, "buildconfigs", manifest
                )
                return int(created.get("status", {}).get("lastVersion", 0))

            if existing.get("spec") != manifest["spec"]:
                body = {**manifest, "metadata": {**manifest["metadata"]}}
                body["metadata"]["resourceVersion"] = existing["metadata"]["resourceVersion"]
                await self._custom.replace_namespaced_custom_object(
                    BUILD_GROUP, OPENSHIFT_API_VERSION, namespace, "buildconfigs", name, body
                )
        except ApiException as e:
            raise translate_api_error(e, f"write buildconfig {namespace}/{name}") from e

        return int(existing.get("status", {}).get("lastVersion", 0))

    async def trigger_build(
        self, namespace: str, name: str, payload: bytes | None = None
    ) -> str:
        path_params = {"namespace": namespace, "name": name}
        try:
            if payload is None:
                body: Any = {
                    "kind": "BuildRequest",
                    "apiVersion": f"{BUILD_GROUP}/{OPENSHIFT_API_VERSION}",
                    "metadata": {"name": name},
                }
                result = await self._api_client.call_api(
                    BUILDCONFIG_PATH + "/instantiate",
                    "POST",
                    path_params=path_params,
                    header_params={
                        "Content-Type": "application/json",
                        "Accept": "application/json",
                    },
                    body=body,
                    auth_settings=["BearerToken"],
                    response_type="object",
                    _return_http_data_only=True,
                )
            else:
                result = await self._api_client.call_api(
                    BUILDCONFIG_PATH + "/instantiatebinary",
                    "POST",
                    path_params=path_params,
                    query_params=[("asFile", "archive.tar")],
                    header_params={
                        "Content-Type": "application/octet-stream",
                        "Accept": "application/json",
                    },
                    body=payload,
                    auth_settings=["BearerToken"],
                    response_type="object",
                    _return_http_data_only=True,
                )
        except ApiException as e:
            raise BuildError(f"Failed to start build {namespace}/{name}: {e.reason}") from e

        build_name = (result or {}).get("metadata", {}).get("name", "")
        logger.info("Build started", extra={"namespace": namespace, "build": build_name})
        return build_name

    async def poll_build_phase(self, namespace: str, name: str) -> BuildPhase | None:
        try:
            result = await self._custom.list_namespaced_custom_object(
                BUILD_GROUP,
                OPENSHIFT_API_VERSION,
                namespace,
                "builds",
                label_selector=f"buildconfig={name}",
            )
        except ApiException as e:
            error = translate_api_error(e, f"list builds {namespace}/{name}")
            if isinstance(error, NotFoundError):
                return None
            raise error from e

        build = latest_build(result.get("items", []))
        if build is None:
            return None
        phase = build.get("status", {}).get("phase", BuildPhase.NEW.value)
        try:
            return BuildPhase(phase)
        except ValueError:
            logger.warning("Unknown build phase", extra={"build_phase": phase})
            return BuildPhase.NEW
