"""Phase handlers and the ordered action registry.

Each action owns one or more phases. ``can_handle`` is a pure function of
the current phase, and at most one action may claim any phase; the engine
refuses to make progress if that ever stops being true.

Handlers mutate the target resource in place and may perform at most one
externally visible side effect before returning. They never call each
other: moving to the next phase is always a persisted write followed by a
new pass.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from . import manifests
from .builds import ArtifactPackager, BuildPhase, BuildTrigger, artifact_files
from .config import Config
from .digest import ConfigResolutionError, compute_config_digest, compute_spec_digest
from .keystore import KeystoreBuilder, KeystoreError
from .models import Phase, VirtualDatabase, env_conflicts, spec_errors
from .polling import wait_for_value
from .store import ConfigResolver, StoreError
from .workloads import (
    CacheStoreProvisioner,
    CacheStoreUnavailable,
    MetricsRegistrar,
    Workloads,
)

logger = logging.getLogger(__name__)


class ActionName(str, Enum):
    """Closed set of actions, in dispatch order."""

    INITIALIZE = "initialize"
    CACHE_STORE = "cachestore"
    BUILDER_IMAGE = "builder-image"
    SERVICE_IMAGE = "service-image"
    CREATE_SERVICE = "create-service"
    CREATE_CERTIFICATE = "create-certificate"
    DEPLOYMENT = "deployment"
    UPDATE = "update"


class ActionError(Exception):
    """Wraps a handler failure with the action and phase it happened in."""

    def __init__(self, action: ActionName, phase: Phase, cause: Exception) -> None:
        super().__init__(f"action {action.value} failed in phase {phase.value!r}: {cause}")
        self.action = action
        self.phase = phase
        self.cause = cause


def utcnow() -> datetime:
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@dataclass
class ActionContext:
    """Collaborators available to every handler."""

    config: Config
    resolver: ConfigResolver
    builds: BuildTrigger
    packager: ArtifactPackager
    workloads: Workloads
    keystores: KeystoreBuilder
    cache_store: CacheStoreProvisioner | None = None
    metrics: MetricsRegistrar | None = None
    clock: Callable[[], datetime] = field(default=utcnow)


class Action:
    """Base class: a named predicate/handler pair over a set of phases."""

    name: ActionName
    phases: frozenset[Phase] = frozenset()

    def can_handle(self, vdb: VirtualDatabase) -> bool:
        return vdb.status.phase in self.phases

    async def handle(self, ctx: ActionContext, vdb: VirtualDatabase) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<Action {self.name.value}>"


def _log_transition(vdb: VirtualDatabase, action: Action, reason: str) -> None:
    logger.info(
        reason,
        extra={
            "resource": str(vdb.key),
            "action": action.name.value,
            "phase": vdb.status.phase.value,
        },
    )


class InitializeAction(Action):
    """Validates a new (or reset) resource and records its fingerprints."""

    name = ActionName.INITIALIZE
    phases = frozenset({Phase.INITIAL})

    async def handle(self, ctx: ActionContext, vdb: VirtualDatabase) -> None:
        status = vdb.status
        digest = compute_spec_digest(vdb.spec, ctx.config.operator_version)
        errors = spec_errors(vdb.spec)
        if errors:
            # The digest lets the next edit of the build inputs reset the pipeline
            status.digest = digest
            status.phase = Phase.ERROR
            status.failure = "; ".join(errors)
            _log_transition(vdb, self, "Resource spec rejected")
            return

        conflicts = env_conflicts(vdb.spec)
        if conflicts:
            status.failure = "; ".join(conflicts)
            return

        try:
            config_digest = await compute_config_digest(vdb, ctx.resolver)
        except ConfigResolutionError as e:
            # Parked in place until the referenced value exists
            status.failure = str(e)
            return

        status.digest = digest
        status.config_digest = config_digest
        explicit_version = vdb.spec.build.source.version
        if explicit_version:
            status.version = explicit_version
        elif not status.version:
            status.version = "1"
        status.failure = ""
        status.phase = Phase.CREATE_CACHE_STORE
        _log_transition(vdb, self, "Resource initialized")


class CacheStoreAction(Action):
    name = ActionName.CACHE_STORE
    phases = frozenset({Phase.CREATE_CACHE_STORE})

    async def handle(self, ctx: ActionContext, vdb: VirtualDatabase) -> None:
        if ctx.config.disable_cache_store or ctx.cache_store is None:
            logger.info("Cache store disabled", extra={"resource": str(vdb.key)})
        else:
            try:
                vdb.status.cache_store = await ctx.cache_store.ensure(vdb)
            except CacheStoreUnavailable as e:
                logger.info(
                    "Cache store not available, continuing without it",
                    extra={"resource": str(vdb.key), "reason": str(e)},
                )
        vdb.status.phase = Phase.S2I_READY


def _apply_build_phase(
    vdb: VirtualDatabase,
    build_phase: BuildPhase,
    finished: Phase,
    failed: Phase,
) -> None:
    if build_phase.succeeded:
        vdb.status.phase = finished
    elif build_phase.failed:
        vdb.status.phase = failed
        logger.warning(
            "Image build failed",
            extra={"resource": str(vdb.key), "build_phase": build_phase.value},
        )


class BuilderImageAction(Action):
    """Creates the base builder image, then monitors its build."""

    name = ActionName.BUILDER_IMAGE
    phases = frozenset({Phase.S2I_READY, Phase.BUILDER_IMAGE})

    async def handle(self, ctx: ActionContext, vdb: VirtualDatabase) -> None:
        namespace = vdb.metadata.namespace
        name = manifests.builder_name(vdb)

        if vdb.status.phase is Phase.S2I_READY:
            manifest = manifests.builder_build_config(vdb, ctx.config.builder_image)
            last_version = await ctx.builds.ensure_build_definition(manifest)
            if last_version == 0:
                await ctx.builds.trigger_build(namespace, name)
            vdb.status.phase = Phase.BUILDER_IMAGE
            _log_transition(vdb, self, "Builder image build started")
            return

        build_phase = await ctx.builds.poll_build_phase(namespace, name)
        if build_phase is None:
            await ctx.builds.trigger_build(namespace, name)
            return
        _apply_build_phase(
            vdb, build_phase, Phase.BUILDER_IMAGE_FINISHED, Phase.BUILDER_IMAGE_FAILED
        )


class ServiceImageAction(Action):
    """Packages the artifacts, starts the service image build, then monitors it."""

    name = ActionName.SERVICE_IMAGE
    phases = frozenset({Phase.BUILDER_IMAGE_FINISHED, Phase.SERVICE_IMAGE})

    async def handle(self, ctx: ActionContext, vdb: VirtualDatabase) -> None:
        namespace, name = vdb.metadata.namespace, vdb.metadata.name

        if vdb.status.phase is Phase.BUILDER_IMAGE_FINISHED:
            await ctx.builds.ensure_build_definition(manifests.service_build_config(vdb))
            await self._trigger(ctx, vdb)
            vdb.status.phase = Phase.SERVICE_IMAGE
            _log_transition(vdb, self, "Service image build started")
            return

        build_phase = await ctx.builds.poll_build_phase(namespace, name)
        if build_phase is None:
            await self._trigger(ctx, vdb)
            return
        _apply_build_phase(
            vdb, build_phase, Phase.SERVICE_IMAGE_FINISHED, Phase.SERVICE_IMAGE_FAILED
        )

    @staticmethod
    async def _trigger(ctx: ActionContext, vdb: VirtualDatabase) -> None:
        payload = ctx.packager.package(artifact_files(vdb))
        await ctx.builds.trigger_build(vdb.metadata.namespace, vdb.metadata.name, payload)


class CreateServiceAction(Action):
    """Exposes the service and records its external URL."""

    name = ActionName.CREATE_SERVICE
    phases = frozenset({Phase.SERVICE_IMAGE_FINISHED})

    async def handle(self, ctx: ActionContext, vdb: VirtualDatabase) -> None:
        status = vdb.status
        try:
            await ctx.workloads.ensure_service(vdb)
        except StoreError as e:
            status.phase = Phase.ERROR
            status.failure = f"Failed to create Service: {e}"
            return

        if vdb.spec.exposed_externally:
            try:
                await ctx.workloads.ensure_route(vdb)
            except StoreError as e:
                status.phase = Phase.ERROR
                status.failure = f"Failed to create route: {e}"
                return

            host = await wait_for_value(
                lambda: ctx.workloads.get_route_host(vdb),
                timeout_seconds=ctx.config.route_wait_timeout_seconds,
                description="route host",
            )
            if host:
                status.route = manifests.route_url(host)

        status.phase = Phase.SERVICE_CREATED
        _log_transition(vdb, self, "Service created")


class CreateCertificateAction(Action):
    """Turns the issued serving certificate into keystore/truststore secrets."""

    name = ActionName.CREATE_CERTIFICATE
    phases = frozenset({Phase.SERVICE_CREATED})

    async def handle(self, ctx: ActionContext, vdb: VirtualDatabase) -> None:
        namespace, name = vdb.metadata.namespace, vdb.metadata.name
        status = vdb.status

        existing = await ctx.workloads.get_secret(namespace, manifests.keystore_secret_name(vdb))
        if existing is not None:
            status.failure = ""
            status.phase = Phase.KEYSTORE_CREATED
            return

        cert = await ctx.workloads.get_secret(namespace, name)
        if cert is None or "tls.crt" not in cert or "tls.key" not in cert:
            status.failure = f"Serving certificate secret {name} has not been issued yet"
            return

        try:
            bundle = ctx.keystores.build(
                cert["tls.crt"], cert["tls.key"], manifests.KEYSTORE_PASSWORD
            )
        except KeystoreError as e:
            status.phase = Phase.ERROR
            status.failure = str(e)
            return

        await ctx.workloads.ensure_secret(
            manifests.keystore_secret(vdb, bundle.keystore, bundle.truststore, bundle.password)
        )
        status.failure = ""
        status.phase = Phase.KEYSTORE_CREATED
        _log_transition(vdb, self, "Keystore created")


class DeploymentAction(Action):
    """Creates the deployment, then waits for it to become available."""

    name = ActionName.DEPLOYMENT
    phases = frozenset({Phase.KEYSTORE_CREATED, Phase.DEPLOYING})

    async def handle(self, ctx: ActionContext, vdb: VirtualDatabase) -> None:
        status = vdb.status

        if status.phase is Phase.KEYSTORE_CREATED:
            existing = await ctx.workloads.get_deployment(vdb)
            if existing is None:
                await ctx.workloads.ensure_deployment(vdb, status.config_digest)
            else:
                # Redeploy: the new spec digest on the pod template rolls the new image
                await ctx.workloads.update_deployment(
                    vdb, vdb.spec.replicas, manifests.render_env(vdb), status.config_digest
                )
            status.phase = Phase.DEPLOYING
            _log_transition(vdb, self, "Deployment rolled out")
            return

        state = await ctx.workloads.get_deployment(vdb)
        if state is None:
            await ctx.workloads.ensure_deployment(vdb, status.config_digest)
            return

        if state.available:
            if ctx.metrics is not None:
                try:
                    await ctx.metrics.ensure_monitor(vdb)
                except StoreError as e:
                    logger.warning(
                        "Metrics registration failed",
                        extra={"resource": str(vdb.key), "error": str(e)},
                    )
            status.failure = ""
            status.phase = Phase.RUNNING
            _log_transition(vdb, self, "Deployment available")
            return

        if state.stalled:
            status.phase = Phase.ERROR
            status.failure = "Deployment stalled: progress deadline exceeded"
            return

        entered = parse_timestamp(status.last_transition_time)
        if entered is not None:
            elapsed = (ctx.clock() - entered).total_seconds()
            if elapsed > ctx.config.deployment_timeout_seconds:
                status.phase = Phase.ERROR
                status.failure = (
                    "Deployment did not become available within "
                    f"{ctx.config.deployment_timeout_seconds} seconds"
                )


class UpdateAction(Action):
    """Keeps a running deployment in line with the spec and its referenced config.

    Re-entrant: it runs on every pass while the resource is Running.
    """

    name = ActionName.UPDATE
    phases = frozenset({Phase.RUNNING})

    async def handle(self, ctx: ActionContext, vdb: VirtualDatabase) -> None:
        status = vdb.status

        state = await ctx.workloads.get_deployment(vdb)
        if state is None:
            logger.warning("Deployment missing, recreating", extra={"resource": str(vdb.key)})
            await ctx.workloads.ensure_deployment(vdb, status.config_digest)
            return

        try:
            config_digest = await compute_config_digest(vdb, ctx.resolver)
        except ConfigResolutionError as e:
            status.failure = str(e)
            return
        status.failure = ""

        desired_env = manifests.render_env(vdb)
        drift = {
            "config": config_digest != status.config_digest
            or config_digest != state.config_digest,
            "image": state.spec_digest != status.digest,
            "replicas": state.replicas != vdb.spec.replicas,
            "env": state.env != desired_env,
        }
        if any(drift.values()):
            logger.info(
                "Running deployment drifted, updating",
                extra={
                    "resource": str(vdb.key),
                    "drift": [k for k, v in drift.items() if v],
                },
            )
            await ctx.workloads.update_deployment(
                vdb, vdb.spec.replicas, desired_env, config_digest
            )
            status.config_digest = config_digest
            return

        if vdb.spec.exposed_externally and not status.route:
            host = await ctx.workloads.get_route_host(vdb)
            if host:
                status.route = manifests.route_url(host)


def default_actions() -> list[Action]:
    """The fixed action list, in dispatch order."""
    return [
        InitializeAction(),
        CacheStoreAction(),
        BuilderImageAction(),
        ServiceImageAction(),
        CreateServiceAction(),
        CreateCertificateAction(),
        DeploymentAction(),
        UpdateAction(),
    ]


class ActionRegistry:
    """Ordered action list; the first action whose predicate matches wins."""

    def __init__(self, actions: Sequence[Action] | None = None) -> None:
        self._actions: tuple[Action, ...] = tuple(
            actions if actions is not None else default_actions()
        )

    @property
    def actions(self) -> tuple[Action, ...]:
        return self._actions

    def matching(self, vdb: VirtualDatabase) -> list[Action]:
        """Every action claiming the resource's current phase."""
        return [action for action in self._actions if action.can_handle(vdb)]

    def resolve(self, vdb: VirtualDatabase) -> Action | None:
        for action in self._actions:
            if action.can_handle(vdb):
                return action
        return None
