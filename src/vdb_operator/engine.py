"""Reconciliation engine: one level-triggered pass per resource key.

A pass:
1. Fetches the current resource (absence means it was deleted)
2. Detects spec drift via the spec digest and resets the pipeline if needed
3. Otherwise dispatches the single action owning the current phase
4. Persists the status only if it changed, guarded by resourceVersion

Progress is strictly one persisted transition at a time. The write itself
triggers the next pass through the watch, so a crash between passes loses
nothing: the next pass simply re-derives what to do from the stored phase.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .actions import (
    ActionContext,
    ActionError,
    ActionRegistry,
    format_timestamp,
)
from .diff import ResourceDiff, diff_resources
from .digest import compute_spec_digest
from .models import Phase, ResourceKey, VirtualDatabase
from .provenance import get_provenance_logger
from .store import ConflictError, NotFoundError, ResourceStore, StoreError

logger = logging.getLogger(__name__)

DeletionHook = Callable[[ResourceKey], Awaitable[None]]


@dataclass
class ReconcileResult:
    """Result of a single reconcile pass."""

    key: ResourceKey
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    requeue_after: float | None = None
    error: Exception | None = None
    action: str | None = None
    phase_before: Phase | None = None
    phase_after: Phase | None = None
    persisted: bool = False
    redeploy: bool = False
    deleted: bool = False

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass completed without error."""
        return self.error is None

    @property
    def done(self) -> bool:
        """True when nothing needs to be scheduled for this key."""
        return self.error is None and self.requeue_after is None


def next_version(prior: str) -> str | None:
    """Increment a numeric version; None for versions managed elsewhere."""
    if prior.isdigit():
        return str(int(prior) + 1)
    return None


class ReconcileEngine:
    """Drives one VirtualDatabase through its phases, one pass at a time."""

    def __init__(
        self,
        store: ResourceStore,
        context: ActionContext,
        registry: ActionRegistry | None = None,
        deletion_hooks: Sequence[DeletionHook] = (),
    ) -> None:
        self._store = store
        self._context = context
        self._registry = registry or ActionRegistry()
        self._deletion_hooks = list(deletion_hooks)
        self._provenance = get_provenance_logger()

    @property
    def interval(self) -> float:
        return float(self._context.config.reconcile_interval_seconds)

    def add_deletion_hook(self, hook: DeletionHook) -> None:
        self._deletion_hooks.append(hook)

    async def reconcile(self, key: ResourceKey) -> ReconcileResult:
        """Run one pass for ``key``.

        Store failures are reported in the result rather than raised, so the
        caller can retry with backoff. Cancellation propagates.
        """
        result = ReconcileResult(key=key)
        try:
            await self._reconcile_once(key, result)
        except StoreError as e:
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)
            self._log_result(result)
        return result

    async def _reconcile_once(self, key: ResourceKey, result: ReconcileResult) -> None:
        try:
            observed = await self._store.get(key)
        except NotFoundError:
            logger.info("Resource no longer exists", extra={"resource": str(key)})
            result.deleted = True
            for hook in self._deletion_hooks:
                await hook(key)
            return

        result.phase_before = observed.status.phase
        result.phase_after = observed.status.phase
        target = observed.model_copy(deep=True)

        if observed.being_deleted:
            if observed.status.phase is not Phase.DELETING:
                target.status.phase = Phase.DELETING
                await self._persist(observed, target, result, diff_resources(observed, target))
            return

        digest = compute_spec_digest(observed.spec, self._context.config.operator_version)
        if observed.status.digest and observed.status.digest != digest:
            self._reset_for_redeploy(target, digest)
            result.redeploy = True
            await self._persist(observed, target, result, diff_resources(observed, target))
            return

        matches = self._registry.matching(target)
        if not matches:
            result.requeue_after = self.interval
            return
        if len(matches) > 1:
            logger.error(
                "Multiple actions claim the same phase, refusing to progress",
                extra={
                    "resource": str(key),
                    "phase": observed.status.phase.value,
                    "actions": [a.name.value for a in matches],
                },
            )
            result.requeue_after = self.interval
            return

        action = matches[0]
        result.action = action.name.value
        action_error: ActionError | None = None
        try:
            await action.handle(self._context, target)
        except Exception as e:
            action_error = ActionError(action.name, observed.status.phase, e)
            logger.error(
                "Action failed",
                extra={
                    "resource": str(key),
                    "action": action.name.value,
                    "phase": observed.status.phase.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )

        diff = diff_resources(observed, target)
        if diff.changed:
            await self._persist(observed, target, result, diff)
            if result.error is None:
                result.error = action_error
            return

        result.error = action_error
        result.requeue_after = self.interval

    def _reset_for_redeploy(self, target: VirtualDatabase, digest: str) -> None:
        """Send a resource whose build inputs changed back to the start of the pipeline."""
        status = target.status
        source = target.spec.build.source
        logger.info(
            "Build inputs changed, redeploying",
            extra={
                "resource": str(target.key),
                "phase": status.phase.value,
                "old_digest": status.digest,
                "new_digest": digest,
            },
        )
        status.phase = Phase.INITIAL
        status.digest = digest
        status.failure = ""

        if source.version:
            status.version = source.version
        elif source.ddl and status.version:
            bumped = next_version(status.version)
            if bumped is None:
                logger.info(
                    "Version is not numeric, leaving it unchanged",
                    extra={"resource": str(target.key), "version": status.version},
                )
            else:
                status.version = bumped

    async def _persist(
        self,
        observed: VirtualDatabase,
        target: VirtualDatabase,
        result: ReconcileResult,
        diff: ResourceDiff,
    ) -> None:
        if target.status.phase != observed.status.phase:
            target.status.last_transition_time = format_timestamp(self._context.clock())

        provenance = self._provenance.create_provenance(
            resource=str(observed.key),
            resource_version=observed.metadata.resource_version,
            phase_before=observed.status.phase.value,
        )
        provenance.action = result.action or ""
        provenance.phase_after = target.status.phase.value
        provenance.redeploy = result.redeploy
        provenance.digest = target.status.digest
        provenance.changed_paths = diff.changed_paths

        try:
            await self._store.update_status(target)
        except ConflictError as e:
            # Someone else wrote first; the next pass re-reads and starts over
            logger.info(
                "Status write conflicted, will retry",
                extra={"resource": str(observed.key), "error": str(e)},
            )
            result.error = e
            return

        result.persisted = True
        result.phase_after = target.status.phase
        self._provenance.log_provenance(provenance)

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconcile result with structured data."""
        extra: dict[str, Any] = {
            "resource": str(result.key),
            "duration_seconds": result.duration_seconds,
            "action": result.action,
            "phase_before": result.phase_before.value if result.phase_before is not None else None,
            "phase_after": result.phase_after.value if result.phase_after is not None else None,
            "persisted": result.persisted,
            "redeploy": result.redeploy,
        }
        if result.requeue_after is not None:
            extra["requeue_after"] = result.requeue_after

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.warning("Reconcile pass failed", extra=extra)
        elif result.persisted:
            logger.info("Reconcile pass persisted", extra=extra)
        else:
            logger.debug("Reconcile pass result", extra=extra)
