"""Mock build system with controllable build phases."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from vdb_operator.builds import BuildError, BuildPhase


@dataclass
class MockBuild:
    """One started build."""

    name: str
    number: int
    phase: BuildPhase = BuildPhase.NEW
    payload: bytes | None = None


class MockBuildTrigger:
    """BuildTrigger keeping definitions and builds in memory."""

    def __init__(self) -> None:
        self.definitions: dict[tuple[str, str], dict[str, Any]] = {}
        self.builds: dict[tuple[str, str], list[MockBuild]] = {}
        self.fail_trigger = False

    async def ensure_build_definition(self, manifest: dict[str, Any]) -> int:
        key = (manifest["metadata"]["namespace"], manifest["metadata"]["name"])
        self.definitions[key] = copy.deepcopy(manifest)
        return len(self.builds.get(key, []))

    async def trigger_build(
        self, namespace: str, name: str, payload: bytes | None = None
    ) -> str:
        if self.fail_trigger:
            raise BuildError(f"Failed to start build {namespace}/{name}: Forbidden")
        history = self.builds.setdefault((namespace, name), [])
        number = len(history) + 1
        build = MockBuild(name=f"{name}-{number}", number=number, payload=payload)
        history.append(build)
        return build.name

    async def poll_build_phase(self, namespace: str, name: str) -> BuildPhase | None:
        history = self.builds.get((namespace, name))
        if not history:
            return None
        return max(history, key=lambda b: b.number).phase

    # Test helpers

    def trigger_count(self, namespace: str, name: str) -> int:
        return len(self.builds.get((namespace, name), []))

    def latest(self, namespace: str, name: str) -> MockBuild:
        return self.builds[(namespace, name)][-1]

    def set_phase(self, namespace: str, name: str, phase: BuildPhase) -> None:
        """Move the latest build of a definition to ``phase``."""
        self.latest(namespace, name).phase = phase
