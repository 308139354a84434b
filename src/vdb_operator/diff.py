"""Structural comparison of observed and target resources.

The engine only writes when something actually changed. Comparison is done
on the serialized form with semantic equivalence for empty values:
``[]``, ``{}``, ``""`` and a missing key all mean "unset", so a round trip
through the API server (which drops empty fields) never looks like drift.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .models import VirtualDatabase

COMPARED_SECTIONS = ("spec", "status")


def normalize_empty(value: Any) -> Any:
    """Normalize empty values to None, recursively."""
    if isinstance(value, dict):
        normalized = {k: normalize_empty(v) for k, v in value.items()}
        normalized = {k: v for k, v in normalized.items() if v is not None}
        return normalized or None
    if isinstance(value, list):
        items = [normalize_empty(v) for v in value]
        return items or None
    if isinstance(value, str) and value == "":
        return None
    return value


@dataclass
class ResourceDiff:
    """Dotted paths whose values differ between two resources."""

    changed_paths: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changed_paths)

    @property
    def status_only(self) -> bool:
        return all(path.startswith("status") for path in self.changed_paths)


def _collect(before: Any, after: Any, path: str, out: list[str]) -> None:
    if isinstance(before, dict) and isinstance(after, dict):
        for key in sorted(set(before) | set(after)):
            _collect(before.get(key), after.get(key), f"{path}.{key}", out)
        return
    if before != after:
        out.append(path)


def diff_resources(observed: VirtualDatabase, target: VirtualDatabase) -> ResourceDiff:
    """Compare the spec and status sections of two resources."""
    before = observed.to_k8s()
    after = target.to_k8s()
    changed: list[str] = []
    for section in COMPARED_SECTIONS:
        _collect(
            normalize_empty(before.get(section)),
            normalize_empty(after.get(section)),
            section,
            changed,
        )
    return ResourceDiff(changed_paths=changed)
