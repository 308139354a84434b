"""Resource factories for tests."""

from __future__ import annotations

from typing import Any

from vdb_operator.models import VirtualDatabase

SAMPLE_DDL = "CREATE DATABASE a OPTIONS (ANNOTATION 'sample');\nUSE DATABASE a;"


def make_vdb(
    name: str = "portfolio",
    namespace: str = "dev",
    ddl: str | None = SAMPLE_DDL,
    status: dict[str, Any] | None = None,
    **spec: Any,
) -> VirtualDatabase:
    """Build a VirtualDatabase from wire-format spec fragments."""
    body: dict[str, Any] = dict(spec)
    if ddl is not None:
        body.setdefault("build", {}).setdefault("source", {})["ddl"] = ddl
    return VirtualDatabase.model_validate(
        {
            "apiVersion": "teiid.io/v1alpha1",
            "kind": "VirtualDatabase",
            "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}"},
            "spec": body,
            "status": status or {},
        }
    )
