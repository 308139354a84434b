"""Audit records for persisted state transitions.

Every status write produced by the engine is logged as one structured record
answering:
- "Which phase was the resource in, and which did it move to?"
- "Which action made the change, and was it a redeploy?"
- "What version of the operator was running?"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
OPERATOR_VERSION = os.environ.get("OPERATOR_VERSION", "dev")


@dataclass
class TransitionProvenance:
    """Provenance record for one persisted reconcile pass."""

    # Timestamp
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    resource: str = ""
    resource_version: str = ""
    operator_version: str = OPERATOR_VERSION
    operator_instance_id: str = ""  # Pod name if available

    # Outcome
    action: str = ""
    phase_before: str = ""
    phase_after: str = ""
    redeploy: bool = False
    digest: str = ""
    changed_paths: list[str] = field(default_factory=list)

    # Error tracking
    error: str | None = None
    error_type: str | None = None

    @property
    def phase_changed(self) -> bool:
        return self.phase_before != self.phase_after

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs transition records to the structured logger."""

    def __init__(self) -> None:
        self._instance_id = os.environ.get("POD_NAME", "")

    def create_provenance(
        self,
        resource: str,
        resource_version: str,
        phase_before: str,
    ) -> TransitionProvenance:
        return TransitionProvenance(
            resource=resource,
            resource_version=resource_version,
            operator_version=OPERATOR_VERSION,
            operator_instance_id=self._instance_id,
            phase_before=phase_before,
        )

    def log_provenance(self, provenance: TransitionProvenance) -> None:
        """Log a completed transition record.

        Args:
            provenance: Completed provenance record.
        """
        log_level = logging.ERROR if provenance.error else logging.INFO
        logger.log(
            log_level,
            "Transition provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "resource": provenance.resource,
                "action": provenance.action,
                "phase_before": provenance.phase_before,
                "phase_after": provenance.phase_after,
                "redeploy": provenance.redeploy,
                "operator_version": provenance.operator_version,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
