"""Reconcile provenance tracking for audit.

Every reconcile invocation produces one provenance record that answers:
- "Which cluster generation was being converged?"
- "Which steps converged, failed or never ran?"
- "What version of the operator was running?"

Records are emitted as structured JSON log entries and are never written
back to the custom resource.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import DEFAULT_OPERATOR_VERSION

logger = logging.getLogger(__name__)


class StepOutcome(str, Enum):
    """Per-step result recorded in the audit record."""

    CONVERGED = "converged"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class ReconcileOutcome(str, Enum):
    CONVERGED = "converged"
    ABSENT = "absent"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ReconcileProvenance:
    """Complete provenance record for one reconcile invocation."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    namespace: str = ""
    cluster: str = ""
    generation: int | None = None
    operator_version: str = DEFAULT_OPERATOR_VERSION
    operator_instance_id: str = ""  # Pod name if available

    # Outcome
    outcome: ReconcileOutcome = ReconcileOutcome.CONVERGED
    steps: dict[str, StepOutcome] = field(default_factory=dict)
    stage: str | None = None

    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None
    retryable: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        result["outcome"] = self.outcome.value
        result["steps"] = {name: outcome.value for name, outcome in self.steps.items()}
        return result


class ProvenanceLogger:
    """Logs provenance records to the structured logger."""

    def __init__(self, operator_version: str = DEFAULT_OPERATOR_VERSION) -> None:
        self._operator_version = operator_version
        self._instance_id = os.environ.get("POD_NAME", "")

    def create_provenance(
        self, namespace: str, cluster: str, step_names: list[str]
    ) -> ReconcileProvenance:
        """Create a record with every step marked as skipped."""
        return ReconcileProvenance(
            namespace=namespace,
            cluster=cluster,
            operator_version=self._operator_version,
            operator_instance_id=self._instance_id,
            steps={name: StepOutcome.SKIPPED for name in step_names},
        )

    def log_provenance(self, provenance: ReconcileProvenance) -> None:
        """Log a completed provenance record.

        Failed invocations are logged at ERROR, everything else at INFO.
        Cancellation is not a failure.
        """
        log_level = logging.INFO
        if provenance.outcome is ReconcileOutcome.FAILED:
            log_level = logging.ERROR

        logger.log(
            log_level,
            "Reconcile provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "namespace": provenance.namespace,
                "cluster": provenance.cluster,
                "outcome": provenance.outcome.value,
                "stage": provenance.stage,
                "operator_version": provenance.operator_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )
