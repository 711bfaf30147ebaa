"""Convergence step contract.

A convergence step brings one sub-resource of the cluster (credentials,
topology) into agreement with the defaulted cluster spec. Every step
must be:

- Idempotent: applying twice to an unchanged record changes nothing the
  second time and does not fail.
- Self-classifying: failures carry a StepErrorKind telling the caller
  whether a retry as-is can succeed. The kind is never inferred from
  message text.
- Resumable: if a step fails partway, every sub-change already applied is
  itself idempotent so the next attempt picks up where this one stopped.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

if TYPE_CHECKING:
    from .context import ReconcileContext
    from .models import MySQLCluster

# HTTP statuses where the same request may succeed later
TRANSIENT_HTTP_STATUSES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


class StepErrorKind(str, Enum):
    """Retry classification of a step failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class StepError(Exception):
    """Base class for convergence step failures."""

    kind: StepErrorKind = StepErrorKind.TRANSIENT

    def __init__(self, message: str, *, kind: StepErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind is StepErrorKind.TRANSIENT


class TransientStepError(StepError):
    """Failure that may clear on its own (timeouts, conflicts, outages)."""

    kind = StepErrorKind.TRANSIENT


class PermanentStepError(StepError):
    """Failure that needs a cluster spec or environment change to clear."""

    kind = StepErrorKind.PERMANENT


class StepCancelled(StepError):
    """Raised by a step that observed the cancellation signal."""

    kind = StepErrorKind.TRANSIENT


def classify_api_error(exc: Exception) -> StepErrorKind:
    """Classify a Kubernetes client failure by status code or exception type."""
    if isinstance(exc, ApiException):
        if exc.status is None or exc.status in TRANSIENT_HTTP_STATUSES:
            return StepErrorKind.TRANSIENT
        return StepErrorKind.PERMANENT
    if isinstance(exc, (Urllib3HTTPError, ConnectionError, TimeoutError)):
        return StepErrorKind.TRANSIENT
    return StepErrorKind.PERMANENT


def step_error_from(exc: Exception, action: str) -> StepError:
    """Wrap a client failure as a classified StepError."""
    kind = classify_api_error(exc)
    detail = f"{action}: {exc.reason}" if isinstance(exc, ApiException) else f"{action}: {exc}"
    if kind is StepErrorKind.TRANSIENT:
        return TransientStepError(detail)
    return PermanentStepError(detail)


class ConvergenceStep(ABC):
    """Abstract base class for convergence steps."""

    #: Stable step name used in error context and logs
    name: str = ""

    @abstractmethod
    async def apply(self, cluster: MySQLCluster, ctx: ReconcileContext) -> None:
        """Converge one sub-resource toward the defaulted cluster spec.

        Args:
            cluster: Defaulted snapshot of the desired-state record. Must not
                be mutated.
            ctx: Reconcile context carrying the logger and cancellation signal.

        Raises:
            StepError: Classified failure.
        """

    def check_cancelled(self, ctx: ReconcileContext) -> None:
        """Stop before the next sub-change once cancellation is signalled."""
        if ctx.cancelled:
            raise StepCancelled(f"{self.name} cancelled")
