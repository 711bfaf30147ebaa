"""Core reconciliation loop for PerconaServerForMySQL clusters.

One invocation converges one cluster identity:
1. Fetch the desired-state record from the store (absent means nothing to do)
2. Default and validate a private copy of the record
3. Run the convergence steps in order: secrets first, then topology
4. Stop at the first failure and raise it wrapped with its stage

The loop never retries. Every failure is raised as a ReconcileError that
states its stage and whether a retry as-is can succeed, and the trigger
subsystem decides when to call again (see requeue.py).
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from enum import Enum
from typing import Any

from .config import Config
from .context import ReconcileContext
from .defaults import check_and_set_defaults
from .models import MySQLCluster, ReconcileIdentity, SpecValidationError
from .provenance import ProvenanceLogger, ReconcileOutcome, ReconcileProvenance, StepOutcome
from .steps import ConvergenceStep, StepCancelled, StepError, TransientStepError
from .store import ClusterStore, StoreError


class Stage(str, Enum):
    """Stages of one reconcile invocation."""

    FETCH = "fetch"
    VALIDATION = "validation"
    SECRETS = "secrets"
    TOPOLOGY = "topology"


class ErrorKind(str, Enum):
    FETCH_FAILURE = "fetch_failure"
    VALIDATION_FAILURE = "validation_failure"
    STEP_FAILURE = "step_failure"
    CANCELLED = "cancelled"


class ReconcileError(Exception):
    """Base class for reconcile failures.

    Attributes:
        identity: The cluster being reconciled.
        stage: Stage or step name the failure happened in.
        cause: The underlying error, also chained as __cause__.
    """

    kind: ErrorKind

    def __init__(
        self,
        identity: ReconcileIdentity,
        stage: str,
        message: str,
        *,
        cause: BaseException | None = None,
    ) -> None:
        stage_name = stage.value if isinstance(stage, Stage) else stage
        super().__init__(f"{identity.key}: {stage_name}: {message}")
        self.identity = identity
        self.stage = stage_name
        self.cause = cause

    @property
    def retryable(self) -> bool:
        """Whether re-invoking with the same record can succeed."""
        return True


class FetchFailure(ReconcileError):
    """The store failed for a reason other than absence."""

    kind = ErrorKind.FETCH_FAILURE

    def __init__(self, identity: ReconcileIdentity, cause: StoreError) -> None:
        super().__init__(identity, Stage.FETCH, str(cause), cause=cause)


class ValidationFailure(ReconcileError):
    """The record is structurally invalid. Retrying needs a spec change."""

    kind = ErrorKind.VALIDATION_FAILURE

    def __init__(self, identity: ReconcileIdentity, cause: SpecValidationError) -> None:
        super().__init__(identity, Stage.VALIDATION, str(cause), cause=cause)
        self.errors = list(cause.errors)

    @property
    def retryable(self) -> bool:
        return False


class StepFailure(ReconcileError):
    """A convergence step failed. Retryability follows the step's error kind."""

    kind = ErrorKind.STEP_FAILURE

    def __init__(self, identity: ReconcileIdentity, step: str, cause: StepError) -> None:
        super().__init__(identity, step, str(cause), cause=cause)
        self.step = step

    @property
    def retryable(self) -> bool:
        assert isinstance(self.cause, StepError)
        return self.cause.transient


class Cancelled(ReconcileError):
    """The invocation observed cancellation before finishing.

    Not a failure of the cluster spec or the infrastructure.
    """

    kind = ErrorKind.CANCELLED

    def __init__(
        self,
        identity: ReconcileIdentity,
        stage: str,
        *,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(identity, stage, "cancelled", cause=cause)


class Reconciler:
    """Drives one cluster identity toward its desired state per invocation.

    The reconciler holds no per-identity state, so one instance can serve
    concurrent invocations for different identities.
    """

    def __init__(
        self,
        store: ClusterStore,
        steps: Sequence[ConvergenceStep],
        config: Config | None = None,
        provenance_logger: ProvenanceLogger | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            store: Desired-state store.
            steps: Convergence steps, applied in the given order.
            config: Operator configuration. Defaults are used when omitted.
            provenance_logger: Audit logger. Built from config when omitted.
        """
        self._config = config or Config()
        self._store = store
        self._steps = list(steps)

        names = [step.name for step in self._steps]
        if any(not name for name in names) or len(set(names)) != len(names):
            raise ValueError(f"convergence steps need unique, non-empty names: {names}")

        self._provenance_logger = provenance_logger or ProvenanceLogger(
            operator_version=self._config.operator_version
        )

    @property
    def config(self) -> Config:
        return self._config

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self._steps]

    async def reconcile(self, identity: ReconcileIdentity, ctx: ReconcileContext) -> None:
        """Run one reconcile invocation.

        Returns normally when the cluster converged or does not exist.

        Raises:
            FetchFailure: The store could not answer.
            ValidationFailure: The record is invalid. No step was run.
            StepFailure: A step failed. Later steps were not run.
            Cancelled: Cancellation was observed before the named stage.
            asyncio.CancelledError: The task itself was cancelled.
        """
        provenance = self._provenance_logger.create_provenance(
            namespace=identity.namespace,
            cluster=identity.name,
            step_names=self.step_names,
        )
        start = time.monotonic()
        ctx.log.info("Reconcile started")

        try:
            await self._reconcile_once(identity, ctx, provenance)
        except ReconcileError as e:
            provenance.outcome = (
                ReconcileOutcome.CANCELLED if isinstance(e, Cancelled) else ReconcileOutcome.FAILED
            )
            provenance.stage = e.stage
            provenance.error = str(e)
            provenance.error_type = type(e.cause).__name__ if e.cause else type(e).__name__
            provenance.retryable = e.retryable
            raise
        except asyncio.CancelledError:
            provenance.outcome = ReconcileOutcome.CANCELLED
            raise
        finally:
            provenance.duration_seconds = time.monotonic() - start
            self._log_result(ctx, provenance)

    async def _reconcile_once(
        self,
        identity: ReconcileIdentity,
        ctx: ReconcileContext,
        provenance: ReconcileProvenance,
    ) -> None:
        self._check_cancelled(identity, ctx, Stage.FETCH)

        try:
            cluster = await self._store.get(identity)
        except StoreError as e:
            raise FetchFailure(identity, e) from e
        except SpecValidationError as e:
            # Stored record exists but does not decode
            raise ValidationFailure(identity, e) from e

        if cluster is None:
            ctx.log.info("Cluster not found, nothing to reconcile")
            provenance.outcome = ReconcileOutcome.ABSENT
            return

        provenance.generation = cluster.metadata.generation

        self._check_cancelled(identity, ctx, Stage.VALIDATION)
        snapshot = self._defaulted_snapshot(identity, cluster)

        for step in self._steps:
            self._check_cancelled(identity, ctx, step.name)
            await self._apply_step(identity, ctx, step, snapshot, provenance)

        ctx.log.debug("All convergence steps applied", extra={"steps": self.step_names})

    def _defaulted_snapshot(
        self, identity: ReconcileIdentity, cluster: MySQLCluster
    ) -> MySQLCluster:
        """Return a defaulted private copy of the fetched record."""
        snapshot = cluster.model_copy(deep=True)
        try:
            check_and_set_defaults(snapshot, self._config.operator_version)
        except SpecValidationError as e:
            raise ValidationFailure(identity, e) from e
        return snapshot

    async def _apply_step(
        self,
        identity: ReconcileIdentity,
        ctx: ReconcileContext,
        step: ConvergenceStep,
        snapshot: MySQLCluster,
        provenance: ReconcileProvenance,
    ) -> None:
        timeout = self._config.step_timeout_seconds
        try:
            await asyncio.wait_for(step.apply(snapshot, ctx), timeout=timeout)
        except StepCancelled as e:
            provenance.steps[step.name] = StepOutcome.CANCELLED
            raise Cancelled(identity, step.name, cause=e) from e
        except StepError as e:
            provenance.steps[step.name] = StepOutcome.FAILED
            raise StepFailure(identity, step.name, e) from e
        except TimeoutError as e:
            provenance.steps[step.name] = StepOutcome.FAILED
            ctx.log.error(
                "Convergence step timed out",
                extra={"step": step.name, "timeout_seconds": timeout},
            )
            wrapped = TransientStepError(f"{step.name} timed out after {timeout}s")
            raise StepFailure(identity, step.name, wrapped) from e
        except Exception as e:
            # Unclassified errors are assumed to clear on their own
            provenance.steps[step.name] = StepOutcome.FAILED
            wrapped = TransientStepError(f"{step.name}: {type(e).__name__}: {e}")
            raise StepFailure(identity, step.name, wrapped) from e

        provenance.steps[step.name] = StepOutcome.CONVERGED

    def _check_cancelled(
        self, identity: ReconcileIdentity, ctx: ReconcileContext, stage: str
    ) -> None:
        if ctx.cancelled:
            raise Cancelled(identity, stage)

    def _log_result(self, ctx: ReconcileContext, provenance: ReconcileProvenance) -> None:
        """Log the terminal outcome with structured data."""
        extra: dict[str, Any] = {
            "outcome": provenance.outcome.value,
            "duration_seconds": provenance.duration_seconds,
            "steps": {name: outcome.value for name, outcome in provenance.steps.items()},
        }
        if provenance.stage is not None:
            extra["stage"] = provenance.stage
        if provenance.error is not None:
            extra["error"] = provenance.error
            extra["retryable"] = provenance.retryable

        if provenance.outcome is ReconcileOutcome.FAILED:
            ctx.log.error("Reconcile failed", extra=extra)
        elif provenance.outcome is ReconcileOutcome.CANCELLED:
            ctx.log.warning("Reconcile cancelled", extra=extra)
        else:
            ctx.log.info("Reconcile result", extra=extra)

        if self._config.enable_audit_logging:
            self._provenance_logger.log_provenance(provenance)
