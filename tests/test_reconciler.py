"""Tests for the reconciliation loop.

The store and steps are in-memory fakes so every loop property can be
observed directly: which steps ran, in what order, and what was raised.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any

import pytest

from mysql_operator.config import Config
from mysql_operator.context import ReconcileContext
from mysql_operator.models import (
    ClusterStatus,
    MySQLCluster,
    ReconcileIdentity,
    SpecValidationError,
)
from mysql_operator.provenance import ProvenanceLogger, ReconcileOutcome, StepOutcome
from mysql_operator.reconciler import (
    Cancelled,
    ErrorKind,
    FetchFailure,
    Reconciler,
    ReconcileError,
    Stage,
    StepFailure,
    ValidationFailure,
)
from mysql_operator.steps import (
    ConvergenceStep,
    PermanentStepError,
    StepError,
    TransientStepError,
)
from mysql_operator.store import ClusterStore, StoreError

IDENTITY = ReconcileIdentity(namespace="db", name="cluster1")


class FakeStore(ClusterStore):
    """Store returning a fixed record, absence, or an error."""

    def __init__(
        self,
        manifest: dict[str, Any] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.manifest = manifest
        self.error = error
        self.gets = 0
        self.statuses: list[ClusterStatus] = []

    async def get(self, identity: ReconcileIdentity) -> MySQLCluster | None:
        self.gets += 1
        if self.error is not None:
            raise self.error
        if self.manifest is None:
            return None
        return MySQLCluster.from_manifest(copy.deepcopy(self.manifest))

    async def update_status(self, identity: ReconcileIdentity, status: ClusterStatus) -> None:
        self.statuses.append(status)


class RecordingStep(ConvergenceStep):
    """Step that records its calls in a shared journal."""

    def __init__(
        self,
        name: str,
        journal: list[str],
        errors: list[BaseException] | None = None,
    ) -> None:
        self.name = name
        self.journal = journal
        self.errors = list(errors or [])
        self.seen: list[MySQLCluster] = []

    async def apply(self, cluster: MySQLCluster, ctx: ReconcileContext) -> None:
        self.journal.append(f"{self.name}:start")
        self.seen.append(cluster)
        await asyncio.sleep(0)
        if self.errors:
            error = self.errors.pop(0)
            self.journal.append(f"{self.name}:fail")
            raise error
        self.journal.append(f"{self.name}:done")


class SlowStep(ConvergenceStep):
    name = "topology"

    async def apply(self, cluster: MySQLCluster, ctx: ReconcileContext) -> None:
        await asyncio.sleep(3600)


def _reconciler(
    store: ClusterStore,
    steps: list[ConvergenceStep],
    **config: Any,
) -> Reconciler:
    return Reconciler(store, steps, Config(**config))


@pytest.fixture
def journal() -> list[str]:
    return []


@pytest.fixture
def secrets(journal: list[str]) -> RecordingStep:
    return RecordingStep("secrets", journal)


@pytest.fixture
def topology(journal: list[str]) -> RecordingStep:
    return RecordingStep("topology", journal)


@pytest.fixture
def ctx() -> ReconcileContext:
    return ReconcileContext.for_identity(IDENTITY)


class TestReconcileSuccess:
    """Tests for successful invocations."""

    @pytest.mark.asyncio
    async def test_absent_record_is_noop(
        self,
        journal: list[str],
        secrets: RecordingStep,
        topology: RecordingStep,
        ctx: ReconcileContext,
    ) -> None:
        """Test that an absent record returns success without running steps."""
        store = FakeStore(manifest=None)

        await _reconciler(store, [secrets, topology]).reconcile(IDENTITY, ctx)

        assert store.gets == 1
        assert journal == []

    @pytest.mark.asyncio
    async def test_both_steps_succeed(
        self,
        journal: list[str],
        secrets: RecordingStep,
        topology: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test that a valid record runs both steps and returns success."""
        store = FakeStore(manifest=async_manifest)

        await _reconciler(store, [secrets, topology]).reconcile(IDENTITY, ctx)

        assert journal == ["secrets:start", "secrets:done", "topology:start", "topology:done"]

    @pytest.mark.asyncio
    async def test_steps_receive_defaulted_copy(
        self,
        secrets: RecordingStep,
        topology: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test that steps see the defaulted snapshot of the record."""
        store = FakeStore(manifest=async_manifest)

        await _reconciler(store, [secrets, topology], operator_version="1.2.3").reconcile(
            IDENTITY, ctx
        )

        cluster = secrets.seen[0]
        assert cluster.spec.secrets_name == "cluster1-secrets"
        assert cluster.spec.cr_version == "1.2.3"
        assert topology.seen[0] is cluster

    @pytest.mark.asyncio
    async def test_idempotent(
        self,
        journal: list[str],
        secrets: RecordingStep,
        topology: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test that a second invocation yields the same outcome."""
        reconciler = _reconciler(FakeStore(manifest=async_manifest), [secrets, topology])

        await reconciler.reconcile(IDENTITY, ctx)
        first = list(journal)
        journal.clear()
        await reconciler.reconcile(IDENTITY, ctx)

        assert journal == first
        assert secrets.seen[0].to_manifest() == secrets.seen[1].to_manifest()

    @pytest.mark.asyncio
    async def test_fetched_record_not_mutated(
        self,
        secrets: RecordingStep,
        topology: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test that defaulting works on a copy of the fetched record."""
        fetched = MySQLCluster.from_manifest(async_manifest)

        class SharedStore(FakeStore):
            async def get(self, identity: ReconcileIdentity) -> MySQLCluster | None:
                return fetched

        await _reconciler(SharedStore(), [secrets, topology]).reconcile(IDENTITY, ctx)

        assert fetched.spec.secrets_name is None
        assert secrets.seen[0] is not fetched


class TestReconcileFailure:
    """Tests for failure classification and context."""

    @pytest.mark.asyncio
    async def test_fetch_failure(
        self,
        journal: list[str],
        secrets: RecordingStep,
        topology: RecordingStep,
        ctx: ReconcileContext,
    ) -> None:
        """Test that store errors surface as a retryable fetch failure."""
        cause = StoreError("connection refused")
        store = FakeStore(error=cause)

        with pytest.raises(FetchFailure) as exc_info:
            await _reconciler(store, [secrets, topology]).reconcile(IDENTITY, ctx)

        error = exc_info.value
        assert error.stage == Stage.FETCH.value == "fetch"
        assert error.kind is ErrorKind.FETCH_FAILURE
        assert error.retryable is True
        assert error.cause is cause
        assert error.__cause__ is cause
        assert error.identity == IDENTITY
        assert journal == []

    @pytest.mark.asyncio
    async def test_missing_version_fails_validation(
        self,
        journal: list[str],
        secrets: RecordingStep,
        topology: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test that a missing required field gates every step."""
        del async_manifest["spec"]["mysql"]["version"]
        store = FakeStore(manifest=async_manifest)

        with pytest.raises(ValidationFailure) as exc_info:
            await _reconciler(store, [secrets, topology]).reconcile(IDENTITY, ctx)

        error = exc_info.value
        assert error.stage == "validation"
        assert error.kind is ErrorKind.VALIDATION_FAILURE
        assert error.retryable is False
        assert error.errors == ["spec.mysql.version: required"]
        assert isinstance(error.__cause__, SpecValidationError)
        assert journal == []

    @pytest.mark.asyncio
    async def test_undecodable_record_fails_validation(
        self,
        journal: list[str],
        secrets: RecordingStep,
        topology: RecordingStep,
        ctx: ReconcileContext,
    ) -> None:
        """Test that a record the store cannot decode is a validation failure."""
        store = FakeStore(error=SpecValidationError(["spec.mysql.size: not an integer"]))

        with pytest.raises(ValidationFailure) as exc_info:
            await _reconciler(store, [secrets, topology]).reconcile(IDENTITY, ctx)

        assert exc_info.value.errors == ["spec.mysql.size: not an integer"]
        assert journal == []

    @pytest.mark.asyncio
    async def test_secrets_failure_short_circuits(
        self,
        journal: list[str],
        topology: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test that topology never runs after secrets fails."""
        secrets = RecordingStep("secrets", journal, [PermanentStepError("forbidden")])
        store = FakeStore(manifest=async_manifest)

        with pytest.raises(StepFailure) as exc_info:
            await _reconciler(store, [secrets, topology]).reconcile(IDENTITY, ctx)

        error = exc_info.value
        assert error.stage == error.step == "secrets"
        assert error.retryable is False
        assert journal == ["secrets:start", "secrets:fail"]

    @pytest.mark.asyncio
    async def test_transient_topology_failure_then_recovery(
        self,
        journal: list[str],
        secrets: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test a transient topology error and a successful re-invocation."""
        cause = TransientStepError("create StatefulSet cluster1-mysql: Service Unavailable")
        topology = RecordingStep("topology", journal, [cause])
        reconciler = _reconciler(FakeStore(manifest=async_manifest), [secrets, topology])

        with pytest.raises(StepFailure) as exc_info:
            await reconciler.reconcile(IDENTITY, ctx)

        error = exc_info.value
        assert error.stage == "topology"
        assert error.kind is ErrorKind.STEP_FAILURE
        assert error.retryable is True
        assert error.cause is cause
        assert journal == ["secrets:start", "secrets:done", "topology:start", "topology:fail"]

        journal.clear()
        await reconciler.reconcile(IDENTITY, ctx)
        assert journal[-1] == "topology:done"

    @pytest.mark.asyncio
    async def test_unclassified_exception_is_transient(
        self,
        journal: list[str],
        secrets: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test that errors outside the StepError family are wrapped as transient."""
        boom = RuntimeError("boom")
        topology = RecordingStep("topology", journal, [boom])

        with pytest.raises(StepFailure) as exc_info:
            await _reconciler(FakeStore(manifest=async_manifest), [secrets, topology]).reconcile(
                IDENTITY, ctx
            )

        error = exc_info.value
        assert isinstance(error.cause, TransientStepError)
        assert error.__cause__ is boom
        assert error.retryable is True

    @pytest.mark.asyncio
    async def test_step_timeout(
        self,
        secrets: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test that a step exceeding its timeout fails transiently."""
        config = Config()
        # Below the configurable minimum, so bypass validation
        object.__setattr__(config, "step_timeout_seconds", 0.01)
        reconciler = Reconciler(FakeStore(manifest=async_manifest), [secrets, SlowStep()], config)

        with pytest.raises(StepFailure) as exc_info:
            await reconciler.reconcile(IDENTITY, ctx)

        assert exc_info.value.stage == "topology"
        assert exc_info.value.retryable is True
        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_errors_share_base_class(
        self,
        secrets: RecordingStep,
        topology: RecordingStep,
        ctx: ReconcileContext,
    ) -> None:
        """Test that callers can catch every failure as ReconcileError."""
        store = FakeStore(error=StoreError("unavailable", status=503))

        with pytest.raises(ReconcileError):
            await _reconciler(store, [secrets, topology]).reconcile(IDENTITY, ctx)


class TestReconcileCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancelled_before_fetch(
        self,
        secrets: RecordingStep,
        topology: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        store = FakeStore(manifest=async_manifest)
        ctx.cancel()

        with pytest.raises(Cancelled) as exc_info:
            await _reconciler(store, [secrets, topology]).reconcile(IDENTITY, ctx)

        assert exc_info.value.stage == "fetch"
        assert store.gets == 0

    @pytest.mark.asyncio
    async def test_cancelled_after_fetch(
        self,
        journal: list[str],
        secrets: RecordingStep,
        topology: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test that cancellation during fetch stops before validation."""

        class CancellingStore(FakeStore):
            async def get(self, identity: ReconcileIdentity) -> MySQLCluster | None:
                cluster = await super().get(identity)
                ctx.cancel()
                return cluster

        with pytest.raises(Cancelled) as exc_info:
            await _reconciler(
                CancellingStore(manifest=async_manifest), [secrets, topology]
            ).reconcile(IDENTITY, ctx)

        error = exc_info.value
        assert error.stage == "validation"
        assert error.kind is ErrorKind.CANCELLED
        assert error.retryable is True
        assert journal == []

    @pytest.mark.asyncio
    async def test_cancelled_between_steps(
        self,
        journal: list[str],
        topology: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test that no further step starts once cancellation is observed."""

        class CancellingStep(RecordingStep):
            async def apply(self, cluster: MySQLCluster, ctx: ReconcileContext) -> None:
                await super().apply(cluster, ctx)
                ctx.cancel()

        secrets = CancellingStep("secrets", journal)

        with pytest.raises(Cancelled) as exc_info:
            await _reconciler(FakeStore(manifest=async_manifest), [secrets, topology]).reconcile(
                IDENTITY, ctx
            )

        assert exc_info.value.stage == "topology"
        assert journal == ["secrets:start", "secrets:done"]

    @pytest.mark.asyncio
    async def test_step_observed_cancellation(
        self,
        journal: list[str],
        secrets: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test that a step raising StepCancelled surfaces as Cancelled."""

        class ObservingStep(ConvergenceStep):
            name = "topology"

            async def apply(self, cluster: MySQLCluster, ctx: ReconcileContext) -> None:
                ctx.cancel()
                self.check_cancelled(ctx)

        with pytest.raises(Cancelled) as exc_info:
            await _reconciler(
                FakeStore(manifest=async_manifest), [secrets, ObservingStep()]
            ).reconcile(IDENTITY, ctx)

        assert exc_info.value.stage == "topology"
        assert isinstance(exc_info.value.cause, StepError)

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(
        self,
        secrets: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test that cancelling the task raises CancelledError unchanged."""
        reconciler = _reconciler(FakeStore(manifest=async_manifest), [secrets, SlowStep()])
        task = asyncio.create_task(reconciler.reconcile(IDENTITY, ctx))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


class TestReconcilerProvenance:
    """Tests for the audit record produced per invocation."""

    class CapturingLogger(ProvenanceLogger):
        def __init__(self) -> None:
            super().__init__()
            self.records: list[Any] = []

        def log_provenance(self, provenance: Any) -> None:
            self.records.append(provenance)

    @pytest.mark.asyncio
    async def test_converged_record(
        self,
        secrets: RecordingStep,
        topology: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        capture = self.CapturingLogger()
        reconciler = Reconciler(
            FakeStore(manifest=async_manifest), [secrets, topology], Config(), capture
        )

        await reconciler.reconcile(IDENTITY, ctx)

        record = capture.records[0]
        assert record.outcome is ReconcileOutcome.CONVERGED
        assert record.generation == 1
        assert record.steps == {"secrets": StepOutcome.CONVERGED, "topology": StepOutcome.CONVERGED}
        assert record.error is None

    @pytest.mark.asyncio
    async def test_failed_record(
        self,
        journal: list[str],
        secrets: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        capture = self.CapturingLogger()
        topology = RecordingStep("topology", journal, [PermanentStepError("invalid")])
        reconciler = Reconciler(
            FakeStore(manifest=async_manifest), [secrets, topology], Config(), capture
        )

        with pytest.raises(StepFailure):
            await reconciler.reconcile(IDENTITY, ctx)

        record = capture.records[0]
        assert record.outcome is ReconcileOutcome.FAILED
        assert record.stage == "topology"
        assert record.error_type == "PermanentStepError"
        assert record.retryable is False
        assert record.steps["topology"] is StepOutcome.FAILED

    @pytest.mark.asyncio
    async def test_interrupted_step_recorded(
        self,
        secrets: RecordingStep,
        ctx: ReconcileContext,
        async_manifest: dict[str, Any],
    ) -> None:
        """Test that the step that observed cancellation is marked cancelled."""

        class InterruptedStep(ConvergenceStep):
            name = "topology"

            async def apply(self, cluster: MySQLCluster, ctx: ReconcileContext) -> None:
                ctx.cancel()
                self.check_cancelled(ctx)

        capture = self.CapturingLogger()
        reconciler = Reconciler(
            FakeStore(manifest=async_manifest), [secrets, InterruptedStep()], Config(), capture
        )

        with pytest.raises(Cancelled):
            await reconciler.reconcile(IDENTITY, ctx)

        record = capture.records[0]
        assert record.outcome is ReconcileOutcome.CANCELLED
        assert record.stage == "topology"
        assert record.steps == {
            "secrets": StepOutcome.CONVERGED,
            "topology": StepOutcome.CANCELLED,
        }

    @pytest.mark.asyncio
    async def test_absent_record(
        self, secrets: RecordingStep, topology: RecordingStep, ctx: ReconcileContext
    ) -> None:
        capture = self.CapturingLogger()
        reconciler = Reconciler(FakeStore(), [secrets, topology], Config(), capture)

        await reconciler.reconcile(IDENTITY, ctx)

        record = capture.records[0]
        assert record.outcome is ReconcileOutcome.ABSENT
        assert record.steps == {"secrets": StepOutcome.SKIPPED, "topology": StepOutcome.SKIPPED}

    @pytest.mark.asyncio
    async def test_audit_logging_disabled(
        self, secrets: RecordingStep, topology: RecordingStep, ctx: ReconcileContext
    ) -> None:
        capture = self.CapturingLogger()
        reconciler = Reconciler(
            FakeStore(), [secrets, topology], Config(enable_audit_logging=False), capture
        )

        await reconciler.reconcile(IDENTITY, ctx)

        assert capture.records == []


class TestReconcilerConstruction:
    def test_duplicate_step_names_rejected(self, journal: list[str]) -> None:
        with pytest.raises(ValueError):
            Reconciler(
                FakeStore(),
                [RecordingStep("secrets", journal), RecordingStep("secrets", journal)],
            )
