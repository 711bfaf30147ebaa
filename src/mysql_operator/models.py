"""Pydantic models for the PerconaServerForMySQL custom resource.

These models provide:
1. Type-safe decoding of the custom resource as stored in the API server
2. A spec where every field may be unset, so defaulting is explicit
3. Clean transformation back to a manifest dictionary

Range and cross-field rules are not expressed here; they live in
defaults.py so that every violation is reported in one pass.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .config import CR_KIND, DEFAULT_CR_GROUP, DEFAULT_CR_VERSION, VALID_NAME_PATTERN


class SpecValidationError(Exception):
    """Raised when a desired-state record is structurally invalid.

    Carries every violated constraint, not just the first one.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid cluster spec")


# =============================================================================
# Identity
# =============================================================================


@dataclass(frozen=True)
class ReconcileIdentity:
    """Stable address of one reconciliation target."""

    namespace: str
    name: str

    def __post_init__(self) -> None:
        for label, value in (("namespace", self.namespace), ("name", self.name)):
            if not value:
                raise ValueError(f"{label} must not be empty")
            if not re.match(VALID_NAME_PATTERN, value):
                raise ValueError(f"{label} must be a DNS-1123 label: {value}")

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, key: str) -> ReconcileIdentity:
        """Build an identity from a ``namespace/name`` string."""
        namespace, sep, name = key.partition("/")
        if not sep:
            raise ValueError(f"identity must look like namespace/name: {key}")
        return cls(namespace=namespace, name=name)

    def __str__(self) -> str:
        return self.key


# =============================================================================
# Enumerations
# =============================================================================


class ClusterType(str, Enum):
    """MySQL replication topology."""

    ASYNC = "async"
    GROUP_REPLICATION = "group-replication"


class SemiSyncType(str, Enum):
    AFTER_COMMIT = "after_commit"
    AFTER_SYNC = "after_sync"


class ClusterState(str, Enum):
    """Aggregate state reported in the status payload."""

    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"


# =============================================================================
# Spec
# =============================================================================

_MODEL_CONFIG: Any = {"extra": "ignore", "populate_by_name": True}


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata the operator relies on."""

    model_config = _MODEL_CONFIG

    name: str
    namespace: str
    uid: str | None = None
    generation: int | None = None
    resource_version: str | None = Field(None, alias="resourceVersion")
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class PodResources(BaseModel):
    """Container resource requests and limits."""

    model_config = _MODEL_CONFIG

    requests: dict[str, str] = Field(default_factory=dict)
    limits: dict[str, str] = Field(default_factory=dict)


class VolumeSpec(BaseModel):
    """Persistent data volume for MySQL pods."""

    model_config = _MODEL_CONFIG

    size: str | None = None
    storage_class_name: str | None = Field(None, alias="storageClassName")


class ProbeSpec(BaseModel):
    model_config = _MODEL_CONFIG

    initial_delay_seconds: int | None = Field(None, alias="initialDelaySeconds")
    period_seconds: int | None = Field(None, alias="periodSeconds")
    timeout_seconds: int | None = Field(None, alias="timeoutSeconds")
    failure_threshold: int | None = Field(None, alias="failureThreshold")


class MySQLSpec(BaseModel):
    """MySQL server topology parameters."""

    model_config = _MODEL_CONFIG

    cluster_type: str | None = Field(None, alias="clusterType")
    size: int | None = None
    size_semi_sync: int | None = Field(None, alias="sizeSemiSync")
    semi_sync_type: str | None = Field(None, alias="semiSyncType")
    version: str | None = None
    image: str | None = None
    image_pull_policy: str | None = Field(None, alias="imagePullPolicy")
    resources: PodResources = Field(default_factory=PodResources)
    volume_spec: VolumeSpec = Field(default_factory=VolumeSpec, alias="volumeSpec")
    configuration: str | None = None
    readiness_probe: ProbeSpec = Field(default_factory=ProbeSpec, alias="readinessProbe")
    liveness_probe: ProbeSpec = Field(default_factory=ProbeSpec, alias="livenessProbe")


class OrchestratorSpec(BaseModel):
    """Orchestrator manages failover for asynchronous replication."""

    model_config = _MODEL_CONFIG

    enabled: bool | None = None
    size: int | None = None
    image: str | None = None


class RouterSpec(BaseModel):
    """MySQL Router fronts group replication clusters."""

    model_config = _MODEL_CONFIG

    enabled: bool | None = None
    size: int | None = None
    image: str | None = None


class CredentialPolicy(BaseModel):
    """Policy for generated system user passwords."""

    model_config = _MODEL_CONFIG

    password_length: int | None = Field(None, alias="passwordLength")


class ClusterSpec(BaseModel):
    """Desired cluster spec."""

    model_config = _MODEL_CONFIG

    cr_version: str | None = Field(None, alias="crVersion")
    secrets_name: str | None = Field(None, alias="secretsName")
    credential_policy: CredentialPolicy = Field(
        default_factory=CredentialPolicy, alias="credentialPolicy"
    )
    mysql: MySQLSpec | None = None
    orchestrator: OrchestratorSpec = Field(default_factory=OrchestratorSpec)
    router: RouterSpec = Field(default_factory=RouterSpec)


# =============================================================================
# Status
# =============================================================================


class ComponentStatus(BaseModel):
    model_config = _MODEL_CONFIG

    size: int = 0
    ready: int = 0
    state: ClusterState | None = None


class ClusterStatus(BaseModel):
    """Observed state written back by convergence steps."""

    model_config = _MODEL_CONFIG

    state: ClusterState | None = None
    mysql: ComponentStatus = Field(default_factory=ComponentStatus)
    observed_generation: int | None = Field(None, alias="observedGeneration")
    message: str | None = None

    def to_patch(self) -> dict[str, Any]:
        """Render as a status subresource body.

        The message key is always present so that a merge patch clears a
        message left by an earlier failure.
        """
        body = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        body.setdefault("message", None)
        return body


# =============================================================================
# Custom resource
# =============================================================================


class MySQLCluster(BaseModel):
    """A PerconaServerForMySQL desired-state record."""

    model_config = _MODEL_CONFIG

    api_version: str = Field(f"{DEFAULT_CR_GROUP}/{DEFAULT_CR_VERSION}", alias="apiVersion")
    kind: str = CR_KIND
    metadata: ObjectMeta
    spec: ClusterSpec = Field(default_factory=ClusterSpec)
    status: ClusterStatus = Field(default_factory=ClusterStatus)

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> MySQLCluster:
        """Decode a custom resource dictionary.

        Raises:
            SpecValidationError: If the manifest does not match the schema.
                All decode errors are listed.
        """
        try:
            return cls.model_validate(manifest)
        except ValidationError as e:
            errors = []
            for error in e.errors():
                loc = ".".join(str(x) for x in error["loc"])
                errors.append(f"{loc}: {error['msg']}")
            raise SpecValidationError(errors) from e

    def to_manifest(self) -> dict[str, Any]:
        """Render back to a custom resource dictionary."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @property
    def identity(self) -> ReconcileIdentity:
        return ReconcileIdentity(namespace=self.metadata.namespace, name=self.metadata.name)

    def owner_reference(self) -> dict[str, Any]:
        """Owner reference so dependents are garbage collected with the cluster."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.metadata.name,
            "uid": self.metadata.uid or "",
            "controller": True,
            "blockOwnerDeletion": True,
        }
