"""Configuration management with validation.

Configuration is read once at startup from environment variables and
validated eagerly so a misconfigured operator fails before it touches
the cluster.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Custom resource coordinates
DEFAULT_CR_GROUP = "ps.percona.com"
DEFAULT_CR_VERSION = "v2"
DEFAULT_CR_PLURAL = "perconaservermysqls"
CR_KIND = "PerconaServerForMySQL"

# Version pinned into spec.crVersion when the user leaves it unset
DEFAULT_OPERATOR_VERSION = "0.8.0"

# Configuration constants with documented bounds
DEFAULT_STEP_TIMEOUT_SECONDS = 300
MIN_STEP_TIMEOUT_SECONDS = 5
MAX_STEP_TIMEOUT_SECONDS = 3600

DEFAULT_REQUEUE_BASE_SECONDS = 5.0
DEFAULT_REQUEUE_MAX_SECONDS = 300.0
REQUEUE_JITTER_RATIO = 0.2

# Manifests larger than this are rejected before parsing
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# DNS-1123 label, used for namespaces and object names
VALID_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
VALID_VERSION_PATTERN = r"^\d+\.\d+\.\d+([-+][0-9A-Za-z.-]+)?$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-reconcile.
    """

    # Namespace to operate in; None means cluster-wide
    watch_namespace: str | None = None

    operator_version: str = DEFAULT_OPERATOR_VERSION

    # Custom resource coordinates
    cr_group: str = DEFAULT_CR_GROUP
    cr_version: str = DEFAULT_CR_VERSION
    cr_plural: str = DEFAULT_CR_PLURAL

    # Explicit kubeconfig; in-cluster config is tried first when unset
    kubeconfig: Path | None = None

    # Timing
    step_timeout_seconds: int = DEFAULT_STEP_TIMEOUT_SECONDS
    requeue_base_seconds: float = DEFAULT_REQUEUE_BASE_SECONDS
    requeue_max_seconds: float = DEFAULT_REQUEUE_MAX_SECONDS

    # Logging
    log_level: str = "INFO"
    enable_audit_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.watch_namespace is not None and not re.match(
            VALID_NAME_PATTERN, self.watch_namespace
        ):
            errors.append(f"WATCH_NAMESPACE must be a DNS-1123 label: {self.watch_namespace}")

        if not re.match(VALID_VERSION_PATTERN, self.operator_version):
            errors.append(
                f"OPERATOR_VERSION must be a semantic version (X.Y.Z): {self.operator_version}"
            )

        if not self.cr_group or "." not in self.cr_group:
            errors.append(f"CR_GROUP must be a fully qualified API group: {self.cr_group}")

        if not self.cr_version:
            errors.append("CR_VERSION is required")

        if not self.cr_plural:
            errors.append("CR_PLURAL is required")

        if self.kubeconfig is not None and not self.kubeconfig.exists():
            errors.append(f"KUBECONFIG does not exist: {self.kubeconfig}")

        if not (
            MIN_STEP_TIMEOUT_SECONDS <= self.step_timeout_seconds <= MAX_STEP_TIMEOUT_SECONDS
        ):
            errors.append(
                f"STEP_TIMEOUT must be between {MIN_STEP_TIMEOUT_SECONDS} "
                f"and {MAX_STEP_TIMEOUT_SECONDS} seconds"
            )

        if self.requeue_base_seconds <= 0:
            errors.append("REQUEUE_BASE must be positive")
        elif self.requeue_max_seconds < self.requeue_base_seconds:
            errors.append("REQUEUE_MAX must not be lower than REQUEUE_BASE")

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            WATCH_NAMESPACE: Namespace to reconcile in (default: all namespaces)
            OPERATOR_VERSION: Version pinned into unset spec.crVersion
            CR_GROUP: Custom resource API group (default: ps.percona.com)
            CR_VERSION: Custom resource API version (default: v2)
            CR_PLURAL: Custom resource plural (default: perconaservermysqls)
            KUBECONFIG: Path to kubeconfig used outside the cluster
            STEP_TIMEOUT: Timeout for one convergence step in seconds (default: 300)
            REQUEUE_BASE: Base backoff for retryable failures in seconds (default: 5)
            REQUEUE_MAX: Backoff ceiling in seconds (default: 300)
            LOG_LEVEL: Root log level (default: INFO)
            ENABLE_AUDIT_LOGGING: Emit provenance records (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        kubeconfig = os.environ.get("KUBECONFIG")

        return cls(
            watch_namespace=os.environ.get("WATCH_NAMESPACE") or None,
            operator_version=os.environ.get("OPERATOR_VERSION", DEFAULT_OPERATOR_VERSION),
            cr_group=os.environ.get("CR_GROUP", DEFAULT_CR_GROUP),
            cr_version=os.environ.get("CR_VERSION", DEFAULT_CR_VERSION),
            cr_plural=os.environ.get("CR_PLURAL", DEFAULT_CR_PLURAL),
            kubeconfig=Path(kubeconfig) if kubeconfig else None,
            step_timeout_seconds=get_int("STEP_TIMEOUT", DEFAULT_STEP_TIMEOUT_SECONDS),
            requeue_base_seconds=get_float("REQUEUE_BASE", DEFAULT_REQUEUE_BASE_SECONDS),
            requeue_max_seconds=get_float("REQUEUE_MAX", DEFAULT_REQUEUE_MAX_SECONDS),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
        )
