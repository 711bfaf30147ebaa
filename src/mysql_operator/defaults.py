"""Defaulting and validation of the desired cluster spec.

check_and_set_defaults() fills every unset field a convergence step will
read and rejects structurally invalid combinations. It is a pure function
of the record and static policy: no I/O, no clock and no randomness, so
the same input always yields the same defaulted output.

All violations are collected and reported together in a single
SpecValidationError.
"""

from __future__ import annotations

import re

from .config import VALID_NAME_PATTERN
from .models import ClusterType, MySQLCluster, ProbeSpec, SemiSyncType, SpecValidationError

# Derived object names ("<name>-orchestrator-0" etc.) must fit DNS limits
MAX_CLUSTER_NAME_LENGTH = 22

MIN_CLUSTER_SIZE = 1
MAX_CLUSTER_SIZE = 9
MIN_GROUP_REPLICATION_SIZE = 3
DEFAULT_CLUSTER_SIZE = 3

MIN_PASSWORD_LENGTH = 16
MAX_PASSWORD_LENGTH = 64
DEFAULT_PASSWORD_LENGTH = 20

DEFAULT_VOLUME_SIZE = "2Gi"
DEFAULT_IMAGE_PULL_POLICY = "IfNotPresent"
VALID_IMAGE_PULL_POLICIES = ("Always", "IfNotPresent", "Never")

SUPPORTED_MYSQL_VERSIONS = ("8.0", "8.4")

MYSQL_IMAGE_REPOSITORY = "percona/percona-server"
ROUTER_IMAGE_REPOSITORY = "percona/percona-mysql-router"
DEFAULT_ORCHESTRATOR_IMAGE = "percona/percona-orchestrator:3.2.6-12"

VALID_MYSQL_VERSION_PATTERN = r"^(\d+)\.(\d+)(\.\d+)?(-\d+)?$"
VALID_QUANTITY_PATTERN = r"^\d+(\.\d+)?(Ki|Mi|Gi|Ti|Pi|Ei|k|M|G|T|P|E)?$"

# initialDelaySeconds, periodSeconds, timeoutSeconds, failureThreshold
READINESS_PROBE_DEFAULTS = (30, 5, 10, 3)
LIVENESS_PROBE_DEFAULTS = (15, 10, 30, 3)


def check_and_set_defaults(cluster: MySQLCluster, operator_version: str) -> None:
    """Apply policy defaults in place and validate the result.

    Args:
        cluster: Record to normalize. Mutated in place.
        operator_version: Version pinned into spec.crVersion when unset.

    Raises:
        SpecValidationError: Listing every violated constraint.
    """
    errors: list[str] = []
    spec = cluster.spec
    name = cluster.metadata.name

    if len(name) > MAX_CLUSTER_NAME_LENGTH:
        errors.append(
            f"metadata.name: must be at most {MAX_CLUSTER_NAME_LENGTH} characters, got {len(name)}"
        )

    if not spec.cr_version:
        spec.cr_version = operator_version

    if not spec.secrets_name:
        spec.secrets_name = f"{name}-secrets"
    elif not re.match(VALID_NAME_PATTERN, spec.secrets_name):
        errors.append(f"spec.secretsName: must be a DNS-1123 label: {spec.secrets_name}")

    policy = spec.credential_policy
    if policy.password_length is None:
        policy.password_length = DEFAULT_PASSWORD_LENGTH
    elif not MIN_PASSWORD_LENGTH <= policy.password_length <= MAX_PASSWORD_LENGTH:
        errors.append(
            f"spec.credentialPolicy.passwordLength: must be between "
            f"{MIN_PASSWORD_LENGTH} and {MAX_PASSWORD_LENGTH}"
        )

    if spec.mysql is None:
        errors.append("spec.mysql: required")
        raise SpecValidationError(errors)

    cluster_type = _set_mysql_defaults(cluster, errors)
    _set_orchestrator_defaults(cluster, cluster_type, errors)
    _set_router_defaults(cluster, cluster_type, errors)

    if errors:
        raise SpecValidationError(errors)


def _set_mysql_defaults(cluster: MySQLCluster, errors: list[str]) -> ClusterType | None:
    mysql = cluster.spec.mysql
    assert mysql is not None

    cluster_type: ClusterType | None = None
    if mysql.cluster_type is None:
        mysql.cluster_type = ClusterType.ASYNC.value
    try:
        cluster_type = ClusterType(mysql.cluster_type)
    except ValueError:
        valid = [t.value for t in ClusterType]
        errors.append(f"spec.mysql.clusterType: must be one of {valid}: {mysql.cluster_type}")

    if mysql.size is None:
        mysql.size = DEFAULT_CLUSTER_SIZE
    if not MIN_CLUSTER_SIZE <= mysql.size <= MAX_CLUSTER_SIZE:
        errors.append(
            f"spec.mysql.size: must be between {MIN_CLUSTER_SIZE} and {MAX_CLUSTER_SIZE}"
        )
    elif cluster_type is ClusterType.GROUP_REPLICATION and mysql.size < MIN_GROUP_REPLICATION_SIZE:
        errors.append(
            f"spec.mysql.size: group replication requires at least "
            f"{MIN_GROUP_REPLICATION_SIZE} members"
        )

    if mysql.size_semi_sync is None:
        mysql.size_semi_sync = 0
    if cluster_type is ClusterType.GROUP_REPLICATION and mysql.size_semi_sync:
        errors.append("spec.mysql.sizeSemiSync: not supported with group replication")
    elif mysql.size_semi_sync < 0 or mysql.size_semi_sync >= mysql.size:
        errors.append("spec.mysql.sizeSemiSync: must be lower than spec.mysql.size")

    if mysql.semi_sync_type is None:
        mysql.semi_sync_type = SemiSyncType.AFTER_COMMIT.value
    elif mysql.semi_sync_type not in {t.value for t in SemiSyncType}:
        valid = [t.value for t in SemiSyncType]
        errors.append(f"spec.mysql.semiSyncType: must be one of {valid}: {mysql.semi_sync_type}")

    if not mysql.version:
        errors.append("spec.mysql.version: required")
    else:
        match = re.match(VALID_MYSQL_VERSION_PATTERN, mysql.version)
        if match is None:
            errors.append(f"spec.mysql.version: invalid version: {mysql.version}")
        elif f"{match.group(1)}.{match.group(2)}" not in SUPPORTED_MYSQL_VERSIONS:
            errors.append(
                f"spec.mysql.version: unsupported version {mysql.version}, "
                f"supported: {list(SUPPORTED_MYSQL_VERSIONS)}"
            )
        elif not mysql.image:
            mysql.image = f"{MYSQL_IMAGE_REPOSITORY}:{mysql.version}"

    if mysql.image_pull_policy is None:
        mysql.image_pull_policy = DEFAULT_IMAGE_PULL_POLICY
    elif mysql.image_pull_policy not in VALID_IMAGE_PULL_POLICIES:
        errors.append(
            f"spec.mysql.imagePullPolicy: must be one of {list(VALID_IMAGE_PULL_POLICIES)}"
        )

    if mysql.volume_spec.size is None:
        mysql.volume_spec.size = DEFAULT_VOLUME_SIZE
    elif not re.match(VALID_QUANTITY_PATTERN, mysql.volume_spec.size):
        errors.append(f"spec.mysql.volumeSpec.size: invalid quantity: {mysql.volume_spec.size}")

    _set_probe_defaults(mysql.readiness_probe, READINESS_PROBE_DEFAULTS)
    _set_probe_defaults(mysql.liveness_probe, LIVENESS_PROBE_DEFAULTS)

    return cluster_type


def _set_probe_defaults(probe: ProbeSpec, defaults: tuple[int, int, int, int]) -> None:
    initial_delay, period, timeout, failure_threshold = defaults
    if probe.initial_delay_seconds is None:
        probe.initial_delay_seconds = initial_delay
    if probe.period_seconds is None:
        probe.period_seconds = period
    if probe.timeout_seconds is None:
        probe.timeout_seconds = timeout
    if probe.failure_threshold is None:
        probe.failure_threshold = failure_threshold


def _set_orchestrator_defaults(
    cluster: MySQLCluster, cluster_type: ClusterType | None, errors: list[str]
) -> None:
    orchestrator = cluster.spec.orchestrator
    mysql = cluster.spec.mysql
    assert mysql is not None and mysql.size is not None

    explicitly_disabled = orchestrator.enabled is False
    if orchestrator.enabled is None:
        orchestrator.enabled = cluster_type is ClusterType.ASYNC

    if orchestrator.enabled and cluster_type is ClusterType.GROUP_REPLICATION:
        errors.append(
            "spec.orchestrator.enabled: orchestrator and group replication are mutually exclusive"
        )
    if explicitly_disabled and cluster_type is ClusterType.ASYNC and mysql.size > 1:
        errors.append(
            "spec.orchestrator.enabled: asynchronous replication with more than one "
            "member requires orchestrator"
        )

    if orchestrator.size is None:
        orchestrator.size = DEFAULT_CLUSTER_SIZE
    elif not MIN_CLUSTER_SIZE <= orchestrator.size <= MAX_CLUSTER_SIZE:
        errors.append(
            f"spec.orchestrator.size: must be between {MIN_CLUSTER_SIZE} and {MAX_CLUSTER_SIZE}"
        )

    if not orchestrator.image:
        orchestrator.image = DEFAULT_ORCHESTRATOR_IMAGE


def _set_router_defaults(
    cluster: MySQLCluster, cluster_type: ClusterType | None, errors: list[str]
) -> None:
    router = cluster.spec.router
    mysql = cluster.spec.mysql
    assert mysql is not None

    if router.enabled is None:
        router.enabled = cluster_type is ClusterType.GROUP_REPLICATION

    if router.enabled and cluster_type is ClusterType.ASYNC:
        errors.append("spec.router.enabled: router requires group replication")

    if router.size is None:
        router.size = DEFAULT_CLUSTER_SIZE
    elif not MIN_CLUSTER_SIZE <= router.size <= MAX_CLUSTER_SIZE:
        errors.append(
            f"spec.router.size: must be between {MIN_CLUSTER_SIZE} and {MAX_CLUSTER_SIZE}"
        )

    if not router.image and mysql.version:
        router.image = f"{ROUTER_IMAGE_REPOSITORY}:{mysql.version}"
