"""Entry point for one-shot reconcile invocations.

The trigger subsystem (watch loop, work queue) is not part of this
package. main() runs exactly one reconcile invocation for one identity
and maps its outcome to a process exit code:

- 0: converged, or the cluster does not exist
- 1: fetch or step failure, or a startup error
- 2: the cluster spec is invalid
- 3: cancelled (SIGTERM/SIGINT)
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path

from kubernetes.config import ConfigException

from .config import Config, ConfigurationError
from .context import ReconcileContext
from .kube import build_clients
from .models import ReconcileIdentity
from .reconciler import Cancelled, Reconciler, ReconcileError, ValidationFailure
from .requeue import RequeuePolicy
from .secrets_step import UsersSecretStep
from .store import ClusterStore, FileClusterStore, KubernetesClusterStore
from .topology_step import MySQLTopologyStep

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_VALIDATION_FAILURE = 2
EXIT_CANCELLED = 3

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging with JSON output for production."""
    root_logger = logging.getLogger()
    if not any(isinstance(h.formatter, JsonFormatter) for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the Kubernetes client
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_reconciler(config: Config, manifests_dir: Path | None = None) -> Reconciler:
    """Wire the store and convergence steps.

    Args:
        config: Operator configuration.
        manifests_dir: Read desired state from manifest files instead of
            the custom resource. Steps still act on the Kubernetes API.
    """
    clients = build_clients(config)
    store: ClusterStore
    if manifests_dir is not None:
        store = FileClusterStore(manifests_dir)
    else:
        store = KubernetesClusterStore(clients.custom, config)

    steps = [
        UsersSecretStep(clients.core),
        MySQLTopologyStep(clients.core, clients.apps, store),
    ]
    return Reconciler(store, steps, config)


def exit_code_for(error: ReconcileError | None) -> int:
    if error is None:
        return EXIT_SUCCESS
    if isinstance(error, ValidationFailure):
        return EXIT_VALIDATION_FAILURE
    if isinstance(error, Cancelled):
        return EXIT_CANCELLED
    return EXIT_FAILURE


async def reconcile_one(
    reconciler: Reconciler,
    identity: ReconcileIdentity,
    ctx: ReconcileContext | None = None,
    attempt: int = 1,
) -> int:
    """Run one invocation and return its exit code."""
    logger = logging.getLogger(__name__)
    ctx = ctx or ReconcileContext.for_identity(identity)
    policy = RequeuePolicy.from_config(reconciler.config)

    error: ReconcileError | None = None
    try:
        await reconciler.reconcile(identity, ctx)
    except ReconcileError as e:
        error = e

    requeue_after = policy.requeue_after(error, attempt)
    if requeue_after is not None:
        logger.info(
            "Requeue suggested",
            extra={"identity": identity.key, "requeue_after_seconds": round(requeue_after, 2)},
        )
    return exit_code_for(error)


async def main(
    identity_key: str,
    manifests_dir: Path | None = None,
    install_signal_handlers: bool = True,
) -> int:
    """Run one reconcile invocation for ``namespace/name``.

    Returns:
        Exit code (see module docstring).
    """
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    setup_logging(config.log_level)

    try:
        identity = ReconcileIdentity.parse(identity_key)
    except ValueError as e:
        logger.error("Invalid identity", extra={"error": str(e)})
        return EXIT_FAILURE

    if config.watch_namespace and identity.namespace != config.watch_namespace:
        logger.error(
            "Identity outside the watched namespace",
            extra={"identity": identity.key, "watch_namespace": config.watch_namespace},
        )
        return EXIT_FAILURE

    logger.info(
        "Starting MySQL operator reconcile",
        extra={
            "identity": identity.key,
            "operator_version": config.operator_version,
            "manifests_dir": str(manifests_dir) if manifests_dir else None,
        },
    )

    try:
        reconciler = build_reconciler(config, manifests_dir)
    except ConfigException as e:
        logger.error("Failed to load Kubernetes configuration", extra={"error": str(e)})
        return EXIT_FAILURE

    ctx = ReconcileContext.for_identity(identity)

    # Set up signal handlers for graceful cancellation
    loop = asyncio.get_running_loop()
    handled: list[signal.Signals] = []

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        ctx.cancel()

    if install_signal_handlers:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler, sig)
            handled.append(sig)

    try:
        return await reconcile_one(reconciler, identity, ctx)
    finally:
        for sig in handled:
            loop.remove_signal_handler(sig)
