"""Per-invocation reconcile context.

The logger and the cancellation signal are passed explicitly into
Reconciler.reconcile() and threaded through to every convergence step.
Nothing here is process-wide.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from typing import Any

from .models import ReconcileIdentity


class IdentityLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that stamps every record with the reconcile identity.

    Unlike the stock LoggerAdapter, call-site ``extra`` fields are merged
    with the adapter's fields instead of being replaced by them.
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs


@dataclass
class ReconcileContext:
    """Explicit context for one reconcile invocation."""

    identity: ReconcileIdentity
    log: logging.LoggerAdapter
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @classmethod
    def for_identity(
        cls,
        identity: ReconcileIdentity,
        logger: logging.Logger | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ReconcileContext:
        """Create a context whose log records carry namespace and cluster name."""
        base = logger or logging.getLogger("mysql_operator.reconcile")
        adapter = IdentityLoggerAdapter(
            base, {"namespace": identity.namespace, "cluster": identity.name}
        )
        return cls(
            identity=identity,
            log=adapter,
            cancel_event=cancel_event if cancel_event is not None else asyncio.Event(),
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Signal the invocation to stop initiating further work."""
        self.cancel_event.set()
