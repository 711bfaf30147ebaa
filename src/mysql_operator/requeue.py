"""Requeue policy for the trigger subsystem.

The reconcile loop never retries internally. Whoever drives it asks this
policy how long to wait before the next attempt for the same identity.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from .config import (
    DEFAULT_REQUEUE_BASE_SECONDS,
    DEFAULT_REQUEUE_MAX_SECONDS,
    REQUEUE_JITTER_RATIO,
    Config,
)
from .reconciler import Cancelled, ReconcileError


@dataclass
class RequeuePolicy:
    """Exponential backoff with bounded jitter for retryable failures."""

    base_seconds: float = DEFAULT_REQUEUE_BASE_SECONDS
    max_seconds: float = DEFAULT_REQUEUE_MAX_SECONDS
    jitter_ratio: float = REQUEUE_JITTER_RATIO
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be positive")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be between 0 and 1")

    @classmethod
    def from_config(cls, cfg: Config) -> RequeuePolicy:
        return cls(base_seconds=cfg.requeue_base_seconds, max_seconds=cfg.requeue_max_seconds)

    def requeue_after(self, error: ReconcileError | None, attempt: int) -> float | None:
        """Seconds to wait before retrying, or None if no retry is due.

        Args:
            error: Error raised by the last invocation, None on success.
            attempt: 1-based count of consecutive failed attempts. Cancelled
                invocations do not count.

        Returns:
            None for success and for failures that need a cluster spec
            change, 0.0 for a cancelled invocation, otherwise the backoff.
        """
        if error is None or not error.retryable:
            return None
        if isinstance(error, Cancelled):
            return 0.0

        attempt = max(attempt, 1)
        # Cap the exponent so large attempt counts cannot overflow
        backoff = min(self.base_seconds * (2 ** min(attempt - 1, 32)), self.max_seconds)
        jitter = self.rng.uniform(0, backoff * self.jitter_ratio)
        return backoff + jitter
