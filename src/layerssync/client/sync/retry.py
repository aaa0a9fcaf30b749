"""Retry backoff for queue entries.

This module provides:
- compute_backoff: Exponential backoff with cap and jitter
- BackoffPolicy: Backoff settings bound to a random source

Retries are not performed in place: a failed push is requeued with a
``next_attempt_at`` computed here and the drive loop picks it up again
once it is due.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field

from layerssync.core.config import SyncConfig

# Default retry configuration
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER = 0.25  # fraction of the delay


def compute_backoff(
    attempt: int,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    jitter: float = DEFAULT_JITTER,
    rng: Callable[[], float] = random.random,
) -> float:
    """Compute the delay before retry number ``attempt``.

    The base delay doubles per attempt (``initial * multiplier**(attempt-1)``)
    and is capped at ``max_backoff``; jitter then adds up to
    ``jitter * delay`` seconds.

    Args:
        attempt: Failed attempts so far (1 for the first retry).
        initial_backoff: Delay before the first retry, in seconds.
        max_backoff: Cap of the base delay, in seconds.
        backoff_multiplier: Growth factor per attempt.
        jitter: Maximum extra delay as a fraction of the base delay.
        rng: Source of uniform numbers in [0, 1).

    Returns:
        Delay in seconds.
    """
    if attempt < 1:
        return 0.0
    delay = min(initial_backoff * backoff_multiplier ** (attempt - 1), max_backoff)
    return delay + delay * jitter * rng()


@dataclass
class BackoffPolicy:
    """Backoff settings used by the queue when requeueing entries."""

    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: float = DEFAULT_JITTER
    rng: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_config(cls, config: SyncConfig) -> BackoffPolicy:
        """Build the policy from SyncConfig."""
        return cls(
            initial_backoff=config.backoff_base,
            max_backoff=config.backoff_cap,
            jitter=config.backoff_jitter,
        )

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt``."""
        return compute_backoff(
            attempt,
            initial_backoff=self.initial_backoff,
            max_backoff=self.max_backoff,
            backoff_multiplier=self.backoff_multiplier,
            jitter=self.jitter,
            rng=self.rng,
        )
