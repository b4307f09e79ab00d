"""
base.py — Channel dispatcher contract and shared retry helpers.

Contract (both channels):

    send(batch) -> outcomes

    • len(outcomes) == len(batch), and outcomes[i] belongs to batch[i]
    • never raises for a per-item failure; every item gets an outcome
    • a provider call that times out yields TRANSIENT_FAILURE, never DEAD

Retries apply to a *provider request* (e.g. one mobile push chunk) before any
outcome is assigned. Once an item has an outcome it is final for this
dispatch.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Sequence

from backend.app.notifications.models import (
    ChannelKind,
    DeliveryOutcome,
    DeliveryStatus,
    DispatchItem,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Retry Configuration
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryConfig:
    """Provider-request retry parameters."""
    max_retries: int = 1
    backoff_base_seconds: float = 0.5
    backoff_type: str = "exponential"  # "exponential" or "linear"
    max_backoff_seconds: float = 5.0


NO_RETRY = RetryConfig(max_retries=0)


def compute_backoff(config: RetryConfig, attempt: int) -> float:
    """
    Delay before the next retry.

    Parameters
    ----------
    config : RetryConfig
    attempt : int
        Attempt that just failed (1-based).

    Returns
    -------
    float
        Delay in seconds, capped at ``max_backoff_seconds``.
    """
    if config.backoff_type == "exponential":
        delay = config.backoff_base_seconds * (2 ** (attempt - 1))
    else:  # linear
        delay = config.backoff_base_seconds * attempt
    return min(delay, config.max_backoff_seconds)


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher contract
# ═══════════════════════════════════════════════════════════════════════════

class ChannelDispatcher(abc.ABC):
    """One delivery channel. Selected by :attr:`kind`."""

    kind: ChannelKind

    def __init__(self, *, max_concurrency: int = 10, timeout_seconds: float = 10.0) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency
        self.timeout_seconds = timeout_seconds
        self._semaphore = asyncio.Semaphore(max_concurrency)

    @abc.abstractmethod
    async def send(self, batch: Sequence[DispatchItem]) -> List[DeliveryOutcome]:
        """Deliver ``batch``; one outcome per item, in input order."""

    async def close(self) -> None:
        """Release provider connections."""

    @property
    def is_configured(self) -> bool:
        return True

    def transient_all(self, batch: Sequence[DispatchItem], reason: str) -> List[DeliveryOutcome]:
        """Every item of ``batch`` as TRANSIENT_FAILURE with the same reason."""
        return [
            DeliveryOutcome.for_item(item, DeliveryStatus.TRANSIENT_FAILURE, error_message=reason)
            for item in batch
        ]
