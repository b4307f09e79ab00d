"""
ledger.py — Delivery ledger for dispatch idempotency.

Tracks each (event key, recipient, channel) through two states:

    claimed  — a dispatch owns the item and is sending it
    settled  — the item was DELIVERED or found DEAD

``claim`` is atomic under the ledger lock: of two overlapping dispatches of
the same event, only one gets any given item. ``record`` settles the claimed
items and releases TRANSIENT ones so a later replay may retry them;
``release`` drops claims whose send never completed.

The ledger is in-memory and bounded by event count (oldest settled events
evicted first); delivery is at-most-once per process lifetime, not across
restarts.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from backend.app.notifications.models import ChannelKind, DeliveryOutcome, DeliveryStatus

SettledKey = Tuple[str, ChannelKind]   # (recipient_id, channel)

DEFAULT_MAX_EVENTS = 10_000


class DeliveryLedger:

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS) -> None:
        self.max_events = max_events
        self._settled: "OrderedDict[str, Set[SettledKey]]" = OrderedDict()
        self._claimed: Dict[str, Set[SettledKey]] = {}
        self._lock = asyncio.Lock()

    def is_settled(self, event_key: str, recipient_id: str, channel: ChannelKind) -> bool:
        return (recipient_id, channel) in self._settled.get(event_key, ())

    def is_claimed(self, event_key: str, recipient_id: str, channel: ChannelKind) -> bool:
        return (recipient_id, channel) in self._claimed.get(event_key, ())

    async def claim(self, event_key: str, keys: Sequence[SettledKey]) -> List[bool]:
        """
        Claim ``keys`` for sending. Returns one flag per key: True when this
        caller now owns the item, False when it is settled or claimed already.
        """
        granted: List[bool] = []
        async with self._lock:
            settled = self._settled.get(event_key, set())
            claimed = self._claimed.setdefault(event_key, set())
            for key in keys:
                if key in settled or key in claimed:
                    granted.append(False)
                else:
                    claimed.add(key)
                    granted.append(True)
            if not claimed:
                del self._claimed[event_key]
        return granted

    async def record(self, event_key: str, outcomes: Iterable[DeliveryOutcome]) -> int:
        """Settle the outcomes of one event and drop their claims. Returns how many were new."""
        added = 0
        async with self._lock:
            settled = self._settled.setdefault(event_key, set())
            self._settled.move_to_end(event_key)
            claimed = self._claimed.get(event_key, set())
            for outcome in outcomes:
                key = (outcome.recipient_id, outcome.channel)
                claimed.discard(key)
                if outcome.status == DeliveryStatus.TRANSIENT_FAILURE:
                    continue
                if key not in settled:
                    settled.add(key)
                    added += 1
            if not claimed:
                self._claimed.pop(event_key, None)
            if not settled:
                del self._settled[event_key]
            while len(self._settled) > self.max_events:
                self._settled.popitem(last=False)
        return added

    async def release(self, event_key: str, keys: Iterable[SettledKey]) -> None:
        """Drop claims without settling them."""
        async with self._lock:
            claimed = self._claimed.get(event_key)
            if claimed is None:
                return
            claimed.difference_update(keys)
            if not claimed:
                del self._claimed[event_key]

    def __len__(self) -> int:
        return len(self._settled)
