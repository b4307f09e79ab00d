"""
coordinator.py — Delivery Coordinator: one dispatch event → one report.

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Resolve         │  SubscriberResolver → recipients
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Fan out         │  one item per (recipient, registration)
    │                     │  claimed in the ledger; settled or in-flight
    │                     │  items of this event are skipped
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  3. Dispatch        │  channel partitions sent concurrently
    │                     │  (asyncio.gather); a dispatcher that raises
    │                     │  turns its whole partition TRANSIENT;
    │                     │  DELIVERED/DEAD → ledger, TRANSIENT released
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Settle          │  DEAD → remove registration
    │                     │  DELIVERED → touch last_active
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  5. Report          │  DeliveryReport
    └─────────────────────┘

Channels are independent: a recipient registered on both receives the
message twice, once per channel. ``dispatch`` never raises for delivery
failures; a total provider outage yields a report with zero delivered.
Overlapping dispatches of one event never send the same item twice.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Tuple

from backend.app.notifications.channels.base import ChannelDispatcher
from backend.app.notifications.directory import RecipientDirectory
from backend.app.notifications.ledger import DeliveryLedger, SettledKey
from backend.app.notifications.models import (
    ChannelKind,
    DeliveryOutcome,
    DeliveryReport,
    DeliveryStatus,
    DispatchEvent,
    DispatchItem,
)
from backend.app.notifications.resolver import SubscriberResolver

logger = logging.getLogger(__name__)


class DeliveryCoordinator:
    """Fan a :class:`DispatchEvent` out across the registered channel dispatchers."""

    def __init__(
        self,
        resolver: SubscriberResolver,
        directory: RecipientDirectory,
        dispatchers: Mapping[ChannelKind, ChannelDispatcher],
        ledger: Optional[DeliveryLedger] = None,
    ) -> None:
        self.resolver = resolver
        self.directory = directory
        self.dispatchers = dict(dispatchers)
        self.ledger = ledger or DeliveryLedger()

    async def dispatch(self, event: DispatchEvent) -> DeliveryReport:
        """
        Deliver ``event`` to every resolved recipient.

        Delivery failures never raise; they are outcomes in the report. Pruning
        and last-active bookkeeping after the send are logged on failure and do
        not raise either. A failure to resolve recipients propagates, since
        nothing has been sent at that point.
        """
        start = time.perf_counter()
        report = DeliveryReport(
            event_key=event.key_str,
            warning_id=event.warning_id,
            event=event.kind,
        )

        # ── Step 1: Resolve recipients ──
        recipients = await self.resolver.resolve(event.warning)
        report.recipients_matched = len(recipients)

        # ── Step 2: Claim items and fan out into per-channel partitions ──
        candidates = [
            DispatchItem(registration=registration, message=event.message)
            for recipient in recipients
            for registration in recipient.registrations
        ]
        keys = [(item.recipient_id, item.registration.kind) for item in candidates]
        granted = await self.ledger.claim(event.key_str, keys)

        partitions: Dict[ChannelKind, List[DispatchItem]] = {}
        claimed: List[SettledKey] = []
        for item, key, owned in zip(candidates, keys, granted):
            if not owned:
                # Settled earlier, or another dispatch of this event is sending it
                report.skipped_duplicates += 1
                continue
            claimed.append(key)
            partitions.setdefault(item.registration.kind, []).append(item)

        # ── Step 3: Dispatch channels concurrently ──
        try:
            kinds = list(partitions)
            results = await asyncio.gather(
                *(self._send_partition(kind, partitions[kind]) for kind in kinds)
            )
            settled: List[Tuple[DispatchItem, DeliveryOutcome]] = []
            for kind, result in zip(kinds, results):
                for item, outcome in zip(partitions[kind], result):
                    report.add(outcome)
                    settled.append((item, outcome))
            outcomes = [outcome for _, outcome in settled]
            await self.ledger.record(event.key_str, outcomes)
        except BaseException:
            await self.ledger.release(event.key_str, claimed)
            raise

        # ── Step 4: Settle ──
        report.registrations_pruned = await self._prune_dead(settled)
        delivered_ids = [o.registration_id for o in outcomes if o.status == DeliveryStatus.DELIVERED]
        if delivered_ids:
            try:
                await self.directory.touch(delivered_ids)
            except Exception:
                logger.exception(
                    "Could not update last_active for %d registration(s)", len(delivered_ids),
                    extra={"warning_id": event.warning_id},
                )

        # ── Step 5: Report ──
        report.completed_at = datetime.now(timezone.utc)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "Dispatch %s: %d recipient(s), %d delivered, %d transient, %d dead, "
            "%d skipped, %.0fms",
            event.key_str, report.recipients_matched, report.delivered,
            report.transient_failures, report.dead_count, report.skipped_duplicates,
            duration_ms,
            extra={
                "warning_id": event.warning_id,
                "event": event.kind.value,
                "event_version": event.version,
                "recipient_count": report.recipients_matched,
                "delivered": report.delivered,
                "transient_failures": report.transient_failures,
                "dead_count": report.dead_count,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return report

    async def _send_partition(
        self, kind: ChannelKind, items: List[DispatchItem],
    ) -> List[DeliveryOutcome]:
        """Send one channel's items; never raises, always one outcome per item."""
        dispatcher = self.dispatchers.get(kind)
        if dispatcher is None:
            logger.warning("No dispatcher for channel %s; %d item(s) not sent", kind.value, len(items))
            return [
                DeliveryOutcome.for_item(
                    item, DeliveryStatus.TRANSIENT_FAILURE,
                    error_message=f"No dispatcher for channel: {kind.value}",
                )
                for item in items
            ]

        try:
            outcomes = await dispatcher.send(items)
        except Exception as exc:
            logger.exception(
                "Dispatcher %s failed for %d item(s)", kind.value, len(items),
                extra={"channel": kind.value},
            )
            return dispatcher.transient_all(items, f"Dispatcher error: {exc}")

        if len(outcomes) != len(items):
            # Misaligned outcomes cannot be mapped back to registrations
            logger.error(
                "Dispatcher %s returned %d outcome(s) for %d item(s)",
                kind.value, len(outcomes), len(items), extra={"channel": kind.value},
            )
            return dispatcher.transient_all(items, "Dispatcher returned misaligned outcomes")
        return outcomes

    async def _prune_dead(self, settled: List[Tuple[DispatchItem, DeliveryOutcome]]) -> int:
        """Remove every registration reported DEAD. Removal is idempotent."""
        pruned = 0
        for item, outcome in settled:
            if outcome.status != DeliveryStatus.DEAD:
                continue
            registration = item.registration
            try:
                removed = await self.directory.remove_registration(
                    registration.recipient_id, registration.kind, registration.identity,
                )
            except Exception:
                logger.exception(
                    "Could not remove dead %s registration of recipient %s",
                    registration.kind.value, registration.recipient_id,
                    extra={"recipient_id": registration.recipient_id, "channel": registration.kind.value},
                )
                continue
            if removed:
                pruned += 1
                logger.info(
                    "Pruned dead %s registration of recipient %s (%s)",
                    registration.kind.value, registration.recipient_id, outcome.error_message,
                    extra={"recipient_id": registration.recipient_id, "channel": registration.kind.value},
                )
        return pruned
