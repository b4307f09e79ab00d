"""
controller.py — Warning Lifecycle Controller.

Every non-read operation follows the same two steps:

    1. validate + persist through the WarningStore
       (ValidationError / InvalidStateError / NotFoundError abort here,
        before anything is dispatched)
    2. emit exactly one DispatchEvent for the committed write

    Operation                 Event
    ───────────────────────   ─────────────────────
    create                    created
    append_update             updated
    append_response_action    action_added
    set_action_status         action_status_changed
    resolve                   resolved
    transition_status         status_changed

Dispatch is best-effort and decoupled from persistence: in background mode
(the default) it runs as an asyncio task so the caller returns as soon as
the write commits, and a failing dispatch is logged, never raised and never
rolled back into the store. ``drain()`` waits for dispatches in flight.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import List, Optional, Set, Tuple

from backend.app.lifecycle.models import DisasterWarning, ResponseAction, WarningDraft
from backend.app.lifecycle.store import WarningStore
from backend.app.notifications.coordinator import DeliveryCoordinator
from backend.app.notifications.feed import WarningFeed
from backend.app.notifications.messages import build_event
from backend.app.notifications.models import DeliveryReport, DispatchEvent, EventKind

logger = logging.getLogger(__name__)

DEFAULT_REPORT_LIMIT = 500


class WarningLifecycleController:
    """Lifecycle operations over a :class:`WarningStore`, each followed by one dispatch."""

    def __init__(
        self,
        store: WarningStore,
        coordinator: DeliveryCoordinator,
        feed: Optional[WarningFeed] = None,
        *,
        background: bool = True,
        report_limit: int = DEFAULT_REPORT_LIMIT,
        base_url: str = "",
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.feed = feed
        self.background = background
        self.report_limit = report_limit
        self.base_url = base_url
        self._tasks: Set[asyncio.Task] = set()
        self._reports: "OrderedDict[str, DeliveryReport]" = OrderedDict()

    # ═══════════════════════════════════════════════════════════════════════
    # Operations
    # ═══════════════════════════════════════════════════════════════════════

    async def create(self, draft: WarningDraft) -> DisasterWarning:
        warning = await self.store.create(draft)
        await self._emit(EventKind.CREATED, warning)
        return warning

    async def append_update(
        self,
        warning_id: str,
        update_text: Optional[str],
        *,
        actor: str,
        severity_change: Optional[str] = None,
    ) -> DisasterWarning:
        warning = await self.store.append_update(
            warning_id, update_text, author=actor, severity_change=severity_change,
        )
        await self._emit(EventKind.UPDATED, warning, warning.updates[-1])
        return warning

    async def append_response_action(
        self,
        warning_id: str,
        action_type: Optional[str],
        description: Optional[str],
        *,
        actor: str,
    ) -> Tuple[DisasterWarning, ResponseAction]:
        warning, action = await self.store.append_response_action(
            warning_id, action_type, description, performer=actor,
        )
        await self._emit(EventKind.ACTION_ADDED, warning, action)
        return warning, action

    async def set_action_status(
        self,
        warning_id: str,
        action_id: str,
        status: Optional[str],
        *,
        actor: str,
    ) -> Tuple[DisasterWarning, ResponseAction]:
        warning, action = await self.store.set_action_status(warning_id, action_id, status)
        logger.info(
            "Action %s of warning %s set to %s by %s",
            action_id, warning_id, action.status.value, actor,
            extra={"warning_id": warning_id},
        )
        await self._emit(EventKind.ACTION_STATUS_CHANGED, warning, action)
        return warning, action

    async def resolve(
        self, warning_id: str, notes: Optional[str], *, actor: str,
    ) -> DisasterWarning:
        warning = await self.store.resolve(warning_id, notes, actor=actor)
        await self._emit(EventKind.RESOLVED, warning)
        return warning

    async def transition_status(
        self, warning_id: str, new_status: Optional[str], *, actor: str,
    ) -> DisasterWarning:
        warning = await self.store.transition_status(warning_id, new_status)
        logger.info(
            "Warning %s moved to %s by %s", warning_id, warning.status.value, actor,
            extra={"warning_id": warning_id},
        )
        await self._emit(EventKind.STATUS_CHANGED, warning)
        return warning

    # ═══════════════════════════════════════════════════════════════════════
    # Dispatch
    # ═══════════════════════════════════════════════════════════════════════

    async def _emit(self, kind: EventKind, warning: DisasterWarning, detail=None) -> DispatchEvent:
        event = build_event(kind, warning, detail, base_url=self.base_url)

        if self.feed is not None:
            self.feed.publish({**event.to_dict(), "warning": warning.to_dict()})

        if self.background:
            task = asyncio.create_task(
                self._dispatch_safely(event), name=f"dispatch:{event.key_str}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            await self._dispatch_safely(event)
        return event

    async def _dispatch_safely(self, event: DispatchEvent) -> Optional[DeliveryReport]:
        try:
            report = await self.coordinator.dispatch(event)
        except Exception:
            logger.exception(
                "Dispatch %s failed; the warning write stands", event.key_str,
                extra={"warning_id": event.warning_id, "event": event.kind.value},
            )
            return None
        self._store_report(report)
        return report

    def _store_report(self, report: DeliveryReport) -> None:
        self._reports[report.event_key] = report
        self._reports.move_to_end(report.event_key)
        while len(self._reports) > self.report_limit:
            self._reports.popitem(last=False)

    async def drain(self) -> None:
        """Wait until every dispatch in flight (including ones they spawn) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending_dispatches(self) -> int:
        return len(self._tasks)

    def reports_for(self, warning_id: str) -> List[DeliveryReport]:
        """Completed delivery reports for a warning, oldest first."""
        return [r for r in self._reports.values() if r.warning_id == warning_id]
