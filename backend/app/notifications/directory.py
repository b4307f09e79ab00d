"""
directory.py — Recipient directory: who can be notified, and where.

Holds recipients, their subscription preferences and their channel
registrations, and answers the two queries the subscriber resolver needs:

    find_near(center, radius_km)  — recipients whose last known location is
                                    within radius (bounding-box pre-filter,
                                    then Haversine)
    find_subscribers()            — recipients with active preferences

Registration rules:
    • (kind, identity) is unique across all recipients; registering an
      identity that another recipient holds moves it.
    • A recipient holds at most one registration per kind; registering a new
      one replaces the old.
    • remove_registration is idempotent: removing an absent registration is a
      no-op that returns False.

Concurrent removals for one recipient serialize on a per-recipient lock, so
two dispatches pruning the same dead token cannot interleave.
"""

from __future__ import annotations

import abc
import copy
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from backend.app.core.errors import NotFoundError
from backend.app.core.locks import KeyedLocks
from backend.app.notifications.models import (
    ChannelKind,
    ChannelRegistration,
    Recipient,
    SubscriptionPreferences,
)
from backend.app.spatial.distance import Coordinate, bounding_box, inside_box, within

logger = logging.getLogger(__name__)

UNSET = object()


class RecipientDirectory(abc.ABC):
    """Storage primitive for recipients and their channel registrations."""

    @abc.abstractmethod
    async def save_profile(
        self,
        recipient_id: str,
        *,
        name: Optional[str] = None,
        last_known_location=UNSET,
        push_enabled: Optional[bool] = None,
    ) -> Recipient:
        """Create the recipient or update the given profile fields."""

    @abc.abstractmethod
    async def get(self, recipient_id: str) -> Optional[Recipient]: ...

    @abc.abstractmethod
    async def delete(self, recipient_id: str) -> bool:
        """Delete a recipient together with its registrations."""

    @abc.abstractmethod
    async def set_preferences(
        self, recipient_id: str, preferences: Optional[SubscriptionPreferences],
    ) -> Recipient: ...

    @abc.abstractmethod
    async def register(self, registration: ChannelRegistration) -> ChannelRegistration: ...

    @abc.abstractmethod
    async def remove_registration(
        self, recipient_id: str, kind: ChannelKind, identity: str,
    ) -> bool: ...

    @abc.abstractmethod
    async def find_near(self, center: Coordinate, radius_km: float) -> List[Recipient]: ...

    @abc.abstractmethod
    async def find_subscribers(self) -> List[Recipient]: ...

    @abc.abstractmethod
    async def touch(self, registration_ids: Iterable[str]) -> None:
        """Mark registrations as recently delivered to."""

    async def ping(self) -> bool:
        return True


class InMemoryRecipientDirectory(RecipientDirectory):
    """Dict-backed directory guarded by per-recipient asyncio locks."""

    def __init__(self) -> None:
        self._recipients: Dict[str, Recipient] = {}
        self._owners: Dict[Tuple[ChannelKind, str], str] = {}
        self._locks = KeyedLocks()

    # ── Profile ───────────────────────────────────────────────────────────

    async def save_profile(
        self,
        recipient_id: str,
        *,
        name: Optional[str] = None,
        last_known_location=UNSET,
        push_enabled: Optional[bool] = None,
    ) -> Recipient:
        async with self._locks.hold(recipient_id):
            recipient = self._recipients.get(recipient_id)
            if recipient is None:
                recipient = Recipient(id=recipient_id)
                self._recipients[recipient_id] = recipient
            if name is not None:
                recipient.name = name
            if last_known_location is not UNSET:
                recipient.last_known_location = last_known_location
            if push_enabled is not None:
                recipient.push_enabled = push_enabled
            return copy.deepcopy(recipient)

    async def get(self, recipient_id: str) -> Optional[Recipient]:
        recipient = self._recipients.get(recipient_id)
        return copy.deepcopy(recipient) if recipient else None

    async def delete(self, recipient_id: str) -> bool:
        async with self._locks.hold(recipient_id):
            recipient = self._recipients.pop(recipient_id, None)
            if recipient is None:
                return False
            for registration in recipient.registrations:
                self._owners.pop(registration.key, None)
        logger.info("Recipient %s deleted", recipient_id, extra={"recipient_id": recipient_id})
        return True

    async def set_preferences(
        self, recipient_id: str, preferences: Optional[SubscriptionPreferences],
    ) -> Recipient:
        async with self._locks.hold(recipient_id):
            recipient = self._require(recipient_id)
            recipient.preferences = copy.deepcopy(preferences)
            return copy.deepcopy(recipient)

    # ── Registrations ─────────────────────────────────────────────────────

    async def register(self, registration: ChannelRegistration) -> ChannelRegistration:
        previous_owner = self._owners.get(registration.key)
        lock_ids = {registration.recipient_id, previous_owner} - {None}
        async with self._locks.hold_many(lock_ids):
            recipient = self._require(registration.recipient_id)

            owner_id = self._owners.get(registration.key)
            if owner_id is not None and owner_id in self._recipients:
                owner = self._recipients[owner_id]
                owner.registrations = [r for r in owner.registrations if r.key != registration.key]

            replaced = recipient.registration_for(registration.kind)
            if replaced is not None:
                recipient.registrations.remove(replaced)
                self._owners.pop(replaced.key, None)

            stored = copy.deepcopy(registration)
            recipient.registrations.append(stored)
            self._owners[stored.key] = recipient.id

        logger.info(
            "Registered %s for recipient %s", registration.kind.value, registration.recipient_id,
            extra={"recipient_id": registration.recipient_id, "channel": registration.kind.value},
        )
        return copy.deepcopy(stored)

    async def remove_registration(
        self, recipient_id: str, kind: ChannelKind, identity: str,
    ) -> bool:
        async with self._locks.hold(recipient_id):
            recipient = self._recipients.get(recipient_id)
            if recipient is None:
                return False
            before = len(recipient.registrations)
            recipient.registrations = [
                r for r in recipient.registrations
                if not (r.kind == kind and r.identity == identity)
            ]
            removed = len(recipient.registrations) < before
            if removed and self._owners.get((kind, identity)) == recipient_id:
                del self._owners[(kind, identity)]
        if removed:
            logger.info(
                "Removed %s registration of recipient %s", kind.value, recipient_id,
                extra={"recipient_id": recipient_id, "channel": kind.value},
            )
        return removed

    async def touch(self, registration_ids: Iterable[str]) -> None:
        wanted = set(registration_ids)
        if not wanted:
            return
        stamp = datetime.now(timezone.utc)
        for recipient in self._recipients.values():
            for registration in recipient.registrations:
                if registration.id in wanted:
                    registration.last_active = stamp

    # ── Queries ───────────────────────────────────────────────────────────

    async def find_near(self, center: Coordinate, radius_km: float) -> List[Recipient]:
        box = bounding_box(center, radius_km)
        matched = []
        for recipient in self._recipients.values():
            location = recipient.last_known_location
            if location is None or not inside_box(location, box):
                continue
            if within(center, location, radius_km):
                matched.append(copy.deepcopy(recipient))
        return matched

    async def find_subscribers(self) -> List[Recipient]:
        return [
            copy.deepcopy(r) for r in self._recipients.values()
            if r.active_preferences is not None
        ]

    def _require(self, recipient_id: str) -> Recipient:
        recipient = self._recipients.get(recipient_id)
        if recipient is None:
            raise NotFoundError("Recipient", recipient_id=recipient_id)
        return recipient
