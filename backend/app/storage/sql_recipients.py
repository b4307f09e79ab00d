"""
sql_recipients.py — SQLAlchemy-backed RecipientDirectory.

Registration removal is a single conditional DELETE
(recipient_id, kind, identity), so concurrent dispatches pruning the same dead
address cannot race: one statement removes the row and the other affects
zero rows and reports False.

Registering runs in one transaction that first deletes any row holding the
same (kind, identity) (moving it away from another recipient) and any row of
the same kind on the target recipient, then inserts the new row. The UNIQUE
(kind, identity) constraint backs this up at the database level.

``find_near`` narrows candidates with a latitude/longitude bounding box in
SQL, then applies the exact Haversine check in Python.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import delete, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from backend.app.core.errors import NotFoundError
from backend.app.notifications.directory import UNSET, RecipientDirectory
from backend.app.notifications.models import (
    ChannelKind,
    ChannelRegistration,
    Recipient,
    SubscriptionPreferences,
)
from backend.app.spatial.distance import Coordinate, bounding_box, within
from backend.app.storage.tables import ChannelRegistrationRow, RecipientRow

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return datetime.now(timezone.utc)
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_registration(row: ChannelRegistrationRow) -> ChannelRegistration:
    return ChannelRegistration(
        id=row.id,
        kind=ChannelKind(row.kind),
        recipient_id=row.recipient_id,
        identity=row.identity,
        keys=dict(row.keys or {}),
        user_agent=row.user_agent,
        platform=row.platform,
        created_at=_aware(row.created_at),
        last_active=_aware(row.last_active),
    )


def _to_recipient(row: RecipientRow) -> Recipient:
    location = None
    if row.latitude is not None and row.longitude is not None:
        location = Coordinate(row.latitude, row.longitude)
    return Recipient(
        id=row.id,
        name=row.name,
        last_known_location=location,
        preferences=SubscriptionPreferences.from_dict(row.preferences) if row.preferences else None,
        push_enabled=row.push_enabled,
        registrations=[_to_registration(r) for r in row.registrations],
    )


class SqlRecipientDirectory(RecipientDirectory):
    """Recipient directory over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _select():
        return select(RecipientRow).options(selectinload(RecipientRow.registrations))

    async def _load(self, session: AsyncSession, recipient_id: str) -> Optional[RecipientRow]:
        result = await session.execute(self._select().where(RecipientRow.id == recipient_id))
        return result.scalar_one_or_none()

    # ── Profile ───────────────────────────────────────────────────────────

    async def save_profile(
        self,
        recipient_id: str,
        *,
        name: Optional[str] = None,
        last_known_location=UNSET,
        push_enabled: Optional[bool] = None,
    ) -> Recipient:
        async with self._session_factory() as session, session.begin():
            row = await self._load(session, recipient_id)
            if row is None:
                row = RecipientRow(id=recipient_id, name="", push_enabled=True, subscribed=False)
                row.registrations = []
                session.add(row)
            if name is not None:
                row.name = name
            if last_known_location is not UNSET:
                row.latitude = last_known_location.latitude if last_known_location else None
                row.longitude = last_known_location.longitude if last_known_location else None
            if push_enabled is not None:
                row.push_enabled = push_enabled
            await session.flush()
            return _to_recipient(row)

    async def get(self, recipient_id: str) -> Optional[Recipient]:
        async with self._session_factory() as session:
            row = await self._load(session, recipient_id)
            return _to_recipient(row) if row else None

    async def delete(self, recipient_id: str) -> bool:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                delete(ChannelRegistrationRow).where(ChannelRegistrationRow.recipient_id == recipient_id)
            )
            result = await session.execute(delete(RecipientRow).where(RecipientRow.id == recipient_id))
        deleted = result.rowcount > 0
        if deleted:
            logger.info("Recipient %s deleted", recipient_id, extra={"recipient_id": recipient_id})
        return deleted

    async def set_preferences(
        self, recipient_id: str, preferences: Optional[SubscriptionPreferences],
    ) -> Recipient:
        async with self._session_factory() as session, session.begin():
            row = await self._load(session, recipient_id)
            if row is None:
                raise NotFoundError("Recipient", recipient_id=recipient_id)
            row.preferences = preferences.to_dict() if preferences else None
            row.subscribed = bool(preferences and preferences.is_active)
            return _to_recipient(row)

    # ── Registrations ─────────────────────────────────────────────────────

    async def register(self, registration: ChannelRegistration) -> ChannelRegistration:
        async with self._session_factory() as session, session.begin():
            if await session.get(RecipientRow, registration.recipient_id) is None:
                raise NotFoundError("Recipient", recipient_id=registration.recipient_id)

            await session.execute(
                delete(ChannelRegistrationRow).where(
                    ChannelRegistrationRow.kind == registration.kind.value,
                    (ChannelRegistrationRow.identity == registration.identity)
                    | (ChannelRegistrationRow.recipient_id == registration.recipient_id),
                )
            )
            session.add(ChannelRegistrationRow(
                id=registration.id,
                recipient_id=registration.recipient_id,
                kind=registration.kind.value,
                identity=registration.identity,
                keys=dict(registration.keys),
                user_agent=registration.user_agent,
                platform=registration.platform,
                created_at=registration.created_at,
                last_active=registration.last_active,
            ))

        logger.info(
            "Registered %s for recipient %s", registration.kind.value, registration.recipient_id,
            extra={"recipient_id": registration.recipient_id, "channel": registration.kind.value},
        )
        return registration

    async def remove_registration(
        self, recipient_id: str, kind: ChannelKind, identity: str,
    ) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(ChannelRegistrationRow).where(
                    ChannelRegistrationRow.recipient_id == recipient_id,
                    ChannelRegistrationRow.kind == kind.value,
                    ChannelRegistrationRow.identity == identity,
                )
            )
        removed = result.rowcount > 0
        if removed:
            logger.info(
                "Removed %s registration of recipient %s", kind.value, recipient_id,
                extra={"recipient_id": recipient_id, "channel": kind.value},
            )
        return removed

    async def touch(self, registration_ids: Iterable[str]) -> None:
        ids = list(set(registration_ids))
        if not ids:
            return
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(ChannelRegistrationRow)
                .where(ChannelRegistrationRow.id.in_(ids))
                .values(last_active=datetime.now(timezone.utc))
            )

    # ── Queries ───────────────────────────────────────────────────────────

    async def find_near(self, center: Coordinate, radius_km: float) -> List[Recipient]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(center, radius_km)
        stmt = self._select().where(
            RecipientRow.latitude.is_not(None),
            RecipientRow.longitude.is_not(None),
            RecipientRow.latitude.between(min_lat, max_lat),
            RecipientRow.longitude.between(min_lon, max_lon),
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            recipients = [_to_recipient(r) for r in rows]
        return [r for r in recipients if within(center, r.last_known_location, radius_km)]

    async def find_subscribers(self) -> List[Recipient]:
        stmt = self._select().where(RecipientRow.subscribed.is_(True))
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_recipient(r) for r in rows]

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("Recipient storage ping failed: %s", exc)
            return False
