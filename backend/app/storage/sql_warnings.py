"""
sql_warnings.py — SQLAlchemy-backed WarningRepository.

Each warning is one ``warnings`` row: the whole aggregate (including its
updates and response actions) as a JSON document, plus scalar copies of the
fields the read paths filter and sort on.

Category/status/severity filters and paging run in SQL. Address filters
(city/district/province substring) look inside the document, so when one is
present the scalar-filtered rows are matched in Python before paging.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.lifecycle.models import DisasterWarning, WarningFilters, WarningStatus
from backend.app.lifecycle.store import WarningRepository
from backend.app.storage.tables import WarningRow

logger = logging.getLogger(__name__)


def _apply_scalars(row: WarningRow, warning: DisasterWarning) -> None:
    row.status = warning.status.value
    row.disaster_category = warning.disaster_category.value
    row.severity = warning.severity.value
    row.created_by = warning.created_by
    row.created_at = warning.created_at
    row.updated_at = warning.updated_at
    row.version = warning.version
    row.document = warning.to_dict()


class SqlWarningRepository(WarningRepository):
    """Warning repository over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, warning: DisasterWarning) -> None:
        row = WarningRow(id=warning.id)
        _apply_scalars(row, warning)
        async with self._session_factory() as session, session.begin():
            session.add(row)

    async def get(self, warning_id: str) -> Optional[DisasterWarning]:
        async with self._session_factory() as session:
            row = await session.get(WarningRow, warning_id)
            return DisasterWarning.from_dict(row.document) if row else None

    async def save(self, warning: DisasterWarning) -> None:
        async with self._session_factory() as session, session.begin():
            row = await session.get(WarningRow, warning.id)
            if row is None:
                row = WarningRow(id=warning.id)
                session.add(row)
            _apply_scalars(row, warning)

    async def query(
        self, filters: WarningFilters, *, offset: int, limit: int,
    ) -> Tuple[List[DisasterWarning], int]:
        stmt = select(WarningRow)
        if filters.disaster_category:
            stmt = stmt.where(WarningRow.disaster_category == filters.disaster_category.value)
        if filters.status:
            stmt = stmt.where(WarningRow.status == filters.status.value)
        if filters.severity:
            stmt = stmt.where(WarningRow.severity == filters.severity.value)
        stmt = stmt.order_by(WarningRow.created_at.desc(), WarningRow.id)

        async with self._session_factory() as session:
            if filters.city or filters.district or filters.province:
                rows = (await session.execute(stmt)).scalars().all()
                matched = [
                    w for w in (DisasterWarning.from_dict(r.document) for r in rows)
                    if filters.matches(w)
                ]
                return matched[offset:offset + limit], len(matched)

            total = await session.scalar(
                select(func.count()).select_from(stmt.order_by(None).subquery())
            )
            rows = (await session.execute(stmt.offset(offset).limit(limit))).scalars().all()
            return [DisasterWarning.from_dict(r.document) for r in rows], int(total or 0)

    async def unresolved(self) -> List[DisasterWarning]:
        stmt = (
            select(WarningRow)
            .where(WarningRow.status != WarningStatus.RESOLVED.value)
            .order_by(WarningRow.created_at.desc(), WarningRow.id)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [DisasterWarning.from_dict(r.document) for r in rows]

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("Warning storage ping failed: %s", exc)
            return False
