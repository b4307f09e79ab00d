"""
store.py — Warning Store: validated persistence of Warning aggregates.

The store is the only writer of warnings. Every write goes through
``_write``, which

    1. takes the per-warning lock (writes to one warning serialize),
    2. loads a detached copy from the repository,
    3. applies the mutation (which may raise ValidationError/InvalidStateError),
    4. bumps ``version`` / ``updated_at`` and re-checks the aggregate invariants,
    5. saves the copy back.

Nothing is saved when step 3 raises, so a rejected operation leaves no trace.

Backends implement :class:`WarningRepository`; the in-memory one lives here,
the SQLAlchemy one in ``backend.app.storage.sql_warnings``.
"""

from __future__ import annotations

import abc
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar
from urllib.parse import urlparse

from backend.app.core.errors import InvalidStateError, NotFoundError, ValidationError
from backend.app.core.locks import KeyedLocks
from backend.app.lifecycle.models import (
    ActionStatus,
    ActionType,
    AffectedLocation,
    Address,
    DisasterCategory,
    DisasterWarning,
    ResponseAction,
    Severity,
    WarningDraft,
    WarningFilters,
    WarningPage,
    WarningStatus,
    WarningUpdate,
    now,
)
from backend.app.spatial.distance import Coordinate, within

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Any)
T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════════════
# Repository interface + in-memory backend
# ═══════════════════════════════════════════════════════════════════════════

class WarningRepository(abc.ABC):
    """Storage primitive for warning aggregates (store/retrieve by id + scans)."""

    @abc.abstractmethod
    async def add(self, warning: DisasterWarning) -> None: ...

    @abc.abstractmethod
    async def get(self, warning_id: str) -> Optional[DisasterWarning]: ...

    @abc.abstractmethod
    async def save(self, warning: DisasterWarning) -> None: ...

    @abc.abstractmethod
    async def query(
        self, filters: WarningFilters, *, offset: int, limit: int,
    ) -> Tuple[List[DisasterWarning], int]:
        """Newest-first page of matching warnings plus the total match count."""

    @abc.abstractmethod
    async def unresolved(self) -> List[DisasterWarning]:
        """Warnings in ACTIVE or MONITORING, newest first."""

    async def ping(self) -> bool:
        return True


class InMemoryWarningRepository(WarningRepository):
    """Dict-backed repository; stores and returns detached copies."""

    def __init__(self) -> None:
        self._warnings: Dict[str, DisasterWarning] = {}

    async def add(self, warning: DisasterWarning) -> None:
        self._warnings[warning.id] = warning.copy()

    async def get(self, warning_id: str) -> Optional[DisasterWarning]:
        warning = self._warnings.get(warning_id)
        return warning.copy() if warning else None

    async def save(self, warning: DisasterWarning) -> None:
        self._warnings[warning.id] = warning.copy()

    def _newest_first(self) -> List[DisasterWarning]:
        # Ties on created_at keep the later insert first
        return sorted(reversed(list(self._warnings.values())), key=lambda w: w.created_at, reverse=True)

    async def query(
        self, filters: WarningFilters, *, offset: int, limit: int,
    ) -> Tuple[List[DisasterWarning], int]:
        matched = [w for w in self._newest_first() if filters.matches(w)]
        return [w.copy() for w in matched[offset:offset + limit]], len(matched)

    async def unresolved(self) -> List[DisasterWarning]:
        return [w.copy() for w in self._newest_first() if not w.is_resolved]

    def clear(self) -> None:
        self._warnings.clear()


# ═══════════════════════════════════════════════════════════════════════════
# Validation helpers
# ═══════════════════════════════════════════════════════════════════════════

def _require_text(value: Optional[str], field: str) -> str:
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{field}' is required", field=field)
    return value.strip()


def _parse_enum(enum_cls: Type[E], value: Any, field: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [m.value for m in enum_cls]
        raise ValidationError(
            f"Invalid {field} '{value}'. Must be one of: {allowed}",
            field=field,
            allowed=allowed,
        )


def _is_absolute_uri(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _parse_location(raw: Any, index: int) -> AffectedLocation:
    field = f"affected_locations[{index}]"
    if not isinstance(raw, dict):
        raise ValidationError(f"{field} must be an object", field=field)

    address = raw.get("address") or {}
    parts = {}
    for key in ("city", "district", "province"):
        value = address.get(key) if isinstance(address, dict) else None
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(
                "All locations must include address with city, district, and province",
                field=f"{field}.address.{key}",
            )
        parts[key] = value.strip()

    coordinates = None
    coords = raw.get("coordinates")
    if coords:
        try:
            coordinates = Coordinate(float(coords["latitude"]), float(coords["longitude"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(
                f"Invalid coordinates: {exc}", field=f"{field}.coordinates",
            )

    return AffectedLocation(address=Address(**parts), coordinates=coordinates)


def _check_invariants(warning: DisasterWarning) -> None:
    """Aggregate invariants; a failure here is a bug in a mutation."""
    if not warning.affected_locations:
        raise RuntimeError(f"{warning.id}: affected_locations must not be empty")
    if (warning.resolved_at is not None) != warning.is_resolved:
        raise RuntimeError(f"{warning.id}: resolved_at must be set iff status is resolved")
    if warning.is_resolved and not (warning.resolution_notes or "").strip():
        raise RuntimeError(f"{warning.id}: resolved warning without resolution notes")


# ═══════════════════════════════════════════════════════════════════════════
# Warning Store
# ═══════════════════════════════════════════════════════════════════════════

class WarningStore:
    """Validated create/mutate/read operations over a :class:`WarningRepository`."""

    def __init__(self, repository: Optional[WarningRepository] = None) -> None:
        self.repository = repository or InMemoryWarningRepository()
        self._locks = KeyedLocks()

    # ── Writes ────────────────────────────────────────────────────────────

    async def create(self, draft: WarningDraft) -> DisasterWarning:
        """Validate a draft and persist it as a new ACTIVE warning."""
        created_by = _require_text(draft.created_by, "created_by")
        title = _require_text(draft.title, "title")
        description = _require_text(draft.description, "description")
        if draft.disaster_category is None:
            raise ValidationError("'disaster_category' is required", field="disaster_category")
        category = _parse_enum(DisasterCategory, draft.disaster_category, "disaster_category")
        if draft.severity is None:
            raise ValidationError("'severity' is required", field="severity")
        severity = _parse_enum(Severity, draft.severity, "severity")

        if not draft.affected_locations:
            raise ValidationError(
                "At least one affected location is required", field="affected_locations",
            )
        locations = [_parse_location(raw, i) for i, raw in enumerate(draft.affected_locations)]

        images = list(draft.images or [])
        invalid = [url for url in images if not _is_absolute_uri(url)]
        if invalid:
            raise ValidationError(
                "All images must be absolute http(s) URLs",
                field="images",
                invalid=invalid,
            )

        warning = DisasterWarning(
            title=title,
            description=description,
            disaster_category=category,
            severity=severity,
            affected_locations=locations,
            created_by=created_by,
            images=[url.strip() for url in images],
            status=WarningStatus.ACTIVE,
        )
        _check_invariants(warning)
        await self.repository.add(warning)

        logger.info(
            "Warning %s created: %s [%s/%s] at %d location(s)",
            warning.id, title, category.value, severity.value, len(locations),
            extra={"warning_id": warning.id},
        )
        return warning

    async def append_update(
        self,
        warning_id: str,
        update_text: Optional[str],
        *,
        author: str,
        severity_change: Optional[str] = None,
    ) -> DisasterWarning:
        """Append an update; a severity_change also overwrites the severity."""
        text = _require_text(update_text, "update_text")
        new_severity = (
            _parse_enum(Severity, severity_change, "severity_change")
            if severity_change else None
        )

        def mutate(warning: DisasterWarning) -> None:
            if warning.is_resolved:
                raise InvalidStateError(
                    "Cannot update a resolved warning", status=warning.status.value,
                )
            warning.updates.append(WarningUpdate(
                update_text=text,
                updated_by=author,
                severity_change=new_severity,
            ))
            if new_severity:
                warning.severity = new_severity

        warning, _ = await self._write(warning_id, mutate)
        return warning

    async def append_response_action(
        self,
        warning_id: str,
        action_type: Optional[str],
        description: Optional[str],
        *,
        performer: str,
    ) -> Tuple[DisasterWarning, ResponseAction]:
        """Append a PLANNED response action; refused once resolved."""
        if not action_type:
            raise ValidationError("'action_type' is required", field="action_type")
        kind = _parse_enum(ActionType, action_type, "action_type")
        text = _require_text(description, "description")

        def mutate(warning: DisasterWarning) -> ResponseAction:
            if warning.is_resolved:
                raise InvalidStateError(
                    "Cannot add actions to a resolved warning", status=warning.status.value,
                )
            action = ResponseAction(action_type=kind, description=text, performed_by=performer)
            warning.response_actions.append(action)
            return action

        return await self._write(warning_id, mutate)

    async def set_action_status(
        self,
        warning_id: str,
        action_id: str,
        status: Optional[str],
    ) -> Tuple[DisasterWarning, ResponseAction]:
        """
        Set a response action's status.

        Any status may follow any other, and the change is accepted on
        resolved warnings too; only membership in ActionStatus is checked.
        """
        if not status:
            raise ValidationError("'status' is required", field="status")
        new_status = _parse_enum(ActionStatus, status, "status")

        def mutate(warning: DisasterWarning) -> ResponseAction:
            action = warning.find_action(action_id)
            if action is None:
                raise NotFoundError("Response action", warning_id=warning_id, action_id=action_id)
            action.status = new_status
            return action

        return await self._write(warning_id, mutate)

    async def resolve(
        self, warning_id: str, notes: Optional[str], *, actor: str,
    ) -> DisasterWarning:
        """Move a warning to RESOLVED; notes are mandatory."""
        text = _require_text(notes, "resolution_notes")

        def mutate(warning: DisasterWarning) -> None:
            if warning.is_resolved:
                raise InvalidStateError(
                    "Warning is already resolved", status=warning.status.value,
                )
            warning.status = WarningStatus.RESOLVED
            warning.resolved_by = actor
            warning.resolved_at = now()
            warning.resolution_notes = text

        warning, _ = await self._write(warning_id, mutate)
        logger.info("Warning %s resolved by %s", warning_id, actor, extra={"warning_id": warning_id})
        return warning

    async def transition_status(
        self, warning_id: str, new_status: Optional[str],
    ) -> DisasterWarning:
        """Free ACTIVE ↔ MONITORING transition. RESOLVED only via :meth:`resolve`."""
        if not new_status:
            raise ValidationError("'status' is required", field="status")
        target = _parse_enum(WarningStatus, new_status, "status")
        if target == WarningStatus.RESOLVED:
            raise InvalidStateError("Use resolve to close a warning")

        def mutate(warning: DisasterWarning) -> None:
            if warning.is_resolved:
                raise InvalidStateError(
                    "Resolved warnings cannot change status", status=warning.status.value,
                )
            warning.status = target

        warning, _ = await self._write(warning_id, mutate)
        return warning

    async def _write(
        self, warning_id: str, mutate: Callable[[DisasterWarning], T],
    ) -> Tuple[DisasterWarning, T]:
        async with self._locks.hold(warning_id):
            warning = await self.repository.get(warning_id)
            if warning is None:
                raise NotFoundError("Warning", warning_id=warning_id)

            result = mutate(warning)

            warning.version += 1
            warning.updated_at = now()
            _check_invariants(warning)
            await self.repository.save(warning)

        logger.debug(
            "Warning %s written (version %d)", warning_id, warning.version,
            extra={"warning_id": warning_id},
        )
        return warning, result

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get(self, warning_id: str) -> DisasterWarning:
        warning = await self.repository.get(warning_id)
        if warning is None:
            raise NotFoundError("Warning", warning_id=warning_id)
        return warning

    async def list_warnings(
        self,
        filters: Optional[WarningFilters] = None,
        *,
        page: int = 1,
        limit: int = 10,
    ) -> WarningPage:
        if page < 1:
            raise ValidationError("page must be >= 1", field="page")
        if limit < 1:
            raise ValidationError("limit must be >= 1", field="limit")
        items, total = await self.repository.query(
            filters or WarningFilters(), offset=(page - 1) * limit, limit=limit,
        )
        return WarningPage(items=items, page=page, limit=limit, total=total)

    async def active(self) -> List[DisasterWarning]:
        """Public feed: warnings that are ACTIVE or MONITORING."""
        return await self.repository.unresolved()

    async def near(self, location: Coordinate, radius_km: float) -> List[DisasterWarning]:
        """Unresolved warnings with any affected location within ``radius_km``."""
        if radius_km <= 0:
            raise ValidationError(f"Radius must be positive, got {radius_km}", field="radius_km")
        return [
            w for w in await self.repository.unresolved()
            if any(within(location, c, radius_km) for c in w.coordinates)
        ]
