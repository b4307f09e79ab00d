"""
models.py — Warning aggregate and its embedded records.

Defines:
    • DisasterCategory, Severity, WarningStatus, ActionType, ActionStatus
    • Address, AffectedLocation — where a warning applies
    • WarningUpdate   — immutable amendment appended to a warning
    • ResponseAction  — tracked operational action tied to a warning
    • DisasterWarning — the aggregate (owns its updates and actions)
    • WarningDraft    — unvalidated creation input
    • WarningFilters, WarningPage — read-path query shapes

═══════════════════════════════════════════════════════════════════════════
STATUS MACHINE
═══════════════════════════════════════════════════════════════════════════

    create ──▶ ACTIVE ◀──▶ MONITORING
                 │             │
                 └─── resolve ─┴──▶ RESOLVED  (terminal)

    • ACTIVE ↔ MONITORING is free.
    • RESOLVED is reachable only through resolve(), which requires notes.
    • Updates and new response actions are refused once RESOLVED.

Every committed write bumps ``DisasterWarning.version``; the version is part of the
dispatch idempotency key, so each write fans out at most once.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from backend.app.spatial.distance import Coordinate


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class DisasterCategory(str, Enum):
    FLOOD      = "flood"
    FIRE       = "fire"
    EARTHQUAKE = "earthquake"
    LANDSLIDE  = "landslide"
    CYCLONE    = "cyclone"


class Severity(str, Enum):
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"

    @property
    def is_urgent(self) -> bool:
        return self in (Severity.HIGH, Severity.CRITICAL)


class WarningStatus(str, Enum):
    ACTIVE     = "active"
    MONITORING = "monitoring"
    RESOLVED   = "resolved"     # terminal


class ActionType(str, Enum):
    EVACUATION            = "evacuation"
    RESCUE                = "rescue"
    RELIEF_DISTRIBUTION   = "relief_distribution"
    MEDICAL_ASSISTANCE    = "medical_assistance"
    INFRASTRUCTURE_REPAIR = "infrastructure_repair"
    ROAD_CLOSURE          = "road_closure"
    SHELTER_SETUP         = "shelter_setup"
    OTHER                 = "other"


class ActionStatus(str, Enum):
    PLANNED     = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED   = "completed"
    CANCELLED   = "cancelled"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def generate_warning_id() -> str:
    return f"WRN-{uuid.uuid4().hex[:12].upper()}"


def _generate_child_id() -> str:
    return uuid.uuid4().hex[:12]


def now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Locations
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Address:
    """Administrative address of an affected location."""
    city: str
    district: str
    province: str

    @property
    def parts(self) -> Tuple[str, str, str]:
        return (self.city, self.district, self.province)

    def to_dict(self) -> Dict[str, str]:
        return {"city": self.city, "district": self.district, "province": self.province}


@dataclass(frozen=True)
class AffectedLocation:
    """
    One place a warning applies to.

    ``coordinates`` may be absent: such a location still counts for
    region-based subscription matching but not for proximity matching.
    """
    address: Address
    coordinates: Optional[Coordinate] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coordinates": self.coordinates.to_dict() if self.coordinates else None,
            "address": self.address.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AffectedLocation":
        coords = data.get("coordinates")
        return cls(
            address=Address(**data["address"]),
            coordinates=Coordinate(coords["latitude"], coords["longitude"]) if coords else None,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Embedded records
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class WarningUpdate:
    """An amendment appended to a warning. Never modified after append."""
    update_text: str
    updated_by: str
    updated_at: datetime = field(default_factory=now)
    severity_change: Optional[Severity] = None
    id: str = field(default_factory=_generate_child_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "update_text": self.update_text,
            "updated_by": self.updated_by,
            "updated_at": _iso(self.updated_at),
            "severity_change": self.severity_change.value if self.severity_change else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WarningUpdate":
        return cls(
            id=data["id"],
            update_text=data["update_text"],
            updated_by=data["updated_by"],
            updated_at=_parse_dt(data["updated_at"]),
            severity_change=Severity(data["severity_change"]) if data.get("severity_change") else None,
        )


@dataclass
class ResponseAction:
    """A tracked operational action. Only ``status`` changes after creation."""
    action_type: ActionType
    description: str
    performed_by: str
    performed_at: datetime = field(default_factory=now)
    status: ActionStatus = ActionStatus.PLANNED
    id: str = field(default_factory=_generate_child_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action_type": self.action_type.value,
            "description": self.description,
            "performed_by": self.performed_by,
            "performed_at": _iso(self.performed_at),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResponseAction":
        return cls(
            id=data["id"],
            action_type=ActionType(data["action_type"]),
            description=data["description"],
            performed_by=data["performed_by"],
            performed_at=_parse_dt(data["performed_at"]),
            status=ActionStatus(data["status"]),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Aggregate
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class DisasterWarning:
    """
    A single disaster advisory with its embedded updates and actions.

    Invariants (enforced by the store on every write):
        • affected_locations is non-empty
        • resolved_at is set iff status is RESOLVED
        • resolution_notes is non-empty when RESOLVED
    """
    title: str
    description: str
    disaster_category: DisasterCategory
    severity: Severity
    affected_locations: List[AffectedLocation]
    created_by: str
    id: str = field(default_factory=generate_warning_id)
    status: WarningStatus = WarningStatus.ACTIVE
    images: List[str] = field(default_factory=list)
    updates: List[WarningUpdate] = field(default_factory=list)
    response_actions: List[ResponseAction] = field(default_factory=list)
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    created_at: datetime = field(default_factory=now)
    updated_at: datetime = field(default_factory=now)
    version: int = 1

    @property
    def is_resolved(self) -> bool:
        return self.status == WarningStatus.RESOLVED

    @property
    def coordinates(self) -> List[Coordinate]:
        """Coordinates of every affected location that has them."""
        return [loc.coordinates for loc in self.affected_locations if loc.coordinates]

    @property
    def region_names(self) -> set:
        """Lower-cased city/district/province names across all locations."""
        names = set()
        for loc in self.affected_locations:
            names.update(part.strip().lower() for part in loc.address.parts if part)
        return names

    def find_action(self, action_id: str) -> Optional[ResponseAction]:
        for action in self.response_actions:
            if action.id == action_id:
                return action
        return None

    def copy(self) -> "DisasterWarning":
        """Detached copy; embedded lists and mutable actions are cloned."""
        return replace(
            self,
            affected_locations=list(self.affected_locations),
            images=list(self.images),
            updates=list(self.updates),
            response_actions=[replace(a) for a in self.response_actions],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "disaster_category": self.disaster_category.value,
            "severity": self.severity.value,
            "status": self.status.value,
            "affected_locations": [loc.to_dict() for loc in self.affected_locations],
            "images": list(self.images),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "resolution_notes": self.resolution_notes,
            "updates": [u.to_dict() for u in self.updates],
            "response_actions": [a.to_dict() for a in self.response_actions],
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DisasterWarning":
        return cls(
            id=data["id"],
            title=data["title"],
            description=data["description"],
            disaster_category=DisasterCategory(data["disaster_category"]),
            severity=Severity(data["severity"]),
            status=WarningStatus(data["status"]),
            affected_locations=[AffectedLocation.from_dict(loc) for loc in data["affected_locations"]],
            images=list(data.get("images") or []),
            created_by=data["created_by"],
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            resolved_by=data.get("resolved_by"),
            resolved_at=_parse_dt(data.get("resolved_at")),
            resolution_notes=data.get("resolution_notes"),
            updates=[WarningUpdate.from_dict(u) for u in data.get("updates") or []],
            response_actions=[ResponseAction.from_dict(a) for a in data.get("response_actions") or []],
            version=data.get("version", 1),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Inputs and query shapes
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class WarningDraft:
    """
    Unvalidated creation input, as received from the HTTP layer.

    Kept loosely typed on purpose: the store validates every field and
    reports the first offending one.
    """
    title: Optional[str] = None
    description: Optional[str] = None
    disaster_category: Optional[str] = None
    severity: Optional[str] = None
    affected_locations: Optional[List[Dict[str, Any]]] = None
    created_by: Optional[str] = None
    images: Optional[List[str]] = None


@dataclass
class WarningFilters:
    disaster_category: Optional[DisasterCategory] = None
    status: Optional[WarningStatus] = None
    severity: Optional[Severity] = None
    city: Optional[str] = None
    district: Optional[str] = None
    province: Optional[str] = None

    def matches(self, warning: DisasterWarning) -> bool:
        if self.disaster_category and warning.disaster_category != self.disaster_category:
            return False
        if self.status and warning.status != self.status:
            return False
        if self.severity and warning.severity != self.severity:
            return False
        for attr in ("city", "district", "province"):
            needle = getattr(self, attr)
            if needle and not any(
                needle.lower() in getattr(loc.address, attr).lower()
                for loc in warning.affected_locations
            ):
                return False
        return True


@dataclass
class WarningPage:
    items: List[DisasterWarning]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "warnings": [w.to_dict() for w in self.items],
            "current_page": self.page,
            "total_pages": self.total_pages,
            "total_warnings": self.total,
        }
