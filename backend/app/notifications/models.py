"""
models.py — Shared data structures for warning notification dispatch.

Defines:
    • ChannelKind       — the two delivery channels (tagged enum)
    • ChannelRegistration — one delivery address on one channel
    • SubscriptionPreferences / Recipient — who can be notified
    • EventKind / DispatchEvent — one fan-out triggered by a warning write
    • NotificationMessage — channel-neutral message content
    • DispatchItem / DeliveryOutcome — per-registration send and result
    • DeliveryReport    — aggregate outcome of one dispatch

═══════════════════════════════════════════════════════════════════════════
OUTCOME SEMANTICS
═══════════════════════════════════════════════════════════════════════════

    Outcome              Meaning                          Effect
    ─────────────────    ─────────────────────────────    ──────────────────────
    DELIVERED            provider accepted the message    ledger records it
    TRANSIENT_FAILURE    provider/network trouble,        logged; may succeed on
                         timeout, throttling              a later dispatch
    DEAD                 provider says the address is     registration removed,
                         permanently invalid              ledger records it

A timeout is never DEAD: it is not proof that the address is gone.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from backend.app.lifecycle.models import DisasterCategory, DisasterWarning
from backend.app.spatial.distance import Coordinate


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class ChannelKind(str, Enum):
    """Delivery channels. Dispatchers are selected by this tag."""
    MOBILE_PUSH = "mobile_push"   # Expo push token
    WEB_PUSH    = "web_push"      # W3C push subscription (endpoint + keys)


class Frequency(str, Enum):
    INSTANT = "instant"
    DAILY   = "daily"
    WEEKLY  = "weekly"


class EventKind(str, Enum):
    """Warning state changes that trigger a dispatch."""
    CREATED               = "created"
    UPDATED               = "updated"
    RESOLVED              = "resolved"
    ACTION_ADDED          = "action_added"
    STATUS_CHANGED        = "status_changed"
    ACTION_STATUS_CHANGED = "action_status_changed"


class DeliveryStatus(str, Enum):
    DELIVERED         = "delivered"
    TRANSIENT_FAILURE = "transient_failure"
    DEAD              = "dead"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _generate_id() -> str:
    return uuid.uuid4().hex[:16]


# ═══════════════════════════════════════════════════════════════════════════
# Recipients and registrations
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ChannelRegistration:
    """
    A delivery address on one channel.

    ``identity`` is the push token (mobile) or the endpoint URL (web push);
    (kind, identity) is unique across all recipients.
    """
    kind: ChannelKind
    recipient_id: str
    identity: str
    keys: Dict[str, str] = field(default_factory=dict)   # web push: p256dh, auth
    user_agent: Optional[str] = None
    platform: Optional[str] = None
    id: str = field(default_factory=_generate_id)
    created_at: datetime = field(default_factory=_now)
    last_active: datetime = field(default_factory=_now)

    @property
    def key(self) -> Tuple[ChannelKind, str]:
        return (self.kind, self.identity)

    def subscription_info(self) -> Dict[str, Any]:
        """Web push subscription in the shape browsers hand out."""
        return {"endpoint": self.identity, "keys": dict(self.keys)}

    def to_dict(self) -> Dict[str, Any]:
        # Keys are secrets shared with the browser; never echo them back
        return {
            "id": self.id,
            "kind": self.kind.value,
            "recipient_id": self.recipient_id,
            "identity": self.identity,
            "user_agent": self.user_agent,
            "platform": self.platform,
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat(),
        }


@dataclass
class SubscriptionPreferences:
    """Explicit opt-in: which disaster types and regions a recipient follows."""
    disaster_types: Set[DisasterCategory] = field(default_factory=set)
    regions: Set[str] = field(default_factory=set)
    frequency: Frequency = Frequency.INSTANT
    is_active: bool = True

    def matches(self, category: DisasterCategory, region_names: Set[str]) -> bool:
        """Category is followed OR a followed region names an affected place."""
        if category in self.disaster_types:
            return True
        return any(region.strip().lower() in region_names for region in self.regions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "disaster_types": sorted(t.value for t in self.disaster_types),
            "regions": sorted(self.regions),
            "frequency": self.frequency.value,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubscriptionPreferences":
        return cls(
            disaster_types={DisasterCategory(t) for t in data.get("disaster_types", [])},
            regions=set(data.get("regions", [])),
            frequency=Frequency(data.get("frequency", Frequency.INSTANT.value)),
            is_active=data.get("is_active", True),
        )


@dataclass
class Recipient:
    """A notifiable user with optional location, preferences and registrations."""
    id: str
    name: str = ""
    last_known_location: Optional[Coordinate] = None
    preferences: Optional[SubscriptionPreferences] = None
    push_enabled: bool = True
    registrations: List[ChannelRegistration] = field(default_factory=list)

    @property
    def active_preferences(self) -> Optional[SubscriptionPreferences]:
        if self.preferences and self.preferences.is_active:
            return self.preferences
        return None

    def registration_for(self, kind: ChannelKind) -> Optional[ChannelRegistration]:
        for registration in self.registrations:
            if registration.kind == kind:
                return registration
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "last_known_location": (
                self.last_known_location.to_dict() if self.last_known_location else None
            ),
            "preferences": self.preferences.to_dict() if self.preferences else None,
            "push_enabled": self.push_enabled,
            "registrations": [r.to_dict() for r in self.registrations],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Messages and events
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class NotificationMessage:
    """Channel-neutral content; each dispatcher renders its own wire shape."""
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    priority: str = "normal"          # normal | high
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "priority": self.priority,
            "url": self.url,
        }


@dataclass(frozen=True)
class DispatchEvent:
    """
    One fan-out attempt for a committed warning write.

    ``warning`` is the snapshot the write produced; its version is part of the
    idempotency key (warning_id, kind, version).
    """
    kind: EventKind
    warning: DisasterWarning
    message: NotificationMessage
    created_at: datetime = field(default_factory=_now)

    @property
    def warning_id(self) -> str:
        return self.warning.id

    @property
    def version(self) -> int:
        return self.warning.version

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.warning_id, self.kind.value, self.version)

    @property
    def key_str(self) -> str:
        return f"{self.warning_id}:{self.kind.value}:{self.version}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "warning_id": self.warning_id,
            "event": self.kind.value,
            "version": self.version,
            "message": self.message.to_dict(),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class DispatchItem:
    """One (registration, message) pair handed to a channel dispatcher."""
    registration: ChannelRegistration
    message: NotificationMessage

    @property
    def recipient_id(self) -> str:
        return self.registration.recipient_id


# ═══════════════════════════════════════════════════════════════════════════
# Outcomes and reports
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class DeliveryOutcome:
    """Result of attempting delivery to one registration."""
    registration_id: str
    recipient_id: str
    channel: ChannelKind
    status: DeliveryStatus
    error_message: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None
    completed_at: datetime = field(default_factory=_now)

    @classmethod
    def for_item(
        cls,
        item: DispatchItem,
        status: DeliveryStatus,
        error_message: Optional[str] = None,
        provider_response: Optional[Dict[str, Any]] = None,
    ) -> "DeliveryOutcome":
        return cls(
            registration_id=item.registration.id,
            recipient_id=item.recipient_id,
            channel=item.registration.kind,
            status=status,
            error_message=error_message,
            provider_response=provider_response,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "registration_id": self.registration_id,
            "recipient_id": self.recipient_id,
            "channel": self.channel.value,
            "status": self.status.value,
            "error_message": self.error_message,
            "completed_at": self.completed_at.isoformat(),
        }


@dataclass
class ChannelSummary:
    attempted: int = 0
    delivered: int = 0
    transient_failures: int = 0
    dead: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "attempted": self.attempted,
            "delivered": self.delivered,
            "transient_failures": self.transient_failures,
            "dead": self.dead,
        }


@dataclass
class DeliveryReport:
    """Aggregate outcome of one dispatch event."""
    event_key: str
    warning_id: str
    event: EventKind
    recipients_matched: int = 0
    delivered: int = 0
    transient_failures: int = 0
    dead_count: int = 0
    skipped_duplicates: int = 0
    registrations_pruned: int = 0
    by_channel: Dict[ChannelKind, ChannelSummary] = field(default_factory=dict)
    outcomes: List[DeliveryOutcome] = field(default_factory=list)
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def attempted(self) -> int:
        return len(self.outcomes)

    def add(self, outcome: DeliveryOutcome) -> None:
        self.outcomes.append(outcome)
        summary = self.by_channel.setdefault(outcome.channel, ChannelSummary())
        summary.attempted += 1
        if outcome.status == DeliveryStatus.DELIVERED:
            self.delivered += 1
            summary.delivered += 1
        elif outcome.status == DeliveryStatus.DEAD:
            self.dead_count += 1
            summary.dead += 1
        else:
            self.transient_failures += 1
            summary.transient_failures += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_key": self.event_key,
            "warning_id": self.warning_id,
            "event": self.event.value,
            "recipients_matched": self.recipients_matched,
            "attempted": self.attempted,
            "delivered": self.delivered,
            "transient_failures": self.transient_failures,
            "dead_count": self.dead_count,
            "skipped_duplicates": self.skipped_duplicates,
            "registrations_pruned": self.registrations_pruned,
            "by_channel": {k.value: v.to_dict() for k, v in self.by_channel.items()},
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
