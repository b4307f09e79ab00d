"""
messages.py — Build the notification message for each dispatch event kind.

    Event                  Title                              Body
    ─────────────────────  ─────────────────────────────────  ──────────────────────────
    created                "⚠ {SEVERITY} {Category} warning"  title + primary place
    updated                "Update: {title}"                  update text (+ severity)
    resolved               "Resolved: {title}"                resolution notes
    action_added           "Response action: {title}"         action type + description
    status_changed         "{title} is now {status}"          primary place
    action_status_changed  "Action {status}: {title}"         action description

Structured ``data`` always carries the warning id, event, category, severity,
status, version, affected locations and url; kinds with a triggering record
add its id (update_id, action_id).
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from backend.app.lifecycle.models import DisasterWarning, ResponseAction, WarningUpdate
from backend.app.notifications.models import DispatchEvent, EventKind, NotificationMessage

BODY_MAX_CHARS = 178
TITLE_MAX_CHARS = 65


def _place(warning: DisasterWarning) -> str:
    first = warning.affected_locations[0].address
    label = f"{first.city}, {first.district}"
    extra = len(warning.affected_locations) - 1
    if extra > 0:
        label += f" (+{extra} more)"
    return label


def _truncate(text: str, limit: int = BODY_MAX_CHARS) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def _label(value: str) -> str:
    return value.replace("_", " ")


def build_data(kind: EventKind, warning: DisasterWarning) -> Dict[str, Any]:
    return {
        "warning_id": warning.id,
        "event": kind.value,
        "disaster_category": warning.disaster_category.value,
        "severity": warning.severity.value,
        "status": warning.status.value,
        "version": warning.version,
        "affected_locations": [loc.to_dict() for loc in warning.affected_locations],
    }


def build_message(
    kind: EventKind,
    warning: DisasterWarning,
    detail: Optional[Any] = None,
    *,
    base_url: str = "",
) -> NotificationMessage:
    """
    Render the message for one event.

    ``detail`` carries the record that triggered the event: the appended
    :class:`WarningUpdate` for ``updated``, the :class:`ResponseAction` for
    ``action_added`` / ``action_status_changed``. Other kinds ignore it.
    """
    category = warning.disaster_category.value.capitalize()
    data = build_data(kind, warning)

    if kind == EventKind.CREATED:
        title = f"⚠ {warning.severity.value.upper()} {category} warning"
        body = f"{warning.title}. Affected: {_place(warning)}"

    elif kind == EventKind.UPDATED:
        title = f"Update: {warning.title}"
        if isinstance(detail, WarningUpdate):
            body = detail.update_text
            data["update_id"] = detail.id
            if detail.severity_change:
                body = f"[Severity now {detail.severity_change.value.upper()}] {body}"
                data["severity_change"] = detail.severity_change.value
        else:
            body = warning.description

    elif kind == EventKind.RESOLVED:
        title = f"Resolved: {warning.title}"
        body = warning.resolution_notes or "This warning has been resolved."

    elif kind == EventKind.ACTION_ADDED:
        title = f"Response action: {warning.title}"
        if isinstance(detail, ResponseAction):
            body = f"{_label(detail.action_type.value).capitalize()}: {detail.description}"
            data["action_id"] = detail.id
            data["action_type"] = detail.action_type.value
        else:
            body = f"A response action was added for {_place(warning)}"

    elif kind == EventKind.STATUS_CHANGED:
        title = f"{warning.title} is now {warning.status.value}"
        body = f"{category} warning for {_place(warning)}"

    elif kind == EventKind.ACTION_STATUS_CHANGED:
        if isinstance(detail, ResponseAction):
            title = f"Action {_label(detail.status.value)}: {warning.title}"
            body = detail.description
            data["action_id"] = detail.id
            data["action_status"] = detail.status.value
        else:
            title = f"Action updated: {warning.title}"
            body = f"A response action changed for {_place(warning)}"

    else:
        raise ValueError(f"Unknown event kind: {kind}")

    url = f"{base_url.rstrip('/')}/warnings/{warning.id}"
    data["url"] = url

    return NotificationMessage(
        title=_truncate(title, TITLE_MAX_CHARS),
        body=_truncate(body),
        data=data,
        priority="high" if warning.severity.is_urgent else "normal",
        url=url,
    )


def build_event(
    kind: EventKind,
    warning: DisasterWarning,
    detail: Optional[Any] = None,
    *,
    base_url: str = "",
) -> DispatchEvent:
    """Dispatch event for a committed write, with its rendered message."""
    return DispatchEvent(
        kind=kind,
        warning=warning,
        message=build_message(kind, warning, detail, base_url=base_url),
    )
