"""
resolver.py — Subscriber Resolver: who should hear about a warning.

═══════════════════════════════════════════════════════════════════════════
MATCHING RULES
═══════════════════════════════════════════════════════════════════════════

A recipient is resolved for a warning when ANY of these holds:

    1. Proximity   — last_known_location is within the dispatch radius of at
                     least one affected location that has coordinates, AND
                     either the recipient has no active preferences or those
                     preferences match the warning.

    2. Subscription — the recipient has active preferences with
                     frequency=instant that match the warning. No distance
                     requirement: this is how recipients without a stored
                     location (or far from the event) are reached.

Preferences match when the warning's disaster category is followed OR one of
the followed regions names a city, district or province of an affected
location (case-insensitive).

Recipients with push disabled are never resolved. The result is
deduplicated by recipient id, in order of first qualification.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from backend.app.lifecycle.models import DisasterWarning
from backend.app.notifications.directory import RecipientDirectory
from backend.app.notifications.models import Frequency, Recipient

logger = logging.getLogger(__name__)

DEFAULT_DISPATCH_RADIUS_KM = 50.0


class SubscriberResolver:
    """Resolve the recipient set for a warning from a :class:`RecipientDirectory`."""

    def __init__(
        self,
        directory: RecipientDirectory,
        *,
        radius_km: float = DEFAULT_DISPATCH_RADIUS_KM,
    ) -> None:
        if radius_km <= 0:
            raise ValueError(f"Dispatch radius must be positive, got {radius_km}")
        self.directory = directory
        self.radius_km = radius_km

    async def resolve(
        self, warning: DisasterWarning, *, radius_km: Optional[float] = None,
    ) -> List[Recipient]:
        radius = self.radius_km if radius_km is None else radius_km
        if radius <= 0:
            raise ValueError(f"Dispatch radius must be positive, got {radius}")
        regions = warning.region_names
        category = warning.disaster_category
        resolved: Dict[str, Recipient] = {}
        near_count = 0

        # ── Pass 1: proximity, union across affected locations ──
        for coordinate in warning.coordinates:
            for recipient in await self.directory.find_near(coordinate, radius):
                near_count += 1
                if recipient.id in resolved or not recipient.push_enabled:
                    continue
                prefs = recipient.active_preferences
                if prefs is None or prefs.matches(category, regions):
                    resolved[recipient.id] = recipient

        # ── Pass 2: explicit instant subscriptions, any distance ──
        subscribed = 0
        for recipient in await self.directory.find_subscribers():
            if recipient.id in resolved or not recipient.push_enabled:
                continue
            prefs = recipient.active_preferences
            if prefs is None or prefs.frequency != Frequency.INSTANT:
                continue
            if prefs.matches(category, regions):
                resolved[recipient.id] = recipient
                subscribed += 1

        logger.info(
            "Resolved %d recipient(s) for warning %s (%d proximity candidate(s), "
            "%d by subscription, radius=%.1f km)",
            len(resolved), warning.id, near_count, subscribed, radius,
            extra={"warning_id": warning.id, "recipient_count": len(resolved)},
        )
        return list(resolved.values())
