"""
Shared builders and fake channel dispatchers for the test suite.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Sequence

from backend.app.lifecycle.models import (
    AffectedLocation,
    Address,
    DisasterCategory,
    DisasterWarning,
    Severity,
    WarningDraft,
)
from backend.app.notifications.channels.base import ChannelDispatcher
from backend.app.notifications.models import (
    ChannelKind,
    ChannelRegistration,
    DeliveryOutcome,
    DeliveryStatus,
    DispatchItem,
)
from backend.app.spatial.distance import Coordinate

# Colombo Fort (6.9344°N, 79.8428°E); Kandy is ~94 km away, Galle ~105 km
COLOMBO = Coordinate(6.9344, 79.8428)
NEAR_COLOMBO = Coordinate(6.9271, 79.8612)     # ~2 km
KANDY = Coordinate(7.2906, 80.6337)
GALLE = Coordinate(6.0535, 80.2210)

MOBILE_TOKEN = "ExponentPushToken[abc123]"
WEB_ENDPOINT = "https://fcm.googleapis.com/fcm/send/abc123"
WEB_KEYS = {"p256dh": "BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0QTpQtUbVlUls0VJXg7A8u-Ts1XbjhazAkj7I99e8QcYP7DkM", "auth": "tBHItJI5svbpez7KI4CCXg"}


def colombo_location(city: str = "Colombo", district: str = "Colombo", province: str = "Western",
                     coordinates: Optional[Coordinate] = COLOMBO) -> Dict:
    return {
        "coordinates": coordinates.to_dict() if coordinates else None,
        "address": {"city": city, "district": district, "province": province},
    }


def make_draft(**overrides) -> WarningDraft:
    fields = dict(
        title="Kelani river overflow",
        description="Water levels rising at Nagalagam Street",
        disaster_category="flood",
        severity="high",
        affected_locations=[colombo_location()],
        created_by="officer-1",
        images=[],
    )
    fields.update(overrides)
    return WarningDraft(**fields)


def make_warning(
    *,
    category: DisasterCategory = DisasterCategory.FLOOD,
    severity: Severity = Severity.HIGH,
    coordinates: Optional[Coordinate] = COLOMBO,
    city: str = "Colombo",
    district: str = "Colombo",
    province: str = "Western",
) -> DisasterWarning:
    return DisasterWarning(
        title="Kelani river overflow",
        description="Water levels rising",
        disaster_category=category,
        severity=severity,
        affected_locations=[AffectedLocation(
            address=Address(city=city, district=district, province=province),
            coordinates=coordinates,
        )],
        created_by="officer-1",
    )


def mobile_registration(recipient_id: str, token: str = MOBILE_TOKEN) -> ChannelRegistration:
    return ChannelRegistration(kind=ChannelKind.MOBILE_PUSH, recipient_id=recipient_id, identity=token)


def web_registration(recipient_id: str, endpoint: str = WEB_ENDPOINT) -> ChannelRegistration:
    return ChannelRegistration(
        kind=ChannelKind.WEB_PUSH, recipient_id=recipient_id, identity=endpoint, keys=dict(WEB_KEYS),
    )


class FakeDispatcher(ChannelDispatcher):
    """
    Records every batch; outcome per identity from ``statuses`` (default
    DELIVERED). ``error`` makes ``send`` raise; ``short`` drops the last
    outcome; ``delay`` holds each send open.
    """

    def __init__(
        self,
        kind: ChannelKind,
        statuses: Optional[Dict[str, DeliveryStatus]] = None,
        *,
        error: Optional[Exception] = None,
        short: bool = False,
        delay: float = 0.0,
    ) -> None:
        super().__init__()
        self.kind = kind
        self.statuses = statuses or {}
        self.error = error
        self.short = short
        self.delay = delay
        self.batches: List[List[DispatchItem]] = []
        self.closed = False

    @property
    def sent(self) -> List[DispatchItem]:
        return [item for batch in self.batches for item in batch]

    async def send(self, batch: Sequence[DispatchItem]) -> List[DeliveryOutcome]:
        self.batches.append(list(batch))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        outcomes = [
            DeliveryOutcome.for_item(
                item, self.statuses.get(item.registration.identity, DeliveryStatus.DELIVERED),
            )
            for item in batch
        ]
        return outcomes[:-1] if self.short else outcomes

    async def close(self) -> None:
        self.closed = True


def fake_dispatchers(**kwargs) -> Dict[ChannelKind, FakeDispatcher]:
    return {
        ChannelKind.MOBILE_PUSH: FakeDispatcher(ChannelKind.MOBILE_PUSH, **kwargs),
        ChannelKind.WEB_PUSH: FakeDispatcher(ChannelKind.WEB_PUSH, **kwargs),
    }
