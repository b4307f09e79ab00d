"""
Pydantic schemas for the warnings and recipients API.

Warning request bodies are deliberately permissive (optional strings): the
WarningStore owns validation so that a missing or malformed field is reported
once, with its field name, in the same error envelope whichever route it
came through. Recipient bodies validate structurally here.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.lifecycle.models import DisasterCategory, WarningDraft
from backend.app.notifications.models import Frequency, SubscriptionPreferences
from backend.app.spatial.distance import Coordinate


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------

class CoordinatesInput(BaseModel):
    latitude: float = Field(..., ge=-90.0, le=90.0, examples=[6.9271])
    longitude: float = Field(..., ge=-180.0, le=180.0, examples=[79.8612])

    def to_coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


# ---------------------------------------------------------------------------
# Warning requests
# ---------------------------------------------------------------------------

class AddressInput(BaseModel):
    city: Optional[str] = Field(None, examples=["Colombo"])
    district: Optional[str] = Field(None, examples=["Colombo"])
    province: Optional[str] = Field(None, examples=["Western"])


class AffectedLocationInput(BaseModel):
    coordinates: Optional[CoordinatesInput] = None
    address: Optional[AddressInput] = None


class WarningCreateRequest(BaseModel):
    """Body of POST /api/v1/warnings."""
    title: Optional[str] = Field(None, examples=["Kelani river overflow"])
    description: Optional[str] = Field(None, examples=["Water levels rising at Nagalagam Street"])
    disaster_category: Optional[str] = Field(None, examples=["flood"])
    severity: Optional[str] = Field(None, examples=["high"])
    affected_locations: Optional[List[AffectedLocationInput]] = None
    images: Optional[List[str]] = Field(None, examples=[["https://cdn.example.org/flood.jpg"]])

    def to_draft(self, created_by: str) -> WarningDraft:
        return WarningDraft(
            title=self.title,
            description=self.description,
            disaster_category=self.disaster_category,
            severity=self.severity,
            affected_locations=(
                [loc.model_dump() for loc in self.affected_locations]
                if self.affected_locations is not None else None
            ),
            created_by=created_by,
            images=self.images,
        )


class WarningUpdateRequest(BaseModel):
    update_text: Optional[str] = Field(None, examples=["Water level rose 30 cm in the last hour"])
    severity_change: Optional[str] = Field(None, examples=["critical"])


class ResponseActionRequest(BaseModel):
    action_type: Optional[str] = Field(None, examples=["evacuation"])
    description: Optional[str] = Field(None, examples=["Evacuating low-lying areas to Town Hall"])


class ActionStatusRequest(BaseModel):
    status: Optional[str] = Field(None, examples=["in_progress"])


class ResolveRequest(BaseModel):
    resolution_notes: Optional[str] = Field(None, examples=["Flood waters receded"])


class StatusTransitionRequest(BaseModel):
    status: Optional[str] = Field(None, examples=["monitoring"])


# ---------------------------------------------------------------------------
# Recipient requests
# ---------------------------------------------------------------------------

class RecipientProfileRequest(BaseModel):
    """
    Body of PUT /api/v1/recipients/{id}.

    Omitted fields are left unchanged; ``last_known_location: null`` clears
    the stored location.
    """
    name: Optional[str] = Field(None, max_length=200, examples=["Nimal Perera"])
    last_known_location: Optional[CoordinatesInput] = None
    push_enabled: Optional[bool] = None

    @property
    def location_given(self) -> bool:
        return "last_known_location" in self.model_fields_set


class PreferencesRequest(BaseModel):
    disaster_types: List[DisasterCategory] = Field(default_factory=list, examples=[["flood", "landslide"]])
    regions: List[str] = Field(default_factory=list, examples=[["Colombo", "Gampaha"]])
    frequency: Frequency = Frequency.INSTANT
    is_active: bool = True

    @field_validator("regions")
    @classmethod
    def _clean_regions(cls, v: List[str]) -> List[str]:
        return [r.strip() for r in v if r and r.strip()]

    def to_preferences(self) -> SubscriptionPreferences:
        return SubscriptionPreferences(
            disaster_types=set(self.disaster_types),
            regions=set(self.regions),
            frequency=self.frequency,
            is_active=self.is_active,
        )


class MobilePushRegistrationRequest(BaseModel):
    token: str = Field(..., min_length=1, examples=["ExponentPushToken[xxxxxxxxxxxxxxxxxxxxxx]"])
    platform: Optional[str] = Field(None, examples=["android"])


class WebPushKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class WebPushSubscriptionInput(BaseModel):
    """The object returned by ``PushSubscription.toJSON()`` in the browser."""
    endpoint: str = Field(..., min_length=1, examples=["https://fcm.googleapis.com/fcm/send/abc"])
    expirationTime: Optional[float] = None
    keys: WebPushKeys


class WebPushRegistrationRequest(BaseModel):
    subscription: WebPushSubscriptionInput
    user_agent: Optional[str] = None
    platform: Optional[str] = Field(None, examples=["web"])


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class WarningPageResponse(BaseModel):
    warnings: List[Dict[str, Any]]
    current_page: int
    total_pages: int
    total_warnings: int


class WarningListResponse(BaseModel):
    warnings: List[Dict[str, Any]]
    count: int
