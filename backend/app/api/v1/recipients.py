"""
FastAPI routes: recipients, preferences and channel registrations.

    PUT    /api/v1/recipients/{id}                        — create / update profile
    GET    /api/v1/recipients/{id}                        — profile + registrations
    GET    /api/v1/recipients/channels/web-push/public-key — VAPID application server key
    DELETE /api/v1/recipients/{id}                        — remove recipient
    PUT    /api/v1/recipients/{id}/preferences            — subscription preferences
    POST   /api/v1/recipients/{id}/channels/mobile-push   — register Expo push token
    POST   /api/v1/recipients/{id}/channels/web-push      — register browser subscription
    DELETE /api/v1/recipients/{id}/channels/{kind}        — unregister (idempotent)

Writes require the X-User-ID header.
"""

from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_actor, get_directory, get_services
from backend.app.api.schemas import (
    MobilePushRegistrationRequest,
    PreferencesRequest,
    RecipientProfileRequest,
    WebPushRegistrationRequest,
)
from backend.app.core.errors import NotFoundError, ValidationError
from backend.app.notifications.channels.mobile_push import is_push_token
from backend.app.notifications.directory import UNSET, RecipientDirectory
from backend.app.notifications.models import ChannelKind, ChannelRegistration
from backend.app.services import Services

router = APIRouter(prefix="/api/v1/recipients", tags=["recipients"])


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------

@router.get("/channels/web-push/public-key", summary="VAPID public key for browser subscriptions")
async def web_push_public_key(services: Services = Depends(get_services)) -> Dict[str, Any]:
    key = services.settings.VAPID_PUBLIC_KEY
    return {"public_key": key, "configured": services.settings.web_push_configured}


@router.put("/{recipient_id}", summary="Create or update a recipient profile")
async def save_recipient(
    recipient_id: str,
    body: RecipientProfileRequest,
    actor: str = Depends(get_actor),
    directory: RecipientDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    location = UNSET
    if body.location_given:
        location = body.last_known_location.to_coordinate() if body.last_known_location else None
    recipient = await directory.save_profile(
        recipient_id,
        name=body.name,
        last_known_location=location,
        push_enabled=body.push_enabled,
    )
    return recipient.to_dict()


@router.get("/{recipient_id}", summary="Get a recipient")
async def get_recipient(
    recipient_id: str,
    directory: RecipientDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    recipient = await directory.get(recipient_id)
    if recipient is None:
        raise NotFoundError("Recipient", recipient_id=recipient_id)
    return recipient.to_dict()


@router.delete("/{recipient_id}", summary="Delete a recipient and its registrations")
async def delete_recipient(
    recipient_id: str,
    actor: str = Depends(get_actor),
    directory: RecipientDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    if not await directory.delete(recipient_id):
        raise NotFoundError("Recipient", recipient_id=recipient_id)
    return {"deleted": True, "recipient_id": recipient_id}


@router.put("/{recipient_id}/preferences", summary="Set subscription preferences")
async def set_preferences(
    recipient_id: str,
    body: PreferencesRequest,
    actor: str = Depends(get_actor),
    directory: RecipientDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    recipient = await directory.set_preferences(recipient_id, body.to_preferences())
    return recipient.to_dict()


# ---------------------------------------------------------------------------
# Channel registrations
# ---------------------------------------------------------------------------

@router.post(
    "/{recipient_id}/channels/mobile-push",
    status_code=201,
    summary="Register an Expo push token",
)
async def register_mobile_push(
    recipient_id: str,
    body: MobilePushRegistrationRequest,
    actor: str = Depends(get_actor),
    directory: RecipientDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    token = body.token.strip()
    if not is_push_token(token):
        raise ValidationError("Invalid Expo push token", field="token")
    registration = await directory.register(ChannelRegistration(
        kind=ChannelKind.MOBILE_PUSH,
        recipient_id=recipient_id,
        identity=token,
        platform=body.platform,
    ))
    return registration.to_dict()


@router.post(
    "/{recipient_id}/channels/web-push",
    status_code=201,
    summary="Register a browser push subscription",
)
async def register_web_push(
    recipient_id: str,
    body: WebPushRegistrationRequest,
    actor: str = Depends(get_actor),
    directory: RecipientDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    endpoint = body.subscription.endpoint.strip()
    parsed = urlparse(endpoint)
    if parsed.scheme != "https" or not parsed.netloc:
        raise ValidationError("Subscription endpoint must be an https URL", field="subscription.endpoint")
    registration = await directory.register(ChannelRegistration(
        kind=ChannelKind.WEB_PUSH,
        recipient_id=recipient_id,
        identity=endpoint,
        keys=body.subscription.keys.model_dump(),
        user_agent=body.user_agent,
        platform=body.platform or "web",
    ))
    return registration.to_dict()


@router.delete("/{recipient_id}/channels/{kind}", summary="Remove a channel registration")
async def remove_registration(
    recipient_id: str,
    kind: ChannelKind,
    identity: Optional[str] = Query(None, description="Token or endpoint; defaults to the current one"),
    actor: str = Depends(get_actor),
    directory: RecipientDirectory = Depends(get_directory),
) -> Dict[str, Any]:
    if identity is None:
        recipient = await directory.get(recipient_id)
        current = recipient.registration_for(kind) if recipient else None
        if current is None:
            return {"removed": False, "recipient_id": recipient_id, "kind": kind.value}
        identity = current.identity
    removed = await directory.remove_registration(recipient_id, kind, identity)
    return {"removed": removed, "recipient_id": recipient_id, "kind": kind.value}
