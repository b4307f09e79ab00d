"""
channels — Per-channel delivery backends.

Each dispatcher implements ChannelDispatcher.send(batch) → [DeliveryOutcome]
and is selected by its ChannelKind tag:

    ChannelKind.MOBILE_PUSH  →  MobilePushDispatcher  (Expo, chunked)
    ChannelKind.WEB_PUSH     →  WebPushDispatcher     (VAPID, one per item)
"""

from __future__ import annotations

from typing import Dict

from backend.app.core.config import Settings
from backend.app.notifications.channels.base import ChannelDispatcher, RetryConfig
from backend.app.notifications.channels.mobile_push import MobilePushDispatcher
from backend.app.notifications.channels.web_push import WebPushDispatcher
from backend.app.notifications.models import ChannelKind


def build_dispatchers(settings: Settings) -> Dict[ChannelKind, ChannelDispatcher]:
    """One configured dispatcher per channel kind."""
    return {
        ChannelKind.MOBILE_PUSH: MobilePushDispatcher(
            push_url=settings.EXPO_PUSH_URL,
            access_token=settings.EXPO_ACCESS_TOKEN,
            chunk_size=settings.MOBILE_PUSH_CHUNK_SIZE,
            max_concurrency=settings.DISPATCH_MAX_CONCURRENCY,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
            retry=RetryConfig(max_retries=settings.MOBILE_PUSH_MAX_RETRIES),
        ),
        ChannelKind.WEB_PUSH: WebPushDispatcher(
            vapid_private_key=settings.VAPID_PRIVATE_KEY,
            vapid_subject=settings.VAPID_SUBJECT,
            icon=settings.NOTIFICATION_ICON,
            badge=settings.NOTIFICATION_BADGE,
            ttl_seconds=settings.WEB_PUSH_TTL_SECONDS,
            max_concurrency=settings.DISPATCH_MAX_CONCURRENCY,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        ),
    }
