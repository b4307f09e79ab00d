"""
web_push.py — Web push notification channel.

Delivery mechanism:
    • Web Push Protocol (RFC 8030) with VAPID authentication (RFC 8292)
    • pywebpush encrypts the payload with the subscription's p256dh/auth keys
      and POSTs it to the subscription endpoint
    • One request per subscription; the protocol has no batching

Payload (decrypted by the service worker):

    {"title", "body", "icon", "badge", "url", "data", "timestamp"}

═══════════════════════════════════════════════════════════════════════════
OUTCOME MAPPING
═══════════════════════════════════════════════════════════════════════════

    2xx                              DELIVERED
    410 Gone                         DEAD  (subscription expired/unsubscribed)
    any other status                 TRANSIENT_FAILURE
    timeout / network error          TRANSIENT_FAILURE
    VAPID keys not configured        TRANSIENT_FAILURE for the whole batch
    subscription without keys        DEAD  (can never be encrypted for)

pywebpush is synchronous (requests); each send runs in a worker thread
under the dispatcher's semaphore and an ``asyncio.wait_for`` bound.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, List, Optional, Sequence

from pywebpush import WebPushException, webpush

from backend.app.notifications.channels.base import ChannelDispatcher
from backend.app.notifications.models import (
    ChannelKind,
    DeliveryOutcome,
    DeliveryStatus,
    DispatchItem,
    NotificationMessage,
)

logger = logging.getLogger(__name__)

GONE = 410


class WebPushDispatcher(ChannelDispatcher):
    """
    VAPID web push dispatcher.

    ``sender`` defaults to :func:`pywebpush.webpush`; tests inject a fake
    with the same keyword signature.
    """

    kind = ChannelKind.WEB_PUSH

    def __init__(
        self,
        *,
        vapid_private_key: Optional[str],
        vapid_subject: str,
        icon: str = "/icons/notification-icon.png",
        badge: str = "/icons/notification-badge.png",
        ttl_seconds: int = 3600,
        max_concurrency: int = 10,
        timeout_seconds: float = 10.0,
        sender: Optional[Callable[..., Any]] = None,
    ) -> None:
        super().__init__(max_concurrency=max_concurrency, timeout_seconds=timeout_seconds)
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.icon = icon
        self.badge = badge
        self.ttl_seconds = ttl_seconds
        self._sender = sender or webpush

    @property
    def is_configured(self) -> bool:
        return bool(self.vapid_private_key)

    def build_payload(self, message: NotificationMessage) -> str:
        return json.dumps({
            "title": message.title,
            "body": message.body,
            "icon": self.icon,
            "badge": self.badge,
            "url": message.url,
            "data": message.data,
            "timestamp": int(time.time() * 1000),
        })

    async def send(self, batch: Sequence[DispatchItem]) -> List[DeliveryOutcome]:
        if not batch:
            return []
        if not self.is_configured:
            logger.warning(
                "[WEB_PUSH] VAPID keys not configured; %d item(s) not sent", len(batch),
                extra={"channel": self.kind.value},
            )
            return self.transient_all(batch, "VAPID keys not configured")

        outcomes = list(await asyncio.gather(*(self._send_one(item) for item in batch)))

        logger.info(
            "[WEB_PUSH] %d item(s): %d delivered, %d dead",
            len(batch),
            sum(1 for o in outcomes if o.status == DeliveryStatus.DELIVERED),
            sum(1 for o in outcomes if o.status == DeliveryStatus.DEAD),
            extra={"channel": self.kind.value},
        )
        return outcomes

    async def _send_one(self, item: DispatchItem) -> DeliveryOutcome:
        registration = item.registration
        if not (registration.keys.get("p256dh") and registration.keys.get("auth")):
            return DeliveryOutcome.for_item(
                item, DeliveryStatus.DEAD, error_message="Subscription is missing encryption keys",
            )

        payload = self.build_payload(item.message)
        async with self._semaphore:
            try:
                response = await asyncio.wait_for(
                    asyncio.to_thread(
                        self._sender,
                        subscription_info=registration.subscription_info(),
                        data=payload,
                        vapid_private_key=self.vapid_private_key,
                        # pywebpush adds "aud" to the claims dict in place
                        vapid_claims={"sub": self.vapid_subject},
                        ttl=self.ttl_seconds,
                        timeout=self.timeout_seconds,
                    ),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                return DeliveryOutcome.for_item(
                    item, DeliveryStatus.TRANSIENT_FAILURE,
                    error_message=f"Push service timed out after {self.timeout_seconds:.0f}s",
                )
            except WebPushException as exc:
                return self._outcome_for_error(item, exc)
            except Exception as exc:
                logger.error(
                    "[WEB_PUSH] Failed for %s: %s", item.recipient_id, exc,
                    extra={"channel": self.kind.value, "recipient_id": item.recipient_id},
                )
                return DeliveryOutcome.for_item(
                    item, DeliveryStatus.TRANSIENT_FAILURE, error_message=str(exc),
                )

        status_code = getattr(response, "status_code", 201)
        if 200 <= status_code < 300:
            return DeliveryOutcome.for_item(
                item, DeliveryStatus.DELIVERED, provider_response={"status_code": status_code},
            )
        return DeliveryOutcome.for_item(
            item, DeliveryStatus.TRANSIENT_FAILURE,
            error_message=f"Push service returned HTTP {status_code}",
            provider_response={"status_code": status_code},
        )

    def _outcome_for_error(self, item: DispatchItem, exc: WebPushException) -> DeliveryOutcome:
        response = getattr(exc, "response", None)
        status_code = getattr(response, "status_code", None)
        if status_code == GONE:
            logger.info(
                "[WEB_PUSH] Subscription gone for recipient %s", item.recipient_id,
                extra={"channel": self.kind.value, "recipient_id": item.recipient_id, "status_code": GONE},
            )
            return DeliveryOutcome.for_item(
                item, DeliveryStatus.DEAD,
                error_message="Subscription has expired or unsubscribed",
                provider_response={"status_code": GONE},
            )
        logger.warning(
            "[WEB_PUSH] Push failed for %s: HTTP %s", item.recipient_id, status_code,
            extra={"channel": self.kind.value, "recipient_id": item.recipient_id, "status_code": status_code},
        )
        return DeliveryOutcome.for_item(
            item, DeliveryStatus.TRANSIENT_FAILURE,
            error_message=f"Push service returned HTTP {status_code}" if status_code else str(exc),
            provider_response={"status_code": status_code} if status_code else None,
        )
