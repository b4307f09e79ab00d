"""
mobile_push.py — Mobile push channel (Expo push service).

Delivery mechanism:
    • POST a JSON list of messages to the Expo push endpoint
    • At most ``chunk_size`` (100) messages per request, the provider's cap
    • One push ticket per message comes back, in request order

═══════════════════════════════════════════════════════════════════════════
OUTCOME MAPPING
═══════════════════════════════════════════════════════════════════════════

    Situation                                   Outcome
    ─────────────────────────────────────────   ─────────────────
    token fails format check (no request made)  DEAD
    ticket status "ok"                          DELIVERED
    ticket error DeviceNotRegistered            DEAD
    any other ticket error                      TRANSIENT_FAILURE
    timeout / transport error / 429 / 5xx       TRANSIENT_FAILURE  (whole chunk)
    other 4xx / bad JSON / ticket count off     TRANSIENT_FAILURE  (whole chunk)

429, 5xx and transport errors are retried per ``RetryConfig`` before the
chunk is given up on. Timeouts are not retried: the request may have been
accepted, and a second send could duplicate the notification.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import httpx

from backend.app.core.errors import TransientDeliveryFailure
from backend.app.notifications.channels.base import (
    ChannelDispatcher,
    RetryConfig,
    compute_backoff,
)
from backend.app.notifications.models import (
    ChannelKind,
    DeliveryOutcome,
    DeliveryStatus,
    DispatchItem,
)

logger = logging.getLogger(__name__)

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
EXPO_CHUNK_SIZE = 100

_TOKEN_RE = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[[^\[\]\s]+\]$")
_UUID_RE = re.compile(
    r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE,
)

DEAD_TICKET_ERRORS = frozenset({"DeviceNotRegistered"})


def is_push_token(token: Any) -> bool:
    """True for ``ExponentPushToken[...]``, ``ExpoPushToken[...]`` or a bare UUID."""
    if not isinstance(token, str):
        return False
    return bool(_TOKEN_RE.match(token) or _UUID_RE.match(token))


def _chunks(seq: List[int], size: int) -> List[List[int]]:
    return [seq[i:i + size] for i in range(0, len(seq), size)]


class MobilePushDispatcher(ChannelDispatcher):
    """
    Expo push dispatcher.

    Parameters
    ----------
    push_url : str
        Expo send endpoint.
    access_token : str, optional
        Sent as a bearer token when the Expo project enforces push security.
    chunk_size : int
        Messages per request; capped at the provider's 100.
    max_concurrency : int
        Chunks in flight at once.
    timeout_seconds : float
        Bound on each chunk request.
    retry : RetryConfig
        Chunk request retries on throttling, 5xx and transport errors.
    client : httpx.AsyncClient, optional
        Injected client (tests pass one with a ``MockTransport``).
    """

    kind = ChannelKind.MOBILE_PUSH

    def __init__(
        self,
        *,
        push_url: str = EXPO_PUSH_URL,
        access_token: Optional[str] = None,
        chunk_size: int = EXPO_CHUNK_SIZE,
        max_concurrency: int = 10,
        timeout_seconds: float = 10.0,
        retry: RetryConfig = RetryConfig(),
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(max_concurrency=max_concurrency, timeout_seconds=timeout_seconds)
        self.push_url = push_url
        self.access_token = access_token
        self.chunk_size = max(1, min(chunk_size, EXPO_CHUNK_SIZE))
        self.retry = retry
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    @staticmethod
    def build_message(item: DispatchItem) -> Dict[str, Any]:
        message = item.message
        return {
            "to": item.registration.identity,
            "sound": "default",
            "title": message.title,
            "body": message.body,
            "data": message.data,
            "priority": message.priority,
        }

    # ── Send ──────────────────────────────────────────────────────────────

    async def send(self, batch: Sequence[DispatchItem]) -> List[DeliveryOutcome]:
        outcomes: List[Optional[DeliveryOutcome]] = [None] * len(batch)
        sendable: List[int] = []

        for i, item in enumerate(batch):
            if is_push_token(item.registration.identity):
                sendable.append(i)
            else:
                outcomes[i] = DeliveryOutcome.for_item(
                    item, DeliveryStatus.DEAD, error_message="Malformed push token",
                )

        chunks = _chunks(sendable, self.chunk_size)
        results = await asyncio.gather(
            *(self._send_chunk([batch[i] for i in chunk]) for chunk in chunks)
        )
        for chunk, chunk_outcomes in zip(chunks, results):
            for i, outcome in zip(chunk, chunk_outcomes):
                outcomes[i] = outcome

        if batch:
            logger.info(
                "[MOBILE_PUSH] %d item(s) in %d chunk(s): %d delivered, %d dead",
                len(batch), len(chunks),
                sum(1 for o in outcomes if o.status == DeliveryStatus.DELIVERED),
                sum(1 for o in outcomes if o.status == DeliveryStatus.DEAD),
                extra={"channel": self.kind.value},
            )
        return outcomes

    async def _send_chunk(self, items: List[DispatchItem]) -> List[DeliveryOutcome]:
        async with self._semaphore:
            try:
                tickets = await self._post_with_retry([self.build_message(i) for i in items])
            except TransientDeliveryFailure as exc:
                logger.warning(
                    "[MOBILE_PUSH] Chunk of %d failed: %s", len(items), exc.reason,
                    extra={"channel": self.kind.value},
                )
                return self.transient_all(items, exc.reason)

        if len(tickets) != len(items):
            reason = f"Provider returned {len(tickets)} ticket(s) for {len(items)} message(s)"
            logger.warning("[MOBILE_PUSH] %s", reason, extra={"channel": self.kind.value})
            return self.transient_all(items, reason)

        return [self._outcome_for_ticket(item, ticket) for item, ticket in zip(items, tickets)]

    def _outcome_for_ticket(self, item: DispatchItem, ticket: Any) -> DeliveryOutcome:
        if not isinstance(ticket, dict):
            return DeliveryOutcome.for_item(
                item, DeliveryStatus.TRANSIENT_FAILURE, error_message="Malformed push ticket",
            )
        if ticket.get("status") == "ok":
            return DeliveryOutcome.for_item(
                item, DeliveryStatus.DELIVERED, provider_response={"ticket_id": ticket.get("id")},
            )

        error = (ticket.get("details") or {}).get("error")
        message = ticket.get("message") or "Push ticket error"
        status = (
            DeliveryStatus.DEAD if error in DEAD_TICKET_ERRORS
            else DeliveryStatus.TRANSIENT_FAILURE
        )
        return DeliveryOutcome.for_item(
            item, status,
            error_message=f"{error}: {message}" if error else message,
            provider_response=ticket,
        )

    async def _post_with_retry(self, messages: List[Dict[str, Any]]) -> List[Any]:
        """POST one chunk; returns the ticket list or raises TransientDeliveryFailure."""
        client = await self._get_client()
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await asyncio.wait_for(
                    client.post(self.push_url, json=messages, headers=self._headers()),
                    timeout=self.timeout_seconds,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                raise TransientDeliveryFailure(
                    self.kind.value, f"Provider timed out after {self.timeout_seconds:.0f}s",
                )
            except httpx.TransportError as exc:
                failure = TransientDeliveryFailure(self.kind.value, f"Transport error: {exc}")
            else:
                code = response.status_code
                if code == 429 or code >= 500:
                    failure = TransientDeliveryFailure(
                        self.kind.value, f"Provider returned HTTP {code}", status_code=code,
                    )
                elif code >= 400:
                    raise TransientDeliveryFailure(
                        self.kind.value, f"Provider rejected request: HTTP {code}",
                        status_code=code,
                    )
                else:
                    return self._parse_tickets(response)

            if attempt > self.retry.max_retries:
                raise failure
            delay = compute_backoff(self.retry, attempt)
            logger.info(
                "Retry %d/%d for mobile push chunk in %.1fs (%s)",
                attempt, self.retry.max_retries, delay, failure.reason,
            )
            await asyncio.sleep(delay)

    def _parse_tickets(self, response: httpx.Response) -> List[Any]:
        try:
            body = response.json()
        except ValueError:
            raise TransientDeliveryFailure(self.kind.value, "Provider returned non-JSON body")
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise TransientDeliveryFailure(self.kind.value, "Provider response has no ticket list")
        return data
