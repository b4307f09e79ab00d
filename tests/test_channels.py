"""
test_channels.py — Channel dispatchers against stubbed providers.

Covers:
    • Mobile push (Expo) — ticket mapping, malformed tokens, chunking,
      retries on 5xx, no retry on timeout, rejected and malformed responses
    • Web push (VAPID) — 2xx / 410 / other status mapping, missing keys,
      unconfigured VAPID, timeouts, payload shape
    • Backoff computation and dispatcher wiring from settings

Expo is stubbed with ``httpx.MockTransport``; pywebpush's ``webpush`` is
replaced by an injected sender with the same keyword signature.

Run with:
    pytest tests/test_channels.py -v
"""

from __future__ import annotations

import asyncio
import json
import time
from types import SimpleNamespace
from typing import Any, Dict, List

import httpx
import pytest
from pywebpush import WebPushException

from backend.app.core.config import Settings
from backend.app.notifications.channels import build_dispatchers
from backend.app.notifications.channels.base import RetryConfig, compute_backoff
from backend.app.notifications.channels.mobile_push import (
    MobilePushDispatcher,
    is_push_token,
)
from backend.app.notifications.channels.web_push import WebPushDispatcher
from backend.app.notifications.models import (
    ChannelKind,
    DeliveryStatus,
    DispatchItem,
    NotificationMessage,
)
from tests.fakes import mobile_registration, web_registration

MESSAGE = NotificationMessage(
    title="⚠ HIGH Flood warning",
    body="Kelani river overflow. Affected: Colombo, Colombo",
    data={"warning_id": "WRN-1"},
    priority="high",
    url="/warnings/WRN-1",
)
FAST_RETRY = RetryConfig(max_retries=1, backoff_base_seconds=0.0)


def _mobile_items(tokens: List[str]) -> List[DispatchItem]:
    return [DispatchItem(mobile_registration(f"r{i}", token), MESSAGE) for i, token in enumerate(tokens)]


def _web_items(n: int = 1, **keys) -> List[DispatchItem]:
    items = []
    for i in range(n):
        reg = web_registration(f"r{i}", f"https://push.example.com/sub/{i}")
        if keys:
            reg.keys = keys
        items.append(DispatchItem(reg, MESSAGE))
    return items


class ExpoStub:
    """Records requests; answers each with ``responder(messages)``."""

    def __init__(self, responder):
        self.responder = responder
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(json.loads(request.content), request)

    def dispatcher(self, **kwargs) -> MobilePushDispatcher:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        kwargs.setdefault("retry", FAST_RETRY)
        return MobilePushDispatcher(client=client, **kwargs)


def _all_ok(messages, request):
    return httpx.Response(200, json={"data": [{"status": "ok", "id": f"t{i}"} for i in range(len(messages))]})


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Mobile push
# ═══════════════════════════════════════════════════════════════════════════

class TestPushToken:

    @pytest.mark.parametrize("token", [
        "ExponentPushToken[abc123]",
        "ExpoPushToken[xyz-789]",
        "f47ac10b-58cc-4372-a567-0e02b2c3d479",
    ])
    def test_valid(self, token):
        assert is_push_token(token)

    @pytest.mark.parametrize("token", ["", "abc", "ExponentPushToken[]", "ExponentPushToken[a b]", None, 42])
    def test_invalid(self, token):
        assert not is_push_token(token)


class TestMobilePushDispatcher:

    @pytest.mark.asyncio
    async def test_ok_tickets_delivered(self):
        stub = ExpoStub(_all_ok)
        outcomes = await stub.dispatcher().send(_mobile_items(["ExponentPushToken[a]", "ExponentPushToken[b]"]))
        assert [o.status for o in outcomes] == [DeliveryStatus.DELIVERED] * 2
        assert outcomes[0].provider_response == {"ticket_id": "t0"}
        sent = json.loads(stub.requests[0].content)
        assert sent[0] == {
            "to": "ExponentPushToken[a]",
            "sound": "default",
            "title": MESSAGE.title,
            "body": MESSAGE.body,
            "data": MESSAGE.data,
            "priority": "high",
        }

    @pytest.mark.asyncio
    async def test_ticket_errors_mapped(self):
        def responder(messages, request):
            return httpx.Response(200, json={"data": [
                {"status": "ok", "id": "t0"},
                {"status": "error", "message": "gone", "details": {"error": "DeviceNotRegistered"}},
                {"status": "error", "message": "slow down", "details": {"error": "MessageRateExceeded"}},
            ]})
        stub = ExpoStub(responder)
        outcomes = await stub.dispatcher().send(
            _mobile_items(["ExponentPushToken[a]", "ExponentPushToken[b]", "ExponentPushToken[c]"])
        )
        assert [o.status for o in outcomes] == [
            DeliveryStatus.DELIVERED, DeliveryStatus.DEAD, DeliveryStatus.TRANSIENT_FAILURE,
        ]
        assert outcomes[1].error_message.startswith("DeviceNotRegistered")

    @pytest.mark.asyncio
    async def test_malformed_token_dead_without_request(self):
        stub = ExpoStub(_all_ok)
        outcomes = await stub.dispatcher().send(_mobile_items(["not-a-token", "ExponentPushToken[b]"]))
        assert outcomes[0].status == DeliveryStatus.DEAD
        assert outcomes[1].status == DeliveryStatus.DELIVERED
        assert len(json.loads(stub.requests[0].content)) == 1

    @pytest.mark.asyncio
    async def test_chunks_of_at_most_100(self):
        stub = ExpoStub(_all_ok)
        tokens = [f"ExponentPushToken[t{i}]" for i in range(250)]
        outcomes = await stub.dispatcher(chunk_size=500).send(_mobile_items(tokens))
        sizes = sorted(len(json.loads(r.content)) for r in stub.requests)
        assert sizes == [50, 100, 100]
        assert len(outcomes) == 250
        assert all(o.status == DeliveryStatus.DELIVERED for o in outcomes)
        assert [o.recipient_id for o in outcomes] == [f"r{i}" for i in range(250)]

    @pytest.mark.asyncio
    async def test_server_error_retried_then_delivered(self):
        calls = {"n": 0}

        def responder(messages, request):
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(503)
            return _all_ok(messages, request)

        stub = ExpoStub(responder)
        outcomes = await stub.dispatcher().send(_mobile_items(["ExponentPushToken[a]"]))
        assert outcomes[0].status == DeliveryStatus.DELIVERED
        assert len(stub.requests) == 2

    @pytest.mark.asyncio
    async def test_persistent_server_error_is_transient(self):
        stub = ExpoStub(lambda m, r: httpx.Response(500))
        outcomes = await stub.dispatcher().send(_mobile_items(["ExponentPushToken[a]", "ExponentPushToken[b]"]))
        assert all(o.status == DeliveryStatus.TRANSIENT_FAILURE for o in outcomes)
        assert len(stub.requests) == 2  # initial + one retry

    @pytest.mark.asyncio
    async def test_timeout_not_retried(self):
        def responder(messages, request):
            raise httpx.ReadTimeout("timed out", request=request)

        stub = ExpoStub(responder)
        outcomes = await stub.dispatcher().send(_mobile_items(["ExponentPushToken[a]"]))
        assert outcomes[0].status == DeliveryStatus.TRANSIENT_FAILURE
        assert "timed out" in outcomes[0].error_message
        assert len(stub.requests) == 1

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        stub = ExpoStub(lambda m, r: httpx.Response(400, json={"errors": [{"code": "VALIDATION_ERROR"}]}))
        outcomes = await stub.dispatcher().send(_mobile_items(["ExponentPushToken[a]"]))
        assert outcomes[0].status == DeliveryStatus.TRANSIENT_FAILURE
        assert len(stub.requests) == 1

    @pytest.mark.asyncio
    async def test_ticket_count_mismatch(self):
        stub = ExpoStub(lambda m, r: httpx.Response(200, json={"data": [{"status": "ok"}]}))
        outcomes = await stub.dispatcher().send(_mobile_items(["ExponentPushToken[a]", "ExponentPushToken[b]"]))
        assert all(o.status == DeliveryStatus.TRANSIENT_FAILURE for o in outcomes)

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        stub = ExpoStub(lambda m, r: httpx.Response(200, text="<html>oops</html>"))
        outcomes = await stub.dispatcher().send(_mobile_items(["ExponentPushToken[a]"]))
        assert outcomes[0].status == DeliveryStatus.TRANSIENT_FAILURE

    @pytest.mark.asyncio
    async def test_access_token_sent_as_bearer(self):
        stub = ExpoStub(_all_ok)
        await stub.dispatcher(access_token="secret").send(_mobile_items(["ExponentPushToken[a]"]))
        assert stub.requests[0].headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        stub = ExpoStub(_all_ok)
        assert await stub.dispatcher().send([]) == []
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_chunks_in_flight_bounded_by_max_concurrency(self):
        state = {"in_flight": 0, "peak": 0, "requests": 0}

        async def handler(request: httpx.Request) -> httpx.Response:
            state["requests"] += 1
            state["in_flight"] += 1
            state["peak"] = max(state["peak"], state["in_flight"])
            await asyncio.sleep(0.02)
            state["in_flight"] -= 1
            return _all_ok(json.loads(request.content), request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = MobilePushDispatcher(client=client, chunk_size=1, max_concurrency=2, retry=FAST_RETRY)
        tokens = [f"ExponentPushToken[t{i}]" for i in range(5)]
        outcomes = await dispatcher.send(_mobile_items(tokens))

        assert state["requests"] == 5
        assert state["peak"] == 2
        assert all(o.status == DeliveryStatus.DELIVERED for o in outcomes)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Web push
# ═══════════════════════════════════════════════════════════════════════════

class FakeSender:
    """Stands in for pywebpush.webpush; ``result(endpoint)`` returns or raises."""

    def __init__(self, result=None):
        self.result = result or (lambda endpoint: SimpleNamespace(status_code=201))
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.result(kwargs["subscription_info"]["endpoint"])
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _web_dispatcher(sender, **kwargs) -> WebPushDispatcher:
    kwargs.setdefault("vapid_private_key", "private-key")
    return WebPushDispatcher(vapid_subject="mailto:ops@example.lk", sender=sender, **kwargs)


def _gone(endpoint):
    return WebPushException("Push failed: 410 Gone", response=SimpleNamespace(status_code=410))


class TestWebPushDispatcher:

    @pytest.mark.asyncio
    async def test_created_is_delivered(self):
        sender = FakeSender()
        outcomes = await _web_dispatcher(sender).send(_web_items(2))
        assert [o.status for o in outcomes] == [DeliveryStatus.DELIVERED] * 2
        call = sender.calls[0]
        assert call["vapid_private_key"] == "private-key"
        assert call["vapid_claims"] == {"sub": "mailto:ops@example.lk"}
        assert call["subscription_info"]["keys"]["auth"]

    @pytest.mark.asyncio
    async def test_gone_is_dead(self):
        outcomes = await _web_dispatcher(FakeSender(_gone)).send(_web_items())
        assert outcomes[0].status == DeliveryStatus.DEAD
        assert outcomes[0].provider_response == {"status_code": 410}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [404, 413, 429, 500])
    async def test_other_errors_transient(self, status_code):
        sender = FakeSender(lambda e: WebPushException("failed", response=SimpleNamespace(status_code=status_code)))
        outcomes = await _web_dispatcher(sender).send(_web_items())
        assert outcomes[0].status == DeliveryStatus.TRANSIENT_FAILURE

    @pytest.mark.asyncio
    async def test_network_error_transient(self):
        sender = FakeSender(lambda e: ConnectionError("connection reset"))
        outcomes = await _web_dispatcher(sender).send(_web_items())
        assert outcomes[0].status == DeliveryStatus.TRANSIENT_FAILURE
        assert "connection reset" in outcomes[0].error_message

    @pytest.mark.asyncio
    async def test_timeout_transient(self):
        def slow(endpoint):
            time.sleep(0.3)
            return SimpleNamespace(status_code=201)

        outcomes = await _web_dispatcher(FakeSender(slow), timeout_seconds=0.05).send(_web_items())
        assert outcomes[0].status == DeliveryStatus.TRANSIENT_FAILURE
        assert "timed out" in outcomes[0].error_message

    @pytest.mark.asyncio
    async def test_mixed_batch_keeps_order(self):
        def result(endpoint):
            if endpoint.endswith("/1"):
                return _gone(endpoint)
            return SimpleNamespace(status_code=201)

        outcomes = await _web_dispatcher(FakeSender(result)).send(_web_items(3))
        assert [o.status for o in outcomes] == [
            DeliveryStatus.DELIVERED, DeliveryStatus.DEAD, DeliveryStatus.DELIVERED,
        ]
        assert [o.recipient_id for o in outcomes] == ["r0", "r1", "r2"]

    @pytest.mark.asyncio
    async def test_missing_keys_dead(self):
        sender = FakeSender()
        outcomes = await _web_dispatcher(sender).send(_web_items(p256dh="only-one"))
        assert outcomes[0].status == DeliveryStatus.DEAD
        assert sender.calls == []

    @pytest.mark.asyncio
    async def test_unconfigured_vapid_all_transient(self):
        sender = FakeSender()
        dispatcher = _web_dispatcher(sender, vapid_private_key=None)
        assert not dispatcher.is_configured
        outcomes = await dispatcher.send(_web_items(2))
        assert all(o.status == DeliveryStatus.TRANSIENT_FAILURE for o in outcomes)
        assert sender.calls == []

    def test_payload_shape(self):
        dispatcher = _web_dispatcher(FakeSender(), icon="/i.png", badge="/b.png")
        payload = json.loads(dispatcher.build_payload(MESSAGE))
        assert payload["title"] == MESSAGE.title
        assert payload["body"] == MESSAGE.body
        assert payload["icon"] == "/i.png"
        assert payload["badge"] == "/b.png"
        assert payload["url"] == "/warnings/WRN-1"
        assert payload["data"] == {"warning_id": "WRN-1"}
        assert isinstance(payload["timestamp"], int)


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Shared helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestBackoff:

    def test_exponential(self):
        config = RetryConfig(backoff_base_seconds=0.5)
        assert [compute_backoff(config, a) for a in (1, 2, 3)] == [0.5, 1.0, 2.0]

    def test_linear(self):
        config = RetryConfig(backoff_base_seconds=1.0, backoff_type="linear")
        assert compute_backoff(config, 3) == 3.0

    def test_capped(self):
        config = RetryConfig(backoff_base_seconds=1.0, max_backoff_seconds=2.5)
        assert compute_backoff(config, 10) == 2.5


class TestBuildDispatchers:

    def test_one_per_channel(self):
        dispatchers = build_dispatchers(Settings(VAPID_PRIVATE_KEY="k", VAPID_PUBLIC_KEY="p"))
        assert isinstance(dispatchers[ChannelKind.MOBILE_PUSH], MobilePushDispatcher)
        assert isinstance(dispatchers[ChannelKind.WEB_PUSH], WebPushDispatcher)
        assert dispatchers[ChannelKind.WEB_PUSH].is_configured

    def test_chunk_size_capped(self):
        dispatchers = build_dispatchers(Settings(MOBILE_PUSH_CHUNK_SIZE=1000))
        assert dispatchers[ChannelKind.MOBILE_PUSH].chunk_size == 100

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            MobilePushDispatcher(max_concurrency=0)
