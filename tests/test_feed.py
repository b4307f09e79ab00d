"""
test_feed.py — Live warning feed and the settled-delivery ledger.
"""

from __future__ import annotations

import pytest

from backend.app.notifications.feed import WarningFeed
from backend.app.notifications.ledger import DeliveryLedger
from backend.app.notifications.models import ChannelKind, DeliveryOutcome, DeliveryStatus


def _outcome(recipient_id: str, status: DeliveryStatus, channel=ChannelKind.MOBILE_PUSH) -> DeliveryOutcome:
    return DeliveryOutcome(
        registration_id=f"reg-{recipient_id}", recipient_id=recipient_id, channel=channel, status=status,
    )


class TestWarningFeed:

    @pytest.mark.asyncio
    async def test_publish_reaches_every_connection(self):
        feed = WarningFeed()
        _, q1 = feed.connect()
        _, q2 = feed.connect()
        assert feed.publish({"event": "created"}) == 2
        assert (await q1.get())["event"] == "created"
        assert (await q2.get())["event"] == "created"

    @pytest.mark.asyncio
    async def test_slow_consumer_loses_oldest(self):
        feed = WarningFeed(queue_size=2)
        _, queue = feed.connect()
        for i in range(3):
            feed.publish({"event": "updated", "n": i})
        assert feed.dropped == 1
        assert [(await queue.get())["n"] for _ in range(2)] == [1, 2]

    @pytest.mark.asyncio
    async def test_disconnect(self):
        feed = WarningFeed()
        connection_id, _ = feed.connect("c1")
        assert connection_id in feed
        assert feed.disconnect("c1") is True
        assert feed.disconnect("c1") is False
        assert feed.publish({"event": "created"}) == 0

    @pytest.mark.asyncio
    async def test_close_all(self):
        feed = WarningFeed()
        feed.connect()
        feed.connect()
        feed.close_all()
        assert feed.connection_count == 0


class TestDeliveryLedger:

    @pytest.mark.asyncio
    async def test_records_delivered_and_dead_only(self):
        ledger = DeliveryLedger()
        added = await ledger.record("W:created:1", [
            _outcome("a", DeliveryStatus.DELIVERED),
            _outcome("b", DeliveryStatus.DEAD),
            _outcome("c", DeliveryStatus.TRANSIENT_FAILURE),
        ])
        assert added == 2
        assert ledger.is_settled("W:created:1", "a", ChannelKind.MOBILE_PUSH)
        assert ledger.is_settled("W:created:1", "b", ChannelKind.MOBILE_PUSH)
        assert not ledger.is_settled("W:created:1", "c", ChannelKind.MOBILE_PUSH)

    @pytest.mark.asyncio
    async def test_channel_and_event_scoped(self):
        ledger = DeliveryLedger()
        await ledger.record("W:created:1", [_outcome("a", DeliveryStatus.DELIVERED)])
        assert not ledger.is_settled("W:created:1", "a", ChannelKind.WEB_PUSH)
        assert not ledger.is_settled("W:updated:2", "a", ChannelKind.MOBILE_PUSH)

    @pytest.mark.asyncio
    async def test_evicts_oldest_event(self):
        ledger = DeliveryLedger(max_events=2)
        for n in range(3):
            await ledger.record(f"W:updated:{n}", [_outcome("a", DeliveryStatus.DELIVERED)])
        assert len(ledger) == 2
        assert not ledger.is_settled("W:updated:0", "a", ChannelKind.MOBILE_PUSH)
        assert ledger.is_settled("W:updated:2", "a", ChannelKind.MOBILE_PUSH)

    @pytest.mark.asyncio
    async def test_claim_is_exclusive_until_settled(self):
        ledger = DeliveryLedger()
        key = ("a", ChannelKind.MOBILE_PUSH)
        assert await ledger.claim("W:created:1", [key]) == [True]
        assert await ledger.claim("W:created:1", [key]) == [False]
        assert ledger.is_claimed("W:created:1", "a", ChannelKind.MOBILE_PUSH)

        await ledger.record("W:created:1", [_outcome("a", DeliveryStatus.DELIVERED)])
        assert not ledger.is_claimed("W:created:1", "a", ChannelKind.MOBILE_PUSH)
        assert await ledger.claim("W:created:1", [key]) == [False]

    @pytest.mark.asyncio
    async def test_transient_outcome_frees_claim(self):
        ledger = DeliveryLedger()
        key = ("a", ChannelKind.MOBILE_PUSH)
        await ledger.claim("W:created:1", [key])
        await ledger.record("W:created:1", [_outcome("a", DeliveryStatus.TRANSIENT_FAILURE)])
        assert len(ledger) == 0
        assert await ledger.claim("W:created:1", [key]) == [True]

    @pytest.mark.asyncio
    async def test_release_drops_only_named_claims(self):
        ledger = DeliveryLedger()
        a, b = ("a", ChannelKind.MOBILE_PUSH), ("b", ChannelKind.MOBILE_PUSH)
        assert await ledger.claim("W:created:1", [a, b]) == [True, True]
        await ledger.release("W:created:1", [a])
        assert not ledger.is_claimed("W:created:1", "a", ChannelKind.MOBILE_PUSH)
        assert ledger.is_claimed("W:created:1", "b", ChannelKind.MOBILE_PUSH)
        await ledger.release("W:updated:9", [a])
        assert not ledger.is_settled("W:created:1", "a", ChannelKind.MOBILE_PUSH)
