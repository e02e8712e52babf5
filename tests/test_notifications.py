"""Tests for the notification sinks."""

import asyncio

import httpx
import pytest

from shipwatch.core import NotificationException
from shipwatch.escalation.infrastructure.external import (
    ChannelBroadcaster,
    CircuitBreaker,
    FanoutNotificationSink,
    SlackNotificationSink,
)

from conftest import RecordingSink

WEBHOOK = "https://hooks.slack.example/services/T000/B000/XXXX"

MESSAGE = {
    "event": "escalation.triggered",
    "timestamp": "2024-05-01T10:00:00+00:00",
    "data": {
        "shipment_id": "shp-1",
        "attempt_number": 1,
        "payload": {
            "kind": "triggered",
            "reason": "High SLA risk (score: 0.85)",
            "triggered_by": "system",
            "contact": {"id": "c1", "user_id": "ops.lead", "channel_type": "slack"},
        },
    },
}


def slack_sink(handler, **kwargs) -> SlackNotificationSink:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SlackNotificationSink(
        webhook_url=WEBHOOK, channel="#escalations", http_client=client, retry_base_delay=0, **kwargs
    )


class TestSlackNotificationSink:

    @pytest.mark.asyncio
    async def test_posts_block_kit_message(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, text="ok")

        sink = slack_sink(handler)
        await sink.publish("escalation.triggered", MESSAGE)
        await sink.close()

        assert len(requests) == 1
        assert str(requests[0].url) == WEBHOOK
        body = requests[0].read().decode()
        assert "#escalations" in body
        assert "shp-1" in body
        assert "High SLA risk (score: 0.85)" in body

    @pytest.mark.asyncio
    async def test_retries_then_raises(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        sink = slack_sink(handler, max_retries=3)

        with pytest.raises(NotificationException):
            await sink.publish("escalation.triggered", MESSAGE)

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_recovers_on_retry(self):
        responses = iter([httpx.Response(503), httpx.Response(200)])

        sink = slack_sink(lambda request: next(responses))
        await sink.publish("escalation.advanced", MESSAGE)

        assert sink.circuit_breaker.state == "closed"

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        sink = slack_sink(handler, max_retries=2)

        with pytest.raises(NotificationException):
            await sink.publish("escalation.triggered", MESSAGE)

    @pytest.mark.asyncio
    async def test_without_webhook_nothing_is_sent(self):
        calls = []
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: calls.append(r)))
        sink = SlackNotificationSink(webhook_url="", http_client=client)

        await sink.publish("escalation.triggered", MESSAGE)

        assert calls == []

    @pytest.mark.asyncio
    async def test_open_circuit_skips_delivery(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        sink = slack_sink(handler)
        for _ in range(sink.circuit_breaker.failure_threshold):
            sink.circuit_breaker.record_failure()

        await sink.publish("escalation.triggered", MESSAGE)

        assert calls == []

    def test_acknowledged_message_names_actor(self):
        sink = SlackNotificationSink(webhook_url=WEBHOOK)
        message = {
            "event": "escalation.acknowledged",
            "timestamp": "2024-05-01T10:05:00+00:00",
            "data": {
                "shipment_id": "shp-1",
                "attempt_number": 2,
                "payload": {
                    "kind": "acknowledged",
                    "method": "phone",
                    "acknowledged_by": "ops.carol",
                    "original": {"contact": {"user_id": "ops.lead", "channel_type": "sms"}},
                },
            },
        }

        body = sink.build_message("escalation.acknowledged", message)
        text = str(body["blocks"])

        assert "ops.carol" in text
        assert "ops.lead via sms" in text


class TestCircuitBreaker:

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)

        breaker.record_failure()
        assert breaker.allow_request() is True
        breaker.record_failure()
        assert breaker.allow_request() is False

    def test_half_opens_after_recovery_timeout(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0)

        breaker.record_failure()

        assert breaker.state == "half_open"
        breaker.record_success()
        assert breaker.state == "closed"


class TestChannelBroadcaster:

    @pytest.mark.asyncio
    async def test_subscribers_receive_their_channel_only(self):
        broadcaster = ChannelBroadcaster()
        triggered = broadcaster.subscribe("escalation.triggered")
        acknowledged = broadcaster.subscribe("escalation.acknowledged")

        await broadcaster.publish("escalation.triggered", MESSAGE)

        assert await asyncio.wait_for(triggered.get(), timeout=1) == MESSAGE
        assert acknowledged.empty()

    @pytest.mark.asyncio
    async def test_full_queue_drops_for_that_subscriber_only(self):
        broadcaster = ChannelBroadcaster(max_queue_size=1)
        slow = broadcaster.subscribe("escalation.triggered")
        await broadcaster.publish("escalation.triggered", {"n": 1})
        fast = broadcaster.subscribe("escalation.triggered")

        await broadcaster.publish("escalation.triggered", {"n": 2})

        assert slow.qsize() == 1
        assert slow.get_nowait() == {"n": 1}
        assert fast.get_nowait() == {"n": 2}

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        broadcaster = ChannelBroadcaster()
        queue = broadcaster.subscribe("escalation.advanced")
        broadcaster.unsubscribe("escalation.advanced", queue)

        await broadcaster.publish("escalation.advanced", MESSAGE)

        assert broadcaster.subscriber_count("escalation.advanced") == 0
        assert queue.empty()


class TestFanoutNotificationSink:

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_starve_others(self):
        broken = RecordingSink()
        broken.fail = True
        healthy = RecordingSink()
        fanout = FanoutNotificationSink([broken, healthy])

        with pytest.raises(NotificationException):
            await fanout.publish("escalation.triggered", MESSAGE)

        assert healthy.messages == [("escalation.triggered", MESSAGE)]
