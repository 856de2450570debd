"""Tests for the event outbox and sinks."""

from unittest.mock import AsyncMock, patch

import pytest

from riskengine.shared.events import (
    DomainEvent,
    EventOutbox,
    FraudEventType,
    KafkaEventSink,
    LoggingEventSink,
)
from tests.conftest import RecordingEventSink


class TestEventOutbox:
    @pytest.mark.asyncio
    async def test_flush_publishes_in_order_and_empties(self):
        outbox = EventOutbox()
        outbox.add(FraudEventType.TRANSACTION_BLOCKED, "txn-1", total_score=91.0)
        outbox.add(FraudEventType.FRAUD_DETECTED, "txn-1", decision="block")
        sink = RecordingEventSink()

        assert await outbox.flush(sink) == 2
        assert [e.event_type for e in sink.published] == [
            FraudEventType.TRANSACTION_BLOCKED,
            FraudEventType.FRAUD_DETECTED,
        ]
        assert sink.published[0].payload == {"total_score": 91.0}
        assert outbox.pending == []

    @pytest.mark.asyncio
    async def test_discard_drops_pending(self):
        outbox = EventOutbox()
        outbox.add(FraudEventType.CHALLENGE_REQUIRED, "txn-2")
        outbox.discard()
        sink = RecordingEventSink()

        assert await outbox.flush(sink) == 0
        assert sink.published == []

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_stop_later_events(self):
        outbox = EventOutbox()
        outbox.add(FraudEventType.FRAUD_DETECTED, "a")
        outbox.add(FraudEventType.FRAUD_DETECTED, "b")
        sink = AsyncMock()
        sink.publish = AsyncMock(side_effect=[RuntimeError("boom"), None])

        assert await outbox.flush(sink) == 2
        assert sink.publish.await_count == 2

    def test_entity_id_is_stringified(self):
        outbox = EventOutbox()
        outbox.add(FraudEventType.ANOMALY_DETECTED, 42)
        assert outbox.pending[0].entity_id == "42"


class TestKafkaEventSink:
    @pytest.mark.asyncio
    async def test_publish_without_producer_is_noop(self):
        sink = KafkaEventSink("localhost:9092", "topic")
        await sink.publish(DomainEvent(event_type=FraudEventType.FRAUD_DETECTED, entity_id="x"))

    @pytest.mark.asyncio
    async def test_publish_keys_by_entity_id(self):
        sink = KafkaEventSink("localhost:9092", "risk.events")
        producer = AsyncMock()
        sink._producer = producer
        event = DomainEvent(event_type=FraudEventType.TRANSACTION_BLOCKED, entity_id="txn-9")

        await sink.publish(event)

        producer.send_and_wait.assert_awaited_once()
        args, kwargs = producer.send_and_wait.call_args
        assert args == ("risk.events",)
        assert kwargs["key"] == b"txn-9"
        assert kwargs["value"]["event_type"] == "transaction_blocked"

    @pytest.mark.asyncio
    async def test_send_failure_is_swallowed(self):
        sink = KafkaEventSink("localhost:9092", "risk.events")
        producer = AsyncMock()
        producer.send_and_wait = AsyncMock(side_effect=RuntimeError("broker down"))
        sink._producer = producer

        await sink.publish(DomainEvent(event_type=FraudEventType.FRAUD_DETECTED, entity_id="x"))


class TestLoggingEventSink:
    @pytest.mark.asyncio
    async def test_logs_without_retaining_events(self):
        sink = LoggingEventSink()
        with patch("riskengine.shared.events.logger") as log:
            for i in range(3):
                await sink.publish(
                    DomainEvent(event_type=FraudEventType.FRAUD_DETECTED, entity_id=f"txn-{i}")
                )

        assert log.info.call_count == 3
        assert log.info.call_args.kwargs["entity_id"] == "txn-2"
        assert vars(sink) == {}
