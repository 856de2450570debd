"""Domain events and the sinks that deliver them.

The scoring pipeline buffers events in an ``EventOutbox`` for the duration of
a unit of work and publishes them only after the session commits.
"""

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

import structlog
from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

logger = structlog.get_logger()


class FraudEventType(StrEnum):
    ANOMALY_DETECTED = "anomaly_detected"
    FRAUD_DETECTED = "fraud_detected"
    TRANSACTION_BLOCKED = "transaction_blocked"
    CHALLENGE_REQUIRED = "challenge_required"


class DomainEvent(BaseModel):
    event_type: FraudEventType
    entity_id: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    payload: dict[str, Any] = Field(default_factory=dict)


class EventSink(Protocol):
    async def publish(self, event: DomainEvent) -> None: ...


class LoggingEventSink:
    """Writes events to the structured log. Used when Kafka is not configured."""

    async def publish(self, event: DomainEvent) -> None:
        logger.info(
            "domain_event",
            event_type=event.event_type.value,
            entity_id=event.entity_id,
            payload=event.payload,
        )


class KafkaEventSink:
    """Publishes events as JSON to a Kafka topic, keyed by entity id.

    Delivery is fire-and-forget: failures are logged, never raised.
    """

    def __init__(self, bootstrap_servers: str, topic: str) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._topic = topic
        self._producer: AIOKafkaProducer | None = None

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
        )
        await self._producer.start()
        logger.info("kafka_producer_started", bootstrap_servers=self._bootstrap_servers)

    async def stop(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def publish(self, event: DomainEvent) -> None:
        if self._producer is None:
            logger.debug("kafka_producer_not_available", event_type=event.event_type.value)
            return

        try:
            await self._producer.send_and_wait(
                self._topic,
                value=event.model_dump(mode="json"),
                key=event.entity_id.encode("utf-8"),
            )
            logger.info(
                "event_published_to_kafka",
                event_type=event.event_type.value,
                entity_id=event.entity_id,
                topic=self._topic,
            )
        except Exception:
            logger.exception(
                "event_publish_failed",
                event_type=event.event_type.value,
                entity_id=event.entity_id,
                topic=self._topic,
            )


class EventOutbox:
    """Collects events raised inside a unit of work."""

    def __init__(self) -> None:
        self._pending: list[DomainEvent] = []

    def add(self, event_type: FraudEventType, entity_id: str, **payload: Any) -> None:
        self._pending.append(
            DomainEvent(event_type=event_type, entity_id=str(entity_id), payload=payload)
        )

    @property
    def pending(self) -> list[DomainEvent]:
        return list(self._pending)

    def discard(self) -> None:
        self._pending.clear()

    async def flush(self, sink: EventSink) -> int:
        """Publish all buffered events, in order, and empty the buffer."""
        events, self._pending = self._pending, []
        for event in events:
            try:
                await sink.publish(event)
            except Exception:
                logger.exception("event_dispatch_failed", event_type=event.event_type.value)
        return len(events)
