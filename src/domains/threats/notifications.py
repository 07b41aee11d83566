"""Real-time notification sinks for new clusters and defense actions.

Emission is one-way and best-effort: engines call `safe_emit`, which never
raises, and nothing waits on delivery.
"""

import asyncio
import functools
import json
from typing import Any

import structlog
from aiokafka import AIOKafkaProducer

logger = structlog.get_logger()

NEW_FRAUD_CLUSTER = "new-fraud-cluster"
DEFENSE_ACTION_TRIGGERED = "defense-action-triggered"
HIGH_RISK_CLUSTER = "high-risk-cluster"


class NotificationSink:
    """Base sink: subclasses push `(event_name, payload)` to observers."""

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LoggingNotificationSink(NotificationSink):
    """Writes notifications to the structured log only."""

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        logger.info("threat_notification", notification=event_name, payload=payload)


class KafkaNotificationSink(NotificationSink):
    """Publishes notifications to a Kafka topic keyed by event name.

    Args:
        producer: A started aiokafka AIOKafkaProducer instance.
        topic: Destination topic.
    """

    def __init__(self, producer: AIOKafkaProducer, topic: str) -> None:
        self._producer = producer
        self._topic = topic

    @classmethod
    async def connect(cls, bootstrap_servers: str, topic: str) -> "KafkaNotificationSink":
        producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
        await producer.start()
        logger.info("kafka_producer_started", bootstrap_servers=bootstrap_servers, topic=topic)
        return cls(producer, topic)

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        """Queue the message in the producer buffer; delivery is reported by callback."""
        message = {"event": event_name, "payload": payload}
        delivery = await self._producer.send(
            self._topic,
            value=json.dumps(message, default=str).encode("utf-8"),
            key=event_name.encode("utf-8"),
        )
        delivery.add_done_callback(functools.partial(self._log_delivery, event_name))

    def _log_delivery(self, event_name: str, delivery: asyncio.Future) -> None:
        if delivery.cancelled():
            logger.warning("notification_delivery_cancelled", notification=event_name)
            return
        exc = delivery.exception()
        if exc is not None:
            logger.error(
                "notification_delivery_failed",
                notification=event_name,
                topic=self._topic,
                error=str(exc),
            )
            return
        logger.debug("notification_published", notification=event_name, topic=self._topic)

    async def close(self) -> None:
        await self._producer.stop()


async def safe_emit(sink: NotificationSink | None, event_name: str, payload: dict[str, Any]) -> None:
    """Emit through `sink`, logging instead of raising on failure."""
    if sink is None:
        logger.debug("notification_sink_not_available", notification=event_name)
        return
    try:
        await sink.emit(event_name, payload)
    except Exception:
        logger.exception("notification_emit_failed", notification=event_name)
