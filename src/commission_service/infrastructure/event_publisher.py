import json
from datetime import UTC, datetime
from typing import Any

import structlog
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from commission_service.domain.events import GatewayEvent
from commission_service.domain.exceptions import SubscriptionForwardingError


logger = structlog.get_logger()


class EventPublisher:
    """
    Thin wrapper around an idempotent Kafka/Redpanda producer.

    - Topics are namespaced as ``{prefix}.{name}``
    - Keys are UTF-8 strings, values are JSON
    - ``acks=all`` with idempotence so retried sends are not duplicated
    """

    def __init__(self, brokers: str, topic_prefix: str) -> None:
        self._brokers = brokers
        self._topic_prefix = topic_prefix
        self._producer: AIOKafkaProducer | None = None

    @property
    def started(self) -> bool:
        return self._producer is not None

    def topic(self, name: str) -> str:
        return f"{self._topic_prefix}.{name}"

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._brokers,
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
            acks="all",
            enable_idempotence=True,
        )
        await self._producer.start()
        logger.info("event_publisher_started", brokers=self._brokers)

    async def stop(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("event_publisher_stopped")

    async def publish(self, name: str, key: str | None, value: dict[str, Any]) -> None:
        """Send one message and wait for the broker acknowledgement.

        Raises:
            KafkaError: the broker did not accept the message.
            RuntimeError: the publisher was not started.
        """
        if self._producer is None:
            raise RuntimeError("Event publisher not started. Call start() first.")
        topic = self.topic(name)
        await self._producer.send_and_wait(topic=topic, key=key, value=value)
        logger.debug("event_published", topic=topic, key=key)


class KafkaSubscriptionForwarder:
    """Hands subscription and invoice events to the subscription service unchanged."""

    TOPIC = "subscription_events"

    def __init__(self, publisher: EventPublisher) -> None:
        self._publisher = publisher

    async def notify_subscription_event(self, event: GatewayEvent) -> None:
        external_event_id = event.external_event_id
        try:
            await self._publisher.publish(
                self.TOPIC,
                key=external_event_id,
                value={
                    "external_event_id": external_event_id,
                    "event_type": event.event,
                    "payload": event.to_dict(),
                    "forwarded_at": datetime.now(UTC).isoformat(),
                },
            )
        except (KafkaError, RuntimeError) as e:
            logger.error(
                "subscription_forward_failed",
                external_event_id=external_event_id,
                event_type=event.event,
                error=str(e),
            )
            raise SubscriptionForwardingError(external_event_id, str(e)) from e
        logger.info("subscription_event_forwarded", external_event_id=external_event_id, event_type=event.event)
