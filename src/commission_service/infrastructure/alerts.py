from datetime import UTC, datetime
from typing import Any

import structlog
from aiokafka.errors import KafkaError

from commission_service.infrastructure.event_publisher import EventPublisher
from commission_service.infrastructure.metrics import OPS_ALERTS_TOTAL


logger = structlog.get_logger()


class OpsAlerter:
    """Raises operator-facing alerts.

    Alerts are always logged at critical level and counted. When a publisher is
    configured they are also sent to the ``ops_alerts`` topic; a broker failure
    there is logged and does not affect the caller.
    """

    TOPIC = "ops_alerts"

    def __init__(self, publisher: EventPublisher | None = None) -> None:
        self._publisher = publisher

    async def alert(self, kind: str, message: str, **context: Any) -> None:
        OPS_ALERTS_TOTAL.labels(kind=kind).inc()
        logger.critical("ops_alert", kind=kind, alert_message=message, **context)

        if self._publisher is None or not self._publisher.started:
            return
        try:
            await self._publisher.publish(
                self.TOPIC,
                key=kind,
                value={
                    "kind": kind,
                    "message": message,
                    "context": {key: str(value) for key, value in context.items()},
                    "raised_at": datetime.now(UTC).isoformat(),
                },
            )
        except KafkaError as e:
            logger.error("ops_alert_publish_failed", kind=kind, error=str(e))
