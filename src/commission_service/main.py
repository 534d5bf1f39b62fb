import asyncio
import contextlib
import signal

import structlog

from commission_service.api.http_server import HttpServer, create_app
from commission_service.application.notifications import NotificationDispatcher, NotificationReaper
from commission_service.application.payouts import PayoutBatcher, TableDestinationResolver
from commission_service.application.scheduler import EscrowScheduler
from commission_service.application.unit_of_work import unit_of_work_factory
from commission_service.application.webhooks import WebhookIngressService
from commission_service.config import Settings
from commission_service.infrastructure.alerts import OpsAlerter
from commission_service.infrastructure.database import Database
from commission_service.infrastructure.event_publisher import EventPublisher, KafkaSubscriptionForwarder
from commission_service.infrastructure.paystack import PaystackClient
from commission_service.infrastructure.redis_client import RedisClient
from commission_service.infrastructure.sweep_lock import SweepLock
from commission_service.logging import configure_logging


logger = structlog.get_logger()


async def main() -> None:
    settings = Settings()
    configure_logging(
        level=settings.log_level,
        log_format=settings.log_format,
    )

    logger.info(
        "starting_commission_service",
        http_port=settings.http_port,
        log_level=settings.log_level,
        commission_rate=str(settings.commission_rate),
        escrow_period_ms=settings.escrow_period_ms,
        sweep_interval_ms=settings.sweep_interval_ms,
        distributed_lock_enabled=settings.distributed_lock_enabled,
    )
    if not settings.webhook_secret:
        logger.warning("webhook_secret_not_configured", effect="every webhook will be rejected")

    database = Database(settings.database_url)
    uow_factory = unit_of_work_factory(database)

    redis_client: RedisClient | None = None
    if settings.distributed_lock_enabled:
        redis_client = RedisClient(settings.redis_url)
        await redis_client.connect()

    publisher = EventPublisher(settings.redpanda_brokers, settings.kafka_topic_prefix)
    await publisher.start()

    paystack = PaystackClient(
        secret_key=settings.paystack_secret_key,
        base_url=settings.paystack_base_url,
        timeout=settings.paystack_timeout_seconds,
        reason=settings.payout_reason,
    )
    alerter = OpsAlerter(publisher)
    notifier = NotificationDispatcher(uow_factory, settings)
    reaper = NotificationReaper(uow_factory, settings)
    batcher = PayoutBatcher(
        uow_factory,
        client=paystack,
        destinations=TableDestinationResolver(uow_factory),
        notifier=notifier,
        alerter=alerter,
        settings=settings,
    )
    scheduler = EscrowScheduler(
        uow_factory,
        batcher=batcher,
        lock=SweepLock(redis_client, ttl_ms=settings.stale_claim_threshold_ms),
        settings=settings,
    )
    ingress = WebhookIngressService(
        uow_factory,
        settings=settings,
        notifier=notifier,
        alerter=alerter,
        forwarder=KafkaSubscriptionForwarder(publisher),
    )

    health_checks = {"database": database.ping}
    if redis_client:
        health_checks["redis"] = redis_client.health_check
    http_server = HttpServer(
        create_app(ingress, health_checks),
        host=settings.http_host,
        port=settings.http_port,
    )

    notifier.start()
    batcher.start()
    background = [
        asyncio.create_task(scheduler.start(), name="escrow-scheduler"),
        asyncio.create_task(reaper.start(), name="notification-reaper"),
    ]
    await http_server.start()

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_requested.set)

    await stop_requested.wait()

    logger.info("shutting_down")
    await http_server.stop()
    await scheduler.stop()
    reaper.stop()
    for task in background:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await batcher.stop()
    await notifier.stop()
    await paystack.close()
    await publisher.stop()
    if redis_client:
        await redis_client.close()
    await database.close()
    logger.info("shutdown_complete")


if __name__ == "__main__":
    asyncio.run(main())
