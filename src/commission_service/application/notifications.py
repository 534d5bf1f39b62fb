import asyncio
import contextlib
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from commission_service.application.unit_of_work import UnitOfWorkFactory
from commission_service.config import Settings
from commission_service.domain.notifications import (
    NotificationData,
    NotificationType,
    SellerNotification,
)
from commission_service.infrastructure.metrics import NOTIFICATIONS_REAPED, NOTIFICATIONS_TOTAL


logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(UTC)


class NotificationDispatcher:
    """
    Fans ledger and payout events out to the seller notification store.

    - Content is validated synchronously; invalid content raises to the caller
    - Persistence happens on a background worker with its own sessions
    - Each notification gets a small retry budget; after that it is dropped
    - A full queue drops the notification instead of blocking the caller
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._ttl = settings.notification_ttl
        self._max_attempts = settings.notification_max_attempts
        self._retry_delay = settings.notification_retry_delay_seconds
        self._clock = clock
        self._queue: asyncio.Queue[SellerNotification] = asyncio.Queue(maxsize=settings.notification_queue_size)
        self._worker: asyncio.Task[None] | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def notify(
        self,
        seller_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: NotificationData,
    ) -> SellerNotification | None:
        """Validate and queue a notification.

        Returns:
            The queued notification, or None if the queue was full.

        Raises:
            NotificationValidationError: title, message or data out of bounds.
        """
        notification = SellerNotification.create(
            seller_id=seller_id,
            notification_type=notification_type,
            title=title,
            message=message,
            data=data,
            now=self._clock(),
            ttl=self._ttl,
        )
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            NOTIFICATIONS_TOTAL.labels(type=notification_type.value, outcome="dropped_queue_full").inc()
            logger.warning(
                "notification_dropped",
                reason="queue_full",
                seller_id=seller_id,
                notification_type=notification_type.value,
            )
            return None
        NOTIFICATIONS_TOTAL.labels(type=notification_type.value, outcome="queued").inc()
        return notification

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")
            logger.info("notification_dispatcher_started")

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        await self.flush()
        logger.info("notification_dispatcher_stopped")

    async def flush(self) -> int:
        """Persist everything currently queued. Returns the number stored."""
        stored = 0
        while not self._queue.empty():
            notification = self._queue.get_nowait()
            try:
                if await self._persist(notification):
                    stored += 1
            finally:
                self._queue.task_done()
        return stored

    async def _run(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self._persist(notification)
            finally:
                self._queue.task_done()

    async def _persist(self, notification: SellerNotification) -> bool:
        log = logger.bind(
            notification_id=notification.id,
            seller_id=notification.seller_id,
            notification_type=notification.type.value,
        )
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with self._uow_factory() as uow:
                    await uow.notifications.add(notification)
                    await uow.commit()
            except Exception as e:
                log.warning(
                    "notification_store_failed",
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    error=str(e),
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._retry_delay * attempt)
                continue
            NOTIFICATIONS_TOTAL.labels(type=notification.type.value, outcome="stored").inc()
            log.info("notification_stored", attempt=attempt)
            return True

        NOTIFICATIONS_TOTAL.labels(type=notification.type.value, outcome="dropped_store_failed").inc()
        log.error("notification_dropped", reason="store_unavailable", attempts=self._max_attempts)
        return False


class SellerInbox:
    """Read side of the notification store, used by the seller-facing UI."""

    def __init__(self, uow_factory: UnitOfWorkFactory, clock: Callable[[], datetime] = utcnow) -> None:
        self._uow_factory = uow_factory
        self._clock = clock

    async def list_for_seller(
        self,
        seller_id: str,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> list[SellerNotification]:
        async with self._uow_factory() as uow:
            return await uow.notifications.list_for_seller(
                seller_id,
                self._clock(),
                unread_only=unread_only,
                limit=limit,
                offset=offset,
            )

    async def unread_count(self, seller_id: str) -> int:
        async with self._uow_factory() as uow:
            return await uow.notifications.unread_count(seller_id, self._clock())

    async def set_read(self, notification_id: str, read: bool = True) -> bool:
        async with self._uow_factory() as uow:
            updated = await uow.notifications.set_read(notification_id, read)
            await uow.commit()
        return updated


class NotificationReaper:
    """Periodically deletes notifications past their expiry."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._interval = settings.notification_reap_interval_seconds
        self._clock = clock
        self._running = False

    async def reap_once(self) -> int:
        async with self._uow_factory() as uow:
            deleted = await uow.notifications.delete_expired(self._clock())
            await uow.commit()
        if deleted:
            NOTIFICATIONS_REAPED.inc(deleted)
            logger.info("notifications_reaped", count=deleted)
        return deleted

    async def start(self) -> None:
        self._running = True
        logger.info("notification_reaper_started", interval_seconds=self._interval)
        while self._running:
            try:
                await self.reap_once()
            except Exception as e:
                logger.error("notification_reap_failed", error=str(e), exc_info=True)
            await asyncio.sleep(self._interval)

    def stop(self) -> None:
        self._running = False
        logger.info("notification_reaper_stopped")
