from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from types import TracebackType
from typing import Self

from sqlalchemy.ext.asyncio import AsyncSession

from commission_service.infrastructure.database import Database
from commission_service.infrastructure.repositories import (
    LedgerRepository,
    NotificationRepository,
    PayoutBatchRepository,
    PayoutDestinationRepository,
    WebhookEventRepository,
)


class UnitOfWork:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self.ledger = LedgerRepository(session)
        self.webhook_events = WebhookEventRepository(session)
        self.batches = PayoutBatchRepository(session)
        self.destinations = PayoutDestinationRepository(session)
        self.notifications = NotificationRepository(session)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            await self.rollback()

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


UnitOfWorkFactory = Callable[[], AbstractAsyncContextManager[UnitOfWork]]


def unit_of_work_factory(database: Database) -> UnitOfWorkFactory:
    """Build a factory that opens one session per unit of work.

    Background components run many short transactions, so they take a factory
    instead of a single UnitOfWork.
    """

    @asynccontextmanager
    async def open_unit_of_work() -> AsyncIterator[UnitOfWork]:
        async with database.session() as session:
            async with UnitOfWork(session) as uow:
                yield uow

    return open_unit_of_work
