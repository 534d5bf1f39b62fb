#!/usr/bin/env python3
"""Operator commands for payouts.

    payout_admin.py recover              reset stale claims and resubmit abandoned batches
    payout_admin.py list-held            show batches held after a gateway rejection
    payout_admin.py release BATCH_ID     return a held batch's entries to escrow
    payout_admin.py write-off BATCH_ID   mark a held batch's entries as failed
    payout_admin.py set-destination SELLER_ID RECIPIENT_CODE CURRENCY
"""
import argparse
import asyncio
import sys
from datetime import UTC, datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import structlog

from commission_service.application.notifications import NotificationDispatcher
from commission_service.application.payouts import PayoutBatcher, TableDestinationResolver
from commission_service.application.scheduler import EscrowScheduler
from commission_service.application.unit_of_work import UnitOfWorkFactory, unit_of_work_factory
from commission_service.config import Settings
from commission_service.domain.exceptions import PersistenceConflictError
from commission_service.domain.models import PayoutDestination
from commission_service.infrastructure.alerts import OpsAlerter
from commission_service.infrastructure.database import Database
from commission_service.infrastructure.paystack import PaystackClient
from commission_service.infrastructure.sweep_lock import SweepLock
from commission_service.logging import configure_logging


logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Payout operator commands")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("recover", help="Reset stale claims and resubmit abandoned batches")
    commands.add_parser("list-held", help="List batches held for review")

    release = commands.add_parser("release", help="Return a held batch's entries to escrow")
    release.add_argument("batch_id")

    write_off = commands.add_parser("write-off", help="Mark a held batch's entries as failed")
    write_off.add_argument("batch_id")

    destination = commands.add_parser("set-destination", help="Register a seller's payout recipient")
    destination.add_argument("seller_id")
    destination.add_argument("recipient_code")
    destination.add_argument("currency")
    return parser


async def list_held(uow_factory: UnitOfWorkFactory) -> None:
    async with uow_factory() as uow:
        batches = await uow.batches.list_held()
    for batch in batches:
        print(
            f"{batch.id}  seller={batch.seller_id}  amount={batch.total_amount} {batch.currency}  "
            f"entries={len(batch.entry_ids)}  error={batch.last_error}"
        )
    if not batches:
        print("No held batches")


async def set_destination(uow_factory: UnitOfWorkFactory, seller_id: str, recipient_code: str, currency: str) -> None:
    async with uow_factory() as uow:
        await uow.destinations.upsert(PayoutDestination(seller_id, recipient_code, currency.upper()))
        await uow.commit()
    logger.info("payout_destination_set", seller_id=seller_id, currency=currency.upper())


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings()
    configure_logging(level=settings.log_level, log_format="console")

    database = Database(settings.database_url, pool_size=2, max_overflow=0)
    uow_factory = unit_of_work_factory(database)
    paystack = PaystackClient(
        secret_key=settings.paystack_secret_key,
        base_url=settings.paystack_base_url,
        timeout=settings.paystack_timeout_seconds,
        reason=settings.payout_reason,
    )
    notifier = NotificationDispatcher(uow_factory, settings)
    batcher = PayoutBatcher(
        uow_factory,
        client=paystack,
        destinations=TableDestinationResolver(uow_factory),
        notifier=notifier,
        alerter=OpsAlerter(),
        settings=settings,
    )

    try:
        match args.command:
            case "recover":
                scheduler = EscrowScheduler(uow_factory, batcher=batcher, lock=SweepLock(), settings=settings)
                batcher.start()
                result = await scheduler.recover_stale_claims(datetime.now(UTC))
                await batcher.join()
                await batcher.stop()
                print(f"Entries reset: {result.entries_reset}, batches resubmitted: {result.batches_requeued}")
            case "list-held":
                await list_held(uow_factory)
            case "release":
                released = await batcher.release_held_batch(args.batch_id)
                print(f"Returned {released} entries to escrow")
            case "write-off":
                written_off = await batcher.write_off_held_batch(args.batch_id)
                print(f"Wrote off {written_off} entries")
            case "set-destination":
                await set_destination(uow_factory, args.seller_id, args.recipient_code, args.currency)
    except PersistenceConflictError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        await notifier.flush()
        await paystack.close()
        await database.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
