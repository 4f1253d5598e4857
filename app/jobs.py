"""
Batch jobs, run from a scheduler (cron, systemd timer, k8s CronJob).

    python -m app.jobs notify-expiring

notify-expiring queues a reminder for every regular voucher expiring
VOUCHER_EXPIRY_NOTICE_DAYS from now with money left on it, commits, and
waits until the notifications were handed to the sender.
"""

import argparse
import asyncio
import logging

import app.models  # noqa: F401
from app.config import settings
from app.database import AsyncSessionLocal, engine
from app.services import voucher_service
from app.services.notification_service import dispatcher

log = logging.getLogger("app.jobs")


async def notify_expiring() -> int:
    await dispatcher.start()
    try:
        async with AsyncSessionLocal() as session:
            try:
                queued = await voucher_service.notify_expiring_vouchers(session)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    finally:
        await dispatcher.stop()
        await engine.dispose()
    return queued


JOBS = {
    "notify-expiring": notify_expiring,
}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="python -m app.jobs", description="Run a batch job.")
    parser.add_argument("job", choices=sorted(JOBS))
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    result = asyncio.run(JOBS[args.job]())
    log.info("Job %s finished: %s", args.job, result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
