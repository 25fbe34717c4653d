"""
ARQ worker for the notification pipeline.

The queue itself lives in the database; arq only hosts the long-running
poll loop and schedules the sweeper and retention jobs.

Run with: arq lms_notify.worker.WorkerSettings
Or without Redis: python -m lms_notify.worker
"""
import asyncio
import contextlib
import signal

from arq import cron
from arq.connections import RedisSettings

from lms_notify.config import settings
from lms_notify.database import AsyncSessionLocal
from lms_notify.logging_config import get_logger
from lms_notify.sentry_config import configure_sentry
from lms_notify.services.notification_worker import NotificationWorker
from lms_notify.services.recovery_sweeper import RecoverySweeper
from lms_notify.services.send_channel import build_channel


logger = get_logger(component="arq_worker")


def build_worker() -> NotificationWorker:
    return NotificationWorker(AsyncSessionLocal, build_channel(settings), settings=settings)


def build_sweeper() -> RecoverySweeper:
    return RecoverySweeper(AsyncSessionLocal, settings=settings)


async def process_notification_batch(ctx: dict) -> dict:
    """Process one batch on demand, e.g. right after a burst of enqueues."""
    result = await ctx["notification_worker"].run_once()
    return result.model_dump()


async def sweep_stuck_items(ctx: dict) -> int:
    """Cron: reclaim items whose lease expired."""
    return await ctx["recovery_sweeper"].sweep_once()


async def purge_old_rows(ctx: dict) -> dict:
    """Cron: apply queue and delivery retention."""
    queue_purged, deliveries_purged = await ctx["recovery_sweeper"].purge_once()
    return {"queue_items": queue_purged, "deliveries": deliveries_purged}


async def _startup(ctx: dict) -> None:
    configure_sentry()
    worker = build_worker()
    ctx["notification_worker"] = worker
    ctx["recovery_sweeper"] = build_sweeper()
    ctx["stop_event"] = asyncio.Event()
    ctx["poll_task"] = asyncio.create_task(worker.run(ctx["stop_event"]))
    logger.info("arq_worker_started", worker_id=worker.worker_id)


async def stop_poll_task(task: asyncio.Task, timeout: float) -> None:
    """Give the poll loop `timeout` seconds to finish, then cancel it and wait for it to unwind."""
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if not done:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def _shutdown(ctx: dict) -> None:
    stop_event = ctx.get("stop_event")
    if stop_event:
        stop_event.set()
    task = ctx.get("poll_task")
    if task:
        await stop_poll_task(task, timeout=settings.NOTIFY_SEND_TIMEOUT_SECONDS)
    logger.info("arq_worker_stopped")


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq lms_notify.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    functions = [process_notification_batch]
    cron_jobs = [
        cron(sweep_stuck_items, second=0),
        cron(purge_old_rows, hour=3, minute=30),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
    max_tries = 1


async def main():
    """Run the poll loop and the sweeper without Redis."""
    configure_sentry()
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    worker = build_worker()
    sweeper = build_sweeper()
    await asyncio.gather(worker.run(stop_event), sweeper.run(stop_event))


if __name__ == "__main__":
    asyncio.run(main())
