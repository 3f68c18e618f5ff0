"""Periodic background sweeps.

Each sweep runs as its own asyncio task within the FastAPI process. A sweep
that raises is logged and retried at its next interval; it never takes the
loop (or the other sweeps) down with it.
"""
import asyncio
import logging
from typing import Awaitable, Callable

from fileflow.config import settings
from fileflow.services.container import Services

logger = logging.getLogger(__name__)


async def run_periodic(name: str, interval: float, sweep: Callable[[], Awaitable]) -> None:
    logger.info(f"{name} started (every {interval}s)")
    while True:
        try:
            await sweep()
        except Exception as e:
            logger.error(f"{name} failed: {e}", exc_info=True)
        await asyncio.sleep(interval)


async def recover_on_startup(services: Services) -> None:
    """Connections marked active by a previous process cannot have survived it."""
    await services.dispatcher.recover_stale_connections()


async def drain_queues(services: Services) -> None:
    await services.dispatcher.drain_connected()
    await services.dispatcher.flush_metrics()


async def housekeeping(services: Services) -> None:
    stale = await services.dispatcher.cleanup_stale_connections()
    sessions, notifications = await services.dispatcher.purge_history()
    if stale or sessions or notifications:
        logger.info(
            f"Housekeeping: {stale} idle connections closed, "
            f"{sessions} old sessions and {notifications} sent notifications purged"
        )


def start_background_tasks(services: Services) -> list[asyncio.Task]:
    loops = [
        ("Notification retry sweep", settings.RETRY_SWEEP_INTERVAL_SECONDS,
         services.dispatcher.retry_sweep),
        ("Notification queue drain", settings.QUEUE_DRAIN_INTERVAL_SECONDS,
         lambda: drain_queues(services)),
        ("Quota reservation sweep", settings.RESERVATION_SWEEP_INTERVAL_SECONDS,
         services.ledger.expire_stale_reservations),
        ("Upload session sweep", settings.UPLOAD_SWEEP_INTERVAL_SECONDS,
         services.files.expire_uploads),
        ("Housekeeping", settings.HOUSEKEEPING_INTERVAL_SECONDS,
         lambda: housekeeping(services)),
    ]
    return [asyncio.create_task(run_periodic(name, interval, sweep)) for name, interval, sweep in loops]


async def stop_background_tasks(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
