# retention.py
from __future__ import annotations

import asyncio
import logging

from starlette.concurrency import run_in_threadpool

from config import AppConfig
from store import RecordStore

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 3600


def run_retention_sweep(store: RecordStore, config: AppConfig) -> int:
    """
    Prune records older than logging.cleanupAfterDays.

    Returns the number removed (0 when autoCleanup is off). Failures are
    logged and reported as 0; the sweeper must never take the process down.
    """
    if not config.logging.auto_cleanup:
        return 0

    days = config.logging.cleanup_after_days
    try:
        removed = store.prune_older_than(days)
    except Exception as e:
        logger.error(f"Retention sweep failed: {e}", exc_info=True)
        return 0

    if removed:
        logger.info(f"Retention sweep removed {removed} record(s) older than {days} day(s)")
    else:
        logger.debug("Retention sweep: nothing to remove")
    return removed


async def retention_loop(store: RecordStore, config: AppConfig, interval: float = SWEEP_INTERVAL_SECONDS) -> None:
    """Sweep once now, then every `interval` seconds until cancelled."""
    while True:
        await run_in_threadpool(run_retention_sweep, store, config)
        await asyncio.sleep(interval)
