"""Periodic reconciliation: expired single-flight slots, stale image jobs, old rate windows."""
import asyncio
import logging

from config import CLEANUP_EVERY_N_CYCLES, IMAGE_STALE_AFTER, MAINTENANCE_INTERVAL

logger = logging.getLogger(__name__)


def run_cycle(core, cycle: int, every: int = CLEANUP_EVERY_N_CYCLES) -> dict:
    report = {"unlocked": core.gate.reconcile()}
    if cycle % every == 0:
        report["rate_windows"] = core.rate_limiter.cleanup()
        report["stale_jobs"] = core.clear_stale_jobs(IMAGE_STALE_AFTER)
    return report


async def run_maintenance(core, interval: float = MAINTENANCE_INTERVAL):
    """Run forever on the bot's event loop; cancel the task to stop it."""
    logger.info("Maintenance loop started (interval: %ds, cleanup every %d cycles)",
                interval, CLEANUP_EVERY_N_CYCLES)
    cycle = 0
    while True:
        await asyncio.sleep(interval)
        cycle += 1
        try:
            report = run_cycle(core, cycle)
        except Exception as e:
            logger.warning("Maintenance cycle %d failed: %s", cycle, e)
            continue
        if any(report.values()):
            logger.info("Maintenance cycle %d: %s", cycle, report)
