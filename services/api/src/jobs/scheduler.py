"""APScheduler setup for the periodic expiry sweep."""

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from conf import SchedulerConf
from models.operations.bids import bid_expire_overdue
from models.operations.products import product_expire_overdue
from utils import log

logger = log.get_logger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


async def expiry_sweep_job():
    """Persist lazily-resolved expiry for overdue products and bids."""
    try:
        products = await product_expire_overdue()
        bids = await bid_expire_overdue()
        logger.info(f"Expiry sweep finished: {products} product(s), {bids} bid(s) expired")
    except Exception as e:
        logger.error(f"Expiry sweep failed: {e}", exc_info=True)


def init_scheduler(conf: SchedulerConf) -> Optional[AsyncIOScheduler]:
    """Start the APScheduler with the expiry sweep, if it is enabled."""
    global _scheduler
    if not conf.expiry_sweep_enabled:
        logger.info("Expiry sweep disabled (EXPIRY_SWEEP_INTERVAL_MINUTES=0); expiry is resolved on read")
        return None

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        expiry_sweep_job,
        trigger=IntervalTrigger(minutes=conf.expiry_sweep_interval_minutes),
        id="expiry_sweep",
        name="Expire overdue products and bids",
        replace_existing=True,
        max_instances=1,
    )
    _scheduler.start()
    logger.info(f"APScheduler started with expiry sweep every {conf.expiry_sweep_interval_minutes} min")
    return _scheduler


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("APScheduler shut down")
