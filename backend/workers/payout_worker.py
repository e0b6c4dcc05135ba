import asyncio
import logging
from datetime import datetime, timedelta

from config.env import PAYOUT_WORKER_INTERVAL_SECONDS
from database import get_client, get_db
from utils.payout_engine import calculate_payouts
from utils.settings_cache import get_platform_settings

logger = logging.getLogger(__name__)


def previous_period(schedule: str, today: datetime) -> tuple[datetime, datetime, str]:
    """
    Last fully closed period for a payout cadence, as
    (start 00:00:00, end 23:59:59.999999, label).

    weekly: previous Monday..Sunday
    biweekly: the 14 days ending yesterday
    monthly: previous calendar month
    """
    day = datetime(today.year, today.month, today.day)

    if schedule == "weekly":
        this_monday = day - timedelta(days=day.weekday())
        start = this_monday - timedelta(days=7)
        end = this_monday
    elif schedule == "monthly":
        first_this_month = day.replace(day=1)
        end = first_this_month
        start = (first_this_month - timedelta(days=1)).replace(day=1)
    else:
        end = day
        start = day - timedelta(days=14)

    end = end - timedelta(microseconds=1)
    label = f"{schedule} {start:%Y-%m-%d} to {end:%Y-%m-%d}"
    return start, end, label


async def run_scheduled_payouts(db, client=None, now: datetime | None = None) -> dict:
    settings = await get_platform_settings(db)
    start, end, label = previous_period(settings.payout_schedule, now or datetime.utcnow())
    return await calculate_payouts(db, start, end, label, client=client)


async def payout_worker():
    """
    Hourly check; the overlap guard makes re-runs inside the same period
    a no-op, so the worker does not track what it already did.
    """
    db = get_db()
    client = get_client()

    while True:
        try:
            result = await run_scheduled_payouts(db, client)
            if result["processed_sellers"]:
                logger.info(
                    "PAYOUT_WORKER_BATCH period=%s created=%s",
                    result["period_label"],
                    result["processed_sellers"],
                )
        except Exception:
            logger.exception("PAYOUT_WORKER_ERROR")

        await asyncio.sleep(PAYOUT_WORKER_INTERVAL_SECONDS)
