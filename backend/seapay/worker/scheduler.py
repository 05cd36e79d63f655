"""
定时任务调度器

运行方式：
    python -m seapay.worker.scheduler
"""

import logging
from datetime import timezone

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from seapay.core.config import settings
from seapay.worker.tasks import (
    expire_subscriptions,
    rescan_orphaned_events_job,
    sweep_unapplied_events,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_scheduler() -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone=timezone.utc)
    scheduler.add_job(
        sweep_unapplied_events,
        IntervalTrigger(seconds=settings.SWEEP_INTERVAL_SECONDS),
        id="sweep_unapplied_events",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        rescan_orphaned_events_job,
        IntervalTrigger(seconds=settings.ORPHAN_RESCAN_INTERVAL_SECONDS),
        id="rescan_orphaned_events",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        expire_subscriptions,
        CronTrigger(minute="*/15"),
        id="expire_subscriptions",
        replace_existing=True,
    )
    return scheduler


def main() -> None:
    scheduler = build_scheduler()
    logger.info(
        "Scheduler started. sweep every %ss, orphan rescan every %ss, expiry every 15 minutes.",
        settings.SWEEP_INTERVAL_SECONDS,
        settings.ORPHAN_RESCAN_INTERVAL_SECONDS,
    )
    scheduler.start()


if __name__ == "__main__":
    main()
