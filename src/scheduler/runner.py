from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from src.config import get_settings
from src.scheduler.jobs import process_feedback_emails

_scheduler: Optional[BackgroundScheduler] = None


def create_scheduler() -> BackgroundScheduler:
    settings = get_settings()
    scheduler = BackgroundScheduler(timezone="UTC")

    # 每日固定時間 (UTC) 發送到期的回饋提醒信
    scheduler.add_job(
        process_feedback_emails,
        CronTrigger(hour=settings.pass_cron_hour, minute=0, timezone="UTC"),
        id="feedback_email_pass",
        name="Feedback Email Pass",
        max_instances=1,
        coalesce=True,
    )

    logger.info(f"Feedback email pass scheduled daily at {settings.pass_cron_hour:02d}:00 UTC")
    return scheduler


def start_scheduler() -> BackgroundScheduler:
    global _scheduler
    _scheduler = create_scheduler()
    _scheduler.start()
    logger.info("Scheduler started")
    return _scheduler


def get_scheduler() -> Optional[BackgroundScheduler]:
    return _scheduler


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown()
        _scheduler = None
        logger.info("Scheduler stopped")
