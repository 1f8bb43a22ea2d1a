from __future__ import annotations

from datetime import datetime
from typing import Optional

from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from src.config import get_settings
from src.db.tracker_store import TrackerStore
from src.notifications.content import ContentResolver
from src.notifications.mailer import MailIdentity, MailSender, SendGridMailer
from src.scheduler.dispatch import DispatchLoop, PassSummary
from src.scheduler.lifecycle import LifecycleCloser
from src.scheduler.sender import MilestoneSender

settings = get_settings()

# 同步版本的資料庫連線（給排程使用）
sync_database_url = settings.database_url.replace("+aiosqlite", "")


def get_sync_session() -> Session:
    engine = create_engine(sync_database_url)
    return Session(engine)


def build_dispatch_loop(session: Session, mailer: Optional[MailSender] = None) -> DispatchLoop:
    """Wire a dispatch loop from settings; ``mailer`` defaults to SendGrid."""
    store = TrackerStore(session)
    sender = MilestoneSender(
        store=store,
        mailer=mailer or SendGridMailer(),
        resolver=ContentResolver(session),
        from_identity=MailIdentity(email=settings.mail_from_email, name=settings.mail_from_name),
    )
    return DispatchLoop(
        store=store,
        sender=sender,
        closer=LifecycleCloser(store),
        batch_size=settings.max_emails_per_run,
        budget_ms=settings.pass_budget_ms,
        send_delay_ms=settings.delay_between_emails_ms,
        include_overdue=settings.catch_up_overdue,
    )


def process_feedback_emails(now: Optional[datetime] = None) -> PassSummary:
    """每日回饋提醒信發送任務

    Raises TrackerStoreUnavailableError when the database cannot be reached.
    """
    logger.info(f"Starting feedback email pass at {datetime.now()}")

    if not SendGridMailer.is_configured():
        logger.warning("SENDGRID_API_KEY is not set; sends will be recorded as failures")

    with get_sync_session() as session:
        loop = build_dispatch_loop(session)
        summary = loop.run(now)

    logger.info("Feedback email pass completed")
    return summary
