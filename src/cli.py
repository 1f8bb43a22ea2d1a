import argparse
from datetime import datetime

from loguru import logger
from sqlalchemy import create_engine

from src.config import get_settings
from src.db.database import Base
from src.db.tracker_store import DuplicateTrackerError, TrackerNotFoundError, TrackerStore
from src.models.feedback_tracker import Milestone, TrackerStatus

settings = get_settings()
sync_database_url = settings.database_url.replace("+aiosqlite", "")


def init_database():
    """初始化資料庫"""
    import src.models  # noqa: F401

    engine = create_engine(sync_database_url)
    Base.metadata.create_all(engine)
    logger.info("Database initialized")


def run_pass(at: str = None):
    """執行一次提醒信發送"""
    from src.scheduler.jobs import process_feedback_emails

    now = datetime.fromisoformat(at) if at else None
    summary = process_feedback_emails(now)
    logger.info(f"Result: {summary.to_dict()}")


def track_order(args):
    """建立訂單追蹤"""
    from src.scheduler.jobs import get_sync_session

    submitted = datetime.fromisoformat(args.submitted) if args.submitted else None
    with get_sync_session() as session:
        store = TrackerStore(session)
        try:
            tracker = store.create(
                order_id=args.order_id,
                customer_email=args.email,
                customer_name=args.name,
                product_name=args.product,
                product_url=args.product_url,
                review_url=args.review_url,
                submission_date=submitted,
            )
        except DuplicateTrackerError:
            logger.info(f"Order {args.order_id} is already tracked")
            return
        for offset, slot in sorted(tracker.milestones.items()):
            logger.info(f"Day {offset} email scheduled for {slot.scheduled_date}")


def set_status(order_id: str, status: str):
    """手動標記追蹤狀態"""
    from src.scheduler.jobs import get_sync_session
    from src.scheduler.lifecycle import InvalidTransitionError, LifecycleCloser

    with get_sync_session() as session:
        closer = LifecycleCloser(TrackerStore(session))
        try:
            closer.transition(order_id, TrackerStatus(status))
        except (TrackerNotFoundError, InvalidTransitionError) as e:
            logger.error(str(e))


def send_test_email(email: str, name: str):
    """寄送測試信"""
    from src.notifications.content import ContentResolver
    from src.notifications.mailer import MailDeliveryError, MailIdentity, SendGridMailer

    content = ContentResolver().resolve(Milestone.day3, name)
    try:
        message_id = SendGridMailer().send_mail(
            to=email,
            from_identity=MailIdentity(settings.mail_from_email, settings.mail_from_name),
            subject=f"Test Email - {settings.mail_from_name} Feedback System",
            html_body=content.html_body,
            tags={},
        )
    except MailDeliveryError as e:
        logger.error(f"Test email failed: {e}")
        return
    logger.info(f"Test email sent ({message_id})")


def main():
    parser = argparse.ArgumentParser(description="Feedback Reminder CLI")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init command
    subparsers.add_parser("init", help="Initialize database")

    # serve command
    subparsers.add_parser("serve", help="Start API server")

    # run-pass command
    pass_parser = subparsers.add_parser("run-pass", help="Send the emails due today")
    pass_parser.add_argument("--at", help="ISO timestamp to treat as now (UTC)")

    # track command
    track_parser = subparsers.add_parser("track", help="Start tracking an order")
    track_parser.add_argument("order_id")
    track_parser.add_argument("--email", required=True)
    track_parser.add_argument("--name", required=True)
    track_parser.add_argument("--product")
    track_parser.add_argument("--product-url")
    track_parser.add_argument("--review-url")
    track_parser.add_argument("--submitted", help="ISO submission timestamp")

    # status command
    status_parser = subparsers.add_parser("status", help="Mark a tracker reviewed or cancelled")
    status_parser.add_argument("order_id")
    status_parser.add_argument("status", choices=["reviewed", "cancelled"])

    # seed command
    subparsers.add_parser("seed", help="Seed default email templates")

    # send-test command
    test_parser = subparsers.add_parser("send-test", help="Send a test email")
    test_parser.add_argument("email")
    test_parser.add_argument("--name", default="Test User")

    args = parser.parse_args()

    if args.command == "init":
        init_database()
    elif args.command == "serve":
        import uvicorn

        uvicorn.run(
            "src.main:app",
            host=settings.api_host,
            port=settings.api_port,
            reload=settings.debug,
        )
    elif args.command == "run-pass":
        run_pass(args.at)
    elif args.command == "track":
        track_order(args)
    elif args.command == "status":
        set_status(args.order_id, args.status)
    elif args.command == "seed":
        from src.db.seed import seed_templates

        seed_templates()
    elif args.command == "send-test":
        send_test_email(args.email, args.name)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
