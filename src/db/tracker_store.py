from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from typing import Callable, Iterator, List, Optional

from loguru import logger
from sqlalchemy import and_, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, selectinload

from src.models.base import to_naive_utc, utcnow
from src.models.feedback_tracker import (
    FeedbackTracker,
    MilestoneSlot,
    TrackerStatus,
    scheduled_dates,
)


class TrackerStoreError(Exception):
    """Base class for tracker persistence failures."""


class DuplicateTrackerError(TrackerStoreError):
    def __init__(self, order_id: str):
        super().__init__(f"Tracker already exists for order {order_id}")
        self.order_id = order_id


class TrackerNotFoundError(TrackerStoreError):
    def __init__(self, order_id: str):
        super().__init__(f"No tracker for order {order_id}")
        self.order_id = order_id


class TrackerStoreUnavailableError(TrackerStoreError):
    """The database could not be reached; fatal for a pass."""


class TrackerStore:
    """Durable feedback trackers keyed by order id."""

    def __init__(self, session: Session):
        self.session = session

    @contextmanager
    def connection_guard(self) -> Iterator[None]:
        """Raise connectivity failures as TrackerStoreUnavailableError."""
        try:
            yield
        except OperationalError as e:
            self.session.rollback()
            raise TrackerStoreUnavailableError(str(e.orig or e)) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                self.session.rollback()
                raise TrackerStoreUnavailableError(str(e.orig or e)) from e
            raise

    def create(
        self,
        order_id: str,
        customer_email: str,
        customer_name: str,
        product_name: Optional[str] = None,
        product_url: Optional[str] = None,
        review_url: Optional[str] = None,
        asin: Optional[str] = None,
        submission_date: Optional[datetime] = None,
    ) -> FeedbackTracker:
        """Create a tracker with all four milestone slots scheduled.

        Raises:
            DuplicateTrackerError: a tracker already exists for ``order_id``.
        """
        if self.get(order_id) is not None:
            raise DuplicateTrackerError(order_id)

        submitted = to_naive_utc(submission_date) if submission_date else utcnow()
        tracker = FeedbackTracker(
            order_id=order_id,
            customer_email=customer_email,
            customer_name=customer_name,
            product_name=product_name,
            product_url=product_url,
            review_url=review_url,
            asin=asin,
            submission_date=submitted,
            status=TrackerStatus.pending,
            is_active=True,
        )
        for milestone, due in scheduled_dates(submitted).items():
            tracker.milestones[milestone.value] = MilestoneSlot(
                offset_days=milestone.value, scheduled_date=due
            )

        with self.connection_guard():
            self.session.add(tracker)
            try:
                self.session.commit()
            except IntegrityError as e:
                # Lost a race with a concurrent create for the same order
                self.session.rollback()
                raise DuplicateTrackerError(order_id) from e

        logger.info(f"Created feedback tracker for order {order_id}")
        return tracker

    def get(self, order_id: str) -> Optional[FeedbackTracker]:
        with self.connection_guard():
            return self.session.execute(
                select(FeedbackTracker)
                .options(selectinload(FeedbackTracker.milestones))
                .where(FeedbackTracker.order_id == order_id)
            ).scalar_one_or_none()

    def find_due_trackers(
        self,
        window_start: date,
        window_end: date,
        limit: int,
        include_overdue: bool = False,
    ) -> List[FeedbackTracker]:
        """Active trackers with an unsent slot scheduled in [window_start, window_end).

        With ``include_overdue`` the lower bound is dropped so slots missed on
        earlier days are picked up as well.
        """
        slot_filter = [
            MilestoneSlot.sent == False,  # noqa: E712
            MilestoneSlot.scheduled_date < window_end,
        ]
        if not include_overdue:
            slot_filter.append(MilestoneSlot.scheduled_date >= window_start)

        stmt = (
            select(FeedbackTracker)
            .options(selectinload(FeedbackTracker.milestones))
            .where(
                FeedbackTracker.is_active == True,  # noqa: E712
                FeedbackTracker.status == TrackerStatus.pending,
                FeedbackTracker.milestones.any(and_(*slot_filter)),
            )
            .order_by(FeedbackTracker.id.asc())
            .limit(limit)
        )
        with self.connection_guard():
            return list(self.session.execute(stmt).scalars().all())

    def atomic_update(
        self, order_id: str, mutate: Callable[[FeedbackTracker], None]
    ) -> FeedbackTracker:
        """Apply ``mutate`` to the locked tracker row and commit in one transaction.

        Any exception from ``mutate`` or the commit rolls the whole change back.

        Raises:
            TrackerNotFoundError: no tracker exists for ``order_id``.
        """
        with self.connection_guard():
            tracker = self.session.execute(
                select(FeedbackTracker)
                .options(selectinload(FeedbackTracker.milestones))
                .where(FeedbackTracker.order_id == order_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if tracker is None:
                self.session.rollback()
                raise TrackerNotFoundError(order_id)

            try:
                mutate(tracker)
                tracker.updated_at = utcnow()
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
        return tracker
