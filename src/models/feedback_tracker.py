from __future__ import annotations

import enum
from datetime import date, datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, attribute_keyed_dict, mapped_column, relationship

from src.db.database import Base
from src.models.base import TimestampMixin, to_naive_utc, utcnow


class Milestone(enum.IntEnum):
    """Reminder offsets, in days after the submission date."""

    day3 = 3
    day7 = 7
    day14 = 14
    day30 = 30


# Later milestones win when several are due in the same pass
MILESTONES_DESCENDING = sorted(Milestone, reverse=True)
FINAL_MILESTONE = Milestone.day30


class TrackerStatus(enum.Enum):
    pending = "pending"
    reviewed = "reviewed"
    unreviewed = "unreviewed"
    cancelled = "cancelled"


def scheduled_dates(submission_date: datetime) -> Dict[Milestone, date]:
    """Due date of every milestone, at date granularity in UTC."""
    anchor = to_naive_utc(submission_date).date()
    return {milestone: anchor + timedelta(days=milestone.value) for milestone in Milestone}


class MilestoneSlot(Base):
    __tablename__ = "milestone_slots"
    __table_args__ = (
        UniqueConstraint("tracker_id", "offset_days", name="uq_milestone_slot"),
        CheckConstraint(
            "NOT sent OR (sent_at IS NOT NULL AND last_error IS NULL)",
            name="ck_milestone_sent_consistent",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tracker_id: Mapped[int] = mapped_column(
        ForeignKey("feedback_trackers.id", ondelete="CASCADE"), nullable=False
    )
    offset_days: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255))

    tracker: Mapped["FeedbackTracker"] = relationship(back_populates="milestones")

    @property
    def milestone(self) -> Milestone:
        return Milestone(self.offset_days)

    def is_due(self, window_start: date, window_end: date, include_overdue: bool = False) -> bool:
        """Unsent and scheduled inside [window_start, window_end)."""
        if self.sent or self.scheduled_date >= window_end:
            return False
        return include_overdue or self.scheduled_date >= window_start

    def mark_sent(self, provider_message_id: Optional[str], sent_at: datetime) -> None:
        self.sent = True
        self.sent_at = sent_at
        self.last_error = None
        self.provider_message_id = provider_message_id

    def mark_failed(self, error: str) -> None:
        # An overlapping pass may already have delivered this slot
        if self.sent:
            return
        self.last_error = error

    def __repr__(self) -> str:
        state = "sent" if self.sent else "unsent"
        return f"<MilestoneSlot day{self.offset_days} {self.scheduled_date} {state}>"


class FeedbackTracker(Base, TimestampMixin):
    __tablename__ = "feedback_trackers"
    __table_args__ = (
        CheckConstraint(
            "(status = 'pending') = is_active",
            name="ck_tracker_active_matches_status",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    asin: Mapped[Optional[str]] = mapped_column(String(20))
    product_name: Mapped[Optional[str]] = mapped_column(String(255))
    product_url: Mapped[Optional[str]] = mapped_column(String(500))
    review_url: Mapped[Optional[str]] = mapped_column(String(500))
    submission_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    status: Mapped[TrackerStatus] = mapped_column(
        Enum(TrackerStatus), default=TrackerStatus.pending, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    milestones: Mapped[Dict[int, "MilestoneSlot"]] = relationship(
        collection_class=attribute_keyed_dict("offset_days"),
        back_populates="tracker",
        cascade="all, delete-orphan",
    )

    def slot(self, milestone: Milestone) -> MilestoneSlot:
        return self.milestones[int(milestone)]

    @property
    def final_milestone_sent(self) -> bool:
        final = self.milestones.get(int(FINAL_MILESTONE))
        return final is not None and final.sent

    def __repr__(self) -> str:
        return f"<FeedbackTracker {self.order_id} {self.status.value}>"
