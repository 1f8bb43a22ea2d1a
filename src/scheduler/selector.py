from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Tuple

from src.db.tracker_store import TrackerStore
from src.models.feedback_tracker import MILESTONES_DESCENDING, FeedbackTracker, Milestone

DEFAULT_BATCH_SIZE = 10


def due_window(now: datetime) -> Tuple[date, date]:
    """UTC calendar day containing ``now`` as a half-open [today, tomorrow) range.

    Naive datetimes are taken to be UTC already.
    """
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    today = now.date()
    return today, today + timedelta(days=1)


def select_due_trackers(
    store: TrackerStore,
    now: datetime,
    limit: int = DEFAULT_BATCH_SIZE,
    include_overdue: bool = False,
) -> List[FeedbackTracker]:
    today, tomorrow = due_window(now)
    return store.find_due_trackers(today, tomorrow, limit, include_overdue=include_overdue)


def pick_milestone(
    tracker: FeedbackTracker,
    window_start: date,
    window_end: date,
    include_overdue: bool = False,
) -> Optional[Milestone]:
    """The single milestone to attempt this pass, latest offset first."""
    for milestone in MILESTONES_DESCENDING:
        slot = tracker.milestones.get(int(milestone))
        if slot is not None and slot.is_due(window_start, window_end, include_overdue):
            return milestone
    return None
