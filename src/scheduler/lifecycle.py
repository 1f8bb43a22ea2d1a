from __future__ import annotations

from typing import Dict, FrozenSet

from loguru import logger

from src.db.tracker_store import TrackerStore
from src.models.feedback_tracker import FeedbackTracker, TrackerStatus

# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS: Dict[TrackerStatus, FrozenSet[TrackerStatus]] = {
    TrackerStatus.unreviewed: frozenset({TrackerStatus.pending}),
    TrackerStatus.reviewed: frozenset({TrackerStatus.pending, TrackerStatus.unreviewed}),
    TrackerStatus.cancelled: frozenset(
        {TrackerStatus.pending, TrackerStatus.unreviewed, TrackerStatus.reviewed}
    ),
}


class InvalidTransitionError(Exception):
    def __init__(self, order_id: str, current: TrackerStatus, target: TrackerStatus):
        super().__init__(
            f"Tracker {order_id} cannot move from {current.value} to {target.value}"
        )
        self.order_id = order_id
        self.current = current
        self.target = target


def apply_transition(tracker: FeedbackTracker, target: TrackerStatus) -> bool:
    """Move ``tracker`` to a terminal ``target`` status.

    Returns False when the tracker is already in ``target``.

    Raises:
        InvalidTransitionError: ``target`` cannot be reached from the current status.
    """
    if tracker.status == target:
        return False
    allowed = ALLOWED_TRANSITIONS.get(target, frozenset())
    if tracker.status not in allowed:
        raise InvalidTransitionError(tracker.order_id, tracker.status, target)
    tracker.status = target
    tracker.is_active = False
    return True


class LifecycleCloser:
    """Moves trackers out of active scheduling."""

    def __init__(self, store: TrackerStore):
        self.store = store

    def transition(self, order_id: str, target: TrackerStatus) -> FeedbackTracker:
        changed = []

        def mutate(tracker: FeedbackTracker) -> None:
            changed.append(apply_transition(tracker, target))

        tracker = self.store.atomic_update(order_id, mutate)
        if changed and changed[0]:
            logger.info(f"Tracker {order_id} marked {target.value}")
        return tracker

    def close_if_complete(self, tracker: FeedbackTracker) -> bool:
        """Mark ``unreviewed`` once day 30 is sent and no review has arrived."""
        if not tracker.final_milestone_sent or tracker.status != TrackerStatus.pending:
            return False

        closed = []

        def mutate(locked: FeedbackTracker) -> None:
            # Re-checked on the locked row; a review may have landed meanwhile
            if locked.final_milestone_sent and locked.status == TrackerStatus.pending:
                closed.append(apply_transition(locked, TrackerStatus.unreviewed))

        self.store.atomic_update(tracker.order_id, mutate)
        if closed:
            logger.info(
                f"Marked tracker {tracker.order_id} as unreviewed (all emails sent, no review)"
            )
        return bool(closed)

    def mark_reviewed(self, order_id: str) -> FeedbackTracker:
        return self.transition(order_id, TrackerStatus.reviewed)

    def cancel(self, order_id: str) -> FeedbackTracker:
        return self.transition(order_id, TrackerStatus.cancelled)
