from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from src.db.database import Base
from src.db.tracker_store import TrackerNotFoundError, TrackerStore
from src.models.feedback_tracker import Milestone, TrackerStatus
from src.scheduler.lifecycle import (
    InvalidTransitionError,
    LifecycleCloser,
    apply_transition,
)


@pytest.fixture
def db_session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    Base.metadata.drop_all(engine)


@pytest.fixture
def store(db_session):
    store = TrackerStore(db_session)
    store.create(
        order_id="ORD-1",
        customer_email="jane@example.com",
        customer_name="Jane",
        submission_date=datetime(2024, 1, 1),
    )
    return store


@pytest.fixture
def closer(store):
    return LifecycleCloser(store)


def send_day30(store):
    store.atomic_update(
        "ORD-1", lambda t: t.slot(Milestone.day30).mark_sent("msg-30", datetime(2024, 1, 31, 9))
    )
    return store.get("ORD-1")


class TestApplyTransition:
    def test_same_status_is_noop(self, store):
        tracker = store.get("ORD-1")
        tracker.status = TrackerStatus.cancelled
        tracker.is_active = False

        assert apply_transition(tracker, TrackerStatus.cancelled) is False

    def test_pending_cannot_be_targeted(self, store):
        tracker = store.get("ORD-1")
        tracker.status = TrackerStatus.cancelled
        tracker.is_active = False

        with pytest.raises(InvalidTransitionError):
            apply_transition(tracker, TrackerStatus.pending)


class TestCloseIfComplete:
    def test_closes_after_day30_sent(self, store, closer):
        tracker = send_day30(store)

        assert closer.close_if_complete(tracker) is True

        tracker = store.get("ORD-1")
        assert tracker.status == TrackerStatus.unreviewed
        assert tracker.is_active is False

    def test_not_closed_before_day30(self, store, closer):
        tracker = store.get("ORD-1")

        assert closer.close_if_complete(tracker) is False
        assert store.get("ORD-1").status == TrackerStatus.pending

    def test_review_arriving_first_wins(self, store, closer, db_session):
        tracker = send_day30(store)
        closer.mark_reviewed("ORD-1")

        assert closer.close_if_complete(tracker) is False
        assert store.get("ORD-1").status == TrackerStatus.reviewed


class TestAdminTransitions:
    def test_mark_reviewed_from_pending(self, store, closer):
        tracker = closer.mark_reviewed("ORD-1")

        assert tracker.status == TrackerStatus.reviewed
        assert tracker.is_active is False

    def test_mark_reviewed_from_unreviewed(self, store, closer):
        closer.close_if_complete(send_day30(store))

        tracker = closer.mark_reviewed("ORD-1")
        assert tracker.status == TrackerStatus.reviewed

    def test_mark_reviewed_is_idempotent(self, store, closer):
        first = closer.mark_reviewed("ORD-1").updated_at
        tracker = closer.mark_reviewed("ORD-1")

        assert tracker.status == TrackerStatus.reviewed
        assert tracker.updated_at >= first

    def test_cancel_from_any_status(self, store, closer):
        closer.mark_reviewed("ORD-1")

        tracker = closer.cancel("ORD-1")
        assert tracker.status == TrackerStatus.cancelled
        assert tracker.is_active is False

    def test_cancel_is_idempotent(self, store, closer):
        closer.cancel("ORD-1")
        assert closer.cancel("ORD-1").status == TrackerStatus.cancelled

    def test_cancelled_cannot_be_reviewed(self, store, closer):
        closer.cancel("ORD-1")

        with pytest.raises(InvalidTransitionError):
            closer.mark_reviewed("ORD-1")
        assert store.get("ORD-1").status == TrackerStatus.cancelled

    def test_unknown_order(self, closer):
        with pytest.raises(TrackerNotFoundError):
            closer.cancel("ORD-MISSING")
