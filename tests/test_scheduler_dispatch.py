from datetime import date, datetime, timezone
from unittest.mock import MagicMock, PropertyMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from src.db.database import Base
from src.db.tracker_store import TrackerStore, TrackerStoreUnavailableError
from src.models.feedback_tracker import Milestone, TrackerStatus
from src.notifications.content import ContentResolver
from src.notifications.mailer import MailIdentity, TransientMailError
from src.scheduler.dispatch import DispatchLoop
from src.scheduler.lifecycle import LifecycleCloser
from src.scheduler.sender import MilestoneSender

SUBMITTED = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)


def at(day: int, month: int = 1) -> datetime:
    return datetime(2024, month, day, 9, 0, tzinfo=timezone.utc)


class FakeMailer:
    def __init__(self, failures=None):
        self.sent = []
        self.failures = list(failures or [])

    def send_mail(self, to, from_identity, subject, html_body, tags):
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(dict(tags))
        return f"msg-{len(self.sent)}"


class FakeClock:
    """Monotonic clock that only moves when the loop sleeps."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def db_session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    Base.metadata.drop_all(engine)


@pytest.fixture
def store(db_session):
    return TrackerStore(db_session)


def create(store, order_id="ORD-1", submitted=SUBMITTED):
    return store.create(
        order_id=order_id,
        customer_email=f"{order_id.lower()}@example.com",
        customer_name="Jane",
        product_name="Flashcards",
        submission_date=submitted,
    )


def make_loop(store, mailer, clock=None, **kwargs):
    clock = clock or FakeClock()
    sender = MilestoneSender(
        store=store,
        mailer=mailer,
        resolver=ContentResolver(store.session),
        from_identity=MailIdentity("noreply@studykey.com", "Study Key"),
    )
    return DispatchLoop(
        store=store,
        sender=sender,
        closer=LifecycleCloser(store),
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


def sent_offsets(store, order_id="ORD-1"):
    tracker = store.get(order_id)
    return sorted(offset for offset, slot in tracker.milestones.items() if slot.sent)


class TestSchedule:
    def test_nothing_due_before_day3(self, store):
        create(store)
        mailer = FakeMailer()

        for day in (1, 2, 3):
            summary = make_loop(store, mailer).run(at(day))
            assert summary.candidates_found == 0

        assert mailer.sent == []

    def test_day3_pass_sends_only_day3(self, store):
        create(store)
        mailer = FakeMailer()

        summary = make_loop(store, mailer).run(at(4))

        assert summary.sent == 1
        assert mailer.sent == [{"orderId": "ORD-1", "emailDay": "day3"}]
        assert sent_offsets(store) == [3]

    def test_second_pass_same_day_is_idempotent(self, store):
        create(store)
        mailer = FakeMailer()

        make_loop(store, mailer).run(at(4))
        summary = make_loop(store, mailer).run(datetime(2024, 1, 4, 17, 0, tzinfo=timezone.utc))

        assert summary.candidates_found == 0
        assert summary.sent == 0
        assert len(mailer.sent) == 1

    def test_full_scenario(self, store):
        create(store)
        mailer = FakeMailer()

        make_loop(store, mailer).run(at(4))
        assert sent_offsets(store) == [3]

        make_loop(store, mailer).run(at(4))
        assert len(mailer.sent) == 1

        summary = make_loop(store, mailer).run(at(31))
        assert summary.sent == 1
        assert summary.closed == 1
        assert mailer.sent[-1] == {"orderId": "ORD-1", "emailDay": "day30"}

        tracker = store.get("ORD-1")
        assert tracker.slot(Milestone.day30).sent is True
        assert tracker.status == TrackerStatus.unreviewed
        assert tracker.is_active is False

    def test_every_milestone_sent_once_on_daily_runs(self, store):
        create(store)
        mailer = FakeMailer()

        for day in range(1, 32):
            make_loop(store, mailer).run(at(day))
        # February passes find nothing left
        make_loop(store, mailer).run(at(1, month=2))

        assert [tags["emailDay"] for tags in mailer.sent] == ["day3", "day7", "day14", "day30"]
        assert store.get("ORD-1").status == TrackerStatus.unreviewed


class TestOnePerTrackerPerPass:
    def test_latest_due_milestone_goes_first(self, store):
        tracker = create(store)
        # Force day 3 and day 7 into the same window
        tracker.slot(Milestone.day3).scheduled_date = date(2024, 1, 8)
        store.session.commit()
        mailer = FakeMailer()

        summary = make_loop(store, mailer).run(at(8))

        assert summary.processed == 1
        assert mailer.sent == [{"orderId": "ORD-1", "emailDay": "day7"}]
        assert sent_offsets(store) == [7]

        make_loop(store, mailer).run(at(8))
        assert sent_offsets(store) == [3, 7]

    def test_missed_day_is_lost_without_catch_up(self, store):
        create(store)
        mailer = FakeMailer()

        make_loop(store, mailer).run(at(5))

        assert mailer.sent == []
        assert sent_offsets(store) == []

    def test_catch_up_sends_overdue_slots_one_at_a_time(self, store):
        create(store)
        mailer = FakeMailer()

        make_loop(store, mailer, include_overdue=True).run(at(8))
        assert sent_offsets(store) == [7]

        make_loop(store, mailer, include_overdue=True).run(at(9))
        assert sent_offsets(store) == [3, 7]


class TestBudget:
    def test_stops_when_budget_elapses(self, store):
        for i in range(5):
            create(store, f"ORD-{i}")
        mailer = FakeMailer()
        clock = FakeClock()

        # 100ms pause after each send; the fourth tracker starts at 300ms
        loop = make_loop(store, mailer, clock=clock, budget_ms=250, send_delay_ms=100)
        summary = loop.run(at(4))

        assert summary.candidates_found == 5
        assert summary.processed == 3
        assert summary.sent == 3
        assert summary.skipped == 2
        assert summary.timed_out is True
        for order_id in ("ORD-0", "ORD-1", "ORD-2"):
            assert sent_offsets(store, order_id) == [3]
        for order_id in ("ORD-3", "ORD-4"):
            assert sent_offsets(store, order_id) == []

    def test_next_pass_finishes_the_batch(self, store):
        for i in range(5):
            create(store, f"ORD-{i}")
        mailer = FakeMailer()

        make_loop(store, mailer, budget_ms=250, send_delay_ms=100).run(at(4))
        summary = make_loop(store, mailer, budget_ms=250, send_delay_ms=100).run(at(4))

        assert summary.candidates_found == 2
        assert summary.timed_out is False
        assert len(mailer.sent) == 5

    def test_no_pause_after_last_send(self, store):
        create(store)
        clock = FakeClock()

        make_loop(store, FakeMailer(), clock=clock).run(at(4))

        assert clock.now == 0.0

    def test_batch_size_caps_candidates(self, store):
        for i in range(12):
            create(store, f"ORD-{i:02d}")

        summary = make_loop(store, FakeMailer(), batch_size=10).run(at(4))

        assert summary.candidates_found == 10
        assert summary.sent == 10


class TestFailures:
    def test_transient_failure_then_retry_same_day(self, store):
        create(store)
        mailer = FakeMailer(failures=[TransientMailError("SendGrid request failed: timeout")])

        summary = make_loop(store, mailer).run(at(8))

        assert summary.failed == 1
        assert summary.sent == 0
        assert summary.errors[0].order_id == "ORD-1"
        assert summary.errors[0].offset == 7
        assert summary.errors[0].error == "SendGrid request failed: timeout"
        slot = store.get("ORD-1").slot(Milestone.day7)
        assert slot.sent is False
        assert slot.sent_at is None
        assert slot.last_error == "SendGrid request failed: timeout"

        summary = make_loop(store, mailer).run(datetime(2024, 1, 8, 15, 0, tzinfo=timezone.utc))

        assert summary.sent == 1
        slot = store.get("ORD-1").slot(Milestone.day7)
        assert slot.sent is True
        assert slot.last_error is None

    def test_failure_does_not_stop_other_trackers(self, store):
        create(store, "ORD-A")
        create(store, "ORD-B")
        mailer = FakeMailer(failures=[TransientMailError("rate limited")])

        summary = make_loop(store, mailer).run(at(4))

        assert summary.processed == 2
        assert summary.failed == 1
        assert summary.sent == 1
        assert sent_offsets(store, "ORD-B") == [3]

    def test_failed_day30_does_not_close_tracker(self, store):
        create(store)
        mailer = FakeMailer(failures=[TransientMailError("rate limited")])

        summary = make_loop(store, mailer).run(at(31))

        assert summary.closed == 0
        assert store.get("ORD-1").status == TrackerStatus.pending

    def test_store_unavailable_is_fatal(self):
        store = MagicMock()
        store.find_due_trackers.side_effect = TrackerStoreUnavailableError("connection refused")
        sender = MagicMock()
        loop = DispatchLoop(store=store, sender=sender, closer=MagicMock())

        with pytest.raises(TrackerStoreUnavailableError):
            loop.run(at(4))
        sender.send.assert_not_called()

    def test_summary_serialises(self, store):
        create(store)
        mailer = FakeMailer(failures=[TransientMailError("rate limited")])

        data = make_loop(store, mailer).run(at(4)).to_dict()

        assert data["failed"] == 1
        assert data["timed_out"] is False
        assert data["errors"] == [
            {"order_id": "ORD-1", "offset": 3, "error": "rate limited", "permanent": False}
        ]

    def test_unexpected_mailer_error_is_recorded(self, store):
        create(store, "ORD-A")
        create(store, "ORD-B")
        mailer = FakeMailer(failures=[ConnectionResetError("connection reset by peer")])

        summary = make_loop(store, mailer).run(at(4))

        assert summary.failed == 1
        assert summary.sent == 1
        assert summary.errors[0].order_id == "ORD-A"
        assert summary.errors[0].permanent is False
        assert store.get("ORD-A").slot(Milestone.day3).last_error == "connection reset by peer"
        assert sent_offsets(store, "ORD-B") == [3]

    def test_unexpected_error_after_send_does_not_stop_pass(self, store):
        create(store, "ORD-A")
        create(store, "ORD-B")
        mailer = FakeMailer()
        loop = make_loop(store, mailer)
        loop.closer = MagicMock()
        loop.closer.close_if_complete.side_effect = [RuntimeError("lock timeout"), False]

        summary = loop.run(at(4))

        assert summary.sent == 2
        assert summary.failed == 1
        assert summary.errors[0].order_id == "ORD-A"
        assert summary.errors[0].offset == 3
        assert summary.errors[0].error == "lock timeout"

    def test_lost_connection_mid_pass_is_fatal(self, store):
        tracker = MagicMock()
        type(tracker).order_id = PropertyMock(
            side_effect=OperationalError("SELECT", {}, Exception("database is locked"))
        )
        store.find_due_trackers = MagicMock(return_value=[tracker])
        sender = MagicMock()
        loop = DispatchLoop(store=store, sender=sender, closer=MagicMock())

        with pytest.raises(TrackerStoreUnavailableError):
            loop.run(at(4))
        sender.send.assert_not_called()
