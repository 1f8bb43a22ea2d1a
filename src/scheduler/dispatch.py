from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from src.db.tracker_store import (
    TrackerNotFoundError,
    TrackerStore,
    TrackerStoreUnavailableError,
)
from src.models.feedback_tracker import Milestone
from src.scheduler.lifecycle import LifecycleCloser
from src.scheduler.selector import (
    DEFAULT_BATCH_SIZE,
    due_window,
    pick_milestone,
    select_due_trackers,
)
from src.scheduler.sender import MilestoneSender

DEFAULT_BUDGET_MS = 8000
DEFAULT_SEND_DELAY_MS = 100


@dataclass
class PassError:
    order_id: str
    offset: int
    error: str
    permanent: bool = False


@dataclass
class PassSummary:
    candidates_found: int = 0
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    timed_out: bool = False
    closed: int = 0
    duration_ms: int = 0
    errors: List[PassError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DispatchLoop:
    """One bounded pass over the trackers that are due today.

    Sends at most one milestone per tracker, sequentially, and stops early
    once ``budget_ms`` of wall-clock time has elapsed. Per-tracker failures
    are recorded in the summary; only store unavailability escapes.
    """

    def __init__(
        self,
        store: TrackerStore,
        sender: MilestoneSender,
        closer: LifecycleCloser,
        batch_size: int = DEFAULT_BATCH_SIZE,
        budget_ms: int = DEFAULT_BUDGET_MS,
        send_delay_ms: int = DEFAULT_SEND_DELAY_MS,
        include_overdue: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.sender = sender
        self.closer = closer
        self.batch_size = batch_size
        self.budget_ms = budget_ms
        self.send_delay_ms = send_delay_ms
        self.include_overdue = include_overdue
        self.clock = clock
        self.sleep = sleep

    def _elapsed_ms(self, started: float) -> int:
        return int((self.clock() - started) * 1000)

    def run(self, now: Optional[datetime] = None) -> PassSummary:
        started = self.clock()
        now = now or datetime.now(timezone.utc)
        today, tomorrow = due_window(now)
        summary = PassSummary()

        logger.info(f"Email pass started for {today} (budget {self.budget_ms}ms)")
        trackers = select_due_trackers(
            self.store, now, limit=self.batch_size, include_overdue=self.include_overdue
        )
        summary.candidates_found = len(trackers)
        logger.info(f"Found {len(trackers)} trackers with pending emails for today")

        for index, tracker in enumerate(trackers):
            elapsed = self._elapsed_ms(started)
            if elapsed > self.budget_ms:
                summary.timed_out = True
                summary.skipped = len(trackers) - index
                logger.warning(
                    f"Time budget exceeded ({elapsed}ms), skipping {summary.skipped} trackers"
                )
                break

            order_id = None
            milestone = None
            try:
                # Candidates expire after each commit; reloads must map to store errors
                with self.store.connection_guard():
                    order_id = tracker.order_id
                    milestone = pick_milestone(tracker, today, tomorrow, self.include_overdue)
                    if milestone is not None:
                        summary.processed += 1
                        outcome = self.sender.send(tracker, milestone)
                        if outcome.success:
                            summary.sent += 1
                        else:
                            summary.failed += 1
                            summary.errors.append(
                                PassError(
                                    order_id=order_id,
                                    offset=milestone.value,
                                    error=outcome.error or "Unknown error",
                                    permanent=outcome.permanent,
                                )
                            )
                        if index < len(trackers) - 1:
                            self.sleep(self.send_delay_ms / 1000)

                    if self.closer.close_if_complete(tracker):
                        summary.closed += 1
            except TrackerStoreUnavailableError:
                raise
            except TrackerNotFoundError as e:
                self._record_error(summary, e.order_id, milestone, str(e))
                logger.error(f"Tracker {e.order_id} disappeared during the pass")
            except Exception as e:
                self._record_error(summary, order_id, milestone, str(e) or type(e).__name__)
                logger.error(f"Unexpected error processing tracker {order_id}: {e}")

        summary.duration_ms = self._elapsed_ms(started)
        self._log_summary(summary)
        return summary

    @staticmethod
    def _record_error(
        summary: PassSummary, order_id: Optional[str], milestone: Optional[Milestone], error: str
    ) -> None:
        summary.failed += 1
        summary.errors.append(
            PassError(
                order_id=order_id or "unknown",
                offset=milestone.value if milestone is not None else 0,
                error=error,
            )
        )

    @staticmethod
    def _log_summary(summary: PassSummary) -> None:
        logger.info(
            f"Email pass finished in {summary.duration_ms}ms: "
            f"processed={summary.processed} sent={summary.sent} failed={summary.failed} "
            f"skipped={summary.skipped} closed={summary.closed}"
        )
        if summary.timed_out:
            logger.warning("Pass timed out; remaining emails go out on the next run")
        for err in summary.errors:
            logger.error(f"Order: {err.order_id} | Day: {err.offset} | Error: {err.error}")
