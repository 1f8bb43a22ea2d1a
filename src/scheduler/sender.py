from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from src.db.tracker_store import TrackerStore
from src.models.base import utcnow
from src.models.feedback_tracker import FeedbackTracker, Milestone
from src.notifications.content import ContentResolutionError, ContentResolver
from src.notifications.mailer import MailDeliveryError, MailIdentity, MailSender


@dataclass
class SendOutcome:
    milestone: Milestone
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    permanent: bool = False


class MilestoneSender:
    """Sends one milestone email and records the result on its slot."""

    def __init__(
        self,
        store: TrackerStore,
        mailer: MailSender,
        resolver: ContentResolver,
        from_identity: MailIdentity,
        now: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.mailer = mailer
        self.resolver = resolver
        self.from_identity = from_identity
        self.now = now

    def send(self, tracker: FeedbackTracker, milestone: Milestone) -> SendOutcome:
        """Attempt ``milestone`` for ``tracker``.

        Any content or delivery failure is written to the slot's ``last_error``
        and returned, never raised. Store errors propagate.
        """
        order_id = tracker.order_id
        logger.info(f"Sending Day {milestone.value} email for {order_id} to {tracker.customer_email}")

        try:
            content = self.resolver.resolve(
                milestone,
                tracker.customer_name,
                tracker.product_name,
                tracker.review_url,
                tracker.product_url,
            )
            message_id = self.mailer.send_mail(
                to=tracker.customer_email,
                from_identity=self.from_identity,
                subject=content.subject,
                html_body=content.html_body,
                tags={"orderId": order_id, "emailDay": milestone.name},
            )
        except ContentResolutionError as e:
            return self._record_failure(order_id, milestone, str(e), permanent=True)
        except MailDeliveryError as e:
            return self._record_failure(order_id, milestone, str(e), permanent=e.permanent)
        except Exception as e:
            return self._record_failure(
                order_id, milestone, str(e) or type(e).__name__, permanent=False
            )

        sent_at = self.now()
        self.store.atomic_update(
            order_id, lambda t: t.slot(milestone).mark_sent(message_id, sent_at)
        )
        logger.info(f"Day {milestone.value} email sent for {order_id} ({message_id})")
        return SendOutcome(milestone=milestone, success=True, provider_message_id=message_id)

    def _record_failure(
        self, order_id: str, milestone: Milestone, error: str, permanent: bool
    ) -> SendOutcome:
        error = error or "Unknown error"
        logger.error(f"Failed to send Day {milestone.value} email for {order_id}: {error}")
        self.store.atomic_update(order_id, lambda t: t.slot(milestone).mark_failed(error))
        return SendOutcome(milestone=milestone, success=False, error=error, permanent=permanent)
