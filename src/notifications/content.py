from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Dict, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.config import get_settings
from src.models.email_template import EmailTemplate
from src.models.feedback_tracker import Milestone

DEFAULT_PRODUCT_LABEL = "your product"

# Placeholder tokens accepted in customised templates
PLACEHOLDERS = ("customerName", "productName", "reviewUrl", "productUrl")


class ContentResolutionError(Exception):
    """No usable subject/body could be produced for a milestone."""


@dataclass(frozen=True)
class EmailContent:
    subject: str
    html_body: str


def render_placeholders(template: str, values: Dict[str, str]) -> str:
    """Replace ``{{name}}`` tokens; unknown tokens are left as they are."""
    rendered = template
    for name in PLACEHOLDERS:
        rendered = rendered.replace("{{" + name + "}}", values.get(name, ""))
    return rendered


def default_subject(day: int, customer_name: str, brand: str) -> str:
    subjects = {
        3: f"{customer_name}, how's your {brand} product? 🎯",
        7: f"Quick favor - Share your {brand} experience? 📝",
        14: f"{customer_name}, your feedback matters to us! 💭",
        30: f"Final reminder: Share your {brand} review 🌟",
    }
    return subjects.get(day, f"{brand} - Review Request")


def default_html(
    day: int,
    customer_name: str,
    product_name: str,
    review_url: str,
    product_url: Optional[str],
    brand: str,
) -> str:
    name = html.escape(customer_name)
    product = html.escape(product_name)
    product_link = ""
    if product_url:
        product_link = (
            '<p style="text-align: center; margin: 20px 0;">'
            f'<a href="{html.escape(product_url)}" style="color: #0066c0; text-decoration: none;">'
            f"View {product} on Amazon</a></p>"
        )

    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
      <h2>Hi {name}! 👋</h2>
      <p>It's been {day} days since you claimed your {html.escape(brand)} reward. We hope you're enjoying <strong>{product}</strong>!</p>
      <p><strong>Would you mind sharing your experience?</strong></p>
      <p>Your honest Amazon review helps us improve and helps other customers make informed decisions. It only takes a minute!</p>
      <div style="text-align: center; margin: 30px 0;">
        <a href="{html.escape(review_url)}"
           style="background-color: #FF9900; color: white; padding: 15px 30px; text-decoration: none; border-radius: 5px; font-weight: bold; display: inline-block;">
          Write Your Review
        </a>
      </div>
      {product_link}
      <p>Thank you for being part of our community!</p>
      <p style="color: #666; font-size: 12px; margin-top: 30px;">
        You're receiving this because you claimed a {html.escape(brand)} reward. If you've already left a review, thank you! You can ignore this email.
      </p>
    </div>
    """


class ContentResolver:
    """Subject and body for a milestone email.

    An active ``EmailTemplate`` for the day wins; otherwise the built-in
    default content is used.
    """

    def __init__(self, session: Optional[Session] = None):
        self.session = session
        self.settings = get_settings()

    def _custom_template(self, day: int) -> Optional[EmailTemplate]:
        if self.session is None:
            return None
        try:
            return self.session.execute(
                select(EmailTemplate).where(
                    EmailTemplate.day == day,
                    EmailTemplate.is_active == True,  # noqa: E712
                )
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.warning(f"Template lookup failed for day {day}, using default: {e}")
            return None

    def resolve(
        self,
        milestone: Milestone,
        customer_name: str,
        product_name: Optional[str] = None,
        review_url: Optional[str] = None,
        product_url: Optional[str] = None,
    ) -> EmailContent:
        """Raises ContentResolutionError when the result has no subject or body."""
        day = int(milestone)
        brand = self.settings.mail_from_name
        values = {
            "customerName": customer_name,
            "productName": product_name or DEFAULT_PRODUCT_LABEL,
            "reviewUrl": review_url or self.settings.default_review_url,
            "productUrl": product_url or self.settings.default_product_url,
        }

        template = self._custom_template(day)
        if template is not None:
            subject = render_placeholders(template.subject, values)
            body = render_placeholders(template.html_content, values)
        else:
            logger.debug(f"No custom template for day {day}, using default")
            subject = default_subject(day, customer_name, brand)
            body = default_html(
                day,
                customer_name,
                values["productName"],
                values["reviewUrl"],
                product_url,
                brand,
            )

        if not subject.strip() or not body.strip():
            raise ContentResolutionError(f"Template for day {day} rendered empty content")
        return EmailContent(subject=subject, html_body=body)
