from __future__ import annotations

from sqlalchemy import Boolean, CheckConstraint, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.db.database import Base
from src.models.base import TimestampMixin


class EmailTemplate(Base, TimestampMixin):
    """Customised reminder content for one day offset."""

    __tablename__ = "email_templates"
    __table_args__ = (CheckConstraint("day BETWEEN 1 AND 30", name="ck_email_template_day"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    day: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<EmailTemplate day{self.day} active={self.is_active}>"
