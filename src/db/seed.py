from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from src.config import get_settings
from src.db.database import Base
from src.models import EmailTemplate, Milestone
from src.notifications.content import default_html, default_subject

settings = get_settings()
sync_database_url = settings.database_url.replace("+aiosqlite", "")


def default_templates():
    """Built-in content for every milestone, with placeholders left in."""
    brand = settings.mail_from_name
    return [
        {
            "day": milestone.value,
            "subject": default_subject(milestone.value, "{{customerName}}", brand),
            "html_content": default_html(
                milestone.value,
                "{{customerName}}",
                "{{productName}}",
                "{{reviewUrl}}",
                "{{productUrl}}",
                brand,
            ),
        }
        for milestone in Milestone
    ]


def seed_templates():
    """建立預設提醒信範本"""
    engine = create_engine(sync_database_url)
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        for template_data in default_templates():
            existing = session.query(EmailTemplate).filter_by(day=template_data["day"]).first()
            if not existing:
                session.add(EmailTemplate(**template_data))
                logger.info(f"Added template for day {template_data['day']}")
            else:
                logger.info(f"Template already exists for day {template_data['day']}")

        session.commit()

    logger.info("Seed completed")


if __name__ == "__main__":
    seed_templates()
