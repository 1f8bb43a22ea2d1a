from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.config import get_settings
from src.db.database import get_db
from src.models.base import utcnow
from src.models.email_template import EmailTemplate
from src.models.feedback_tracker import FeedbackTracker, TrackerStatus
from src.scheduler.lifecycle import InvalidTransitionError, apply_transition
from src.scheduler.runner import get_scheduler

ADMIN_SETTABLE_STATUSES = (TrackerStatus.reviewed, TrackerStatus.cancelled)


def require_admin_key(x_admin_key: str = Header(None)) -> None:
    settings = get_settings()
    # Require admin key in production
    if settings.is_production:
        if not settings.admin_api_key:
            raise HTTPException(status_code=503, detail="Admin API not configured")
        if x_admin_key != settings.admin_api_key:
            raise HTTPException(status_code=401, detail="Invalid admin key")


router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)


class MilestoneResponse(BaseModel):
    offset_days: int
    scheduled_date: date
    sent: bool
    sent_at: Optional[datetime]
    last_error: Optional[str]
    provider_message_id: Optional[str]


class TrackerResponse(BaseModel):
    order_id: str
    customer_email: str
    customer_name: str
    product_name: Optional[str]
    submission_date: datetime
    status: TrackerStatus
    is_active: bool
    milestones: List[MilestoneResponse]
    created_at: datetime
    updated_at: datetime


class StatusUpdateRequest(BaseModel):
    status: TrackerStatus


class TemplateRequest(BaseModel):
    day: int = Field(ge=1, le=30)
    subject: str = Field(min_length=1)
    html_content: str = Field(min_length=1)
    is_active: bool = True


class TemplateResponse(BaseModel):
    id: int
    day: int
    subject: str
    html_content: str
    is_active: bool


def _tracker_response(tracker: FeedbackTracker) -> TrackerResponse:
    return TrackerResponse(
        order_id=tracker.order_id,
        customer_email=tracker.customer_email,
        customer_name=tracker.customer_name,
        product_name=tracker.product_name,
        submission_date=tracker.submission_date,
        status=tracker.status,
        is_active=tracker.is_active,
        milestones=[
            MilestoneResponse(
                offset_days=slot.offset_days,
                scheduled_date=slot.scheduled_date,
                sent=slot.sent,
                sent_at=slot.sent_at,
                last_error=slot.last_error,
                provider_message_id=slot.provider_message_id,
            )
            for _, slot in sorted(tracker.milestones.items())
        ],
        created_at=tracker.created_at,
        updated_at=tracker.updated_at,
    )


async def _load_tracker(db: AsyncSession, order_id: str, for_update: bool = False) -> FeedbackTracker:
    stmt = (
        select(FeedbackTracker)
        .options(selectinload(FeedbackTracker.milestones))
        .where(FeedbackTracker.order_id == order_id)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    tracker = result.scalar_one_or_none()
    if not tracker:
        raise HTTPException(status_code=404, detail="Feedback tracker not found")
    return tracker


@router.get("/feedback-trackers/{order_id}")
async def get_tracker(order_id: str, db: AsyncSession = Depends(get_db)):
    tracker = await _load_tracker(db, order_id)
    return _tracker_response(tracker)


@router.patch("/feedback-trackers/{order_id}/status")
async def update_tracker_status(
    order_id: str, body: StatusUpdateRequest, db: AsyncSession = Depends(get_db)
):
    if body.status not in ADMIN_SETTABLE_STATUSES:
        raise HTTPException(status_code=400, detail="Status must be reviewed or cancelled")

    tracker = await _load_tracker(db, order_id, for_update=True)
    try:
        changed = apply_transition(tracker, body.status)
    except InvalidTransitionError as e:
        await db.rollback()
        raise HTTPException(status_code=409, detail=str(e))

    if changed:
        tracker.updated_at = utcnow()
    await db.commit()
    return _tracker_response(tracker)


@router.get("/email-templates")
async def list_templates(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(EmailTemplate).order_by(EmailTemplate.day.asc()))
    return [
        TemplateResponse(
            id=t.id,
            day=t.day,
            subject=t.subject,
            html_content=t.html_content,
            is_active=t.is_active,
        )
        for t in result.scalars().all()
    ]


@router.post("/email-templates")
async def save_template(body: TemplateRequest, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(EmailTemplate).where(EmailTemplate.day == body.day))
    template = result.scalar_one_or_none()
    if template:
        template.subject = body.subject
        template.html_content = body.html_content
        template.is_active = body.is_active
    else:
        template = EmailTemplate(
            day=body.day,
            subject=body.subject,
            html_content=body.html_content,
            is_active=body.is_active,
        )
        db.add(template)
    await db.commit()
    await db.refresh(template)
    return TemplateResponse(
        id=template.id,
        day=template.day,
        subject=template.subject,
        html_content=template.html_content,
        is_active=template.is_active,
    )


@router.get("/status")
async def admin_status(db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(FeedbackTracker.status, func.count(FeedbackTracker.id)).group_by(
            FeedbackTracker.status
        )
    )
    trackers = {status.value: 0 for status in TrackerStatus}
    for status, count in result.all():
        trackers[status.value] = count

    scheduler = get_scheduler()
    jobs = []
    if scheduler:
        for job in scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run": str(job.next_run_time) if job.next_run_time else None,
                }
            )

    return {
        "scheduler_running": scheduler is not None and scheduler.running,
        "jobs": jobs,
        "trackers": trackers,
    }
