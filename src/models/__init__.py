from src.models.email_template import EmailTemplate
from src.models.feedback_tracker import (
    FeedbackTracker,
    Milestone,
    MilestoneSlot,
    TrackerStatus,
)

__all__ = [
    "EmailTemplate",
    "FeedbackTracker",
    "Milestone",
    "MilestoneSlot",
    "TrackerStatus",
]
