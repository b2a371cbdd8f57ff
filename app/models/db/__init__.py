from .enums import CampaignStatus, TaskStatus
from .campaigns import Campaign
from .email_tasks import EmailTask

__all__ = [
    "Campaign",
    "CampaignStatus",
    "EmailTask",
    "TaskStatus",
]
