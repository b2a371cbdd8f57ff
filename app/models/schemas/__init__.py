from .base import ResponseBase
from .campaigns import CampaignCreate, CampaignRead
from .tasks import EmailTaskCreate, EmailTaskBulkCreate, EmailTaskUpdate, EmailTaskRead
from .dispatch import StaleRecoveryRequest

__all__ = [
    # Base
    "ResponseBase",

    # Campaigns
    "CampaignCreate",
    "CampaignRead",

    # Tasks
    "EmailTaskCreate",
    "EmailTaskBulkCreate",
    "EmailTaskUpdate",
    "EmailTaskRead",

    # Dispatch
    "StaleRecoveryRequest",
]
