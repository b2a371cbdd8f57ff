"""Central Enum definitions for core domain states.

The string values are persisted and read by reporting/UI consumers, so they
are a wire contract: renaming a value is a breaking change.
"""
from __future__ import annotations
import enum


class CampaignStatus(str, enum.Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PAUSED = "paused"


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


# Campaigns the automatic reconciliation pass looks at. COMPLETED and PAUSED
# are never reopened by the timer loop.
RECONCILABLE_CAMPAIGN_STATUSES: frozenset[CampaignStatus] = frozenset({
    CampaignStatus.DRAFT,
    CampaignStatus.SCHEDULED,
    CampaignStatus.IN_PROGRESS,
})


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum *values* (not member names) in SQLAlchemy Enum columns."""
    return [member.value for member in enum_cls]


__all__ = [
    "CampaignStatus",
    "TaskStatus",
    "RECONCILABLE_CAMPAIGN_STATUSES",
    "enum_values",
]
