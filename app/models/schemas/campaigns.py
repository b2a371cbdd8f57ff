"""
Pydantic schemas for campaign management.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict
from ..db.enums import CampaignStatus

class CampaignCreate(BaseModel):
    name: str = Field(min_length=1, max_length=300)
    description: Optional[str] = Field(None, max_length=2000)
    sender_name: Optional[str] = Field(None, max_length=200, description="Display name used in the From header")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Spring follow-ups",
            "description": "Reminder emails for the spring cohort",
            "sender_name": "Ada at Example",
        }
    })

class CampaignRead(BaseModel):
    id: int
    name: str
    description: Optional[str]
    sender_name: Optional[str]
    status: CampaignStatus
    total_count: int
    sent_count: int
    failed_count: int
    created_at: datetime
    updated_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)
