"""
Pydantic schemas for scheduled email tasks.
"""
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field, EmailStr, ConfigDict, field_validator
from ..db.enums import TaskStatus

class EmailTaskCreate(BaseModel):
    email: EmailStr
    message: str = Field(min_length=1)
    subject: Optional[str] = Field(None, max_length=300)
    due_at: datetime = Field(description="When the task becomes eligible for sending (naive values are read as UTC)")

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()

class EmailTaskBulkCreate(BaseModel):
    """Ingestion payload: one or more tasks for a single campaign."""
    tasks: List[EmailTaskCreate] = Field(min_length=1, max_length=5000)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "tasks": [
                {
                    "email": "someone@example.com",
                    "message": "Hello!\nSee you on Monday.",
                    "due_at": "2025-06-01T09:00:00Z",
                }
            ]
        }
    })

class EmailTaskUpdate(BaseModel):
    email: Optional[EmailStr] = None
    message: Optional[str] = Field(None, min_length=1)
    subject: Optional[str] = Field(None, max_length=300)
    due_at: Optional[datetime] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v is not None else v

class EmailTaskRead(BaseModel):
    id: int
    campaign_id: int
    email: str
    subject: Optional[str]
    message: str
    due_at: datetime
    status: TaskStatus
    claimed_at: Optional[datetime]
    completed_at: Optional[datetime]
    failure_reason: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
