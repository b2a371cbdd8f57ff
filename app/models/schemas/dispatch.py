"""
Pydantic schemas for dispatch administration.
"""
from typing import Optional
from pydantic import BaseModel, Field

class StaleRecoveryRequest(BaseModel):
    """Requeue tasks stuck in `processing` (e.g. after a crash mid-send)."""
    older_than_minutes: Optional[int] = Field(
        None, gt=0, description="Claim age threshold; defaults to DISPATCH_SETTINGS['stale_processing_minutes']"
    )
