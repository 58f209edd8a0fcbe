"""
Pydantic request schemas for queue operations endpoints.
"""
from typing import Optional
from pydantic import BaseModel, Field

class CleanupRequest(BaseModel):
    completed_age_seconds: Optional[int] = Field(None, ge=0)
    failed_age_seconds: Optional[int] = Field(None, ge=0)
    limit: Optional[int] = Field(None, ge=1)

class EnqueueCreatorsRequest(BaseModel):
    skip_slow_platform: bool = False
    stagger_seconds: Optional[float] = Field(None, ge=0)
