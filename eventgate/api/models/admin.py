"""
Request bodies for the operator endpoints.
"""
from pydantic import BaseModel, Field
from typing import Optional


class ReplayRequest(BaseModel):
    delay: float = Field(0, ge=0, description="Seconds before the replayed job runs")
    priority: Optional[int] = Field(None, ge=1, le=5, description="Override the original priority")


class DismissRequest(BaseModel):
    reason: str = Field("", max_length=500, description="Why the entry is discarded")


class ThresholdUpdate(BaseModel):
    value: float = Field(..., ge=0)
