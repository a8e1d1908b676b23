"""Schemas for feature flag administration."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class FeatureFlagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    enabled: bool
    created_at: datetime
    updated_at: datetime


class FeatureFlagList(BaseModel):
    flags: List[FeatureFlagRead]


class FeatureFlagCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    enabled: bool = False


class FeatureFlagUpdateRequest(BaseModel):
    enabled: Optional[bool] = None
    description: Optional[str] = None
