"""Schemas for feature flag reads."""

from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel


class FlagSnapshotResponse(BaseModel):
    flags: Dict[str, bool]
    loading: bool
    error: Optional[str] = None


class FlagStateResponse(BaseModel):
    name: str
    enabled: bool
