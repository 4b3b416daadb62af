from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class UpgradeRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    target_tier: str
    billing_interval: str = "monthly"
    wait: bool = False


class ErrorModel(BaseModel):
    kind: str
    message: str


class TierDiffModel(BaseModel):
    current_tier: str
    target_tier: str
    added_features: list[str]
    removed_features: list[str]
    data_transforms: list[str]
    limit_changes: dict[str, list[int]]
    is_downgrade: bool


class RollbackResultModel(BaseModel):
    success: bool
    restored_items: int
    unrestored_items: list[str]
    refunded: bool
    issues: list[str]


class PreservationStatusModel(BaseModel):
    user_id: str
    total_items: int
    preserved_items: int
    data_integrity: int
    issues: list[str]
    last_check: datetime | None = None
    snapshot_id: str | None = None


class SessionRecordModel(BaseModel):
    session_id: str
    user_id: str
    current_tier: str
    target_tier: str
    billing_interval: str
    state: str
    progress_percent: int
    snapshot_id: str | None = None
    charge_id: str | None = None
    error_kind: str = ""
    error_message: str = ""
    needs_manual_review: bool = False
    retry_of: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
