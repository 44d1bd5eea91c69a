"""Approval request records."""

from __future__ import annotations

import datetime
import uuid
from enum import Enum

from pydantic import BaseModel, Field


class ApprovalDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    ABORTED = "aborted"


class ApprovalRequest(BaseModel):
    request_id: str = Field(default_factory=lambda: f"APR-{uuid.uuid4().hex[:8]}")
    run_id: str
    stage_id: str
    required_role: str
    plan_hash: str
    decision: ApprovalDecision = ApprovalDecision.PENDING
    requested_at: datetime.datetime
    expires_at: datetime.datetime
    decided_at: datetime.datetime | None = None
    approver: str | None = None
    comment: str = ""

    @property
    def is_pending(self) -> bool:
        return self.decision is ApprovalDecision.PENDING
