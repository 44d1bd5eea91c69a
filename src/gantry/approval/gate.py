"""Approval gate — human sign-off on an apply-class plan, with timeout.

The gate holds no waiting tasks. A request is a record on the run; the run
stays parked in AWAITING_APPROVAL until a decision arrives or a sweep tick
observes the deadline.
"""

from __future__ import annotations

import datetime
import logging

from gantry.auth.roles import RoleDirectory
from gantry.clock import Clock, utc_now
from gantry.errors import ApprovalStateError, ApprovalTimeoutError, UnauthorizedApproverError
from gantry.models.approval import ApprovalDecision, ApprovalRequest
from gantry.models.run import StageExecution

logger = logging.getLogger(__name__)

_DECISIONS = (ApprovalDecision.APPROVED, ApprovalDecision.REJECTED)


class ApprovalGate:
    def __init__(self, roles: RoleDirectory, *, clock: Clock = utc_now) -> None:
        self._roles = roles
        self._clock = clock

    def request_approval(
        self,
        stage_execution: StageExecution,
        required_role: str,
        timeout: datetime.timedelta,
        *,
        run_id: str,
        plan_hash: str,
    ) -> ApprovalRequest:
        now = self._clock()
        request = ApprovalRequest(
            run_id=run_id,
            stage_id=stage_execution.stage_id,
            required_role=required_role,
            plan_hash=plan_hash,
            requested_at=now,
            expires_at=now + timeout,
        )
        logger.info(
            "Approval %s requested for run %s (role %s, expires %s)",
            request.request_id, run_id, required_role, request.expires_at.isoformat(),
        )
        return request

    def is_expired(self, request: ApprovalRequest) -> bool:
        return self._clock() >= request.expires_at

    def check_expiry(self, request: ApprovalRequest) -> bool:
        """Move a pending request past its deadline to EXPIRED. Returns True if expired."""
        if request.decision is ApprovalDecision.EXPIRED:
            return True
        if request.is_pending and self.is_expired(request):
            request.decision = ApprovalDecision.EXPIRED
            request.decided_at = request.expires_at
            logger.info("Approval %s for run %s expired", request.request_id, request.run_id)
            return True
        return False

    def decide(
        self,
        request: ApprovalRequest,
        approver: str,
        decision: ApprovalDecision,
        comment: str = "",
    ) -> ApprovalRequest:
        if decision not in _DECISIONS:
            raise ValueError(f"decision must be approved or rejected, not {decision.value}")
        if not self._roles.has_role(approver, request.required_role):
            raise UnauthorizedApproverError(
                f"{approver} does not hold role '{request.required_role}'"
            )
        if self.check_expiry(request):
            raise ApprovalTimeoutError(
                f"Approval {request.request_id} expired at {request.expires_at.isoformat()}"
            )
        if not request.is_pending:
            raise ApprovalStateError(
                f"Approval {request.request_id} is already {request.decision.value}"
            )

        request.decision = decision
        request.approver = approver
        request.decided_at = self._clock()
        request.comment = comment
        logger.info(
            "Approval %s for run %s %s by %s",
            request.request_id, request.run_id, decision.value, approver,
        )
        return request

    def cancel(self, request: ApprovalRequest) -> None:
        if request.is_pending:
            request.decision = ApprovalDecision.ABORTED
            request.decided_at = self._clock()
