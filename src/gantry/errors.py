"""Error taxonomy shared by every pipeline component.

Each error carries a ``retryable`` flag; the tool retry loop and lock
acquisition retry only errors that set it. The orchestrator records every
error on the run and its audit trail; nothing below it swallows them.
"""

from __future__ import annotations

import datetime


class GantryError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = False

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.output = output

    @property
    def kind(self) -> str:
        return type(self).__name__


class StageValidationError(GantryError):
    """Syntax, format or policy checks failed. Fails the run."""


class PromotionOrderError(StageValidationError):
    """A production run has no successful staging run for the same change."""


class LockConflictError(GantryError):
    """The state resource is locked by a different holder."""

    retryable = True

    def __init__(
        self,
        resource_key: str,
        holder_id: str,
        expires_at: datetime.datetime | None = None,
    ) -> None:
        super().__init__(
            f"State '{resource_key}' is locked by {holder_id}"
            + (f" until {expires_at.isoformat()}" if expires_at else "")
        )
        self.resource_key = resource_key
        self.holder_id = holder_id
        self.expires_at = expires_at


class StaleLockError(GantryError):
    """The lock an operation relies on is absent, expired or held by someone else."""


class StalePlanError(GantryError):
    """The plan artifact no longer matches the source, versions or time window."""


class ApprovalTimeoutError(GantryError):
    """An approval request expired before a decision was recorded."""


class UnauthorizedApproverError(GantryError):
    """The approver does not hold the role required by the request."""


class UnauthorizedOperatorError(GantryError):
    """The operator lacks the elevated role needed for a lock override."""


class ApprovalStateError(GantryError):
    """A decision was submitted for a request that is no longer pending."""


class CredentialResolutionError(GantryError):
    """Scoped credentials could not be issued. Stages fail closed."""


class ExecutionError(GantryError):
    """The provisioning tool exited non-zero."""

    def __init__(
        self,
        command: list[str],
        exit_code: int,
        stderr: str,
        *,
        stdout: str = "",
        transient: bool = False,
    ) -> None:
        super().__init__(
            f"{' '.join(command[:2])} failed (rc={exit_code}): {stderr.strip()[-500:]}",
            output=stderr,
        )
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout
        self.transient = transient

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient


class RunNotFoundError(GantryError):
    """No pipeline run with the requested id."""
