"""Exception hierarchy for runwatch."""

from __future__ import annotations

from typing import Optional


class RunwatchError(Exception):
    """Base class for all runwatch errors."""


class PipelineRequestError(RunwatchError):
    """The remote CI/CD service rejected a request."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PipelineConnectionError(PipelineRequestError):
    """The remote service could not be reached (network failure or timeout)."""


class PreconditionError(RunwatchError):
    """An operation was rejected locally before any remote call was made."""


class StageNotFoundError(PreconditionError, LookupError):
    """The requested stage is not part of the current snapshot."""

    def __init__(self, stage_id: str) -> None:
        super().__init__(f"Stage {stage_id} not found in timeline records")
        self.stage_id = stage_id


class ApprovalNotPendingError(PreconditionError):
    """No pending approval exists for the requested stage."""


class NoSelectionError(PreconditionError):
    """An operation needs a selected pipeline or run and none is selected."""
