"""Base client interface for the remote CI/CD service."""

from __future__ import annotations

import abc
from typing import Any, Dict, List, Optional

from ..contracts import (
    Approval,
    ApprovalDecision,
    Build,
    Pipeline,
    Project,
    RetentionLease,
    TimelineRecord,
)


class BasePipelineClient(metaclass=abc.ABCMeta):
    """Abstract client for listing pipelines and acting on their runs.

    A client is bound to one organization; every call takes the project
    it applies to.
    """

    async def connect(self) -> None:
        """Open the underlying connection (no-op by default)."""
        pass

    async def close(self) -> None:
        """Release the underlying connection (no-op by default)."""
        pass

    async def __aenter__(self) -> "BasePipelineClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Browsing ---------------------------------------------------------
    @abc.abstractmethod
    async def list_projects(self) -> List[Project]:
        raise NotImplementedError

    @abc.abstractmethod
    async def list_pipelines(self, project: str) -> List[Pipeline]:
        raise NotImplementedError

    @abc.abstractmethod
    async def list_builds(self, project: str, pipeline_id: int) -> List[Build]:
        """Return the runs of a pipeline, newest first."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_build(self, project: str, run_id: int) -> Build:
        raise NotImplementedError

    @abc.abstractmethod
    async def get_timeline(self, project: str, run_id: int) -> List[TimelineRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    async def get_retention_leases(
        self, project: str, run_id: int
    ) -> List[RetentionLease]:
        raise NotImplementedError

    @abc.abstractmethod
    async def get_log(self, project: str, run_id: int, log_id: int) -> List[str]:
        raise NotImplementedError

    # Approvals --------------------------------------------------------
    @abc.abstractmethod
    async def list_pending_approvals(self, project: str) -> List[Approval]:
        raise NotImplementedError

    @abc.abstractmethod
    async def set_approval_decision(
        self,
        project: str,
        approval_id: str,
        decision: ApprovalDecision,
        comment: str = "",
    ) -> Approval:
        raise NotImplementedError

    # Mutating actions -------------------------------------------------
    @abc.abstractmethod
    async def retry_stage(
        self,
        project: str,
        run_id: int,
        stage_identifier: str,
        force_all_jobs: bool = False,
        retry_dependents: bool = False,
    ) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def retry_build_failed_jobs(self, project: str, run_id: int) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def cancel_run(self, project: str, run_id: int) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def delete_run(self, project: str, run_id: int) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def set_retention(
        self, project: str, run_id: int, pipeline_id: int, keep: bool
    ) -> None:
        """Retain the run indefinitely (``keep``) or release its leases."""
        raise NotImplementedError

    @abc.abstractmethod
    async def run_pipeline(
        self,
        project: str,
        pipeline_id: int,
        branch: str,
        template_parameters: Optional[Dict[str, str]] = None,
    ) -> Build:
        raise NotImplementedError

    @abc.abstractmethod
    async def get_run_parameters(
        self, project: str, pipeline_id: int, run_id: int
    ) -> Dict[str, str]:
        """Template parameters a run was queued with."""
        raise NotImplementedError
