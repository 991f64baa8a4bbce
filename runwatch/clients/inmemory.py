"""In-memory pipeline service for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from ..contracts import (
    Approval,
    ApprovalDecision,
    ApprovalStatus,
    Build,
    BuildStatus,
    Pipeline,
    Project,
    RetentionLease,
    TimelineRecord,
)
from ..errors import PipelineRequestError
from .base import BasePipelineClient


class InMemoryPipelineClient(BasePipelineClient):
    """Simple in-process pipeline service for unit tests.

    Every call is recorded in ``calls``. ``hold`` makes a call wait until
    the returned event is set, ``fail_next`` makes the next matching call
    raise; together they let tests drive races deterministically.
    """

    def __init__(self) -> None:
        self.projects: List[Project] = []
        self.pipelines: Dict[str, List[Pipeline]] = defaultdict(list)
        self.builds: Dict[Tuple[str, int], List[Build]] = defaultdict(list)
        self.timelines: Dict[Tuple[str, int], List[TimelineRecord]] = {}
        self.approvals: Dict[str, List[Approval]] = defaultdict(list)
        self.leases: Dict[Tuple[str, int], List[RetentionLease]] = defaultdict(list)
        self.logs: Dict[Tuple[str, int, int], List[str]] = {}
        self.run_parameters: Dict[Tuple[str, int], Dict[str, str]] = {}
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []

        self._failures: Dict[str, Deque[BaseException]] = defaultdict(deque)
        self._gates: Dict[Tuple[str, str], asyncio.Event] = {}
        self._next_run_id = 1000
        self._next_lease_id = 1

    # Test controls ----------------------------------------------------
    def hold(self, method: str, *args: Any) -> asyncio.Event:
        """Block calls to ``method`` (with exactly ``args`` if given)."""
        gate = asyncio.Event()
        self._gates[(method, repr(args))] = gate
        return gate

    def fail_next(self, method: str, error: BaseException) -> None:
        self._failures[method].append(error)

    def calls_to(self, method: str) -> List[Tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    async def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        # Arguments may hold dicts, so gates are keyed by their repr.
        gate = self._gates.get((method, repr(args))) or self._gates.get(
            (method, repr(()))
        )
        if gate is not None:
            await gate.wait()
        if self._failures[method]:
            raise self._failures[method].popleft()

    def _find_build(self, project: str, run_id: int) -> Tuple[Tuple[str, int], int]:
        for key, builds in self.builds.items():
            if key[0] != project:
                continue
            for index, build in enumerate(builds):
                if build.id == run_id:
                    return key, index
        raise PipelineRequestError(f"Build {run_id} not found", status_code=404)

    def _replace_build(self, project: str, run_id: int, **update: Any) -> Build:
        key, index = self._find_build(project, run_id)
        build = self.builds[key][index].model_copy(update=update)
        self.builds[key][index] = build
        return build

    # Browsing ---------------------------------------------------------
    async def list_projects(self) -> List[Project]:
        await self._enter("list_projects")
        return list(self.projects)

    async def list_pipelines(self, project: str) -> List[Pipeline]:
        await self._enter("list_pipelines", project)
        return list(self.pipelines[project])

    async def list_builds(self, project: str, pipeline_id: int) -> List[Build]:
        await self._enter("list_builds", project, pipeline_id)
        return list(self.builds[(project, pipeline_id)])

    async def get_build(self, project: str, run_id: int) -> Build:
        await self._enter("get_build", project, run_id)
        key, index = self._find_build(project, run_id)
        return self.builds[key][index]

    async def get_timeline(self, project: str, run_id: int) -> List[TimelineRecord]:
        await self._enter("get_timeline", project, run_id)
        return list(self.timelines.get((project, run_id), []))

    async def get_retention_leases(
        self, project: str, run_id: int
    ) -> List[RetentionLease]:
        await self._enter("get_retention_leases", project, run_id)
        return list(self.leases[(project, run_id)])

    async def get_log(self, project: str, run_id: int, log_id: int) -> List[str]:
        await self._enter("get_log", project, run_id, log_id)
        try:
            return list(self.logs[(project, run_id, log_id)])
        except KeyError:
            raise PipelineRequestError(f"Log {log_id} not found", status_code=404)

    # Approvals --------------------------------------------------------
    async def list_pending_approvals(self, project: str) -> List[Approval]:
        await self._enter("list_pending_approvals", project)
        return [a for a in self.approvals[project] if a.status is ApprovalStatus.PENDING]

    async def set_approval_decision(
        self,
        project: str,
        approval_id: str,
        decision: ApprovalDecision,
        comment: str = "",
    ) -> Approval:
        await self._enter("set_approval_decision", project, approval_id, decision, comment)
        for index, approval in enumerate(self.approvals[project]):
            if approval.id == approval_id:
                updated = approval.model_copy(update={"status": decision.status})
                self.approvals[project][index] = updated
                return updated
        raise PipelineRequestError(f"Approval {approval_id} not found", status_code=404)

    # Mutating actions -------------------------------------------------
    async def retry_stage(
        self,
        project: str,
        run_id: int,
        stage_identifier: str,
        force_all_jobs: bool = False,
        retry_dependents: bool = False,
    ) -> None:
        await self._enter(
            "retry_stage", project, run_id, stage_identifier, force_all_jobs, retry_dependents
        )

    async def retry_build_failed_jobs(self, project: str, run_id: int) -> None:
        await self._enter("retry_build_failed_jobs", project, run_id)
        self._replace_build(project, run_id, status=BuildStatus.IN_PROGRESS, result=None)

    async def cancel_run(self, project: str, run_id: int) -> None:
        await self._enter("cancel_run", project, run_id)
        self._replace_build(project, run_id, status=BuildStatus.CANCELLING)

    async def delete_run(self, project: str, run_id: int) -> None:
        await self._enter("delete_run", project, run_id)
        key, index = self._find_build(project, run_id)
        del self.builds[key][index]

    async def set_retention(
        self, project: str, run_id: int, pipeline_id: int, keep: bool
    ) -> None:
        await self._enter("set_retention", project, run_id, pipeline_id, keep)
        if keep:
            self.leases[(project, run_id)].append(
                RetentionLease(lease_id=self._next_lease_id, run_id=run_id)
            )
            self._next_lease_id += 1
        else:
            self.leases[(project, run_id)] = []

    async def run_pipeline(
        self,
        project: str,
        pipeline_id: int,
        branch: str,
        template_parameters: Optional[Dict[str, str]] = None,
    ) -> Build:
        await self._enter("run_pipeline", project, pipeline_id, branch, template_parameters)
        self._next_run_id += 1
        build = Build(
            id=self._next_run_id,
            build_number=str(self._next_run_id),
            status=BuildStatus.NOT_STARTED,
            source_branch=f"refs/heads/{branch}",
            definition=Pipeline(id=pipeline_id),
        )
        self.builds[(project, pipeline_id)].insert(0, build)
        self.run_parameters[(project, build.id)] = dict(template_parameters or {})
        return build

    async def get_run_parameters(
        self, project: str, pipeline_id: int, run_id: int
    ) -> Dict[str, str]:
        await self._enter("get_run_parameters", project, pipeline_id, run_id)
        return dict(self.run_parameters.get((project, run_id), {}))
