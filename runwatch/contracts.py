"""Data contracts exchanged between the monitor and the remote CI/CD service."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def _normalize_timestamp(value: Any) -> Any:
    """Trim sub-microsecond precision the remote service emits (7 digits)."""
    if isinstance(value, str):
        return _FRACTION_RE.sub(r"\1", value)
    return value


class RecordKind(str, Enum):
    """Kind of a node in a run's execution graph."""

    STAGE = "Stage"
    PHASE = "Phase"
    JOB = "Job"
    TASK = "Task"
    CHECKPOINT = "Checkpoint"
    CHECKPOINT_APPROVAL = "Checkpoint.Approval"

    @classmethod
    def _missing_(cls, value: object) -> Optional["RecordKind"]:
        # Other gate kinds (extends checks, task checks, ...) behave like
        # plain checkpoints: hidden from the tree and never an approval.
        if isinstance(value, str) and value.startswith("Checkpoint."):
            return cls.CHECKPOINT
        return None


class RecordState(str, Enum):
    NOT_STARTED = "notStarted"
    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"


class RecordResult(str, Enum):
    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_ISSUES = "succeededWithIssues"
    PARTIALLY_SUCCEEDED = "partiallySucceeded"
    FAILED = "failed"
    CANCELED = "canceled"
    SKIPPED = "skipped"
    ABANDONED = "abandoned"
    NONE = "none"


ACTIVE_RECORD_STATES = frozenset({RecordState.IN_PROGRESS, RecordState.PENDING})


class LogReference(BaseModel):
    """Pointer to the log produced by a timeline record."""

    id: int
    type: Optional[str] = None
    url: Optional[str] = None


class TimelineRecord(BaseModel):
    """One node (stage, phase, job, task or checkpoint) of a run."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str
    parent_id: Optional[str] = Field(default=None, alias="parentId")
    kind: RecordKind = Field(alias="type")
    name: str = ""
    state: RecordState = RecordState.PENDING
    result: Optional[RecordResult] = None
    order: Optional[int] = None
    start_time: Optional[datetime] = Field(default=None, alias="startTime")
    finish_time: Optional[datetime] = Field(default=None, alias="finishTime")
    log: Optional[LogReference] = None
    identifier: Optional[str] = None
    attempt: int = 1

    @field_validator("start_time", "finish_time", mode="before")
    @classmethod
    def _trim_times(cls, value: Any) -> Any:
        return _normalize_timestamp(value)

    @property
    def elapsed(self) -> Optional[timedelta]:
        """Wall-clock duration, available once the record has finished."""
        if self.start_time is None or self.finish_time is None:
            return None
        return self.finish_time - self.start_time


class BuildStatus(str, Enum):
    NONE = "none"
    NOT_STARTED = "notStarted"
    IN_PROGRESS = "inProgress"
    CANCELLING = "cancelling"
    POSTPONED = "postponed"
    COMPLETED = "completed"
    ALL = "all"


class BuildResult(str, Enum):
    NONE = "none"
    SUCCEEDED = "succeeded"
    PARTIALLY_SUCCEEDED = "partiallySucceeded"
    FAILED = "failed"
    CANCELED = "canceled"


ACTIVE_BUILD_STATUSES = frozenset(
    {BuildStatus.IN_PROGRESS, BuildStatus.NOT_STARTED, BuildStatus.CANCELLING}
)


class Project(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    id: Optional[str] = None
    description: Optional[str] = None


class Pipeline(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str = ""
    folder: Optional[str] = None


class RetentionLease(BaseModel):
    """A lease protecting a run from retention cleanup."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    lease_id: int = Field(alias="leaseId")
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    run_id: Optional[int] = Field(default=None, alias="runId")
    protect_pipeline: bool = Field(default=False, alias="protectPipeline")
    created_date: Optional[datetime] = Field(default=None, alias="createdDate")

    @field_validator("created_date", mode="before")
    @classmethod
    def _trim_created(cls, value: Any) -> Any:
        return _normalize_timestamp(value)


class Build(BaseModel):
    """A single run of a pipeline."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: int
    build_number: str = Field(default="", alias="buildNumber")
    status: BuildStatus = BuildStatus.NONE
    result: Optional[BuildResult] = None
    queue_time: Optional[datetime] = Field(default=None, alias="queueTime")
    start_time: Optional[datetime] = Field(default=None, alias="startTime")
    finish_time: Optional[datetime] = Field(default=None, alias="finishTime")
    source_branch: Optional[str] = Field(default=None, alias="sourceBranch")
    definition: Optional[Pipeline] = None
    trigger_info: Dict[str, str] = Field(default_factory=dict, alias="triggerInfo")
    keep_forever: bool = Field(default=False, alias="keepForever")
    # ``None`` means the leases have not been looked up yet.
    retention_leases: Optional[List[RetentionLease]] = None

    @field_validator("queue_time", "start_time", "finish_time", mode="before")
    @classmethod
    def _trim_times(cls, value: Any) -> Any:
        return _normalize_timestamp(value)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_BUILD_STATUSES

    @property
    def is_pinned(self) -> bool:
        return self.keep_forever or bool(self.retention_leases)

    @property
    def branch(self) -> Optional[str]:
        if self.source_branch is None:
            return None
        return self.source_branch.replace("refs/heads/", "", 1)

    @property
    def commit_message(self) -> str:
        """First line of the triggering commit message, if known."""
        message = self.trigger_info.get("ci.message", "")
        return message.splitlines()[0] if message else ""


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    CANCELED = "canceled"
    TIMED_OUT = "timedOut"
    FAILED = "failed"
    COMPLETED = "completed"
    UNDEFINED = "undefined"


class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

    @property
    def status(self) -> ApprovalStatus:
        if self is ApprovalDecision.APPROVE:
            return ApprovalStatus.APPROVED
        return ApprovalStatus.REJECTED


class Approval(BaseModel):
    """A manual approval request attached to a run."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_on: Optional[datetime] = Field(default=None, alias="createdOn")
    instructions: Optional[str] = None
    run_id: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _extract_run_id(cls, data: Any) -> Any:
        # Expanded responses carry the owning run under pipeline.owner.id.
        if isinstance(data, dict) and "run_id" not in data:
            owner = (data.get("pipeline") or {}).get("owner") or {}
            if owner.get("id") is not None:
                data = {**data, "run_id": owner["id"]}
        if isinstance(data, dict) and "createdOn" in data:
            data = {**data, "createdOn": _normalize_timestamp(data["createdOn"])}
        return data


class RunSnapshot(BaseModel):
    """Complete record set for one run at a point in time.

    Snapshots are immutable; the monitor replaces the whole snapshot on
    every successful refresh.
    """

    model_config = ConfigDict(frozen=True)

    project: str
    run_id: int
    records: Tuple[TimelineRecord, ...] = ()
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def find(self, record_id: str) -> Optional[TimelineRecord]:
        for record in self.records:
            if record.id == record_id:
                return record
        return None

    def children_of(
        self, parent_id: str, kind: Optional[RecordKind] = None
    ) -> List[TimelineRecord]:
        return [
            r
            for r in self.records
            if r.parent_id == parent_id and (kind is None or r.kind is kind)
        ]

    @property
    def is_active(self) -> bool:
        return any(r.state in ACTIVE_RECORD_STATES for r in self.records)


class BuildList(BaseModel):
    """Builds fetched for one pipeline; the first ``shown`` are published."""

    model_config = ConfigDict(frozen=True)

    project: str
    pipeline_id: int
    builds: Tuple[Build, ...] = ()
    shown: int = 0
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def published(self) -> Tuple[Build, ...]:
        return self.builds[: self.shown]

    @property
    def has_more(self) -> bool:
        return self.shown < len(self.builds)

    def find(self, build_id: int) -> Optional[Build]:
        for build in self.builds:
            if build.id == build_id:
                return build
        return None


class Selection(BaseModel):
    """The project, pipeline and run the monitor currently targets."""

    model_config = ConfigDict(frozen=True)

    project: Optional[str] = None
    pipeline: Optional[Pipeline] = None
    run_id: Optional[int] = None
