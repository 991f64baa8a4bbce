"""Shared fixtures for runwatch tests."""

from datetime import datetime, timedelta, timezone

import pytest

from runwatch.clients.inmemory import InMemoryPipelineClient
from runwatch.config import PollingConfig, RunwatchConfig
from runwatch.contracts import (
    Build,
    BuildResult,
    BuildStatus,
    Pipeline,
    RecordKind,
    RecordResult,
    RecordState,
    TimelineRecord,
)

PROJECT = "Contoso"
PIPELINE = Pipeline(id=7, name="ci", folder="\\")
T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _record(
    record_id,
    kind,
    parent=None,
    state="completed",
    result=None,
    order=None,
    **fields,
):
    return TimelineRecord(
        id=record_id,
        kind=RecordKind(kind),
        parent_id=parent,
        name=fields.pop("name", record_id),
        state=RecordState(state),
        result=RecordResult(result) if result else None,
        order=order,
        **fields,
    )


def _build(build_id, status="completed", result="succeeded", **fields):
    return Build(
        id=build_id,
        build_number=fields.pop("build_number", f"2024.{build_id}"),
        status=BuildStatus(status),
        result=BuildResult(result) if result else None,
        source_branch=fields.pop("source_branch", "refs/heads/main"),
        definition=PIPELINE,
        **fields,
    )


@pytest.fixture
def record():
    """Factory for timeline records: ``record(id, kind, parent, state, result, order)``."""
    return _record


@pytest.fixture
def build():
    """Factory for builds of the ``ci`` pipeline."""
    return _build


@pytest.fixture
def finished(record):
    """Factory for completed records with a start and finish time."""

    def make(record_id, kind, parent=None, seconds=0, **fields):
        return record(
            record_id,
            kind,
            parent,
            start_time=T0,
            finish_time=T0 + timedelta(seconds=seconds),
            **fields,
        )

    return make


@pytest.fixture
def client():
    client = InMemoryPipelineClient()
    client.pipelines[PROJECT].append(PIPELINE)
    return client


@pytest.fixture
def config():
    """Fast settings: short poll interval and no delay after actions."""
    return RunwatchConfig(
        polling=PollingConfig(enabled=True, interval_seconds=0.01),
        action_refresh_delay=0,
        page_size=2,
    )


@pytest.fixture
def awaiting_approval_records(record):
    """Run with stage S1 succeeded and stage S2 held by a manual approval."""
    return [
        record("S1", "Stage", order=1, result="succeeded", identifier="build"),
        record("S2", "Stage", order=2, state="pending", identifier="deploy"),
        record("C2", "Checkpoint", "S2", state="inProgress"),
        record("A2", "Checkpoint.Approval", "C2", state="inProgress"),
    ]
