"""Tests for the run monitor facade."""

import asyncio

import pytest

from runwatch.contracts import (
    Approval,
    ApprovalDecision,
    ApprovalStatus,
    BuildStatus,
    LogReference,
    Pipeline,
    RetentionLease,
)
from runwatch.errors import (
    ApprovalNotPendingError,
    NoSelectionError,
    PipelineConnectionError,
    PreconditionError,
    StageNotFoundError,
)
from runwatch.monitor import MonitoredEntity, RunMonitor
from runwatch.retry import RetryStrategy

PROJECT = "Contoso"
PIPELINE = Pipeline(id=7, name="ci")
OTHER_PIPELINE = Pipeline(id=8, name="nightly")


async def _wait_for(condition, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def monitor(client, config):
    monitor = RunMonitor(client, config)
    yield monitor
    monitor.close()


def _seed_builds(client, build, pipeline_id=7, ids=(5, 4, 3, 2, 1), **fields):
    client.builds[(PROJECT, pipeline_id)] = [build(i, **fields) for i in ids]


# Selection and build list ----------------------------------------------
@pytest.mark.asyncio
async def test_select_pipeline_publishes_first_page_with_leases(monitor, client, build):
    _seed_builds(client, build)
    client.leases[(PROJECT, 5)] = [RetentionLease(lease_id=1, run_id=5)]

    await monitor.select_pipeline(PROJECT, PIPELINE)

    assert [b.id for b in monitor.builds] == [5, 4]
    assert monitor.builds[0].is_pinned
    assert monitor.builds[1].retention_leases == []
    assert [args[1] for args in client.calls_to("get_retention_leases")] == [5, 4]
    assert monitor.current_selection().pipeline.id == 7
    assert monitor.current_selection().run_id is None


@pytest.mark.asyncio
async def test_load_more_builds_pages_through_fetched_builds(monitor, client, build):
    _seed_builds(client, build)
    await monitor.select_pipeline(PROJECT, PIPELINE)

    page = await monitor.load_more_builds()
    assert [b.id for b in page] == [3, 2]
    assert [b.id for b in monitor.builds] == [5, 4, 3, 2]
    assert monitor.builds[3].retention_leases == []

    assert [b.id for b in await monitor.load_more_builds()] == [1]
    assert not monitor.build_list.has_more
    assert await monitor.load_more_builds() == ()
    assert len(client.calls_to("list_builds")) == 1


@pytest.mark.asyncio
async def test_load_more_requires_a_pipeline(monitor):
    with pytest.raises(NoSelectionError):
        await monitor.load_more_builds()


@pytest.mark.asyncio
async def test_automatic_refresh_carries_leases_without_looking_them_up(
    monitor, client, build
):
    _seed_builds(client, build, ids=(2, 1), status="inProgress", result=None)
    client.leases[(PROJECT, 2)] = [RetentionLease(lease_id=9, run_id=2)]

    await monitor.select_pipeline(PROJECT, PIPELINE)
    assert monitor.polling_active(MonitoredEntity.BUILDS)
    lookups = len(client.calls_to("get_retention_leases"))

    await _wait_for(lambda: len(client.calls_to("list_builds")) >= 3)

    assert len(client.calls_to("get_retention_leases")) == lookups
    assert monitor.builds[0].retention_leases[0].lease_id == 9


@pytest.mark.asyncio
async def test_build_polling_stops_when_no_build_is_active(monitor, client, build):
    _seed_builds(client, build, ids=(1,), status="inProgress", result=None)
    polling = []
    monitor.on_polling_changed(lambda entity, active: polling.append((entity, active)))

    await monitor.select_pipeline(PROJECT, PIPELINE)
    assert monitor.polling_active(MonitoredEntity.BUILDS)

    _seed_builds(client, build, ids=(1,))
    await _wait_for(lambda: not monitor.polling_active(MonitoredEntity.BUILDS))

    assert monitor.builds[0].status is BuildStatus.COMPLETED
    assert polling == [(MonitoredEntity.BUILDS, True), (MonitoredEntity.BUILDS, False)]


@pytest.mark.asyncio
async def test_switching_pipeline_discards_late_build_list(monitor, client, build):
    _seed_builds(client, build, pipeline_id=7, ids=(1,))
    _seed_builds(client, build, pipeline_id=8, ids=(80,))
    gate = client.hold("list_builds", PROJECT, 7)

    first = asyncio.create_task(monitor.select_pipeline(PROJECT, PIPELINE))
    await _wait_for(lambda: client.calls_to("list_builds"))
    stale_poll = monitor.poll_controller(MonitoredEntity.BUILDS)

    await monitor.select_pipeline(PROJECT, OTHER_PIPELINE)
    assert stale_poll.closed

    gate.set()
    await first

    assert monitor.build_list.pipeline_id == 8
    assert [b.id for b in monitor.builds] == [80]
    assert monitor.current_selection().pipeline == OTHER_PIPELINE


@pytest.mark.asyncio
async def test_manual_refresh_failure_keeps_previous_build_list(monitor, client, build):
    _seed_builds(client, build)
    await monitor.select_pipeline(PROJECT, PIPELINE)
    before = monitor.build_list

    client.fail_next("list_builds", PipelineConnectionError("offline"))
    with pytest.raises(PipelineConnectionError):
        await monitor.refresh(manual=True, entity=MonitoredEntity.BUILDS)

    assert monitor.build_list is before


# Timeline ---------------------------------------------------------------
@pytest.mark.asyncio
async def test_select_run_requires_pipeline(monitor):
    with pytest.raises(NoSelectionError):
        await monitor.select_run(1)


@pytest.mark.asyncio
async def test_select_run_publishes_snapshot(monitor, client, build, record):
    _seed_builds(client, build)
    client.timelines[(PROJECT, 5)] = [
        record("S1", "Stage", order=1, result="succeeded"),
        record("P1", "Phase", "S1", result="succeeded"),
    ]
    changes = []
    unsubscribe = monitor.on_snapshot_changed(changes.append)

    await monitor.select_pipeline(PROJECT, PIPELINE)
    await monitor.select_run(5)
    unsubscribe()
    await monitor.refresh(manual=True)

    assert monitor.snapshot.run_id == 5
    assert [node.id for node in monitor.timeline().walk()] == ["S1", "P1"]
    assert changes[-1] is MonitoredEntity.TIMELINE
    assert len(changes) == 5
    assert not monitor.polling_active(MonitoredEntity.TIMELINE)


@pytest.mark.asyncio
async def test_switching_run_discards_late_timeline(monitor, client, build, record):
    _seed_builds(client, build)
    client.timelines[(PROJECT, 5)] = [record("old", "Stage")]
    client.timelines[(PROJECT, 4)] = [record("new", "Stage")]
    await monitor.select_pipeline(PROJECT, PIPELINE)
    gate = client.hold("get_timeline", PROJECT, 5)

    first = asyncio.create_task(monitor.select_run(5))
    await _wait_for(lambda: client.calls_to("get_timeline"))
    await monitor.select_run(4)
    gate.set()
    await first

    assert monitor.snapshot.run_id == 4
    assert [r.id for r in monitor.snapshot.records] == ["new"]


@pytest.mark.asyncio
async def test_switching_run_drops_late_failure_of_previous_run(
    monitor, client, build, record
):
    _seed_builds(client, build)
    client.timelines[(PROJECT, 5)] = [record("old", "Stage", state="inProgress")]
    client.timelines[(PROJECT, 4)] = [record("new", "Stage", result="succeeded")]
    errors = []
    monitor.on_refresh_error(lambda entity, error: errors.append((entity, str(error))))
    await monitor.select_pipeline(PROJECT, PIPELINE)
    await monitor.select_run(5)
    stale = monitor.poll_controller(MonitoredEntity.TIMELINE)

    gate = client.hold("get_timeline", PROJECT, 5)
    await _wait_for(lambda: len(client.calls_to("get_timeline")) >= 2)
    await monitor.select_run(4)
    client.fail_next("get_timeline", PipelineConnectionError("run 5 unreachable"))
    gate.set()
    await _wait_for(lambda: not stale.busy)

    assert errors == []
    assert monitor.snapshot.run_id == 4
    assert not stale.armed


@pytest.mark.asyncio
async def test_timeline_polls_while_active_and_stops_when_done(
    monitor, client, build, record
):
    _seed_builds(client, build)
    client.timelines[(PROJECT, 5)] = [record("S1", "Stage", state="inProgress")]
    await monitor.select_pipeline(PROJECT, PIPELINE)
    await monitor.select_run(5)
    assert monitor.polling_active(MonitoredEntity.TIMELINE)

    client.timelines[(PROJECT, 5)] = [record("S1", "Stage", result="succeeded")]
    await _wait_for(lambda: not monitor.polling_active(MonitoredEntity.TIMELINE))

    assert monitor.snapshot.records[0].result.value == "succeeded"


@pytest.mark.asyncio
async def test_automatic_failure_keeps_snapshot_and_reports_once(
    monitor, client, build, record
):
    _seed_builds(client, build)
    client.timelines[(PROJECT, 5)] = [record("S1", "Stage", state="inProgress")]
    errors = []
    monitor.on_refresh_error(lambda entity, error: errors.append((entity, str(error))))
    await monitor.select_pipeline(PROJECT, PIPELINE)
    await monitor.select_run(5)
    before = monitor.snapshot

    for _ in range(3):
        client.fail_next("get_timeline", PipelineConnectionError("offline"))
    await _wait_for(lambda: len(client.calls_to("get_timeline")) >= 4)

    assert errors == [(MonitoredEntity.TIMELINE, "offline")]
    assert monitor.snapshot is before or monitor.snapshot.records == before.records
    assert monitor.polling_active(MonitoredEntity.TIMELINE)


@pytest.mark.asyncio
async def test_hidden_view_and_disabled_polling_stop_the_timer(
    monitor, client, build, record, config
):
    _seed_builds(client, build)
    client.timelines[(PROJECT, 5)] = [record("S1", "Stage", state="inProgress")]
    await monitor.select_pipeline(PROJECT, PIPELINE)
    await monitor.select_run(5)

    monitor.set_view_visible(MonitoredEntity.TIMELINE, False)
    assert not monitor.polling_active(MonitoredEntity.TIMELINE)
    monitor.set_view_visible(MonitoredEntity.TIMELINE, True)
    assert monitor.polling_active(MonitoredEntity.TIMELINE)

    monitor.set_polling_enabled(False)
    assert not monitor.polling_active(MonitoredEntity.TIMELINE)
    assert config.polling.enabled

    monitor.apply_config(config)
    assert monitor.polling_active(MonitoredEntity.TIMELINE)


@pytest.mark.asyncio
async def test_clear_selection_closes_both_subjects(monitor, client, build, record):
    _seed_builds(client, build, status="inProgress", result=None)
    client.timelines[(PROJECT, 5)] = [record("S1", "Stage", state="inProgress")]
    await monitor.select_pipeline(PROJECT, PIPELINE)
    await monitor.select_run(5)
    polls = [monitor.poll_controller(entity) for entity in MonitoredEntity]

    monitor.clear_selection()

    assert all(poll.closed and not poll.armed for poll in polls)
    assert monitor.snapshot is None
    assert monitor.builds == ()


# Stage actions ----------------------------------------------------------
@pytest.mark.asyncio
async def test_retry_succeeded_stage_reruns_it(monitor, client, build, record):
    _seed_builds(client, build)
    client.timelines[(PROJECT, 5)] = [
        record("S1", "Stage", result="succeeded", identifier="build"),
        record("P1", "Phase", "S1", result="succeeded"),
        record("J1", "Job", "P1", result="failed"),
        record("T1", "Task", "J1", result="failed"),
    ]
    await monitor.select_pipeline(PROJECT, PIPELINE)
    await monitor.select_run(5)
    fetches = len(client.calls_to("get_timeline"))

    decision = monitor.resolve_retry_action("S1")
    assert decision.strategy is RetryStrategy.STAGE_LEVEL_RERUN
    await monitor.execute_retry(decision, retry_dependents=False)

    assert client.calls_to("retry_stage") == [(PROJECT, 5, "build", True, False)]
    assert len(client.calls_to("get_timeline")) == fetches + 1


@pytest.mark.asyncio
async def test_retry_needs_a_snapshot_and_a_known_stage(monitor, client, build, record):
    with pytest.raises(NoSelectionError):
        monitor.resolve_retry_action("S1")

    _seed_builds(client, build)
    client.timelines[(PROJECT, 5)] = [record("S1", "Stage", result="failed")]
    await monitor.select_pipeline(PROJECT, PIPELINE)
    await monitor.select_run(5)

    with pytest.raises(StageNotFoundError):
        await monitor.retry_stage("missing")
    assert client.calls_to("retry_stage") == []
    assert client.calls_to("retry_build_failed_jobs") == []


@pytest.mark.asyncio
async def test_decide_approval(monitor, client, build, awaiting_approval_records):
    _seed_builds(client, build)
    client.timelines[(PROJECT, 5)] = awaiting_approval_records
    client.approvals[PROJECT] = [Approval(id="ap-5", run_id=5)]
    await monitor.select_pipeline(PROJECT, PIPELINE)
    await monitor.select_run(5)

    assert monitor.is_awaiting_approval("S2")
    assert not monitor.is_awaiting_approval("S1")
    assert await monitor.resolve_approval_id("S2") == "ap-5"

    approval = await monitor.decide_approval("S2", ApprovalDecision.APPROVE, "ship it")

    assert approval.status is ApprovalStatus.APPROVED
    assert client.calls_to("set_approval_decision") == [
        (PROJECT, "ap-5", ApprovalDecision.APPROVE, "ship it")
    ]


@pytest.mark.asyncio
async def test_decide_approval_preconditions(
    monitor, client, build, awaiting_approval_records
):
    _seed_builds(client, build)
    client.timelines[(PROJECT, 5)] = awaiting_approval_records
    await monitor.select_pipeline(PROJECT, PIPELINE)
    await monitor.select_run(5)

    with pytest.raises(ApprovalNotPendingError, match="not awaiting approval"):
        await monitor.decide_approval("S1", ApprovalDecision.APPROVE)
    assert client.calls_to("list_pending_approvals") == []

    with pytest.raises(StageNotFoundError):
        await monitor.decide_approval("missing", ApprovalDecision.REJECT)

    with pytest.raises(ApprovalNotPendingError, match="Unable to find approval ID"):
        await monitor.decide_approval("S2", ApprovalDecision.REJECT)
    assert client.calls_to("set_approval_decision") == []


@pytest.mark.asyncio
async def test_get_task_log(monitor, client, build, record):
    _seed_builds(client, build)
    client.timelines[(PROJECT, 5)] = [
        record("S1", "Stage"),
        record("T1", "Task", "S1", log=LogReference(id=3)),
    ]
    client.logs[(PROJECT, 5, 3)] = ["line 1", "line 2"]
    await monitor.select_pipeline(PROJECT, PIPELINE)
    await monitor.select_run(5)

    assert await monitor.get_task_log("T1") == ["line 1", "line 2"]
    with pytest.raises(PreconditionError, match="has no log"):
        await monitor.get_task_log("S1")


# Run actions ------------------------------------------------------------
@pytest.mark.asyncio
async def test_cancel_only_active_runs(monitor, client, build):
    client.builds[(PROJECT, 7)] = [
        build(2, status="inProgress", result=None),
        build(1),
    ]
    await monitor.select_pipeline(PROJECT, PIPELINE)

    with pytest.raises(PreconditionError, match="cannot be cancelled"):
        await monitor.cancel_run(1)
    assert client.calls_to("cancel_run") == []

    await monitor.cancel_run(2)
    assert client.calls_to("cancel_run") == [(PROJECT, 2)]
    assert monitor.builds[0].status is BuildStatus.CANCELLING


@pytest.mark.asyncio
async def test_delete_selected_run_clears_timeline(monitor, client, build, record):
    _seed_builds(client, build)
    client.timelines[(PROJECT, 5)] = [record("S1", "Stage")]
    await monitor.select_pipeline(PROJECT, PIPELINE)
    await monitor.select_run(5)

    await monitor.delete_run(5)

    assert monitor.snapshot is None
    assert monitor.current_selection().run_id is None
    assert [b.id for b in monitor.builds] == [4, 3]


@pytest.mark.asyncio
async def test_set_retention_refreshes_leases(monitor, client, build):
    _seed_builds(client, build)
    await monitor.select_pipeline(PROJECT, PIPELINE)
    assert not monitor.builds[0].is_pinned

    await monitor.set_retention(5, keep=True)
    assert client.calls_to("set_retention") == [(PROJECT, 5, 7, True)]
    assert monitor.builds[0].is_pinned

    await monitor.set_retention(5, keep=False)
    assert not monitor.builds[0].is_pinned


@pytest.mark.asyncio
async def test_run_and_retrigger_pipeline(monitor, client, build):
    _seed_builds(client, build, ids=(1,), source_branch="refs/heads/release/1.0")
    client.run_parameters[(PROJECT, 1)] = {"env": "staging"}
    await monitor.select_pipeline(PROJECT, PIPELINE)

    queued = await monitor.run_pipeline("main")
    assert monitor.builds[0].id == queued.id
    assert queued.branch == "main"

    retriggered = await monitor.retrigger_run(1)
    assert retriggered.branch == "release/1.0"
    assert client.calls_to("run_pipeline")[-1] == (
        PROJECT,
        7,
        "release/1.0",
        {"env": "staging"},
    )


@pytest.mark.asyncio
async def test_held_run_with_parameters_waits_for_release(monitor, client, build):
    _seed_builds(client, build, ids=(1,))
    await monitor.select_pipeline(PROJECT, PIPELINE)
    gate = client.hold("run_pipeline", PROJECT, 7, "main", {"env": "prod"})

    queued = asyncio.create_task(client.run_pipeline(PROJECT, 7, "main", {"env": "prod"}))
    await _wait_for(lambda: client.calls_to("run_pipeline"))
    assert not queued.done()

    gate.set()
    run = await queued
    assert client.run_parameters[(PROJECT, run.id)] == {"env": "prod"}


@pytest.mark.asyncio
async def test_run_actions_require_pipeline(monitor):
    with pytest.raises(NoSelectionError):
        await monitor.run_pipeline("main")
    with pytest.raises(NoSelectionError):
        await monitor.cancel_run(1)
