"""Run monitor: keeps a pipeline's build list and a run's timeline current."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .approvals import ApprovalLocator, is_stage_awaiting_approval
from .clients import BasePipelineClient
from .config import RunwatchConfig
from .contracts import (
    Approval,
    ApprovalDecision,
    Build,
    BuildList,
    BuildStatus,
    Pipeline,
    RetentionLease,
    RunSnapshot,
    Selection,
)
from .errors import (
    ApprovalNotPendingError,
    NoSelectionError,
    PipelineRequestError,
    PreconditionError,
    StageNotFoundError,
)
from .polling import PollController, builds_are_active, timeline_is_active
from .retry import RetryDecision, execute_retry, resolve_retry_strategy
from .timeline import TimelineIndex, classify

logger = logging.getLogger(__name__)

NEW_RUN_REFRESH_ATTEMPTS = 5
NEW_RUN_REFRESH_DELAY = 1.0


class MonitoredEntity(str, Enum):
    BUILDS = "builds"
    TIMELINE = "timeline"


SnapshotListener = Callable[[MonitoredEntity], None]
ErrorListener = Callable[[MonitoredEntity, BaseException], None]
PollingListener = Callable[[MonitoredEntity, bool], None]


class RunMonitor:
    """Compose polling, timeline classification and approval lookup.

    The monitor owns at most one build-list poll subject and one timeline
    poll subject. Selecting a new pipeline or run closes the previous
    subject before anything else happens, and every fetch is tagged with
    the generation of the target it was issued for so that a late result
    for an old target is discarded instead of published.
    """

    def __init__(
        self, client: BasePipelineClient, config: Optional[RunwatchConfig] = None
    ) -> None:
        self._client = client
        self._config = config or RunwatchConfig()
        self._approvals = ApprovalLocator(client)

        self._selection = Selection()
        self._build_list: Optional[BuildList] = None
        self._snapshot: Optional[RunSnapshot] = None
        self._polls: Dict[MonitoredEntity, Optional[PollController]] = {
            MonitoredEntity.BUILDS: None,
            MonitoredEntity.TIMELINE: None,
        }
        self._generation: Dict[MonitoredEntity, int] = {
            MonitoredEntity.BUILDS: 0,
            MonitoredEntity.TIMELINE: 0,
        }
        self._visible: Dict[MonitoredEntity, bool] = {
            MonitoredEntity.BUILDS: True,
            MonitoredEntity.TIMELINE: True,
        }
        self._snapshot_listeners: List[SnapshotListener] = []
        self._error_listeners: List[ErrorListener] = []
        self._polling_listeners: List[PollingListener] = []

    # ------------------------------------------------------------------
    # Events
    def on_snapshot_changed(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unregisters it."""
        self._snapshot_listeners.append(listener)
        return lambda: self._snapshot_listeners.remove(listener)

    def on_refresh_error(self, listener: ErrorListener) -> Callable[[], None]:
        self._error_listeners.append(listener)
        return lambda: self._error_listeners.remove(listener)

    def on_polling_changed(self, listener: PollingListener) -> Callable[[], None]:
        self._polling_listeners.append(listener)
        return lambda: self._polling_listeners.remove(listener)

    def _emit_snapshot(self, entity: MonitoredEntity) -> None:
        for listener in list(self._snapshot_listeners):
            listener(entity)

    # ------------------------------------------------------------------
    # State
    @property
    def client(self) -> BasePipelineClient:
        return self._client

    @property
    def config(self) -> RunwatchConfig:
        return self._config

    @property
    def snapshot(self) -> Optional[RunSnapshot]:
        return self._snapshot

    @property
    def build_list(self) -> Optional[BuildList]:
        return self._build_list

    @property
    def builds(self) -> Tuple[Build, ...]:
        """Builds currently published to the view."""
        if self._build_list is None:
            return ()
        return self._build_list.published

    def current_selection(self) -> Selection:
        return self._selection

    def timeline(self) -> Optional[TimelineIndex]:
        """Hierarchy view of the current snapshot."""
        if self._snapshot is None:
            return None
        return classify(self._snapshot.records)

    def poll_controller(self, entity: MonitoredEntity) -> Optional[PollController]:
        return self._polls[entity]

    def polling_active(self, entity: MonitoredEntity) -> bool:
        poll = self._polls[entity]
        return poll is not None and poll.armed

    def _require_project(self) -> str:
        if self._selection.project is None:
            raise NoSelectionError("Please select a pipeline first.")
        return self._selection.project

    def _require_pipeline(self) -> Pipeline:
        self._require_project()
        if self._selection.pipeline is None:
            raise NoSelectionError("Please select a pipeline first.")
        return self._selection.pipeline

    def _require_snapshot(self) -> RunSnapshot:
        if self._snapshot is None:
            raise NoSelectionError("Unable to determine project or build context.")
        return self._snapshot

    # ------------------------------------------------------------------
    # Target selection
    def _close_poll(self, entity: MonitoredEntity) -> None:
        poll = self._polls[entity]
        if poll is not None:
            poll.close()
        self._polls[entity] = None
        self._generation[entity] += 1

    def _new_poll(
        self,
        entity: MonitoredEntity,
        label: str,
        fetch: Callable[[PollController, int], Awaitable[None]],
        predicate: Callable[[], bool],
    ) -> PollController:
        generation = self._generation[entity]

        async def refresh() -> None:
            await fetch(controller, generation)

        controller = PollController(
            name=f"{entity.value}:{label}",
            refresh=refresh,
            predicate=predicate,
            interval=self._config.polling.interval_seconds,
            enabled=self._config.polling.enabled,
            visible=self._visible[entity],
            on_error=lambda _name, error: self._handle_poll_error(
                entity, generation, error
            ),
            on_state_change=lambda _name, active: self._handle_poll_state(
                entity, active
            ),
        )
        self._polls[entity] = controller
        return controller

    def _handle_poll_error(
        self, entity: MonitoredEntity, generation: int, error: BaseException
    ) -> None:
        if generation != self._generation[entity]:
            logger.debug(f"Dropped stale {entity.value} refresh error: {error}")
            return
        for listener in list(self._error_listeners):
            listener(entity, error)

    def _handle_poll_state(self, entity: MonitoredEntity, active: bool) -> None:
        logger.debug(f"Polling for {entity.value} {'started' if active else 'stopped'}")
        for listener in list(self._polling_listeners):
            listener(entity, active)

    async def select_pipeline(self, project: str, pipeline: Pipeline) -> None:
        """Target ``pipeline`` and load its build list.

        The previous build list and timeline subjects are torn down before
        the new target is assigned.
        """
        self._close_poll(MonitoredEntity.TIMELINE)
        self._close_poll(MonitoredEntity.BUILDS)
        self._selection = Selection(project=project, pipeline=pipeline)
        self._snapshot = None
        self._build_list = None
        logger.info(f"Monitoring builds of {project}/{pipeline.name or pipeline.id}")

        poll = self._new_poll(
            MonitoredEntity.BUILDS,
            f"{project}/{pipeline.id}",
            lambda controller, generation: self._fetch_builds(
                controller, generation, project, pipeline.id
            ),
            lambda: builds_are_active(self.builds),
        )
        self._emit_snapshot(MonitoredEntity.TIMELINE)
        self._emit_snapshot(MonitoredEntity.BUILDS)
        await poll.trigger(manual=True)

    async def select_run(self, run_id: int) -> None:
        """Target run ``run_id`` of the selected project and load its timeline."""
        project = self._require_project()
        self._close_poll(MonitoredEntity.TIMELINE)
        self._selection = self._selection.model_copy(update={"run_id": run_id})
        self._snapshot = None
        logger.info(f"Monitoring timeline of run {run_id} in {project}")

        poll = self._new_poll(
            MonitoredEntity.TIMELINE,
            f"{project}/{run_id}",
            lambda controller, generation: self._fetch_timeline(
                generation, project, run_id
            ),
            lambda: self._snapshot is not None
            and timeline_is_active(self._snapshot.records),
        )
        self._emit_snapshot(MonitoredEntity.TIMELINE)
        await poll.trigger(manual=True)

    def clear_selection(self) -> None:
        """Stop monitoring everything (the user navigated away)."""
        self._close_poll(MonitoredEntity.TIMELINE)
        self._close_poll(MonitoredEntity.BUILDS)
        self._selection = Selection()
        self._snapshot = None
        self._build_list = None
        self._emit_snapshot(MonitoredEntity.TIMELINE)
        self._emit_snapshot(MonitoredEntity.BUILDS)

    def close(self) -> None:
        for entity in MonitoredEntity:
            self._close_poll(entity)

    # ------------------------------------------------------------------
    # Refresh
    async def refresh(
        self, manual: bool = True, entity: Optional[MonitoredEntity] = None
    ) -> None:
        """Refresh the build list and/or the timeline now."""
        entities = [entity] if entity is not None else list(MonitoredEntity)
        for item in entities:
            poll = self._polls[item]
            if poll is not None:
                await poll.trigger(manual=manual)

    def set_view_visible(self, entity: MonitoredEntity, visible: bool) -> None:
        self._visible[entity] = visible
        poll = self._polls[entity]
        if poll is not None:
            poll.set_visible(visible)

    def apply_config(self, config: RunwatchConfig) -> None:
        """Apply changed polling settings to the live poll subjects."""
        self._config = config
        for poll in self._polls.values():
            if poll is None:
                continue
            poll.set_interval(config.polling.interval_seconds)
            poll.set_enabled(config.polling.enabled)

    def set_polling_enabled(self, enabled: bool) -> None:
        config = self._config.model_copy(deep=True)
        config.polling.enabled = enabled
        self.apply_config(config)

    async def _fetch_builds(
        self,
        controller: PollController,
        generation: int,
        project: str,
        pipeline_id: int,
    ) -> None:
        fetched = await self._client.list_builds(project, pipeline_id)
        if generation != self._generation[MonitoredEntity.BUILDS]:
            logger.debug(f"Discarding stale build list for {project}/{pipeline_id}")
            return

        previous = self._build_list
        shown = max(self._config.page_size, previous.shown if previous else 0)
        if controller.manual_refresh:
            head = await self._with_leases(project, fetched[:shown])
            if generation != self._generation[MonitoredEntity.BUILDS]:
                logger.debug(f"Discarding stale build list for {project}/{pipeline_id}")
                return
        else:
            head = self._carry_leases(previous, fetched[:shown])

        self._build_list = BuildList(
            project=project,
            pipeline_id=pipeline_id,
            builds=tuple(head) + tuple(fetched[shown:]),
            shown=min(shown, len(fetched)),
        )
        if not fetched:
            logger.info(f"No builds found for {project}/{pipeline_id}")
        self._emit_snapshot(MonitoredEntity.BUILDS)

    async def _fetch_timeline(self, generation: int, project: str, run_id: int) -> None:
        records = await self._client.get_timeline(project, run_id)
        if generation != self._generation[MonitoredEntity.TIMELINE]:
            logger.debug(f"Discarding stale timeline for run {run_id}")
            return
        self._snapshot = RunSnapshot(project=project, run_id=run_id, records=tuple(records))
        self._emit_snapshot(MonitoredEntity.TIMELINE)

    async def _with_leases(self, project: str, builds: Sequence[Build]) -> List[Build]:
        enriched = []
        for build in builds:
            try:
                leases: List[RetentionLease] = await self._client.get_retention_leases(
                    project, build.id
                )
            except PipelineRequestError as e:
                logger.debug(f"Could not fetch retention leases for run {build.id}: {e}")
                leases = []
            enriched.append(build.model_copy(update={"retention_leases": leases}))
        return enriched

    @staticmethod
    def _carry_leases(
        previous: Optional[BuildList], builds: Sequence[Build]
    ) -> List[Build]:
        if previous is None:
            return list(builds)
        carried = []
        for build in builds:
            known = previous.find(build.id)
            if known is not None and known.retention_leases is not None:
                build = build.model_copy(update={"retention_leases": known.retention_leases})
            carried.append(build)
        return carried

    async def load_more_builds(self) -> Tuple[Build, ...]:
        """Publish the next page of already fetched builds."""
        current = self._build_list
        if current is None:
            raise NoSelectionError("Please select a pipeline first.")
        if not current.has_more:
            return ()

        generation = self._generation[MonitoredEntity.BUILDS]
        start, end = current.shown, current.shown + self._config.page_size
        page = await self._with_leases(current.project, current.builds[start:end])
        if generation != self._generation[MonitoredEntity.BUILDS]:
            return ()

        # A refresh may have replaced the list while leases were fetched.
        latest = self._build_list
        merged = list(latest.builds)
        for build in page:
            for index, existing in enumerate(merged):
                if existing.id == build.id:
                    merged[index] = existing.model_copy(
                        update={"retention_leases": build.retention_leases}
                    )
        self._build_list = latest.model_copy(
            update={"builds": tuple(merged), "shown": min(end, len(merged))}
        )
        self._emit_snapshot(MonitoredEntity.BUILDS)
        poll = self._polls[MonitoredEntity.BUILDS]
        if poll is not None:
            poll.reconsider()
        return self._build_list.published[start:]

    async def _refresh_after_action(self, entity: MonitoredEntity) -> None:
        """Give the service a moment, then refresh ``entity`` if still targeted."""
        generation = self._generation[entity]
        if self._config.action_refresh_delay:
            await asyncio.sleep(self._config.action_refresh_delay)
        poll = self._polls[entity]
        if poll is None or generation != self._generation[entity]:
            return
        await poll.trigger(manual=False)

    # ------------------------------------------------------------------
    # Stage actions
    def resolve_retry_action(self, stage_id: str) -> RetryDecision:
        return resolve_retry_strategy(self._require_snapshot(), stage_id)

    async def execute_retry(
        self, decision: RetryDecision, retry_dependents: bool = False
    ) -> None:
        await execute_retry(self._client, decision, retry_dependents=retry_dependents)
        await self._refresh_after_action(MonitoredEntity.TIMELINE)

    async def retry_stage(
        self, stage_id: str, retry_dependents: bool = False
    ) -> RetryDecision:
        """Resolve and execute the retry strategy for ``stage_id``."""
        decision = self.resolve_retry_action(stage_id)
        await self.execute_retry(decision, retry_dependents=retry_dependents)
        return decision

    def is_awaiting_approval(self, stage_id: str) -> bool:
        if self._snapshot is None:
            return False
        return is_stage_awaiting_approval(stage_id, self._snapshot.records)

    async def resolve_approval_id(self, stage_id: str) -> Optional[str]:
        snapshot = self._snapshot
        if snapshot is None:
            return None
        return await self._approvals.resolve(
            snapshot.project, snapshot.run_id, stage_id, snapshot.records
        )

    async def decide_approval(
        self, stage_id: str, decision: ApprovalDecision, comment: str = ""
    ) -> Approval:
        """Approve or reject the manual approval blocking ``stage_id``."""
        snapshot = self._require_snapshot()
        stage = snapshot.find(stage_id)
        if stage is None:
            raise StageNotFoundError(stage_id)
        if not is_stage_awaiting_approval(stage_id, snapshot.records):
            raise ApprovalNotPendingError(f"Stage '{stage.name}' is not awaiting approval.")

        approval_id = await self._approvals.resolve(
            snapshot.project, snapshot.run_id, stage_id, snapshot.records
        )
        if approval_id is None:
            raise ApprovalNotPendingError(
                "Unable to find approval ID for this stage. "
                "The stage might not require approval."
            )

        result = await self._client.set_approval_decision(
            snapshot.project, approval_id, decision, comment
        )
        logger.info(f"Stage '{stage.name}' {decision.status.value} (approval {approval_id})")
        await self._refresh_after_action(MonitoredEntity.TIMELINE)
        return result

    async def get_task_log(self, record_id: str) -> List[str]:
        snapshot = self._require_snapshot()
        record = snapshot.find(record_id)
        if record is None:
            raise StageNotFoundError(record_id)
        if record.log is None:
            raise PreconditionError(f"'{record.name}' has no log.")
        return await self._client.get_log(snapshot.project, snapshot.run_id, record.log.id)

    # ------------------------------------------------------------------
    # Run actions
    async def _find_build(self, run_id: int) -> Build:
        project = self._require_project()
        if self._build_list is not None:
            build = self._build_list.find(run_id)
            if build is not None:
                return build
        return await self._client.get_build(project, run_id)

    async def cancel_run(self, run_id: int) -> None:
        build = await self._find_build(run_id)
        if build.status not in (BuildStatus.IN_PROGRESS, BuildStatus.NOT_STARTED):
            raise PreconditionError(
                f"Build #{build.build_number} is not in progress and cannot be cancelled."
            )
        await self._client.cancel_run(self._require_project(), run_id)
        logger.info(f"Build #{build.build_number} is being cancelled")
        await self._refresh_after_action(MonitoredEntity.BUILDS)

    async def delete_run(self, run_id: int) -> None:
        project = self._require_project()
        await self._client.delete_run(project, run_id)
        logger.info(f"Deleted run {run_id} in {project}")
        if self._selection.run_id == run_id:
            self._close_poll(MonitoredEntity.TIMELINE)
            self._selection = self._selection.model_copy(update={"run_id": None})
            self._snapshot = None
            self._emit_snapshot(MonitoredEntity.TIMELINE)
        await self._refresh_after_action(MonitoredEntity.BUILDS)

    async def set_retention(self, run_id: int, keep: bool) -> None:
        pipeline = self._require_pipeline()
        await self._client.set_retention(
            self._require_project(), run_id, pipeline.id, keep
        )
        logger.info(
            f"Run {run_id} " + ("retained indefinitely" if keep else "retention removed")
        )
        # Lease information is only fetched on manual refreshes.
        poll = self._polls[MonitoredEntity.BUILDS]
        if poll is not None:
            await poll.trigger(manual=True)

    async def run_pipeline(
        self, branch: str, template_parameters: Optional[Dict[str, str]] = None
    ) -> Build:
        """Queue a new run of the selected pipeline and wait for it to be listed."""
        project = self._require_project()
        pipeline = self._require_pipeline()
        build = await self._client.run_pipeline(
            project, pipeline.id, branch, template_parameters
        )
        logger.info(f"Queued run {build.id} of {pipeline.name or pipeline.id} on {branch}")
        await self._await_listed(build.id)
        return build

    async def retrigger_run(self, run_id: int) -> Build:
        """Queue a new run with the branch and parameters of ``run_id``."""
        pipeline = self._require_pipeline()
        build = await self._find_build(run_id)
        if not build.branch:
            raise PreconditionError(f"Build #{build.build_number} has no source branch.")
        parameters = await self._client.get_run_parameters(
            self._require_project(), pipeline.id, run_id
        )
        return await self.run_pipeline(build.branch, parameters or None)

    async def _await_listed(self, run_id: int) -> None:
        poll = self._polls[MonitoredEntity.BUILDS]
        if poll is None:
            return
        for attempt in range(NEW_RUN_REFRESH_ATTEMPTS):
            await poll.trigger(manual=False)
            if any(build.id == run_id for build in self.builds):
                return
            if attempt < NEW_RUN_REFRESH_ATTEMPTS - 1:
                await asyncio.sleep(NEW_RUN_REFRESH_DELAY)
        logger.info(f"Run {run_id} not listed yet")
