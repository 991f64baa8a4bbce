"""Choose and execute the retry strategy for a stage of a run."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, ConfigDict

from .contracts import RecordKind, RecordResult, RunSnapshot
from .errors import PreconditionError, StageNotFoundError

if TYPE_CHECKING:
    from .clients import BasePipelineClient

logger = logging.getLogger(__name__)


class RetryStrategy(str, Enum):
    """How a stage is re-executed."""

    BUILD_LEVEL_RETRY = "build-level-retry"
    STAGE_LEVEL_RETRY = "stage-level-retry"
    STAGE_LEVEL_RERUN = "stage-level-rerun"


class RetryDecision(BaseModel):
    """Chosen strategy plus the context required to execute it."""

    model_config = ConfigDict(frozen=True)

    strategy: RetryStrategy
    project: str
    run_id: int
    stage_id: str
    stage_name: str = ""
    # Stable stage name used by the stage endpoints; not the record id.
    stage_identifier: Optional[str] = None

    @property
    def requires_dependents_choice(self) -> bool:
        """Reruns ask the invoker whether dependent stages run again too."""
        return self.strategy is RetryStrategy.STAGE_LEVEL_RERUN


def resolve_retry_strategy(snapshot: RunSnapshot, stage_id: str) -> RetryDecision:
    """Decide how to re-execute ``stage_id`` from the latest snapshot.

    Evaluated in order:

    1. a succeeded stage is rerun; stale checkpoint records from earlier
       attempts do not matter;
    2. a stage with a failed checkpoint is retried at stage level, which
       re-evaluates the checkpoint;
    3. anything else falls back to retrying the failed jobs of the build.

    Raises:
        StageNotFoundError: ``stage_id`` is not in the snapshot.
        PreconditionError: the record is not a stage, or a stage-level
            strategy was chosen but the stage has no identifier.
    """
    stage = snapshot.find(stage_id)
    if stage is None:
        raise StageNotFoundError(stage_id)
    if stage.kind is not RecordKind.STAGE:
        raise PreconditionError("Retry is only available for stages.")

    if stage.result is RecordResult.SUCCEEDED:
        strategy = RetryStrategy.STAGE_LEVEL_RERUN
    elif any(
        record.result is RecordResult.FAILED
        for record in snapshot.children_of(stage.id, RecordKind.CHECKPOINT)
    ):
        strategy = RetryStrategy.STAGE_LEVEL_RETRY
    else:
        strategy = RetryStrategy.BUILD_LEVEL_RETRY

    if strategy is not RetryStrategy.BUILD_LEVEL_RETRY and not stage.identifier:
        raise PreconditionError(
            "Stage identifier is not available. Cannot retry this stage."
        )

    decision = RetryDecision(
        strategy=strategy,
        project=snapshot.project,
        run_id=snapshot.run_id,
        stage_id=stage.id,
        stage_name=stage.name,
        stage_identifier=stage.identifier
        if strategy is not RetryStrategy.BUILD_LEVEL_RETRY
        else None,
    )
    logger.debug(f"Resolved {strategy.value} for stage {stage.name} ({stage.id})")
    return decision


async def execute_retry(
    client: "BasePipelineClient",
    decision: RetryDecision,
    retry_dependents: bool = False,
) -> None:
    """Run ``decision`` against the remote service.

    ``retry_dependents`` only applies to reruns. Remote failures propagate
    unchanged; mutating calls are never retried automatically.
    """
    if decision.strategy is RetryStrategy.STAGE_LEVEL_RERUN:
        await client.retry_stage(
            decision.project,
            decision.run_id,
            decision.stage_identifier,
            force_all_jobs=True,
            retry_dependents=retry_dependents,
        )
        logger.info(
            f"Rerunning stage '{decision.stage_name}' of run {decision.run_id}"
            + (" with dependents" if retry_dependents else "")
        )
    elif decision.strategy is RetryStrategy.STAGE_LEVEL_RETRY:
        await client.retry_stage(
            decision.project,
            decision.run_id,
            decision.stage_identifier,
            force_all_jobs=False,
            retry_dependents=False,
        )
        logger.info(f"Retrying stage '{decision.stage_name}' of run {decision.run_id}")
    else:
        await client.retry_build_failed_jobs(decision.project, decision.run_id)
        logger.info(f"Retrying failed jobs in run {decision.run_id}")
