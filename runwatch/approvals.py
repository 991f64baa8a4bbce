"""Detection and resolution of manual approval gates on stages."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional, Sequence

from .contracts import Approval, ApprovalStatus, RecordKind, RecordState, TimelineRecord

if TYPE_CHECKING:
    from .clients import BasePipelineClient

logger = logging.getLogger(__name__)


def find_pending_checkpoint(
    stage_id: str, records: Sequence[TimelineRecord]
) -> Optional[TimelineRecord]:
    """Return the in-progress checkpoint gating ``stage_id``, if any."""
    for record in records:
        if (
            record.kind is RecordKind.CHECKPOINT
            and record.parent_id == stage_id
            and record.state is RecordState.IN_PROGRESS
        ):
            return record
    return None


def is_stage_awaiting_approval(
    stage_id: str, records: Sequence[TimelineRecord]
) -> bool:
    """Check whether ``stage_id`` is blocked on a manual approval.

    Both an in-progress checkpoint under the stage and an in-progress
    approval under that checkpoint are required. A checkpoint on its own
    (a timed gate, a branch check) is not an approval.
    """
    checkpoint = find_pending_checkpoint(stage_id, records)
    if checkpoint is None:
        return False

    return any(
        record.kind is RecordKind.CHECKPOINT_APPROVAL
        and record.parent_id == checkpoint.id
        and record.state is RecordState.IN_PROGRESS
        for record in records
    )


class ApprovalLocator:
    """Resolve the remote approval id needed to act on a waiting stage.

    Links are looked up on demand and never cached: an approval may be
    claimed, expire or be superseded between two polls.
    """

    def __init__(self, client: "BasePipelineClient") -> None:
        self._client = client

    async def resolve(
        self,
        project: str,
        run_id: int,
        stage_id: str,
        records: Sequence[TimelineRecord],
    ) -> Optional[str]:
        """Return the approval id for ``stage_id`` or ``None``.

        The pending approval list is not scoped to a stage. Approvals that
        name their run are narrowed to ``run_id``; when several candidates
        remain the first one is returned and the ambiguity is logged, since
        two stages awaiting approval at once cannot be told apart here.
        """
        if not is_stage_awaiting_approval(stage_id, records):
            logger.debug(f"Stage {stage_id} is not awaiting approval")
            return None

        try:
            approvals = await self._client.list_pending_approvals(project)
        except Exception as e:
            logger.warning(f"Failed to look up pending approvals for {project}: {e}")
            return None

        candidates = self._candidates(approvals, run_id)
        if not candidates:
            logger.info(f"No pending approval found for stage {stage_id}")
            return None
        if len(candidates) > 1:
            logger.warning(
                f"{len(candidates)} pending approvals match run {run_id}; "
                f"using {candidates[0].id} for stage {stage_id}"
            )
        return candidates[0].id

    @staticmethod
    def _candidates(approvals: Sequence[Approval], run_id: int) -> List[Approval]:
        pending = [a for a in approvals if a.status is ApprovalStatus.PENDING]
        scoped = [a for a in pending if a.run_id == run_id]
        if scoped:
            return scoped
        # Approvals without run information cannot be ruled out.
        return [a for a in pending if a.run_id is None]
