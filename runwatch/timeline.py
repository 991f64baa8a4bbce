"""Turn a run's flat timeline records into a navigable hierarchy.

The remote service returns every stage, phase, job, task and checkpoint of
a run as one flat list linked by ``parent_id``. :class:`TimelineIndex`
builds the parent/children view shown to operators:

* roots are the ``Stage`` records without a parent, ordered by ``order``;
* ``Job`` records are hidden and their children are re-parented under the
  job's own parent (normally the owning ``Phase``);
* checkpoint records are never shown, they only carry approval sub-state;
* records whose ancestry is dangling or cyclic are dropped.

The index never mutates the records it is given, so classifying the same
record set twice yields identical trees.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from .approvals import is_stage_awaiting_approval
from .contracts import RecordKind, TimelineRecord
from .utils.duration import format_duration

logger = logging.getLogger(__name__)

HIDDEN_KINDS = frozenset({RecordKind.CHECKPOINT, RecordKind.CHECKPOINT_APPROVAL})
FLATTENED_KINDS = frozenset({RecordKind.JOB})
DURATION_SEPARATOR = " • "


class TimelineNode(BaseModel):
    """View of a single record inside the classified hierarchy."""

    model_config = ConfigDict(frozen=True)

    record: TimelineRecord
    label: str
    depth: int
    collapsible: bool
    awaiting_approval: bool = False

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def kind(self) -> RecordKind:
        return self.record.kind


def display_label(record: TimelineRecord) -> str:
    """Record name with the elapsed time appended once it has finished."""
    elapsed = record.elapsed
    if elapsed is None:
        return record.name
    return f"{record.name}{DURATION_SEPARATOR}{format_duration(elapsed)}"


def sort_siblings(records: Iterable[TimelineRecord]) -> List[TimelineRecord]:
    """Order siblings by ``order``; unordered records keep remote order, last."""
    return sorted(
        records,
        key=lambda r: (r.order is None, r.order if r.order is not None else 0),
    )


class TimelineIndex:
    """Parent/children index over one immutable set of timeline records."""

    def __init__(self, records: Sequence[TimelineRecord]) -> None:
        self._records: tuple[TimelineRecord, ...] = tuple(records)
        self._by_id: Dict[str, TimelineRecord] = {}
        for record in self._records:
            if record.id in self._by_id:
                logger.debug(f"Ignoring duplicate timeline record {record.id}")
                continue
            self._by_id[record.id] = record

        self._anchored = self._find_anchored()
        self._children: Dict[str, List[TimelineRecord]] = {}
        for record in self._by_id.values():
            parent_id = self._visible_parent_id(record)
            if parent_id is not None:
                self._children.setdefault(parent_id, []).append(record)
        for parent_id, children in self._children.items():
            self._children[parent_id] = sort_siblings(children)

        self._roots = sort_siblings(
            r
            for r in self._by_id.values()
            if r.kind is RecordKind.STAGE and r.parent_id is None
        )
        self._depth: Dict[str, int] = {}
        stack = [(r, 0) for r in self._roots]
        while stack:
            record, depth = stack.pop()
            self._depth[record.id] = depth
            stack.extend((c, depth + 1) for c in self._children.get(record.id, []))

    @property
    def records(self) -> tuple[TimelineRecord, ...]:
        return self._records

    def _find_anchored(self) -> set[str]:
        """Ids whose ancestry reaches a root without dangling ids or cycles."""
        anchored: set[str] = set()
        rejected: set[str] = set()
        for record in self._by_id.values():
            chain: List[str] = []
            seen: set[str] = set()
            current: Optional[TimelineRecord] = record
            ok = False
            while current is not None:
                if current.id in anchored:
                    ok = True
                    break
                if current.id in rejected or current.id in seen:
                    break
                seen.add(current.id)
                chain.append(current.id)
                if current.parent_id is None:
                    ok = True
                    break
                current = self._by_id.get(current.parent_id)
            if ok:
                anchored.update(chain)
            else:
                if chain:
                    logger.debug(
                        f"Dropping timeline records with broken ancestry: {chain}"
                    )
                rejected.update(chain)
        return anchored

    def _visible_parent_id(self, record: TimelineRecord) -> Optional[str]:
        if record.id not in self._anchored or record.parent_id is None:
            return None
        if record.kind in HIDDEN_KINDS or record.kind in FLATTENED_KINDS:
            return None

        parent = self._by_id[record.parent_id]
        while parent.kind in FLATTENED_KINDS:
            if parent.parent_id is None:
                return None
            parent = self._by_id[parent.parent_id]
        if parent.kind in HIDDEN_KINDS:
            return None
        return parent.id

    def _node(self, record: TimelineRecord) -> TimelineNode:
        awaiting = record.kind is RecordKind.STAGE and is_stage_awaiting_approval(
            record.id, self._records
        )
        return TimelineNode(
            record=record,
            label=display_label(record),
            depth=self._depth.get(record.id, 0),
            collapsible=bool(self._children.get(record.id)),
            awaiting_approval=awaiting,
        )

    def roots(self) -> List[TimelineNode]:
        """Top-level stages of the run."""
        return [self._node(r) for r in self._roots]

    def children(self, record_id: str) -> List[TimelineNode]:
        """Visible children of ``record_id`` (empty for unknown ids)."""
        return [self._node(r) for r in self._children.get(record_id, [])]

    def node(self, record_id: str) -> Optional[TimelineNode]:
        """Node for ``record_id`` if it is reachable from a root stage."""
        if record_id not in self._depth:
            return None
        return self._node(self._by_id[record_id])

    def walk(self) -> Iterator[TimelineNode]:
        """Depth-first traversal of the visible tree."""
        stack = list(reversed(self._roots))
        while stack:
            record = stack.pop()
            yield self._node(record)
            stack.extend(reversed(self._children.get(record.id, [])))


def classify(records: Sequence[TimelineRecord]) -> TimelineIndex:
    """Build the hierarchy view for ``records``."""
    return TimelineIndex(records)
