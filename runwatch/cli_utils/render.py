"""Plain-text rendering of builds and timelines for the terminal."""

from __future__ import annotations

from typing import Iterable, List, Optional

import typer

from runwatch.contracts import (
    Build,
    BuildResult,
    BuildStatus,
    RecordResult,
    RecordState,
    TimelineRecord,
)
from runwatch.timeline import TimelineIndex, TimelineNode

GLYPH_PASSED = "✓"
GLYPH_FAILED = "✗"
GLYPH_CANCELED = "⊘"
GLYPH_WARNING = "⚠"
GLYPH_SKIPPED = "↷"
GLYPH_RUNNING = "⟳"
GLYPH_QUEUED = "◷"
GLYPH_IDLE = "○"
GLYPH_AWAITING = "⏸"
GLYPH_PINNED = "📌"

_RECORD_GLYPHS = {
    RecordResult.SUCCEEDED: (GLYPH_PASSED, typer.colors.GREEN),
    RecordResult.FAILED: (GLYPH_FAILED, typer.colors.RED),
    RecordResult.ABANDONED: (GLYPH_FAILED, typer.colors.RED),
    RecordResult.CANCELED: (GLYPH_CANCELED, typer.colors.BRIGHT_BLACK),
    RecordResult.SUCCEEDED_WITH_ISSUES: (GLYPH_WARNING, typer.colors.YELLOW),
    RecordResult.SKIPPED: (GLYPH_SKIPPED, None),
}

_BUILD_GLYPHS = {
    BuildResult.SUCCEEDED: (GLYPH_PASSED, typer.colors.GREEN),
    BuildResult.FAILED: (GLYPH_FAILED, typer.colors.RED),
    BuildResult.CANCELED: (GLYPH_CANCELED, typer.colors.BRIGHT_BLACK),
    BuildResult.PARTIALLY_SUCCEEDED: (GLYPH_WARNING, typer.colors.YELLOW),
}


def record_glyph(record: TimelineRecord) -> tuple[str, Optional[str]]:
    """Glyph and color for a timeline record; the result wins over the state."""
    if record.result in _RECORD_GLYPHS:
        return _RECORD_GLYPHS[record.result]
    if record.state is RecordState.IN_PROGRESS:
        return GLYPH_RUNNING, typer.colors.BLUE
    if record.state in (RecordState.PENDING, RecordState.NOT_STARTED):
        return GLYPH_QUEUED, typer.colors.YELLOW
    return GLYPH_IDLE, None


def build_glyph(build: Build) -> tuple[str, Optional[str]]:
    if build.result in _BUILD_GLYPHS:
        return _BUILD_GLYPHS[build.result]
    if build.status is BuildStatus.IN_PROGRESS:
        return GLYPH_RUNNING, typer.colors.BLUE
    return GLYPH_QUEUED, typer.colors.YELLOW


def _styled(glyph: str, color: Optional[str]) -> str:
    return typer.style(glyph, fg=color) if color else glyph


def format_build(build: Build) -> str:
    glyph = _styled(*build_glyph(build))
    line = f"{glyph} #{build.build_number} ({build.id})"
    if build.branch:
        line += f"  {build.branch}"
    if build.commit_message:
        line += f"  {build.commit_message}"
    if build.is_pinned:
        line += f"  {GLYPH_PINNED}"
    return line


def format_builds(builds: Iterable[Build]) -> List[str]:
    return [format_build(build) for build in builds]


def format_node(node: TimelineNode) -> str:
    glyph = _styled(*record_glyph(node.record))
    line = f"{'  ' * node.depth}{glyph} {node.label}"
    if node.awaiting_approval:
        line += f"  {GLYPH_AWAITING} awaiting approval"
    return f"{line}  [{node.id}]"


def format_timeline(index: TimelineIndex) -> List[str]:
    """Indented tree of the visible records, one line per node."""
    return [format_node(node) for node in index.walk()]
