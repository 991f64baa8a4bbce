from __future__ import annotations

from datetime import timedelta

SUB_SECOND = "<1s"


def format_duration(elapsed: timedelta) -> str:
    """Render ``elapsed`` as ``1h 2m 3s``, omitting leading zero units."""
    total = elapsed.total_seconds()
    if total < 1:
        return SUB_SECOND

    whole = int(total)
    hours, remainder = divmod(whole, 3600)
    minutes, seconds = divmod(remainder, 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0 or hours > 0:
        parts.append(f"{minutes}m")
    parts.append(f"{seconds}s")
    return " ".join(parts)
