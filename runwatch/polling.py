"""Timer ownership for periodically refreshing one monitored entity."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from .contracts import ACTIVE_BUILD_STATUSES, ACTIVE_RECORD_STATES, Build, TimelineRecord

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 5.0

Predicate = Callable[[], bool]
RefreshCallback = Callable[[], Awaitable[None]]
ErrorListener = Callable[[str, BaseException], None]
StateListener = Callable[[str, bool], None]


def builds_are_active(builds: Iterable[Build]) -> bool:
    """True while at least one build is queued, running or cancelling."""
    return any(build.status in ACTIVE_BUILD_STATUSES for build in builds)


def timeline_is_active(records: Iterable[TimelineRecord]) -> bool:
    """True while at least one timeline record is pending or running."""
    return any(record.state in ACTIVE_RECORD_STATES for record in records)


class PollController:
    """Own the single timer that refreshes one monitored entity.

    Polling is active exactly when polling is globally enabled, the owning
    view is visible and ``predicate`` holds for the latest data. The timer
    is a one-shot task per tick: its handle is dropped before the refresh
    starts and a new one is armed only after the refresh settles, so two
    refreshes of the same entity never overlap. A controller belongs to a
    single entity; once closed it never arms again.
    """

    def __init__(
        self,
        name: str,
        refresh: RefreshCallback,
        predicate: Optional[Predicate] = None,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        enabled: bool = True,
        visible: bool = True,
        on_error: Optional[ErrorListener] = None,
        on_state_change: Optional[StateListener] = None,
    ) -> None:
        self.name = name
        self._refresh = refresh
        self._predicate: Predicate = predicate or (lambda: False)
        self._interval = self._validate_interval(interval)
        self._enabled = enabled
        self._visible = visible
        self._on_error = on_error
        self._on_state_change = on_state_change

        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._manual = False
        self._closed = False
        self._reported_active = False
        self._last_error: Optional[str] = None

    @staticmethod
    def _validate_interval(interval: float) -> float:
        if interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {interval}")
        return float(interval)

    # ------------------------------------------------------------------
    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def manual_refresh(self) -> bool:
        """Whether the refresh in flight was requested by the user."""
        return self._manual

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def should_poll(self) -> bool:
        return (
            not self._closed
            and self._enabled
            and self._visible
            and bool(self._predicate())
        )

    # ------------------------------------------------------------------
    def arm(
        self, interval: Optional[float] = None, predicate: Optional[Predicate] = None
    ) -> None:
        """Schedule the next tick. A no-op while already armed or closed."""
        if interval is not None:
            self._interval = self._validate_interval(interval)
        if predicate is not None:
            self._predicate = predicate
        if self.armed or self._closed:
            return

        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._tick(self._interval))
        logger.debug(f"Armed {self.name} poll every {self._interval}s")
        self._report(True)

    def disarm(self) -> None:
        """Cancel the pending tick, if any. Always safe to call."""
        self._drop_timer()
        self._report(False)

    def _drop_timer(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()
            logger.debug(f"Disarmed {self.name} poll")

    def reconsider(self) -> bool:
        """Arm or disarm according to the current conditions."""
        if self.should_poll():
            self.arm()
        else:
            self.disarm()
        return self.armed

    def close(self) -> None:
        """Disarm for good; the controller's entity is no longer monitored."""
        self.disarm()
        self._closed = True

    def set_manual_refresh(self, manual: bool) -> None:
        self._manual = manual

    def set_visible(self, visible: bool) -> None:
        self._visible = visible
        self.reconsider()

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        self.reconsider()

    def set_interval(self, interval: float) -> None:
        interval = self._validate_interval(interval)
        if interval == self._interval:
            return
        self._interval = interval
        if self.armed:
            # restart the tick without reporting a stop
            self._drop_timer()
        self.reconsider()

    # ------------------------------------------------------------------
    async def trigger(self, manual: bool = False) -> None:
        """Refresh the entity now.

        The pending tick is dropped first; a refresh already in flight is
        awaited rather than overlapped. Errors of a manual refresh are
        raised to the caller. Errors of an automatic refresh go to
        ``on_error`` once per distinct failure. Either way polling is
        reconsidered afterwards so a transient failure heals on its own.
        """
        if self._closed:
            return
        self._drop_timer()
        await self._run(manual)

    async def _run(self, manual: bool) -> None:
        async with self._lock:
            if self._closed:
                return
            # No timer may fire while this refresh is in flight.
            self._drop_timer()
            self.set_manual_refresh(manual)
            try:
                await self._refresh()
            except Exception as e:
                if manual:
                    raise
                if self._closed:
                    logger.debug(f"Dropped {self.name} failure after close: {e}")
                    return
                self._surface(e)
            else:
                self._last_error = None
            finally:
                self.set_manual_refresh(False)
                self.reconsider()

    async def _tick(self, interval: float) -> None:
        await asyncio.sleep(interval)
        await self._run(manual=False)

    def _surface(self, error: BaseException) -> None:
        message = f"{type(error).__name__}: {error}"
        if message == self._last_error:
            logger.debug(f"{self.name} refresh still failing: {message}")
            return
        self._last_error = message
        logger.warning(f"{self.name} refresh failed: {message}")
        if self._on_error is not None:
            self._on_error(self.name, error)

    def _report(self, active: bool) -> None:
        if active == self._reported_active:
            return
        self._reported_active = active
        if self._on_state_change is not None:
            self._on_state_change(self.name, active)
