"""Scheduler: decide when each timer is due and enqueue work onto the task queue.

Timers:
    signal poll   - at the top of every hour where ``hour % CADENCE_HOURS == 0``
    reconcile     - every ``reconcile_interval_minutes`` (hourly)
    risk check    - every ``risk_check_interval_minutes``, enqueues risk-exit sells
    stale orders  - every ``stale_order_interval_minutes``, cancels stale orders

Each timer fires at most once per slot; the loop only has to tick more often
than the shortest period.
"""
import asyncio
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .config import ScheduleConfig, StrategySettings
from .jobs import JobHandlers, TaskQueue, Topic
from .logging_setup import component_logger
from .models import utcnow

log = component_logger("scheduler")


def signal_poll_slot(now: datetime, cadence_hours: int) -> Optional[str]:
    """Slot key when a signal poll is due at ``now``, else None.

        >>> from datetime import datetime, timezone
        >>> signal_poll_slot(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc), 6)
        '2024-01-01T12'
        >>> signal_poll_slot(datetime(2024, 1, 1, 13, 0, tzinfo=timezone.utc), 6) is None
        True
    """
    if cadence_hours <= 0 or now.hour % cadence_hours != 0:
        return None
    return now.strftime("%Y-%m-%dT%H")


def interval_slot(now: datetime, minutes: int) -> int:
    """Index of the ``minutes``-wide window containing ``now``."""
    return int(now.timestamp()) // (max(1, minutes) * 60)


class Scheduler:
    def __init__(
        self,
        queue: TaskQueue,
        handlers: JobHandlers,
        strategy: StrategySettings,
        schedule: ScheduleConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.handlers = handlers
        self.strategy = strategy
        self.schedule = schedule
        self.clock = clock
        self._last: Dict[str, object] = {}
        self._stop = asyncio.Event()

    def _due(self, name: str, slot) -> bool:
        if slot is None or self._last.get(name) == slot:
            return False
        self._last[name] = slot
        return True

    def prime(self, now: Optional[datetime] = None) -> None:
        """Mark the current interval slots as fired, so startup does not trigger everything at once."""
        now = now or self.clock()
        s = self.schedule
        self._last["reconcile"] = interval_slot(now, s.reconcile_interval_minutes)
        self._last["risk_check"] = interval_slot(now, s.risk_check_interval_minutes)
        self._last["stale_orders"] = interval_slot(now, s.stale_order_interval_minutes)

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Fire every timer due at ``now``; returns the names that fired."""
        now = now or self.clock()
        s = self.schedule
        fired = []

        if self._due("signal_poll", signal_poll_slot(now, self.strategy.cadence_hours)):
            log.info(f"Triggering signal poller | cadence_hours={self.strategy.cadence_hours} hour={now.hour}")
            await self.queue.enqueue(Topic.SIGNAL_POLL)
            fired.append("signal_poll")

        if self._due("reconcile", interval_slot(now, s.reconcile_interval_minutes)):
            await self.queue.enqueue(Topic.RECONCILE)
            fired.append("reconcile")

        if self._due("risk_check", interval_slot(now, s.risk_check_interval_minutes)):
            await self.run_risk_check()
            fired.append("risk_check")

        if self._due("stale_orders", interval_slot(now, s.stale_order_interval_minutes)):
            await self.handlers.reconciler.cancel_stale_orders()
            fired.append("stale_orders")
        return fired

    async def run_risk_check(self) -> None:
        try:
            decisions = await self.handlers.allocator.check_risk_exits()
        except Exception as e:
            log.error(f"Risk check failed | error={e}")
            return
        if decisions:
            log.info(f"Risk check triggered exits | symbols={[d.symbol for d in decisions]}")
            await self.handlers.enqueue_decisions(decisions)

    async def run(self) -> None:
        """Tick every ``tick_seconds`` until :meth:`stop`."""
        self._stop.clear()
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception as e:
                log.exception(f"Scheduler tick failed | error={e}")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.schedule.tick_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stop.set()
