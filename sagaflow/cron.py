"""Cron scheduling of workflow starts."""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from croniter import croniter
from pydantic import BaseModel, Field

from .constants import CRON_SCHEDULE_ID_KEY, CRON_TRIGGERED_AT_KEY
from .errors import DefinitionError, WorkflowError
from .state import utcnow

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)

EVERY_PREFIX = "@every "

_ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(text: str) -> timedelta:
    """Parse a compact duration such as ``90s``, ``5m`` or ``1h30m``."""
    text = text.strip()
    position = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if not text or position != len(text):
        raise DefinitionError(f"invalid duration: {text!r}")
    if seconds <= 0:
        raise DefinitionError(f"duration must be positive: {text!r}")
    return timedelta(seconds=seconds)


class CronExpression:
    """A parsed schedule.

    Either a five-field cron expression (minute, hour, day of month, month,
    day of week), one of the ``@daily``-style aliases, or ``@every <duration>``
    for a fixed interval.
    """

    def __init__(self, expression: str) -> None:
        self.expression = expression.strip()
        self.interval: Optional[timedelta] = None
        self._cron: Optional[str] = None

        if self.expression.startswith(EVERY_PREFIX):
            self.interval = parse_duration(self.expression[len(EVERY_PREFIX):])
            return

        cron = _ALIASES.get(self.expression, self.expression)
        fields = cron.split()
        if len(fields) != 5:
            raise DefinitionError(
                f"invalid cron expression {expression!r}: expected 5 fields, got {len(fields)}"
            )
        if not croniter.is_valid(cron):
            raise DefinitionError(f"invalid cron expression: {expression!r}")
        self._cron = cron

    def next(self, after: datetime) -> datetime:
        """First matching time strictly after ``after``."""
        if self.interval is not None:
            return after + self.interval
        return croniter(self._cron, after).get_next(datetime)

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r})"


def parse_cron(expression: str) -> CronExpression:
    """Parse ``expression``.

    Raises:
        DefinitionError: If the expression or its ``@every`` duration is invalid.
    """
    return CronExpression(expression)


class Schedule(BaseModel):
    """A workflow started every time its expression comes due."""

    id: str
    workflow_name: str
    expression: str
    input: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None


class CronScheduler:
    """Starts registered workflows on a schedule.

    Owns one asyncio task that wakes every ``tick_interval`` seconds and calls
    :meth:`WorkflowEngine.start` for each enabled schedule that is due. A due
    schedule fires once per tick, however many runs it missed.

    Args:
        engine: Engine whose registry the scheduled workflow names refer to.
        tick_interval: Seconds between checks; defaults to
            ``engine.cron_tick_interval`` from the engine config.
    """

    def __init__(self, engine: "WorkflowEngine", tick_interval: Optional[float] = None) -> None:
        self._engine = engine
        self.tick_interval = tick_interval or engine.config.engine.cron_tick_interval
        self._schedules: Dict[str, Schedule] = {}
        self._parsed: Dict[str, CronExpression] = {}
        self._lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "CronScheduler":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Schedules
    def add(
        self,
        schedule_id: str,
        workflow_name: str,
        expression: str,
        input: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Schedule:
        """Add or replace the schedule ``schedule_id``.

        Raises:
            DefinitionError: If ``expression`` cannot be parsed.
        """
        parsed = parse_cron(expression)
        schedule = Schedule(
            id=schedule_id,
            workflow_name=workflow_name,
            expression=expression,
            input=dict(input or {}),
            next_run=parsed.next(now or utcnow()),
        )
        with self._lock:
            self._schedules[schedule_id] = schedule
            self._parsed[schedule_id] = parsed
            result = schedule.model_copy(deep=True)
        logger.info(
            f"Scheduled '{workflow_name}' as {schedule_id} ({expression}), "
            f"next run {result.next_run.isoformat()}"
        )
        return result

    def remove(self, schedule_id: str) -> bool:
        with self._lock:
            self._parsed.pop(schedule_id, None)
            return self._schedules.pop(schedule_id, None) is not None

    def enable(self, schedule_id: str, now: Optional[datetime] = None) -> bool:
        """Re-enable a schedule; its next run is computed from ``now``."""
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None:
                return False
            schedule.enabled = True
            schedule.next_run = self._parsed[schedule_id].next(now or utcnow())
        return True

    def disable(self, schedule_id: str) -> bool:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None:
                return False
            schedule.enabled = False
        return True

    def get(self, schedule_id: str) -> Optional[Schedule]:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            return schedule.model_copy(deep=True) if schedule else None

    def schedules(self) -> List[Schedule]:
        with self._lock:
            return [
                self._schedules[key].model_copy(deep=True) for key in sorted(self._schedules)
            ]

    # ------------------------------------------------------------------
    # Triggering
    def _claim_due(self, now: datetime) -> List[Schedule]:
        due: List[Schedule] = []
        with self._lock:
            for schedule_id, schedule in self._schedules.items():
                if not schedule.enabled or schedule.next_run is None:
                    continue
                if now >= schedule.next_run:
                    schedule.last_run = now
                    schedule.next_run = self._parsed[schedule_id].next(now)
                    due.append(schedule.model_copy(deep=True))
        return due

    async def run_pending(self, now: Optional[datetime] = None) -> List[str]:
        """Start every due schedule once. Returns the new state ids."""
        now = now or utcnow()
        started: List[str] = []
        for schedule in self._claim_due(now):
            state_id = await self._trigger(schedule, now)
            if state_id is not None:
                started.append(state_id)
        return started

    async def _trigger(self, schedule: Schedule, now: datetime) -> Optional[str]:
        data = dict(schedule.input)
        data[CRON_SCHEDULE_ID_KEY] = schedule.id
        data[CRON_TRIGGERED_AT_KEY] = now.isoformat()
        try:
            state_id = await self._engine.start(schedule.workflow_name, data)
        except WorkflowError as exc:
            logger.error(
                f"Cron: failed to start workflow '{schedule.workflow_name}' "
                f"for schedule {schedule.id}: {exc}"
            )
            return None
        logger.info(f"Cron schedule {schedule.id} started {state_id}")
        return state_id

    # ------------------------------------------------------------------
    # Lifecycle
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Begin ticking in the background; a second call is a no-op."""
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name="sagaflow:cron"
            )
        return self._task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            await self.run_pending()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


# ----------------------------------------------------------------------
# Expression helpers
def every(interval: Union[float, timedelta]) -> str:
    """Fixed interval, given in seconds or as a ``timedelta``."""
    seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
    if seconds.is_integer():
        return f"{EVERY_PREFIX}{int(seconds)}s"
    return f"{EVERY_PREFIX}{seconds}s"


def at(hour: int, minute: int = 0) -> str:
    """Daily at ``hour:minute``."""
    return f"{minute} {hour} * * *"


def daily() -> str:
    return "@daily"


def hourly() -> str:
    return "@hourly"


def weekly() -> str:
    return "@weekly"


def monthly() -> str:
    return "@monthly"


def weekdays(hour: int, minute: int = 0) -> str:
    """Monday to Friday at ``hour:minute``."""
    return f"{minute} {hour} * * 1-5"


def weekends(hour: int, minute: int = 0) -> str:
    """Saturday and Sunday at ``hour:minute``."""
    return f"{minute} {hour} * * 0,6"
