"""Cron-style periodic triggers."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from dateutil import rrule, tz

Callback = Callable[[], Awaitable[Any]]

# (name, low, high) for the five cron fields, in order.
_FIELDS: List[Tuple[str, int, int]] = [
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 7),
]


def _parse_field(value: str, name: str, low: int, high: int) -> Optional[List[int]]:
    """Expand one cron field into sorted values; None means unrestricted."""
    if value == "*":
        return None

    values = set()
    for part in value.split(","):
        step = 1
        if "/" in part:
            part, raw_step = part.split("/", 1)
            if not raw_step.isdigit() or int(raw_step) < 1:
                raise ValueError(f"Invalid step in cron {name} field: {value!r}")
            step = int(raw_step)

        if part == "*":
            start, end = low, high
        elif "-" in part:
            raw_start, raw_end = part.split("-", 1)
            if not (raw_start.isdigit() and raw_end.isdigit()):
                raise ValueError(f"Invalid range in cron {name} field: {value!r}")
            start, end = int(raw_start), int(raw_end)
        elif part.isdigit():
            start = end = int(part)
            if step > 1:
                end = high
        else:
            raise ValueError(f"Invalid cron {name} field: {value!r}")

        if start < low or end > high or start > end:
            raise ValueError(f"Cron {name} field out of range {low}-{high}: {value!r}")
        values.update(range(start, end + 1, step))

    return sorted(values)


class CronSpec:
    """A five-field cron expression evaluated in a fixed time zone.

    Supports ``*``, ``*/n``, ``a-b``, ``a-b/n``, lists and plain numbers.
    Day of week uses cron numbering (0 or 7 is Sunday). When both day of
    month and day of week are restricted, a time must match both.
    """

    def __init__(
        self,
        expression: str,
        minutes: Optional[List[int]],
        hours: Optional[List[int]],
        days: Optional[List[int]],
        months: Optional[List[int]],
        weekdays: Optional[List[int]],
        timezone_name: str = "UTC",
    ):
        self.expression = expression
        self.minutes = minutes
        self.hours = hours
        self.days = days
        self.months = months
        self.weekdays = weekdays
        self.timezone_name = timezone_name
        self.tzinfo = tz.gettz(timezone_name)
        if self.tzinfo is None:
            raise ValueError(f"Unknown time zone: {timezone_name}")

    @classmethod
    def parse(cls, expression: str, timezone_name: str = "UTC") -> "CronSpec":
        parts = expression.split()
        if len(parts) != len(_FIELDS):
            raise ValueError(
                f"Cron expression must have {len(_FIELDS)} fields, got {expression!r}"
            )
        minutes, hours, days, months, weekdays = (
            _parse_field(value, name, low, high)
            for value, (name, low, high) in zip(parts, _FIELDS)
        )
        if weekdays is not None:
            # cron: 0/7 = Sunday; rrule: 0 = Monday.
            weekdays = sorted({(day - 1) % 7 for day in weekdays})
        return cls(expression, minutes, hours, days, months, weekdays, timezone_name)

    def next_after(self, moment: datetime) -> datetime:
        """First fire time strictly after ``moment``, as an aware UTC datetime."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        local = moment.astimezone(self.tzinfo).replace(second=0, microsecond=0)
        start = local + timedelta(minutes=1)

        rule = rrule.rrule(
            rrule.MINUTELY,
            dtstart=start,
            byminute=self.minutes,
            byhour=self.hours,
            bymonthday=self.days,
            bymonth=self.months,
            byweekday=self.weekdays,
            bysecond=0,
        )
        fire = rule.after(start, inc=True)
        if fire is None:
            raise ValueError(f"Cron expression {self.expression!r} never fires")
        return fire.astimezone(timezone.utc)

    def __repr__(self) -> str:
        return f"CronSpec({self.expression!r}, tz={self.timezone_name!r})"


class Trigger:
    """One registered periodic callback."""

    def __init__(self, name: str, spec: CronSpec, callback: Callback):
        self.name = name
        self.spec = spec
        self.callback = callback
        self.next_run_at: Optional[datetime] = None
        self.last_run_at: Optional[datetime] = None
        self.task: Optional[asyncio.Task] = None
        self.error: Optional[str] = None


class TriggerRegistry:
    """
    Named periodic triggers.

    This base class only keeps registrations; callbacks can be invoked
    directly through ``callbacks`` without any timers running.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._triggers: Dict[str, Trigger] = {}

    def register(self, name: str, spec: CronSpec, callback: Callback) -> Trigger:
        if name in self._triggers:
            raise ValueError(f"Trigger {name} is already registered")
        trigger = Trigger(name, spec, callback)
        self._triggers[name] = trigger
        self.logger.info(f"Registered trigger {name} ({spec.expression} {spec.timezone_name})")
        return trigger

    def is_registered(self, name: str) -> bool:
        return name in self._triggers

    @property
    def callbacks(self) -> Dict[str, Callback]:
        return {name: trigger.callback for name, trigger in self._triggers.items()}

    @property
    def triggers(self) -> List[Trigger]:
        return list(self._triggers.values())

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def fire(self, name: str) -> None:
        """Run one tick of a trigger; errors are logged, never raised."""
        trigger = self._triggers[name]
        trigger.last_run_at = datetime.now(timezone.utc)
        try:
            await trigger.callback()
        except Exception as e:
            self.logger.error(f"Trigger {name} failed: {str(e)}", exc_info=True)

    def status(self) -> Dict[str, Dict[str, Optional[str]]]:
        return {
            trigger.name: {
                "schedule": trigger.spec.expression,
                "timezone": trigger.spec.timezone_name,
                "next_run_at": trigger.next_run_at.isoformat() if trigger.next_run_at else None,
                "last_run_at": trigger.last_run_at.isoformat() if trigger.last_run_at else None,
                "error": trigger.error,
            }
            for trigger in self._triggers.values()
        }


class AsyncioTriggerRegistry(TriggerRegistry):
    """Runs every trigger on its own asyncio task."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        super().__init__(logger)
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def register(self, name: str, spec: CronSpec, callback: Callback) -> Trigger:
        trigger = super().register(name, spec, callback)
        if self._running:
            trigger.task = asyncio.create_task(self._run(trigger))
        return trigger

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for trigger in self._triggers.values():
            trigger.error = None
            trigger.task = asyncio.create_task(self._run(trigger))
        self.logger.info(f"Started {len(self._triggers)} triggers")

    async def stop(self) -> None:
        self._running = False
        tasks = [t.task for t in self._triggers.values() if t.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for trigger in self._triggers.values():
            trigger.task = None
            trigger.next_run_at = None
        self.logger.info("Stopped all triggers")

    async def _run(self, trigger: Trigger) -> None:
        try:
            while self._running:
                now = datetime.now(timezone.utc)
                trigger.next_run_at = trigger.spec.next_after(now)
                await asyncio.sleep((trigger.next_run_at - now).total_seconds())
                await self.fire(trigger.name)
        except asyncio.CancelledError:
            self.logger.debug(f"Trigger {trigger.name} cancelled")
        except Exception as e:
            # Scheduling itself failed; the trigger stays stopped until restarted.
            trigger.error = str(e)
            trigger.next_run_at = None
            self.logger.error(f"Trigger {trigger.name} stopped: {str(e)}", exc_info=True)
