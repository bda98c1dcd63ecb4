"""Task scheduling: schedule parsing, next-run calculation and the background runner."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Annotated, Any, Literal

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from gitwright.exceptions import ScheduleError
from gitwright.logging import get_logger

if TYPE_CHECKING:
    from gitwright.agent import ChatAgent
    from gitwright.session import ScheduledTask, Session, SessionManager
    from gitwright.stream import StreamWriter

log = get_logger(__name__)


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(UTC)


def to_utc_iso(value: datetime) -> str:
    """Serialize datetime as UTC ISO string."""
    return value.astimezone(UTC).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse ISO datetime and normalize to UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


# Crontab numbers weekdays from Sunday (0 or 7); CronTrigger numbers them from Monday.
_CRONTAB_DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun"]
_CRONTAB_DAY_RE = re.compile(r"(?<![/\d])\d+")


def _crontab_day_of_week(field: str) -> str:
    def _name(match: re.Match[str]) -> str:
        value = int(match.group())
        return _CRONTAB_DAY_NAMES[value] if value < len(_CRONTAB_DAY_NAMES) else match.group()

    return _CRONTAB_DAY_RE.sub(_name, field)


def _cron_trigger(expression: str) -> CronTrigger:
    fields = expression.split()
    if len(fields) != 5:
        raise ScheduleError(f"Invalid cron expression {expression!r}: expected 5 fields, got {len(fields)}")
    minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_crontab_day_of_week(day_of_week),
            timezone=UTC,
        )
    except ValueError as e:
        raise ScheduleError(f"Invalid cron expression {expression!r}: {e}") from e


class ScheduledWhen(BaseModel):
    """Run once at a fixed date."""

    type: Literal["scheduled"] = "scheduled"
    date: datetime = Field(description="Date and time the task should run")


class DelayedWhen(BaseModel):
    """Run once after a delay."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["delayed"] = "delayed"
    delay_in_seconds: int = Field(
        alias="delayInSeconds",
        ge=0,
        description="Seconds to wait before running the task",
    )


class CronWhen(BaseModel):
    """Run repeatedly on a cron schedule."""

    type: Literal["cron"] = "cron"
    cron: str = Field(description="Five-field cron expression, e.g. '0 9 * * 1'")

    @field_validator("cron")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        try:
            _cron_trigger(value)
        except ScheduleError as e:
            raise ValueError(str(e)) from e
        return value.strip()


class NoScheduleWhen(BaseModel):
    type: Literal["no-schedule"] = "no-schedule"


When = Annotated[
    ScheduledWhen | DelayedWhen | CronWhen | NoScheduleWhen,
    Field(discriminator="type"),
]

_when_adapter: TypeAdapter[ScheduledWhen | DelayedWhen | CronWhen | NoScheduleWhen] = TypeAdapter(When)


def parse_when(payload: Any) -> ScheduledWhen | DelayedWhen | CronWhen | NoScheduleWhen:
    """Validate a raw ``when`` payload.

    Raises:
        ScheduleError if the payload matches none of the supported shapes
    """
    if isinstance(payload, (ScheduledWhen, DelayedWhen, CronWhen, NoScheduleWhen)):
        return payload
    try:
        return _when_adapter.validate_python(payload)
    except ValidationError as e:
        raise ScheduleError(f"Not a valid schedule input: {e.errors()[0]['msg']}") from e


def when_to_schedule(when: ScheduledWhen | DelayedWhen | CronWhen | NoScheduleWhen, now: datetime | None = None) -> dict[str, Any]:
    """Convert a validated ``when`` into the stored schedule dict."""
    current = (now or now_utc()).astimezone(UTC)
    if isinstance(when, ScheduledWhen):
        date = when.date if when.date.tzinfo else when.date.replace(tzinfo=UTC)
        return {"type": "scheduled", "date": to_utc_iso(date)}
    if isinstance(when, DelayedWhen):
        return {
            "type": "delayed",
            "delay_in_seconds": when.delay_in_seconds,
            "date": to_utc_iso(current + timedelta(seconds=when.delay_in_seconds)),
        }
    if isinstance(when, CronWhen):
        return {"type": "cron", "cron": when.cron}
    raise ScheduleError("Not a valid schedule input")


def schedule_to_text(schedule: dict[str, Any]) -> str:
    """Render schedule dict into compact human text."""
    typ = str(schedule.get("type", "")).strip().lower()
    if typ == "scheduled":
        return f"at {schedule.get('date', '?')}"
    if typ == "delayed":
        return f"in {int(schedule.get('delay_in_seconds', 0))}s"
    if typ == "cron":
        return f"cron {schedule.get('cron', '?')}"
    return "unknown"


def is_recurring(schedule: dict[str, Any]) -> bool:
    return str(schedule.get("type", "")).strip().lower() == "cron"


def compute_next_run(schedule: dict[str, Any], now: datetime | None = None) -> datetime:
    """Compute next run datetime in UTC from a stored schedule."""
    current = (now or now_utc()).astimezone(UTC)
    typ = str(schedule.get("type", "")).strip().lower()

    if typ in {"scheduled", "delayed"}:
        if schedule.get("date"):
            return parse_iso(str(schedule["date"]))
        if typ == "delayed":
            return current + timedelta(seconds=max(0, int(schedule.get("delay_in_seconds", 0))))
        raise ScheduleError("Scheduled task has no date")

    if typ == "cron":
        trigger = _cron_trigger(str(schedule.get("cron", "")))
        next_fire = trigger.get_next_fire_time(None, current)
        if next_fire is None:
            raise ScheduleError(f"Cron expression never fires: {schedule.get('cron')!r}")
        if next_fire <= current:
            next_fire = trigger.get_next_fire_time(next_fire, current + timedelta(seconds=1))
        return next_fire.astimezone(UTC)

    raise ScheduleError("Unknown schedule type")


class TaskScheduler:
    """Scheduled-task operations scoped to one session."""

    def __init__(self, manager: SessionManager, session_id: str):
        self.manager = manager
        self.session_id = session_id

    async def schedule(self, when: Any, description: str, now: datetime | None = None) -> ScheduledTask:
        parsed = parse_when(when)
        schedule = when_to_schedule(parsed, now=now)
        next_run = compute_next_run(schedule, now=now)
        return await self.manager.create_scheduled_task(
            session_id=self.session_id,
            description=description,
            schedule=schedule,
            next_run_at=to_utc_iso(next_run),
        )

    async def list_tasks(self) -> list[ScheduledTask]:
        return await self.manager.list_scheduled_tasks(self.session_id)

    async def cancel(self, task_id: str) -> bool:
        return await self.manager.delete_scheduled_task(task_id, session_id=self.session_id)


WriterFactory = Callable[[str], "StreamWriter | None"]
SessionLoader = Callable[[str], Awaitable["Session | None"]]
SessionReleaser = Callable[[str], Awaitable[None]]


async def run_scheduled_task(
    agent: ChatAgent,
    manager: SessionManager,
    task: ScheduledTask,
    writer_for: WriterFactory | None = None,
    load_session: SessionLoader | None = None,
    now: datetime | None = None,
    release_session: SessionReleaser | None = None,
) -> None:
    """Fire one due task and then reschedule or remove it."""
    log.info("Scheduled task firing", task_id=task.id, session_id=task.session_id)
    session = await (load_session or manager.load_session)(task.session_id)
    if session is None:
        log.warning("Scheduled task session is gone; removing task", task_id=task.id)
        await manager.delete_scheduled_task(task.id)
        return

    writer = writer_for(task.session_id) if writer_for else None
    try:
        await agent.execute_task(session, task.description, writer=writer)
    except Exception as e:
        log.error("Scheduled task failed", task_id=task.id, error=str(e))
    finally:
        if writer is not None:
            await writer.close()
        if is_recurring(task.schedule):
            try:
                next_run = compute_next_run(task.schedule, now=now)
            except ScheduleError as e:
                log.error("Cannot reschedule task; removing it", task_id=task.id, error=str(e))
                await manager.delete_scheduled_task(task.id)
            else:
                await manager.update_scheduled_task_next_run(task.id, to_utc_iso(next_run))
        else:
            await manager.delete_scheduled_task(task.id)
        if release_session is not None:
            await release_session(task.session_id)


async def scheduler_loop(
    agent: ChatAgent,
    manager: SessionManager,
    poll_seconds: float = 5.0,
    writer_for: WriterFactory | None = None,
    load_session: SessionLoader | None = None,
    release_session: SessionReleaser | None = None,
) -> None:
    """Background runner that fires due scheduled tasks."""
    log.info("Scheduler loop started", poll_seconds=poll_seconds)
    while True:
        await asyncio.sleep(poll_seconds)
        try:
            now_iso = to_utc_iso(now_utc())
            due_tasks = await manager.get_due_scheduled_tasks(now_iso=now_iso, limit=10)
            if due_tasks:
                log.info("Due scheduled tasks found", count=len(due_tasks), now=now_iso)
            for task in due_tasks:
                await run_scheduled_task(
                    agent,
                    manager,
                    task,
                    writer_for=writer_for,
                    load_session=load_session,
                    release_session=release_session,
                )
        except asyncio.CancelledError:
            log.info("Scheduler loop cancelled")
            raise
        except Exception:
            log.exception("Scheduler loop error")
