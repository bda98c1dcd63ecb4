"""Tools for scheduling, listing and canceling tasks in the current session."""

from typing import Any

from pydantic import BaseModel, Field

from gitwright.exceptions import ScheduleError
from gitwright.logging import get_logger
from gitwright.scheduler import NoScheduleWhen, TaskScheduler, When, parse_when, schedule_to_text
from gitwright.tools.registry import EmptyArgs, Tool, ToolContext, ToolResult

log = get_logger(__name__)


def _require_scheduler(ctx: ToolContext) -> TaskScheduler:
    if ctx.scheduler is None:
        raise ScheduleError("Task scheduling is not available in this session")
    return ctx.scheduler


class ScheduleTaskArgs(BaseModel):
    description: str = Field(description="What should happen when the task runs")
    when: When = Field(description="When the task should run")


class ScheduleTaskTool(Tool):
    name = "scheduleTask"
    description = "A tool to schedule a task to be executed at a later time"
    args_model = ScheduleTaskArgs

    async def execute(self, args: ScheduleTaskArgs, ctx: ToolContext) -> ToolResult:
        when = parse_when(args.when)
        if isinstance(when, NoScheduleWhen):
            return ToolResult(success=True, content="Not a valid schedule input")
        scheduler = _require_scheduler(ctx)
        task = await scheduler.schedule(when, args.description)
        log.info("Task scheduled", task_id=task.id, when=when.type)
        return ToolResult(
            success=True,
            content=f'Task scheduled for type "{when.type}" : {schedule_to_text(task.schedule)}',
            data={"id": task.id, "next_run_at": task.next_run_at, "type": when.type},
        )


class GetScheduledTasksTool(Tool):
    name = "getScheduledTasks"
    description = "List all tasks that have been scheduled"
    args_model = EmptyArgs

    async def execute(self, args: EmptyArgs, ctx: ToolContext) -> Any:
        tasks = await _require_scheduler(ctx).list_tasks()
        if not tasks:
            return "No scheduled tasks found."
        return [task.to_dict() for task in tasks]


class CancelTaskArgs(BaseModel):
    task_id: str = Field(alias="taskId", description="The ID of the task to cancel")


class CancelScheduledTaskTool(Tool):
    name = "cancelScheduledTask"
    description = "Cancel a scheduled task using its ID"
    args_model = CancelTaskArgs

    async def execute(self, args: CancelTaskArgs, ctx: ToolContext) -> ToolResult:
        canceled = await _require_scheduler(ctx).cancel(args.task_id)
        if not canceled:
            return ToolResult(success=False, error=f"Error canceling task {args.task_id}: task not found")
        return ToolResult(success=True, content=f"Task {args.task_id} has been successfully canceled.")
