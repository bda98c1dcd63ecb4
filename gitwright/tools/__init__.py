"""Tools package for Gitwright."""

from gitwright.config import Config, get_config
from gitwright.logging import get_logger
from gitwright.tools.github import CreatePullRequestTool, ListIssuesTool
from gitwright.tools.registry import (
    EmptyArgs,
    Tool,
    ToolContext,
    ToolRegistry,
    ToolResult,
)
from gitwright.tools.sandbox import (
    CloneRepositoryTool,
    CommandExecutorTool,
    ListAllFilesTool,
    ReadFileTool,
    WriteFileTool,
)
from gitwright.tools.schedule import CancelScheduledTaskTool, GetScheduledTasksTool, ScheduleTaskTool
from gitwright.tools.weather import GetLocalTimeTool, GetWeatherInformationTool, get_weather_information

log = get_logger(__name__)


def build_tool_registry(config: Config | None = None) -> ToolRegistry:
    """Register the enabled built-in tools.

    Tools listed in ``tools.require_confirmation`` are registered behind
    human confirmation even when they normally run automatically.
    """
    cfg = config or get_config()
    enabled = set(cfg.tools.enabled)
    gated = set(cfg.tools.require_confirmation)

    tools: list[Tool] = [
        GetWeatherInformationTool(),
        GetLocalTimeTool(),
        ScheduleTaskTool(),
        GetScheduledTasksTool(),
        CancelScheduledTaskTool(),
        ListIssuesTool(),
        CloneRepositoryTool(bot_name=cfg.github.bot_name, bot_email=cfg.github.bot_email),
        ListAllFilesTool(),
        ReadFileTool(),
        WriteFileTool(),
        CommandExecutorTool(),
        CreatePullRequestTool(),
    ]
    confirmation_executors = {
        GetWeatherInformationTool.name: get_weather_information,
    }

    registry = ToolRegistry()
    for tool in tools:
        if tool.name not in enabled:
            continue
        tool.timeout_seconds = max(float(tool.timeout_seconds), float(cfg.tools.timeout))
        if tool.name in confirmation_executors:
            registry.register(tool, confirmation_executor=confirmation_executors[tool.name])
        elif tool.name in gated:
            declaration, executor = tool.gated()
            registry.register(declaration, confirmation_executor=executor)
        else:
            registry.register(tool)

    unknown = (enabled | gated) - {tool.name for tool in tools}
    if unknown:
        log.warning("Ignoring unknown tool names in config", tools=sorted(unknown))
    return registry


__all__ = [
    "EmptyArgs",
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "build_tool_registry",
    "CancelScheduledTaskTool",
    "CloneRepositoryTool",
    "CommandExecutorTool",
    "CreatePullRequestTool",
    "GetLocalTimeTool",
    "GetScheduledTasksTool",
    "GetWeatherInformationTool",
    "ListAllFilesTool",
    "ListIssuesTool",
    "ReadFileTool",
    "ScheduleTaskTool",
    "WriteFileTool",
]
