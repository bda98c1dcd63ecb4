"""Custom exceptions for Gitwright."""


class GitwrightError(Exception):
    """Base exception for Gitwright."""

    pass


class ConfigurationError(GitwrightError):
    """Configuration-related errors."""

    pass


class LLMError(GitwrightError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedHistoryError(GitwrightError):
    """A persisted message or part could not be parsed."""

    pass


class ToolError(GitwrightError):
    """Tool execution errors."""

    pass


class ToolRegistrationError(ToolError):
    """Tool declared with an invalid executor combination."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Cannot register tool '{tool_name}': {reason}")
        self.tool_name = tool_name
        self.reason = reason


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolValidationError(ToolError):
    """Tool arguments failed schema validation."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Invalid arguments for tool '{tool_name}': {message}")
        self.tool_name = tool_name


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class TransportError(GitwrightError):
    """Stream delivery to a live client failed."""

    pass


class SessionError(GitwrightError):
    """Session-related errors."""

    pass


class SessionBusyError(SessionError):
    """A reconciliation pass is already running for the session."""

    def __init__(self, session_id: str):
        super().__init__(f"Session is busy: {session_id}")
        self.session_id = session_id


class SandboxError(GitwrightError):
    """Sandbox service errors."""

    pass


class GitHubAPIError(GitwrightError):
    """GitHub REST API errors."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ScheduleError(GitwrightError):
    """Invalid schedule input."""

    pass
