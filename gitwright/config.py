"""Configuration management for Gitwright."""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from gitwright.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.gitwright/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.gitwright/sessions.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "openai"
    model: str = "gpt-4o-2024-11-20"
    temperature: float = 0.7
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""
    max_steps: int = 25


class SandboxConfig(BaseModel):
    """Sandbox service configuration."""

    mode: Literal["remote", "local"] = "remote"
    base_url: str = "http://127.0.0.1:3000"
    sandbox_id: str = "user-123"
    api_key: str = ""
    timeout: int = 120
    workspace_root: str = "/workspace"
    local_root: str = "./workspace"
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]


class GitHubConfig(BaseModel):
    """GitHub REST API configuration."""

    api_url: str = "https://api.github.com"
    timeout: int = 30
    bot_name: str = "Github Bot"
    bot_email: str = "fake@agent.com"


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = [
        "getWeatherInformation",
        "getLocalTime",
        "scheduleTask",
        "getScheduledTasks",
        "cancelScheduledTask",
        "listIssues",
        "cloneRepository",
        "listAllFiles",
        "readFile",
        "writeFile",
        "commandExecutor",
        "createPullRequest",
    ]
    require_confirmation: list[str] = ["getWeatherInformation"]
    timeout: int = 60


class ReconciliationConfig(BaseModel):
    """Reconciliation pass behavior."""

    concurrent_policy: Literal["queue", "reject"] = "queue"
    stale_approved_seconds: int | None = None
    rejection_message: str = "Error: User denied access to tool execution"


class StreamConfig(BaseModel):
    """Live stream buffering."""

    buffer_size: int = 256
    emit_timeout: float = 2.0


class SessionConfig(BaseModel):
    """Session configuration."""

    path: str = str(DEFAULT_DB_PATH)


class SchedulerConfig(BaseModel):
    """Scheduled task runner configuration."""

    enabled: bool = True
    poll_seconds: float = 5.0


class WebConfig(BaseModel):
    """Web server configuration."""

    host: str = "127.0.0.1"
    port: int = 8787


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Gitwright."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="GITWRIGHT_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Expected a mapping at the top of {config_path}")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; environment variables are applied by BaseSettings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_model_api_key(self) -> str:
        """Configured model API key, falling back to ``OPENAI_API_KEY`` for OpenAI."""
        if self.model.api_key:
            return self.model.api_key
        if self.model.provider.strip().lower() == "openai":
            return os.environ.get("OPENAI_API_KEY", "")
        return ""

    def resolved_local_sandbox_root(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve the local sandbox root, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.sandbox.local_root).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
