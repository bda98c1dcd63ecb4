"""Sandbox tools: clone, list, read, write and run commands in the repository workspace."""

import shlex

from pydantic import BaseModel, ConfigDict, Field

from gitwright.exceptions import SandboxError
from gitwright.integrations.sandbox import Sandbox
from gitwright.logging import get_logger
from gitwright.tools.registry import Tool, ToolContext, ToolResult

log = get_logger(__name__)


def _require_sandbox(ctx: ToolContext) -> Sandbox:
    if ctx.sandbox is None:
        raise SandboxError("No sandbox is attached to this session")
    return ctx.sandbox


class CloneRepositoryArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    repo_url: str = Field(alias="repoUrl", description="Clone URL of the repository")


class CloneRepositoryTool(Tool):
    name = "cloneRepository"
    description = "Clone a given repository"
    args_model = CloneRepositoryArgs
    timeout_seconds = 300.0

    def __init__(self, bot_name: str = "Github Bot", bot_email: str = "fake@agent.com"):
        self.bot_name = bot_name
        self.bot_email = bot_email

    async def execute(self, args: CloneRepositoryArgs, ctx: ToolContext) -> ToolResult:
        sandbox = _require_sandbox(ctx)
        await sandbox.exec(f"git config --global user.name {shlex.quote(self.bot_name)}")
        await sandbox.exec(f"git config --global user.email {shlex.quote(self.bot_email)}")
        result = await sandbox.exec(f"git clone {shlex.quote(args.repo_url)}")
        if not result.success:
            return ToolResult(success=False, error=result.stderr.strip() or "git clone failed")
        return ToolResult(success=True, content="Repository cloned successfully")


class ListAllFilesArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    repo_name: str = Field(alias="repoName", description="Repository directory name")


class ListAllFilesTool(Tool):
    name = "listAllFiles"
    description = "List all files in a given directory where directory is the name of the repository"
    args_model = ListAllFilesArgs

    async def execute(self, args: ListAllFilesArgs, ctx: ToolContext) -> str:
        sandbox = _require_sandbox(ctx)
        target = f"{sandbox.workspace_root.rstrip('/')}/{args.repo_name}"
        result = await sandbox.exec(f"ls -R {shlex.quote(target)}")
        return result.stdout


class ReadFileArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field(alias="filePath", description="Absolute path of the file in the workspace")


class ReadFileTool(Tool):
    name = "readFile"
    description = "Read a given file from a given repository"
    args_model = ReadFileArgs

    async def execute(self, args: ReadFileArgs, ctx: ToolContext) -> str:
        return await _require_sandbox(ctx).read_file(args.file_path)


class WriteFileArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field(alias="filePath")
    content: str


class WriteFileTool(Tool):
    name = "writeFile"
    description = "Write a given file to a given repository"
    args_model = WriteFileArgs

    async def execute(self, args: WriteFileArgs, ctx: ToolContext) -> str:
        await _require_sandbox(ctx).write_file(args.file_path, args.content)
        return "File written successfully"


class CommandArgs(BaseModel):
    command: str = Field(description="Shell command to run in the sandbox")


class CommandExecutorTool(Tool):
    """Run a command; the model sees stdout on success and stderr otherwise."""

    name = "commandExecutor"
    description = "A tool to execute a given command in the sandbox"
    args_model = CommandArgs
    timeout_seconds = 120.0

    async def execute(self, args: CommandArgs, ctx: ToolContext) -> str:
        result = await _require_sandbox(ctx).exec(args.command)
        if result.success:
            log.info("Command executed successfully", command=args.command)
            return result.stdout
        log.warning("Command failed", command=args.command, exit_code=result.exit_code)
        return result.stderr
