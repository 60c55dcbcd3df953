"""Tool definitions and sandbox dispatch for the code agent.

This module defines the closed set of tools the agent may call and the
ToolRegistry that validates, paces, memoizes and executes those calls
against the run's sandbox.

Every call goes through the same sequence:
1. validate the arguments against the tool's input model
2. a pacing sleep step (keeps the run under provider rate limits)
3. the tool itself as a memoized step
4. merge the recorded result into the network state

The merge happens after the step, from the recorded result, so a replayed
step rebuilds ``NetworkState.files`` exactly like the original execution.
"""

import json
import shlex
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from config import settings
from rate_limiter import PacingPolicy
from sandbox.manager import (
    CommandExitError,
    SandboxHandle,
    SandboxManager,
    SandboxSession,
)
from sandbox.paths import normalize_workspace_path, resolve_workspace_path
from steps import StepExecutor

if TYPE_CHECKING:
    from agents.network import NetworkState

logger = structlog.get_logger()

# Keep tool payloads bounded so a single call cannot flood model context.
MAX_READ_FILE_CHARS = 60_000
MAX_COMMAND_OUTPUT_CHARS = 20_000


class ToolName(StrEnum):
    TERMINAL = "terminal"
    WRITE_FILES = "write_files"
    READ_FILES = "read_files"
    INSTALL_PACKAGES = "install_packages"


class TerminalInput(BaseModel):
    command: str = Field(min_length=1)


class FileSpec(BaseModel):
    path: str = Field(min_length=1)
    content: str


class WriteFilesInput(BaseModel):
    files: list[FileSpec] = Field(min_length=1)


class ReadFilesInput(BaseModel):
    paths: list[str] = Field(min_length=1)


class InstallPackagesInput(BaseModel):
    packages: list[str] = Field(min_length=1)


TOOL_INPUT_MODELS: dict[ToolName, type[BaseModel]] = {
    ToolName.TERMINAL: TerminalInput,
    ToolName.WRITE_FILES: WriteFilesInput,
    ToolName.READ_FILES: ReadFilesInput,
    ToolName.INSTALL_PACKAGES: InstallPackagesInput,
}

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": ToolName.TERMINAL.value,
        "description": (
            "Run a shell command in the sandbox terminal. "
            "Working directory is /workspace. Returns the command's stdout."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "Shell command to execute, e.g. 'python main.py'",
                },
            },
            "required": ["command"],
        },
    },
    {
        "name": ToolName.WRITE_FILES.value,
        "description": (
            "Create or overwrite files in the sandbox. Paths are relative to "
            "/workspace. Parent directories are created automatically."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "files": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "path": {
                                "type": "string",
                                "description": "Relative file path, e.g. 'app/main.py'",
                            },
                            "content": {
                                "type": "string",
                                "description": "Complete file content",
                            },
                        },
                        "required": ["path", "content"],
                    },
                },
            },
            "required": ["files"],
        },
    },
    {
        "name": ToolName.READ_FILES.value,
        "description": (
            "Read files from the sandbox. Returns a JSON list of "
            "{path, content} entries, or {path, error} for unreadable files."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "paths": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "File paths relative to /workspace",
                },
            },
            "required": ["paths"],
        },
    },
    {
        "name": ToolName.INSTALL_PACKAGES.value,
        "description": "Install Python packages into the sandbox environment.",
        "parameters": {
            "type": "object",
            "properties": {
                "packages": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Package names, e.g. ['fastapi', 'uvicorn']",
                },
            },
            "required": ["packages"],
        },
    },
]


class ToolArgumentError(ValueError):
    """Raised when a tool call has invalid or unsupported arguments."""


class ToolExecutionError(Exception):
    """A tool ran but failed; reported to the agent as text."""


def get_tool_definitions_for_llm() -> list[dict[str, Any]]:
    """Get tool definitions formatted for LLM function calling.

    Returns:
        List of tool definitions in the format expected by LiteLLM.
    """
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            },
        }
        for tool in TOOL_DEFINITIONS
    ]


@dataclass
class ToolResult:
    """Result of executing a tool.

    Attributes:
        tool_call_id: ID of the tool call this result corresponds to
        content: The result content as a string
        success: Whether the tool execution succeeded
        error: Error message if execution failed
    """

    tool_call_id: str
    content: str
    success: bool
    error: str | None = None


def _truncate_text(text: str, *, max_chars: int) -> str:
    """Trim large text payloads while preserving a clear truncation marker."""
    if len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return (
        f"{text[:max_chars]}\n"
        f"... [truncated {omitted} characters to protect context window]"
    )


def parse_tool_args(tool_name: str, args: Any) -> tuple[ToolName, BaseModel]:
    """Resolve the tool and validate its arguments.

    Raises:
        ToolArgumentError: If the tool is unknown or the arguments are invalid.
    """
    try:
        tool = ToolName(tool_name)
    except ValueError as e:
        raise ToolArgumentError(f"Unknown tool: {tool_name}") from e

    if not isinstance(args, dict):
        raise ToolArgumentError(f"Invalid arguments for {tool}: expected an object")

    try:
        return tool, TOOL_INPUT_MODELS[tool].model_validate(args)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'args'}: {err['msg']}"
            for err in e.errors()
        )
        raise ToolArgumentError(f"Invalid arguments for {tool}: {problems}") from e


class ToolRegistry:
    """Executes agent tool calls against one run's sandbox.

    Attributes:
        sandbox_manager: Manager used to reconnect to the sandbox per call.
        handle: The run's sandbox.
        state: Network state updated from tool results.
        steps: Step executor providing memoization and timed sleeps.
        pacing: Spacing policy applied before every call.
    """

    def __init__(
        self,
        sandbox_manager: SandboxManager,
        handle: SandboxHandle,
        state: "NetworkState",
        steps: StepExecutor,
        pacing: PacingPolicy | None = None,
        workspace_root: str | None = None,
        command_timeout: float | None = None,
    ) -> None:
        self.sandbox_manager = sandbox_manager
        self.handle = handle
        self.state = state
        self.steps = steps
        self.pacing = pacing or PacingPolicy.from_settings()
        self.workspace_root = workspace_root or settings.sandbox_workspace
        self.command_timeout = (
            command_timeout if command_timeout is not None
            else settings.command_timeout_seconds
        )

    async def execute(
        self,
        tool_name: str,
        args: Any,
        tool_call_id: str,
    ) -> ToolResult:
        """Execute one tool call. Failures are returned as text, never raised.

        Args:
            tool_name: Name of the tool requested by the model.
            args: Arguments supplied by the model.
            tool_call_id: Tool call ID from the LLM.

        Returns:
            ToolResult with the execution outcome.
        """
        try:
            tool, parsed = parse_tool_args(tool_name, args)
        except ToolArgumentError as e:
            logger.warning("tool_arguments_invalid", tool_name=tool_name, error=str(e))
            return ToolResult(
                tool_call_id=tool_call_id,
                content=f"Error: {e}",
                success=False,
                error=str(e),
            )

        payload = parsed.model_dump()
        step_name = self.steps.name_for(tool.value, payload)
        batch_size = len(payload["files"]) if tool == ToolName.WRITE_FILES else 1
        await self.steps.sleep(
            f"{step_name}-pace", self.pacing.delay_ms(tool.value, batch_size)
        )

        try:
            recorded = await self.steps.run(
                step_name, lambda: self._invoke(tool, parsed)
            )
        except Exception as e:
            logger.error(
                "tool_execution_failed",
                tool_name=tool.value,
                sandbox_id=self.handle.id[:12],
                error=str(e),
            )
            return ToolResult(
                tool_call_id=tool_call_id,
                content=f"Error: {e}",
                success=False,
                error=str(e),
            )

        written = recorded.get("written") or {}
        if written:
            self.state.files.update(written)

        success = bool(recorded.get("ok", True))
        logger.debug(
            "tool_executed",
            tool_name=tool.value,
            step=step_name,
            success=success,
            files_written=len(written),
        )
        return ToolResult(
            tool_call_id=tool_call_id,
            content=recorded.get("output", ""),
            success=success,
            error=None if success else recorded.get("output"),
        )

    async def _invoke(self, tool: ToolName, parsed: BaseModel) -> dict[str, Any]:
        """Run the handler and capture tool-level failures as a recorded result."""
        session = await self.sandbox_manager.connect(self.handle)
        try:
            if tool == ToolName.TERMINAL:
                return await self._terminal(session, parsed)
            if tool == ToolName.WRITE_FILES:
                return await self._write_files(session, parsed)
            if tool == ToolName.READ_FILES:
                return await self._read_files(session, parsed)
            return await self._install_packages(session, parsed)
        except ToolExecutionError as e:
            return {"ok": False, "output": str(e)}

    async def _run(self, session: SandboxSession, command: str) -> str:
        """Run a command, collecting streamed output.

        Raises:
            ToolExecutionError: On a non-zero exit or timeout.
        """
        stdout: list[str] = []
        stderr: list[str] = []
        try:
            await session.run_command(
                command,
                on_stdout=stdout.append,
                on_stderr=stderr.append,
                timeout=self.command_timeout,
            )
        except CommandExitError as e:
            raise ToolExecutionError(
                f"Command failed: {e}\n"
                f"stdout: {_truncate_text(e.stdout, max_chars=MAX_COMMAND_OUTPUT_CHARS)}\n"
                f"stderr: {_truncate_text(e.stderr, max_chars=MAX_COMMAND_OUTPUT_CHARS)}"
            ) from e
        except TimeoutError as e:
            raise ToolExecutionError(
                f"Command failed: timed out after {self.command_timeout} seconds\n"
                f"stdout: {''.join(stdout)}\n"
                f"stderr: {''.join(stderr)}"
            ) from e
        return _truncate_text("".join(stdout), max_chars=MAX_COMMAND_OUTPUT_CHARS)

    async def _terminal(
        self, session: SandboxSession, args: TerminalInput
    ) -> dict[str, Any]:
        output = await self._run(session, args.command)
        return {"ok": True, "output": output}

    async def _write_files(
        self, session: SandboxSession, args: WriteFilesInput
    ) -> dict[str, Any]:
        written: dict[str, str] = {}
        errors: list[str] = []

        for spec in args.files:
            try:
                key = normalize_workspace_path(spec.path, self.workspace_root)
            except ValueError as e:
                errors.append(f"{spec.path}: {e}")
                continue
            await session.write_file(
                resolve_workspace_path(key, self.workspace_root), spec.content
            )
            # Last write wins within a batch too
            written[key] = spec.content

        lines = [f"Successfully wrote {len(written)} file(s): {', '.join(written)}"]
        if errors:
            lines.append("Skipped invalid paths:")
            lines.extend(f"- {error}" for error in errors)

        return {"ok": bool(written), "output": "\n".join(lines), "written": written}

    async def _read_files(
        self, session: SandboxSession, args: ReadFilesInput
    ) -> dict[str, Any]:
        entries: list[dict[str, str]] = []

        for raw_path in args.paths:
            try:
                key = normalize_workspace_path(raw_path, self.workspace_root)
                content = await session.read_file(
                    resolve_workspace_path(key, self.workspace_root)
                )
            except (ValueError, OSError) as e:
                entries.append({"path": raw_path, "error": str(e)})
                continue
            entries.append(
                {"path": key, "content": _truncate_text(content, max_chars=MAX_READ_FILE_CHARS)}
            )

        return {"ok": True, "output": json.dumps(entries, ensure_ascii=False)}

    async def _install_packages(
        self, session: SandboxSession, args: InstallPackagesInput
    ) -> dict[str, Any]:
        names = [name.strip() for name in args.packages if name.strip()]
        if not names:
            raise ToolExecutionError("No package names given")

        command = f"{settings.package_install_command} {' '.join(shlex.quote(n) for n in names)}"
        try:
            await self._run(session, command)
        except ToolExecutionError as e:
            raise ToolExecutionError(
                f"Package installation failed for {', '.join(names)}:\n{e}"
            ) from e
        return {"ok": True, "output": f"Successfully installed: {', '.join(names)}"}
