"""Shared test fixtures for backend tests.

Provides an in-memory fake sandbox session, a mock SandboxManager, LLM
response factories and a temporary SQLite store, so tests never touch real
Docker containers or LLM APIs.
"""

import sys
from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.paths import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.utils import LLMMetrics, LLMResponse, ToolCallData  # noqa: E402
from models.database import ProjectStore  # noqa: E402
from rate_limiter import PacingPolicy  # noqa: E402
from sandbox.manager import CommandResult, SandboxHandle  # noqa: E402
from steps import InMemoryStepLog, StepExecutor  # noqa: E402

SANDBOX_ID = "sandbox_test123456"
SANDBOX_URL = "http://localhost:49153"

NO_PACING = PacingPolicy(base_delay_ms=0, per_file_delay_ms=0, max_delay_ms=0)

# ---------------------------------------------------------------------------
# Fake Sandbox
# ---------------------------------------------------------------------------


class FakeSandboxSession:
    """In-memory stand-in for a SandboxSession.

    Files live in ``files`` keyed by absolute path. ``command_results`` maps a
    command to the stdout it produces or to an exception it raises; other
    commands print ``OK``.
    """

    def __init__(self, sandbox_id: str = SANDBOX_ID) -> None:
        self.sandbox_id = sandbox_id
        self.files: dict[str, str] = {}
        self.commands: list[str] = []
        self.command_results: dict[str, str | Exception] = {}
        self.write_file = AsyncMock(side_effect=self._write_file)

    async def run_command(
        self,
        command: str,
        on_stdout: Any = None,
        on_stderr: Any = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.commands.append(command)
        outcome = self.command_results.get(command, "OK\n")
        if isinstance(outcome, Exception):
            raise outcome
        if on_stdout:
            on_stdout(outcome)
        return CommandResult(stdout=outcome, stderr="", exit_code=0)

    async def _write_file(self, path: str, content: str) -> None:
        self.files[path] = content

    async def read_file(self, path: str) -> str:
        if path not in self.files:
            raise FileNotFoundError(f"File not found: {path}")
        return self.files[path]

    async def get_host(self, port: int) -> str:
        return SANDBOX_URL


@pytest.fixture()
def sandbox_session() -> FakeSandboxSession:
    return FakeSandboxSession()


def _make_mock_sandbox_manager(session: FakeSandboxSession) -> MagicMock:
    """Create a mock SandboxManager bound to ``session``.

    Async methods are AsyncMock; callers can override return values or side
    effects per-test.
    """
    mgr = MagicMock()
    mgr.create = AsyncMock(return_value=SandboxHandle(id=session.sandbox_id))
    mgr.connect = AsyncMock(return_value=session)
    mgr.get_host = AsyncMock(return_value=SANDBOX_URL)
    mgr.terminate = AsyncMock()
    mgr.reap_expired = AsyncMock(return_value=0)
    mgr.is_docker_available = MagicMock(return_value=True)
    return mgr


@pytest.fixture()
def mock_sandbox_manager(sandbox_session: FakeSandboxSession) -> MagicMock:
    """Provide a mock SandboxManager for each test."""
    return _make_mock_sandbox_manager(sandbox_session)


# ---------------------------------------------------------------------------
# Steps and Store
# ---------------------------------------------------------------------------


@pytest.fixture()
def step_log() -> InMemoryStepLog:
    return InMemoryStepLog()


@pytest.fixture()
def steps(step_log: InMemoryStepLog) -> StepExecutor:
    """StepExecutor whose sleeps return immediately."""
    return StepExecutor("run_test", log=step_log, sleep=AsyncMock())


@pytest.fixture()
async def store(tmp_path: Any) -> AsyncGenerator[ProjectStore, None]:
    """Initialized ProjectStore backed by a temporary database file."""
    project_store = ProjectStore(str(tmp_path / "data" / "test.db"))
    await project_store.init()
    yield project_store


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_llm_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    finish_reason: str = "stop",
) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else finish_reason,
        metrics=LLMMetrics(model="mock", input_tokens=10, output_tokens=20, latency_ms=100),
    )


def make_tool_call(name: str, args: dict[str, Any], call_id: str = "tc_1") -> ToolCallData:
    """Create a ToolCallData."""
    return ToolCallData(id=call_id, name=name, args=args)


HELLO_MAIN = 'print("Hello from your agent!")\n'

HELLO_SUMMARY = (
    "<task_summary>\n"
    "<title>Hello Agent</title>\n"
    "<response>I built a hello world agent that greets you.</response>\n"
    "main.py prints a greeting. Run it with `python main.py`.\n"
    "</task_summary>"
)


def hello_world_responses() -> list[LLMResponse]:
    """Scripted agent run that writes main.py and then completes."""
    return [
        make_llm_response(
            content="I'll create the agent.",
            tool_calls=[
                make_tool_call(
                    "write_files",
                    {"files": [{"path": "main.py", "content": HELLO_MAIN}]},
                )
            ],
        ),
        make_llm_response(content=HELLO_SUMMARY),
    ]
