"""Tests for workflow.py -- end-to-end runs against fakes.

The sandbox manager is mocked and the LLM is scripted; the store is a real
SQLite database in a temporary directory.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from agents.utils import MockLLMClient
from cache import ResponseCache
from models.database import ProjectStore, StoreError
from models.schemas import MessageType, WorkflowRequest
from persistence import GENERIC_ERROR_MESSAGE, QUOTA_ERROR_MESSAGE
from retry import QuotaRetryController
from sandbox.manager import ProvisionError, SandboxConnectionError, SandboxHandle
from tests.conftest import (
    HELLO_MAIN,
    NO_PACING,
    SANDBOX_ID,
    SANDBOX_URL,
    hello_world_responses,
    make_llm_response,
)
from workflow import CodeAgentWorkflow

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_workflow(
    store: ProjectStore,
    sandbox_manager: MagicMock,
    llm: MockLLMClient,
    max_iterations: int = 10,
    max_retries: int = 5,
) -> CodeAgentWorkflow:
    return CodeAgentWorkflow(
        store=store,
        sandbox_manager=sandbox_manager,
        llm_client=llm,
        cache=ResponseCache(),
        retry=QuotaRetryController(
            max_retries=max_retries, default_delay_ms=10, base_delay_ms=10
        ),
        pacing=NO_PACING,
        sleep=AsyncMock(),
        initial_stagger_ms=0,
        max_iterations=max_iterations,
    )


@pytest.fixture()
async def request_(store: ProjectStore) -> WorkflowRequest:
    project = await store.create_project(user_id="user_1", name="brave-otter")
    return WorkflowRequest(raw_prompt="code a hello world agent", project_id=project["id"])


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------


class TestWorkflowSuccess:
    async def test_hello_world_end_to_end(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        workflow = _make_workflow(
            store, mock_sandbox_manager, MockLLMClient(responses=hello_world_responses())
        )

        outcome = await workflow.run(request_)

        assert outcome.success is True
        assert outcome.title == "Hello Agent"
        assert outcome.files == {"main.py": HELLO_MAIN}
        assert outcome.url == SANDBOX_URL
        assert outcome.sandbox_id == SANDBOX_ID

        messages = await store.list_messages(request_.project_id)
        assert len(messages) == 1
        assert messages[0]["type"] == MessageType.RESULT
        assert messages[0]["fragment"]["title"] == "Hello Agent"
        assert messages[0]["fragment"]["files"] == {"main.py": HELLO_MAIN}
        mock_sandbox_manager.terminate.assert_not_awaited()

    async def test_public_dict_uses_sandbox_id_alias(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        workflow = _make_workflow(
            store, mock_sandbox_manager, MockLLMClient(responses=hello_world_responses())
        )

        public = (await workflow.run(request_)).to_public_dict()

        assert public["sandboxId"] == SANDBOX_ID
        assert set(public) == {"url", "title", "files", "summary", "sandboxId", "success"}

    async def test_cache_hit_skips_everything(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        llm = MockLLMClient(responses=hello_world_responses())
        workflow = _make_workflow(store, mock_sandbox_manager, llm)

        first = await workflow.run(request_)
        second = await workflow.run(
            WorkflowRequest(
                raw_prompt="code a  hello world agent\n", project_id=request_.project_id
            )
        )

        assert second == first
        assert len(llm.call_history) == 2
        mock_sandbox_manager.create.assert_awaited_once()
        assert len(await store.list_messages(request_.project_id)) == 1

    async def test_unreachable_url_means_no_fragment(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        mock_sandbox_manager.get_host.side_effect = SandboxConnectionError("no port")
        workflow = _make_workflow(
            store, mock_sandbox_manager, MockLLMClient(responses=hello_world_responses())
        )

        outcome = await workflow.run(request_)

        assert outcome.success is True
        assert outcome.url is None
        messages = await store.list_messages(request_.project_id)
        assert len(messages) == 1
        assert messages[0]["type"] == MessageType.RESULT
        assert messages[0]["fragment"] is None

    async def test_quota_error_is_retried(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        first_turn, summary_turn = hello_world_responses()
        llm = MockLLMClient(
            responses=[first_turn, Exception("429 RESOURCE_EXHAUSTED"), summary_turn]
        )
        workflow = _make_workflow(store, mock_sandbox_manager, llm)

        outcome = await workflow.run(request_)

        assert outcome.success is True
        assert outcome.files == {"main.py": HELLO_MAIN}
        mock_sandbox_manager.create.assert_awaited_once()


# ---------------------------------------------------------------------------
# Failure path
# ---------------------------------------------------------------------------


class TestWorkflowFailure:
    async def test_provisioning_failure(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        mock_sandbox_manager.create.side_effect = ProvisionError("image not found")
        llm = MockLLMClient(responses=hello_world_responses())
        workflow = _make_workflow(store, mock_sandbox_manager, llm)

        outcome = await workflow.run(request_)

        assert outcome.success is False
        assert outcome.title == "Error"
        assert outcome.message == GENERIC_ERROR_MESSAGE
        messages = await store.list_messages(request_.project_id)
        assert len(messages) == 1
        assert messages[0]["type"] == MessageType.ERROR
        assert messages[0]["fragment"] is None
        assert llm.call_history == []
        mock_sandbox_manager.terminate.assert_not_awaited()

    async def test_failure_is_not_cached(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        mock_sandbox_manager.create.side_effect = [
            ProvisionError("daemon busy"),
            SandboxHandle(id=SANDBOX_ID),
        ]
        workflow = _make_workflow(
            store, mock_sandbox_manager, MockLLMClient(responses=hello_world_responses())
        )

        assert (await workflow.run(request_)).success is False
        assert (await workflow.run(request_)).success is True

    async def test_incomplete_run_terminates_sandbox(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        llm = MockLLMClient(responses=[make_llm_response(content="Working on it...")])
        workflow = _make_workflow(store, mock_sandbox_manager, llm, max_iterations=1)

        outcome = await workflow.run(request_)

        assert outcome.success is False
        assert outcome.message == GENERIC_ERROR_MESSAGE
        mock_sandbox_manager.terminate.assert_awaited_once_with(SandboxHandle(id=SANDBOX_ID))
        messages = await store.list_messages(request_.project_id)
        assert [m["type"] for m in messages] == [MessageType.ERROR]

    async def test_quota_exhaustion(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        llm = MockLLMClient(
            responses=[Exception("RESOURCE_EXHAUSTED"), Exception("RESOURCE_EXHAUSTED")]
        )
        workflow = _make_workflow(store, mock_sandbox_manager, llm, max_retries=1)

        outcome = await workflow.run(request_)

        assert outcome.success is False
        assert outcome.message == QUOTA_ERROR_MESSAGE
        messages = await store.list_messages(request_.project_id)
        assert len(messages) == 1
        assert messages[0]["content"] == QUOTA_ERROR_MESSAGE
        mock_sandbox_manager.terminate.assert_awaited_once()

    async def test_fragment_failure_writes_no_second_message(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        store.create_fragment = AsyncMock(side_effect=StoreError("disk full"))
        workflow = _make_workflow(
            store, mock_sandbox_manager, MockLLMClient(responses=hello_world_responses())
        )

        outcome = await workflow.run(request_)

        assert outcome.success is False
        messages = await store.list_messages(request_.project_id)
        assert len(messages) == 1
        assert messages[0]["type"] == MessageType.RESULT
        assert messages[0]["fragment"] is None


    async def test_append_failure_writes_no_second_message(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        store.append_project_message = AsyncMock(side_effect=StoreError("database is locked"))
        workflow = _make_workflow(
            store, mock_sandbox_manager, MockLLMClient(responses=hello_world_responses())
        )

        outcome = await workflow.run(request_)

        assert outcome.success is False
        messages = await store.list_messages(request_.project_id)
        assert [m["type"] for m in messages] == [MessageType.RESULT]


# ---------------------------------------------------------------------------
# Background dispatch
# ---------------------------------------------------------------------------


class TestWorkflowDispatch:
    async def test_submit_and_wait(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        workflow = _make_workflow(
            store, mock_sandbox_manager, MockLLMClient(responses=hello_world_responses())
        )

        task = workflow.submit(request_, run_id="run_abc")
        outcomes = await workflow.wait_all()

        assert task.done()
        assert [o.title for o in outcomes] == ["Hello Agent"]
        assert workflow.pending == 0
        assert "get-sandbox-id" in await store.load_steps("run_abc")

    async def test_wait_all_without_tasks(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
    ) -> None:
        workflow = _make_workflow(store, mock_sandbox_manager, MockLLMClient())
        assert await workflow.wait_all() == []

    async def test_cancel_before_sandbox_records_error(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        started = asyncio.Event()

        async def hang() -> SandboxHandle:
            started.set()
            await asyncio.Event().wait()
            return SandboxHandle(id=SANDBOX_ID)

        mock_sandbox_manager.create = AsyncMock(side_effect=hang)
        workflow = _make_workflow(store, mock_sandbox_manager, MockLLMClient())

        task = workflow.submit(request_)
        await started.wait()
        await workflow.cancel_all()

        assert task.cancelled()
        messages = await store.list_messages(request_.project_id)
        assert [m["type"] for m in messages] == [MessageType.ERROR]
        assert messages[0]["content"] == GENERIC_ERROR_MESSAGE
        mock_sandbox_manager.terminate.assert_not_awaited()

    async def test_cancel_after_sandbox_terminates_it(
        self,
        store: ProjectStore,
        mock_sandbox_manager: MagicMock,
        request_: WorkflowRequest,
    ) -> None:
        started = asyncio.Event()

        async def hang(handle: SandboxHandle, port: int) -> str:
            started.set()
            await asyncio.Event().wait()
            return SANDBOX_URL

        mock_sandbox_manager.get_host = AsyncMock(side_effect=hang)
        workflow = _make_workflow(
            store, mock_sandbox_manager, MockLLMClient(responses=hello_world_responses())
        )

        task = workflow.submit(request_)
        await started.wait()
        await workflow.cancel_all()

        assert task.cancelled()
        assert workflow.pending == 0
        mock_sandbox_manager.terminate.assert_awaited_once_with(SandboxHandle(id=SANDBOX_ID))
        messages = await store.list_messages(request_.project_id)
        assert [m["type"] for m in messages] == [MessageType.ERROR]
