"""Tests for models/database.py -- the aiosqlite ProjectStore."""

import pytest

from models.database import ProjectStore, StoreError
from models.schemas import MessageRole, MessageType


async def _project_with_message(
    store: ProjectStore, user_id: str = "user_1"
) -> tuple[dict, dict]:
    project = await store.create_project(user_id=user_id, name="brave-otter")
    message = await store.create_message(
        project_id=project["id"],
        content="code a hello world agent",
        role=MessageRole.USER,
        type=MessageType.RESULT,
    )
    await store.append_project_message(project["id"], message["id"])
    return project, message


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


class TestProjects:
    async def test_create_and_get(self, store: ProjectStore) -> None:
        project = await store.create_project(user_id="user_1", name="brave-otter")

        fetched = await store.get_project(project["id"])

        assert fetched is not None
        assert fetched["name"] == "brave-otter"
        assert fetched["user_id"] == "user_1"
        assert fetched["messages"] == []

    async def test_get_missing(self, store: ProjectStore) -> None:
        assert await store.get_project("missing") is None

    async def test_messages_keep_append_order(self, store: ProjectStore) -> None:
        project, first = await _project_with_message(store)
        second = await store.create_message(
            project["id"], "follow-up", MessageRole.USER, MessageType.RESULT
        )
        await store.append_project_message(project["id"], second["id"])

        fetched = await store.get_project(project["id"])

        assert fetched["messages"] == [first["id"], second["id"]]

    async def test_append_is_idempotent(self, store: ProjectStore) -> None:
        project, message = await _project_with_message(store)
        await store.append_project_message(project["id"], message["id"])

        fetched = await store.get_project(project["id"])
        assert fetched["messages"] == [message["id"]]

    async def test_append_to_missing_project(self, store: ProjectStore) -> None:
        with pytest.raises(StoreError, match="Project not found"):
            await store.append_project_message("missing", "msg")

    async def test_list_newest_first_per_user(self, store: ProjectStore) -> None:
        older = await store.create_project(user_id="user_1", name="calm-river")
        newer = await store.create_project(user_id="user_1", name="swift-falcon")
        await store.create_project(user_id="user_2", name="quiet-meadow")

        projects = await store.list_projects("user_1")

        assert [p["id"] for p in projects] == [newer["id"], older["id"]]


# ---------------------------------------------------------------------------
# Messages and fragments
# ---------------------------------------------------------------------------


class TestMessages:
    async def test_list_newest_first_with_fragment(self, store: ProjectStore) -> None:
        project, user_message = await _project_with_message(store)
        result = await store.create_message(
            project["id"], "I built it.", MessageRole.ASSISTANT, MessageType.RESULT
        )
        fragment = await store.create_fragment(
            message_id=result["id"],
            sandbox_url="http://localhost:49153",
            title="Hello Agent",
            files={"main.py": "print('hi')"},
        )
        await store.attach_fragment(result["id"], fragment["id"])

        messages = await store.list_messages(project["id"])

        assert [m["id"] for m in messages] == [result["id"], user_message["id"]]
        assert messages[0]["role"] == "ASSISTANT"
        assert messages[0]["fragment"]["files"] == {"main.py": "print('hi')"}
        assert messages[0]["fragment"]["title"] == "Hello Agent"
        assert messages[1]["fragment"] is None

    async def test_message_without_attached_fragment(self, store: ProjectStore) -> None:
        project, _ = await _project_with_message(store)
        orphan = await store.create_message(
            project["id"], "done", MessageRole.ASSISTANT, MessageType.RESULT
        )

        messages = await store.list_messages(project["id"])

        assert messages[0]["id"] == orphan["id"]
        assert messages[0]["fragment"] is None

    async def test_one_fragment_per_message(self, store: ProjectStore) -> None:
        _, message = await _project_with_message(store)
        await store.create_fragment(message["id"], "http://h:1", "A", {})

        with pytest.raises(StoreError):
            await store.create_fragment(message["id"], "http://h:2", "B", {})

    async def test_attach_to_missing_message(self, store: ProjectStore) -> None:
        with pytest.raises(StoreError, match="Message not found"):
            await store.attach_fragment("missing", "frag")

    async def test_fragment_owner(self, store: ProjectStore) -> None:
        _, message = await _project_with_message(store, user_id="owner")
        fragment = await store.create_fragment(message["id"], "http://h:1", "A", {"a.py": ""})

        assert await store.get_fragment_owner(fragment["id"]) == "owner"
        assert await store.get_fragment_owner("missing") is None
        assert (await store.get_fragment(fragment["id"]))["files"] == {"a.py": ""}

    async def test_delete_message(self, store: ProjectStore) -> None:
        project, message = await _project_with_message(store)
        fragment = await store.create_fragment(message["id"], "http://h:1", "A", {})
        await store.attach_fragment(message["id"], fragment["id"])

        assert await store.delete_message(message["id"]) is True

        assert await store.get_message(message["id"]) is None
        assert await store.get_fragment(fragment["id"]) is None
        assert (await store.get_project(project["id"]))["messages"] == []
        assert await store.delete_message(message["id"]) is False


# ---------------------------------------------------------------------------
# Step log
# ---------------------------------------------------------------------------


class TestStepLog:
    async def test_append_and_load(self, store: ProjectStore) -> None:
        await store.append_step("run_1", "get-sandbox-id", "sandbox_abc")
        await store.append_step("run_1", "get-sandbox-url", None)
        await store.append_step("run_1", "agent-turn-1", {"content": "hi", "tool_calls": []})
        await store.append_step("run_2", "get-sandbox-id", "sandbox_def")

        assert await store.load_steps("run_1") == {
            "get-sandbox-id": "sandbox_abc",
            "get-sandbox-url": None,
            "agent-turn-1": {"content": "hi", "tool_calls": []},
        }

    async def test_load_unknown_run(self, store: ProjectStore) -> None:
        assert await store.load_steps("nothing") == {}

    async def test_failures_raise_store_error(self, tmp_path) -> None:
        store = ProjectStore(str(tmp_path / "never-initialized.db"))
        with pytest.raises(StoreError):
            await store.load_steps("run_1")
