"""SQLite persistence for projects, messages, fragments and the step log.

This module provides the ProjectStore class backed by aiosqlite. Unlike a
best-effort metrics store, every method here raises ``StoreError`` on
database failures: the workflow must know whether its terminal message was
written.

Tables:
    projects: Project metadata (id, name, owner, timestamps).
    messages: Project messages with role, type and optional fragment.
    project_messages: Ordered message ids of each project.
    fragments: File snapshot + preview URL, at most one per message.
    workflow_steps: Append-only step log keyed by (run_id, name).

Usage:
    >>> from models.database import ProjectStore
    >>> store = ProjectStore("./data/agent_builder.db")
    >>> await store.init()
    >>> project = await store.create_project(user_id="user_1", name="brave-otter")
"""

import json
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.schemas import MessageRole, MessageType

logger = structlog.get_logger(__name__)


class StoreError(Exception):
    """Raised when a store operation fails."""


def _new_id() -> str:
    return uuid.uuid4().hex


def _fragment_from_row(row: aiosqlite.Row, prefix: str = "") -> dict[str, Any]:
    files_json = row[f"{prefix}files"]
    return {
        "id": row[f"{prefix}id"],
        "message_id": row[f"{prefix}message_id"],
        "sandbox_url": row[f"{prefix}sandbox_url"],
        "title": row[f"{prefix}title"],
        "files": json.loads(files_json) if files_json else {},
        "created_at": row[f"{prefix}created_at"],
    }


class ProjectStore:
    """Async SQLite store for projects and workflow state.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the project store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    @asynccontextmanager
    async def _connect(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection, translating database errors into StoreError."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys = ON")
                yield db
        except aiosqlite.Error as e:
            logger.error("store_operation_failed", operation=operation, error=str(e))
            raise StoreError(f"{operation} failed: {e}") from e

    async def init(self) -> None:
        """Create database tables if they do not exist.

        Also creates parent directories for the database file if needed.
        """
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with self._connect("init") as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    role TEXT NOT NULL,
                    type TEXT NOT NULL,
                    fragment_id TEXT,
                    created_at REAL NOT NULL,
                    FOREIGN KEY (project_id) REFERENCES projects(id)
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS project_messages (
                    project_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    PRIMARY KEY (project_id, message_id)
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS fragments (
                    id TEXT PRIMARY KEY,
                    message_id TEXT NOT NULL UNIQUE,
                    sandbox_url TEXT NOT NULL,
                    title TEXT NOT NULL,
                    files TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    FOREIGN KEY (message_id) REFERENCES messages(id)
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS workflow_steps (
                    run_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    result TEXT,
                    created_at REAL NOT NULL,
                    PRIMARY KEY (run_id, name)
                )
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_projects_user
                ON projects(user_id, created_at DESC)
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_project
                ON messages(project_id, created_at DESC)
            """)
            await db.commit()
        logger.info("project_store_initialized", db_path=self.db_path)

    # -----------------------------------------------------------------
    # Projects
    # -----------------------------------------------------------------

    async def create_project(self, user_id: str, name: str) -> dict[str, Any]:
        """Insert a new, empty project."""
        now = time.time()
        project = {
            "id": _new_id(),
            "name": name,
            "user_id": user_id,
            "created_at": now,
            "updated_at": now,
        }
        async with self._connect("create_project") as db:
            await db.execute(
                """
                INSERT INTO projects (id, name, user_id, created_at, updated_at)
                VALUES (:id, :name, :user_id, :created_at, :updated_at)
                """,
                project,
            )
            await db.commit()
        logger.debug("project_created", project_id=project["id"], name=name)
        return {**project, "messages": []}

    async def get_project(self, project_id: str) -> dict[str, Any] | None:
        """Retrieve a project with its ordered message ids, or None."""
        async with self._connect("get_project") as db:
            cursor = await db.execute(
                "SELECT * FROM projects WHERE id = ?", (project_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            cursor = await db.execute(
                """
                SELECT message_id FROM project_messages
                WHERE project_id = ? ORDER BY position
                """,
                (project_id,),
            )
            message_ids = [r["message_id"] for r in await cursor.fetchall()]
        return {**dict(row), "messages": message_ids}

    async def list_projects(self, user_id: str) -> list[dict[str, Any]]:
        """List a user's projects, newest first."""
        async with self._connect("list_projects") as db:
            cursor = await db.execute(
                """
                SELECT * FROM projects WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (user_id,),
            )
            return [dict(row) for row in await cursor.fetchall()]

    # -----------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------

    async def create_message(
        self,
        project_id: str,
        content: str,
        role: MessageRole,
        type: MessageType,
    ) -> dict[str, Any]:
        """Insert a message. It is not part of the project until appended."""
        message = {
            "id": _new_id(),
            "project_id": project_id,
            "content": content,
            "role": MessageRole(role).value,
            "type": MessageType(type).value,
            "fragment_id": None,
            "created_at": time.time(),
        }
        async with self._connect("create_message") as db:
            await db.execute(
                """
                INSERT INTO messages
                    (id, project_id, content, role, type, fragment_id, created_at)
                VALUES
                    (:id, :project_id, :content, :role, :type, :fragment_id, :created_at)
                """,
                message,
            )
            await db.commit()
        logger.debug(
            "message_created",
            message_id=message["id"],
            project_id=project_id,
            role=message["role"],
            type=message["type"],
        )
        return message

    async def append_project_message(self, project_id: str, message_id: str) -> None:
        """Append a message id to the project's ordered message list.

        Raises:
            StoreError: If the project does not exist.
        """
        async with self._connect("append_project_message") as db:
            cursor = await db.execute(
                "UPDATE projects SET updated_at = ? WHERE id = ?",
                (time.time(), project_id),
            )
            if cursor.rowcount == 0:
                raise StoreError(f"Project not found: {project_id}")
            await db.execute(
                """
                INSERT OR IGNORE INTO project_messages (project_id, message_id, position)
                VALUES (
                    ?, ?,
                    (SELECT COALESCE(MAX(position), -1) + 1
                     FROM project_messages WHERE project_id = ?)
                )
                """,
                (project_id, message_id, project_id),
            )
            await db.commit()

    async def get_message(self, message_id: str) -> dict[str, Any] | None:
        async with self._connect("get_message") as db:
            cursor = await db.execute(
                "SELECT * FROM messages WHERE id = ?", (message_id,)
            )
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def list_messages(self, project_id: str) -> list[dict[str, Any]]:
        """List a project's messages, newest first, with fragments embedded."""
        async with self._connect("list_messages") as db:
            cursor = await db.execute(
                """
                SELECT m.*,
                       f.id AS f_id, f.message_id AS f_message_id,
                       f.sandbox_url AS f_sandbox_url, f.title AS f_title,
                       f.files AS f_files, f.created_at AS f_created_at
                FROM messages m
                LEFT JOIN fragments f ON f.id = m.fragment_id
                WHERE m.project_id = ?
                ORDER BY m.created_at DESC, m.rowid DESC
                """,
                (project_id,),
            )
            rows = await cursor.fetchall()

        messages: list[dict[str, Any]] = []
        for row in rows:
            messages.append({
                "id": row["id"],
                "project_id": row["project_id"],
                "content": row["content"],
                "role": row["role"],
                "type": row["type"],
                "fragment_id": row["fragment_id"],
                "created_at": row["created_at"],
                "fragment": _fragment_from_row(row, "f_") if row["f_id"] else None,
            })
        return messages

    async def delete_message(self, message_id: str) -> bool:
        """Delete a message with its fragment and project reference.

        Returns:
            True if a message was deleted.
        """
        async with self._connect("delete_message") as db:
            await db.execute("DELETE FROM fragments WHERE message_id = ?", (message_id,))
            await db.execute(
                "DELETE FROM project_messages WHERE message_id = ?", (message_id,)
            )
            cursor = await db.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            deleted = cursor.rowcount > 0
            await db.commit()
        logger.debug("message_deleted", message_id=message_id, deleted=deleted)
        return deleted

    # -----------------------------------------------------------------
    # Fragments
    # -----------------------------------------------------------------

    async def create_fragment(
        self,
        message_id: str,
        sandbox_url: str,
        title: str,
        files: dict[str, str],
    ) -> dict[str, Any]:
        """Insert the fragment of a message.

        Raises:
            StoreError: If the message already has a fragment.
        """
        fragment = {
            "id": _new_id(),
            "message_id": message_id,
            "sandbox_url": sandbox_url,
            "title": title,
            "files": files,
            "created_at": time.time(),
        }
        async with self._connect("create_fragment") as db:
            await db.execute(
                """
                INSERT INTO fragments
                    (id, message_id, sandbox_url, title, files, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    fragment["id"],
                    message_id,
                    sandbox_url,
                    title,
                    json.dumps(files, ensure_ascii=False),
                    fragment["created_at"],
                ),
            )
            await db.commit()
        logger.debug("fragment_created", fragment_id=fragment["id"], message_id=message_id)
        return fragment

    async def attach_fragment(self, message_id: str, fragment_id: str) -> None:
        """Point a message at its fragment.

        Raises:
            StoreError: If the message does not exist.
        """
        async with self._connect("attach_fragment") as db:
            cursor = await db.execute(
                "UPDATE messages SET fragment_id = ? WHERE id = ?",
                (fragment_id, message_id),
            )
            if cursor.rowcount == 0:
                raise StoreError(f"Message not found: {message_id}")
            await db.commit()

    async def get_fragment(self, fragment_id: str) -> dict[str, Any] | None:
        async with self._connect("get_fragment") as db:
            cursor = await db.execute(
                "SELECT * FROM fragments WHERE id = ?", (fragment_id,)
            )
            row = await cursor.fetchone()
        return _fragment_from_row(row) if row else None

    async def get_fragment_owner(self, fragment_id: str) -> str | None:
        """Return the user id owning the fragment's project, or None."""
        async with self._connect("get_fragment_owner") as db:
            cursor = await db.execute(
                """
                SELECT p.user_id FROM fragments f
                JOIN messages m ON m.id = f.message_id
                JOIN projects p ON p.id = m.project_id
                WHERE f.id = ?
                """,
                (fragment_id,),
            )
            row = await cursor.fetchone()
        return row["user_id"] if row else None

    # -----------------------------------------------------------------
    # Step log
    # -----------------------------------------------------------------

    async def load_steps(self, run_id: str) -> dict[str, Any]:
        """Recorded step results of a run, keyed by step name."""
        async with self._connect("load_steps") as db:
            cursor = await db.execute(
                "SELECT name, result FROM workflow_steps WHERE run_id = ?",
                (run_id,),
            )
            rows = await cursor.fetchall()
        return {
            row["name"]: json.loads(row["result"]) if row["result"] is not None else None
            for row in rows
        }

    async def append_step(self, run_id: str, name: str, result: Any) -> None:
        """Record the result of a completed step."""
        async with self._connect("append_step") as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO workflow_steps (run_id, name, result, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (run_id, name, json.dumps(result, ensure_ascii=False), time.time()),
            )
            await db.commit()
