"""Task Store: SQLite-backed record store for boards, tasks, comments and sessions.

This is the collaborator the session lifecycle components talk to: record
lookup by ID, filtered queries, creates and updates with server-assigned
timestamps, and after-create hooks for comments. It is the only module
that speaks SQL.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Awaitable, Callable

import aiosqlite

from handback.errors import StoreError
from handback.models import (
    AgentSession,
    AgentTool,
    AuthorType,
    Board,
    Column,
    Comment,
    RefType,
    ResumeMode,
    SessionRecord,
    SessionStatus,
    Task,
    extract_mentions,
)

logger = logging.getLogger(__name__)

CommentHook = Callable[[Comment], Awaitable[None]]

_ID_ALPHABET = string.ascii_lowercase + string.digits
_ID_LENGTH = 15

SCHEMA = """
CREATE TABLE IF NOT EXISTS boards (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    prefix TEXT NOT NULL UNIQUE,
    resume_mode TEXT NOT NULL DEFAULT 'command',
    created TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    board TEXT REFERENCES boards(id) ON DELETE SET NULL,
    seq INTEGER NOT NULL DEFAULT 0,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    priority TEXT NOT NULL DEFAULT 'medium',
    "column" TEXT NOT NULL DEFAULT 'backlog',
    agent_session TEXT,
    history TEXT NOT NULL DEFAULT '[]',
    created TEXT NOT NULL,
    updated TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS comments (
    id TEXT PRIMARY KEY,
    task TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    author_type TEXT NOT NULL DEFAULT 'human',
    author_id TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created TEXT NOT NULL
);

-- Session history: one row per linking episode, never deleted except by cascade
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    task TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    tool TEXT NOT NULL,
    external_ref TEXT NOT NULL,
    ref_type TEXT NOT NULL DEFAULT 'uuid',
    working_dir TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    created TEXT NOT NULL,
    ended_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_board_seq ON tasks(board, seq);
CREATE INDEX IF NOT EXISTS idx_comments_task_created ON comments(task, created);
CREATE INDEX IF NOT EXISTS idx_sessions_task ON sessions(task, status);
"""


def _new_id() -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_LENGTH))


class TaskStore:
    """SQLite-backed record store with async access."""

    def __init__(self, db_path: str, default_resume_mode: ResumeMode = ResumeMode.COMMAND):
        self.db_path = db_path
        self.default_resume_mode = default_resume_mode
        self._db: aiosqlite.Connection | None = None
        self._comment_hooks: list[CommentHook] = []
        # Serializes writes on the shared connection; explicit transactions need it
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Task store initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized; call initialize() first")
        return self._db

    async def _fetchall(self, operation: str, query: str, params: tuple = ()) -> list:
        try:
            cursor = await self.db.execute(query, params)
            return list(await cursor.fetchall())
        except aiosqlite.Error as exc:
            raise StoreError(operation, exc) from exc

    async def _fetchone(self, operation: str, query: str, params: tuple = ()):
        try:
            cursor = await self.db.execute(query, params)
            return await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreError(operation, exc) from exc

    async def _write(self, operation: str, query: str, params: tuple = ()) -> int:
        try:
            async with self._write_lock:
                cursor = await self.db.execute(query, params)
                await self.db.commit()
                return cursor.rowcount
        except aiosqlite.Error as exc:
            raise StoreError(operation, exc) from exc

    # ── Hooks ────────────────────────────────────────────────────────────

    def on_comment_created(self, hook: CommentHook) -> None:
        """Register a coroutine to run after a new comment is committed."""
        self._comment_hooks.append(hook)

    # ── Boards ───────────────────────────────────────────────────────────

    async def create_board(
        self, name: str, prefix: str, resume_mode: ResumeMode | None = None
    ) -> Board:
        """Insert a new board. The prefix is upper-cased and must be unique."""
        prefix = prefix.strip().upper()
        if not prefix or len(prefix) > 10 or not prefix.isalnum():
            raise ValueError("prefix must be 1-10 alphanumeric characters")
        name = name.strip()
        if not name:
            raise ValueError("name is required")

        existing = await self.get_board_by_prefix(prefix)
        if existing is not None:
            raise ValueError(f"prefix '{prefix}' is already in use by board '{existing.name}'")

        board = Board(
            id=_new_id(),
            name=name,
            prefix=prefix,
            resume_mode=resume_mode or self.default_resume_mode,
        )
        await self._write(
            "create_board",
            "INSERT INTO boards (id, name, prefix, resume_mode, created) VALUES (?, ?, ?, ?, ?)",
            (
                board.id,
                board.name,
                board.prefix,
                board.resume_mode.value,
                board.created.isoformat(timespec="microseconds"),
            ),
        )
        logger.info(
            "Created board: %s (%s, resume_mode=%s)",
            board.name,
            board.prefix,
            board.resume_mode.value,
        )
        return board

    async def get_board(self, board_id: str) -> Board | None:
        row = await self._fetchone("get_board", "SELECT * FROM boards WHERE id = ?", (board_id,))
        return self._row_to_board(row) if row else None

    async def get_board_by_prefix(self, prefix: str) -> Board | None:
        row = await self._fetchone(
            "get_board_by_prefix", "SELECT * FROM boards WHERE prefix = ?", (prefix.upper(),)
        )
        return self._row_to_board(row) if row else None

    async def list_boards(self) -> list[Board]:
        rows = await self._fetchall("list_boards", "SELECT * FROM boards ORDER BY created")
        return [self._row_to_board(r) for r in rows]

    async def update_board(self, board: Board) -> None:
        await self._write(
            "update_board",
            "UPDATE boards SET name = ?, prefix = ?, resume_mode = ? WHERE id = ?",
            (board.name, board.prefix, board.resume_mode.value, board.id),
        )

    # ── Tasks ────────────────────────────────────────────────────────────

    async def create_task(
        self,
        title: str,
        board_id: str | None = None,
        *,
        description: str = "",
        priority: str = "medium",
        column: Column = Column.BACKLOG,
        task_id: str | None = None,
    ) -> Task:
        """Insert a new task, assigning the next sequence number on its board."""
        seq = 0
        if board_id is not None:
            row = await self._fetchone(
                "create_task",
                "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM tasks WHERE board = ?",
                (board_id,),
            )
            seq = row["max_seq"] + 1

        now = datetime.now(timezone.utc)
        task = Task(
            id=task_id or _new_id(),
            board=board_id,
            seq=seq,
            title=title,
            description=description,
            priority=priority,
            column=column,
            created=now,
            updated=now,
        )
        await self._write(
            "create_task",
            """INSERT INTO tasks
               (id, board, seq, title, description, priority, "column",
                agent_session, history, created, updated)
               VALUES (?, ?, ?, ?, ?, ?, ?, NULL, '[]', ?, ?)""",
            (
                task.id,
                task.board,
                task.seq,
                task.title,
                task.description,
                task.priority,
                task.column.value,
                now.isoformat(timespec="microseconds"),
                now.isoformat(timespec="microseconds"),
            ),
        )
        logger.info("Created task: %s (board=%s, seq=%d)", task.id, board_id, seq)
        return task

    async def get_task(self, task_id: str) -> Task | None:
        """Get a task by its exact primary key."""
        row = await self._fetchone("get_task", "SELECT * FROM tasks WHERE id = ?", (task_id,))
        return self._row_to_task(row) if row else None

    async def get_task_by_display_id(self, prefix: str, seq: int) -> Task | None:
        row = await self._fetchone(
            "get_task_by_display_id",
            """SELECT t.* FROM tasks t JOIN boards b ON t.board = b.id
               WHERE b.prefix = ? AND t.seq = ?""",
            (prefix.upper(), seq),
        )
        return self._row_to_task(row) if row else None

    async def find_tasks_by_id_prefix(self, prefix: str) -> list[Task]:
        rows = await self._fetchall(
            "find_tasks_by_id_prefix",
            "SELECT * FROM tasks WHERE substr(id, 1, ?) = ? ORDER BY created, rowid",
            (len(prefix), prefix),
        )
        return [self._row_to_task(r) for r in rows]

    async def find_tasks_by_title(self, fragment: str) -> list[Task]:
        """Case-insensitive substring match on task titles.

        Matching is done with ``str.casefold`` rather than SQLite's ``LOWER``,
        which only folds ASCII.
        """
        needle = fragment.casefold()
        rows = await self._fetchall(
            "find_tasks_by_title", "SELECT * FROM tasks ORDER BY created, rowid"
        )
        return [self._row_to_task(r) for r in rows if needle in r["title"].casefold()]

    async def update_task(self, task: Task) -> None:
        task.updated = datetime.now(timezone.utc)
        await self._write(
            "update_task",
            """UPDATE tasks SET
               board=?, seq=?, title=?, description=?, priority=?, "column"=?,
               agent_session=?, history=?, updated=?
               WHERE id=?""",
            (
                task.board,
                task.seq,
                task.title,
                task.description,
                task.priority,
                task.column.value,
                task.agent_session.model_dump_json() if task.agent_session else None,
                json.dumps(task.history),
                task.updated.isoformat(timespec="microseconds"),
                task.id,
            ),
        )

    async def claim_resume(
        self,
        task_id: str,
        action: str,
        actor: str,
        metadata: dict | None = None,
    ) -> Task | None:
        """Record a resume on a blocked task unless one was already recorded.

        The read and the history write happen in one ``BEGIN IMMEDIATE``
        transaction, so stores on other connections to the same database
        file serialize here. Returns the updated task, or None when the task
        is gone, no longer in need_input, has no linked session, or was
        already resumed since it was last blocked.
        """
        async with self._write_lock:
            try:
                await self.db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await self.db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
                    row = await cursor.fetchone()
                    task = self._row_to_task(row) if row else None
                    if (
                        task is None
                        or task.column != Column.NEED_INPUT
                        or task.agent_session is None
                        or task.resumed_since_block
                    ):
                        await self.db.rollback()
                        return None

                    task.add_history(action, actor, metadata=metadata)
                    task.updated = datetime.now(timezone.utc)
                    await self.db.execute(
                        "UPDATE tasks SET history = ?, updated = ? WHERE id = ?",
                        (
                            json.dumps(task.history),
                            task.updated.isoformat(timespec="microseconds"),
                            task.id,
                        ),
                    )
                    await self.db.commit()
                except BaseException:
                    await self.db.rollback()
                    raise
            except aiosqlite.Error as exc:
                raise StoreError("claim_resume", exc) from exc
        logger.debug("Claimed resume of task %s (%s)", task_id, action)
        return task

    async def delete_task(self, task_id: str) -> None:
        """Delete a task; its comments and session records go with it."""
        await self._write("delete_task", "DELETE FROM tasks WHERE id = ?", (task_id,))
        logger.info("Deleted task: %s", task_id)

    # ── Comments ─────────────────────────────────────────────────────────

    async def create_comment(
        self,
        task_id: str,
        content: str,
        author_type: AuthorType = AuthorType.HUMAN,
        author_id: str | None = None,
        metadata: dict | None = None,
    ) -> Comment:
        """Append a comment to a task's thread, then run after-create hooks.

        Hook failures are logged, never raised: the comment is already
        committed and the caller's write must not appear to fail.
        """
        meta = dict(metadata or {})
        meta.setdefault("mentions", extract_mentions(content))
        comment = Comment(
            id=_new_id(),
            task=task_id,
            content=content,
            author_type=author_type,
            author_id=author_id or None,
            metadata=meta,
        )
        await self._write(
            "create_comment",
            """INSERT INTO comments (id, task, content, author_type, author_id, metadata, created)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                comment.id,
                comment.task,
                comment.content,
                comment.author_type.value,
                comment.author_id,
                json.dumps(comment.metadata),
                comment.created.isoformat(timespec="microseconds"),
            ),
        )
        logger.debug("Created comment %s on task %s", comment.id, task_id)

        for hook in self._comment_hooks:
            try:
                await hook(comment)
            except Exception:
                logger.exception("Comment hook failed for comment %s", comment.id)
        return comment

    async def get_comment(self, comment_id: str) -> Comment | None:
        row = await self._fetchone(
            "get_comment", "SELECT * FROM comments WHERE id = ?", (comment_id,)
        )
        return self._row_to_comment(row) if row else None

    async def list_comments(self, task_id: str, limit: int | None = None) -> list[Comment]:
        """Comments for a task, oldest first; ties keep insertion order.

        With ``limit``, only the most recent ``limit`` comments are returned.
        """
        if limit is None:
            rows = await self._fetchall(
                "list_comments",
                "SELECT * FROM comments WHERE task = ? ORDER BY created ASC, rowid ASC",
                (task_id,),
            )
        else:
            rows = await self._fetchall(
                "list_comments",
                "SELECT * FROM comments WHERE task = ? ORDER BY created DESC, rowid DESC LIMIT ?",
                (task_id, limit),
            )
            rows.reverse()
        return [self._row_to_comment(r) for r in rows]

    # ── Session History ──────────────────────────────────────────────────

    async def create_session_record(
        self,
        task_id: str,
        tool: AgentTool,
        external_ref: str,
        ref_type: RefType,
        working_dir: str,
        status: SessionStatus = SessionStatus.ACTIVE,
    ) -> SessionRecord:
        record = SessionRecord(
            id=_new_id(),
            task=task_id,
            tool=tool,
            external_ref=external_ref,
            ref_type=ref_type,
            working_dir=working_dir,
            status=status,
        )
        await self._write(
            "create_session_record",
            """INSERT INTO sessions
               (id, task, tool, external_ref, ref_type, working_dir, status, created, ended_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL)""",
            (
                record.id,
                record.task,
                record.tool.value,
                record.external_ref,
                record.ref_type.value,
                record.working_dir,
                record.status.value,
                record.created.isoformat(timespec="microseconds"),
            ),
        )
        return record

    async def update_session_record(self, record: SessionRecord) -> None:
        await self._write(
            "update_session_record",
            "UPDATE sessions SET status = ?, ended_at = ? WHERE id = ?",
            (
                record.status.value,
                record.ended_at.isoformat(timespec="microseconds") if record.ended_at else None,
                record.id,
            ),
        )

    async def list_session_records(self, task_id: str) -> list[SessionRecord]:
        """All session records for a task, in creation order."""
        rows = await self._fetchall(
            "list_session_records",
            "SELECT * FROM sessions WHERE task = ? ORDER BY created ASC, rowid ASC",
            (task_id,),
        )
        return [self._row_to_session(r) for r in rows]

    async def latest_open_session_record(
        self, task_id: str, external_ref: str | None = None
    ) -> SessionRecord | None:
        """Most recent active or paused record, optionally for one external ref."""
        query = "SELECT * FROM sessions WHERE task = ? AND status IN ('active', 'paused')"
        params: tuple = (task_id,)
        if external_ref is not None:
            query += " AND external_ref = ?"
            params = (task_id, external_ref)
        query += " ORDER BY created DESC, rowid DESC LIMIT 1"
        row = await self._fetchone("latest_open_session_record", query, params)
        return self._row_to_session(row) if row else None

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_board(row: aiosqlite.Row) -> Board:
        return Board(
            id=row["id"],
            name=row["name"],
            prefix=row["prefix"],
            resume_mode=ResumeMode(row["resume_mode"]),
            created=datetime.fromisoformat(row["created"]),
        )

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> Task:
        return Task(
            id=row["id"],
            board=row["board"],
            seq=row["seq"],
            title=row["title"],
            description=row["description"],
            priority=row["priority"],
            column=Column(row["column"]),
            agent_session=AgentSession.model_validate_json(row["agent_session"])
            if row["agent_session"]
            else None,
            history=json.loads(row["history"]),
            created=datetime.fromisoformat(row["created"]),
            updated=datetime.fromisoformat(row["updated"]),
        )

    @staticmethod
    def _row_to_comment(row: aiosqlite.Row) -> Comment:
        return Comment(
            id=row["id"],
            task=row["task"],
            content=row["content"],
            author_type=AuthorType(row["author_type"]),
            author_id=row["author_id"],
            metadata=json.loads(row["metadata"]),
            created=datetime.fromisoformat(row["created"]),
        )

    @staticmethod
    def _row_to_session(row: aiosqlite.Row) -> SessionRecord:
        return SessionRecord(
            id=row["id"],
            task=row["task"],
            tool=AgentTool(row["tool"]),
            external_ref=row["external_ref"],
            ref_type=RefType(row["ref_type"]),
            working_dir=row["working_dir"],
            status=SessionStatus(row["status"]),
            created=datetime.fromisoformat(row["created"]),
            ended_at=datetime.fromisoformat(row["ended_at"]) if row["ended_at"] else None,
        )
