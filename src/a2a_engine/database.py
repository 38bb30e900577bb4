"""
SQLite persistence for A2A tasks.

``SqliteTaskStore`` implements the :class:`~a2a_engine.task_store.TaskStore`
contract on top of a local SQLite file so that tasks, their history and
their artifacts survive a restart. Status updates use a conditional UPDATE on
the row's sequence number, which keeps compare-and-set atomic even when
several processes share the database file.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import TypeAdapter

from .a2a.models import (
    Artifact,
    Message,
    Task,
    TaskState,
    TaskStatus,
    create_context_id,
    create_task_id,
    is_terminal,
)
from .errors import AlreadyExists, DuplicateMessage, NotFound
from .task_store import (
    TaskSnapshot,
    TaskStore,
    initial_status,
    merge_artifact,
    require_open,
    stamp_message,
)

logger = logging.getLogger(__name__)

_artifact_list_adapter: TypeAdapter[List[Artifact]] = TypeAdapter(List[Artifact])


class SqliteTaskStore(TaskStore):
    """
    SQLite database for task persistence.

    Uses WAL mode for better concurrency and creates tables as needed.
    Connections are thread-local; writers to one task are serialized by a
    per-task lock.
    """

    def __init__(self, db_path: Union[str, Path] = "a2a_tasks.db"):
        self.db_path = str(db_path)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._task_locks: Dict[str, threading.Lock] = {}
        self._task_locks_guard = threading.Lock()
        self._init_database()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            connection = sqlite3.connect(self.db_path, check_same_thread=False)
            connection.row_factory = sqlite3.Row
            connection.execute("PRAGMA journal_mode=WAL")
            connection.execute("PRAGMA synchronous=NORMAL")
            connection.execute("PRAGMA foreign_keys=ON")
            self._local.connection = connection
            with self._connections_lock:
                self._connections.append(connection)

        return self._local.connection

    def _lock_for(self, task_id: str) -> threading.Lock:
        with self._task_locks_guard:
            lock = self._task_locks.get(task_id)
            if lock is None:
                lock = threading.Lock()
                self._task_locks[task_id] = lock
            return lock

    def _init_database(self) -> None:
        """Initialize database schema."""
        directory = Path(self.db_path).parent
        directory.mkdir(parents=True, exist_ok=True)

        with self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS a2a_tasks (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL UNIQUE,
                    context_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    status_data TEXT NOT NULL,
                    status_sequence INTEGER NOT NULL DEFAULT 0,
                    artifacts_data TEXT NOT NULL DEFAULT '[]',
                    metadata TEXT,
                    terminal_since REAL,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS a2a_task_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL REFERENCES a2a_tasks(task_id) ON DELETE CASCADE,
                    context_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    message_data TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_a2a_tasks_context
                ON a2a_tasks(context_id, state)
            """
            )

            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_a2a_task_messages_unique
                ON a2a_task_messages(context_id, message_id)
            """
            )

            conn.commit()

    def _fetch_row(self, conn: sqlite3.Connection, task_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT * FROM a2a_tasks WHERE task_id = ?", (task_id,)
        ).fetchone()
        if row is None:
            raise NotFound(f"Task {task_id} not found", data={"taskId": task_id})
        return row

    def _row_to_task(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Task:
        messages = conn.execute(
            "SELECT message_data FROM a2a_task_messages WHERE task_id = ? ORDER BY id ASC",
            (row["task_id"],),
        ).fetchall()
        return Task(
            id=row["task_id"],
            contextId=row["context_id"],
            status=TaskStatus.model_validate_json(row["status_data"]),
            history=[Message.model_validate_json(m["message_data"]) for m in messages],
            artifacts=_artifact_list_adapter.validate_json(row["artifacts_data"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )

    def _insert_message(self, conn: sqlite3.Connection, message: Message) -> None:
        conn.execute(
            """
            INSERT INTO a2a_task_messages (task_id, context_id, message_id, message_data)
            VALUES (?, ?, ?, ?)
        """,
            (
                message.taskId,
                message.contextId,
                message.messageId,
                message.model_dump_json(exclude_none=True),
            ),
        )

    def _message_owner(self, conn: sqlite3.Connection, context_id: str, message_id: str) -> Optional[str]:
        row = conn.execute(
            """
            SELECT task_id FROM a2a_task_messages
            WHERE context_id = ? AND message_id = ?
        """,
            (context_id, message_id),
        ).fetchone()
        return row["task_id"] if row else None

    async def create(
        self,
        initial_message: Message,
        *,
        task_id: Optional[str] = None,
        context_id: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> Task:
        task_id = task_id or create_task_id()
        context_id = context_id or initial_message.contextId or create_context_id()
        message = stamp_message(initial_message, task_id, context_id)
        status = initial_status()

        with self._lock_for(task_id):
            conn = self._get_connection()
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO a2a_tasks
                        (task_id, context_id, state, status_data, metadata, created_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """,
                        (
                            task_id,
                            context_id,
                            status.state.value,
                            status.model_dump_json(exclude_none=True),
                            json.dumps(metadata) if metadata else None,
                            datetime.now(timezone.utc).isoformat(),
                        ),
                    )
                    self._insert_message(conn, message)
            except sqlite3.IntegrityError as exc:
                owner = self._message_owner(conn, context_id, message.messageId)
                if owner is not None:
                    raise DuplicateMessage(owner, context_id, message.messageId) from exc
                raise AlreadyExists(
                    f"Task {task_id} already exists", data={"taskId": task_id}
                ) from exc

        logger.debug("Persisted new task", extra={"task_id": task_id, "context_id": context_id})
        return Task(
            id=task_id,
            contextId=context_id,
            status=status,
            history=[message],
            artifacts=[],
            metadata=dict(metadata or {}),
        )

    async def get(self, task_id: str) -> Task:
        return (await self.snapshot(task_id)).task

    async def snapshot(self, task_id: str) -> TaskSnapshot:
        with self._lock_for(task_id):
            conn = self._get_connection()
            row = self._fetch_row(conn, task_id)
            return TaskSnapshot(task=self._row_to_task(conn, row), sequence=row["status_sequence"])

    async def append_history(self, task_id: str, message: Message) -> Task:
        with self._lock_for(task_id):
            conn = self._get_connection()
            row = self._fetch_row(conn, task_id)
            stamped = stamp_message(message, task_id, row["context_id"])
            try:
                with conn:
                    self._insert_message(conn, stamped)
            except sqlite3.IntegrityError as exc:
                owner = self._message_owner(conn, stamped.contextId, stamped.messageId)
                if owner is None:
                    raise
                raise DuplicateMessage(owner, stamped.contextId, stamped.messageId) from exc
            return self._row_to_task(conn, row)

    async def append_artifact(self, task_id: str, artifact: Artifact, append: bool = False) -> Task:
        with self._lock_for(task_id):
            conn = self._get_connection()
            row = self._fetch_row(conn, task_id)
            require_open(self._row_to_task(conn, row))
            artifacts = _artifact_list_adapter.validate_json(row["artifacts_data"])
            merge_artifact(artifacts, artifact, append)
            with conn:
                conn.execute(
                    "UPDATE a2a_tasks SET artifacts_data = ? WHERE task_id = ?",
                    (
                        _artifact_list_adapter.dump_json(artifacts, exclude_none=True).decode(),
                        task_id,
                    ),
                )
            return self._row_to_task(conn, self._fetch_row(conn, task_id))

    async def compare_and_set_status(
        self,
        task_id: str,
        expected: TaskStatus,
        new: TaskStatus,
        *,
        expected_sequence: Optional[int] = None,
    ) -> bool:
        with self._lock_for(task_id):
            conn = self._get_connection()
            row = self._fetch_row(conn, task_id)
            if TaskStatus.model_validate_json(row["status_data"]) != expected:
                return False
            current_sequence = row["status_sequence"]
            if expected_sequence is not None and current_sequence != expected_sequence:
                return False

            with conn:
                cursor = conn.execute(
                    """
                    UPDATE a2a_tasks
                    SET state = ?, status_data = ?, status_sequence = ?, terminal_since = ?
                    WHERE task_id = ? AND status_sequence = ?
                """,
                    (
                        new.state.value,
                        new.model_dump_json(exclude_none=True),
                        current_sequence + 1,
                        time.time() if is_terminal(new.state) else None,
                        task_id,
                        current_sequence,
                    ),
                )
            return cursor.rowcount == 1

    async def find_message(self, context_id: str, message_id: str) -> Optional[str]:
        return self._message_owner(self._get_connection(), context_id, message_id)

    async def list_tasks(
        self,
        context_id: Optional[str] = None,
        state: Optional[TaskState] = None,
    ) -> List[Task]:
        conn = self._get_connection()
        query = "SELECT * FROM a2a_tasks WHERE 1=1"
        params: List[str] = []

        if context_id:
            query += " AND context_id = ?"
            params.append(context_id)

        if state:
            query += " AND state = ?"
            params.append(TaskState(state).value)

        query += " ORDER BY seq ASC"

        rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(conn, row) for row in rows]

    async def delete(self, task_id: str) -> bool:
        with self._lock_for(task_id):
            conn = self._get_connection()
            with conn:
                conn.execute("DELETE FROM a2a_task_messages WHERE task_id = ?", (task_id,))
                cursor = conn.execute("DELETE FROM a2a_tasks WHERE task_id = ?", (task_id,))
        with self._task_locks_guard:
            self._task_locks.pop(task_id, None)
        return cursor.rowcount > 0

    async def terminal_since(self, task_id: str) -> Optional[float]:
        conn = self._get_connection()
        return self._fetch_row(conn, task_id)["terminal_since"]

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for connection in connections:
            connection.close()
        self._local = threading.local()
