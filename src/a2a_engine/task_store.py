"""
Task storage for the A2A task engine.

``TaskStore`` is the storage contract used by the state machine and the task
manager. ``InMemoryTaskStore`` keeps tasks in process memory; the SQLite
implementation lives in :mod:`a2a_engine.database`.

Every mutation of one task is serialized by that task's own lock, so the
stores are safe to share between event loops and threads. Callers always
receive deep copies and never alias a stored task.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .a2a.models import (
    Artifact,
    Message,
    Task,
    TaskState,
    TaskStatus,
    create_context_id,
    create_task_id,
    current_timestamp,
    is_terminal,
)
from .errors import AlreadyExists, DuplicateMessage, InvalidParams, NotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskSnapshot:
    """A consistent copy of a task together with its status sequence number."""

    task: Task
    sequence: int


def stamp_message(message: Message, task_id: str, context_id: str) -> Message:
    """Return a copy of ``message`` bound to the given task and context."""
    return message.model_copy(update={"taskId": task_id, "contextId": context_id}, deep=True)


def merge_artifact(artifacts: List[Artifact], artifact: Artifact, append: bool) -> None:
    """Add ``artifact`` to ``artifacts`` in place.

    With ``append`` the parts of an artifact with the same id are extended;
    otherwise a new artifact id is required.
    """
    for index, existing in enumerate(artifacts):
        if existing.artifactId != artifact.artifactId:
            continue
        if not append:
            raise InvalidParams(
                f"Artifact {artifact.artifactId} already exists",
                data={"artifactId": artifact.artifactId},
            )
        artifacts[index] = existing.model_copy(
            update={"parts": list(existing.parts) + list(artifact.parts)},
            deep=True,
        )
        return
    artifacts.append(artifact.model_copy(deep=True))


def require_open(task: Task) -> None:
    """Raise ``InvalidParams`` when ``task`` is terminal and accepts no artifacts."""
    if is_terminal(task.status.state):
        raise InvalidParams(
            f"Task {task.id} is {task.status.state.value} and accepts no artifacts",
            data={"taskId": task.id, "state": task.status.state.value},
        )


def initial_status() -> TaskStatus:
    return TaskStatus(state=TaskState.SUBMITTED, timestamp=current_timestamp())


class TaskStore(ABC):
    """Storage contract for tasks, their history and their artifacts."""

    @abstractmethod
    async def create(
        self,
        initial_message: Message,
        *,
        task_id: Optional[str] = None,
        context_id: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> Task:
        """Create a task in ``submitted`` state.

        Raises ``DuplicateMessage`` when the initial message id was already
        accepted in the context, and ``AlreadyExists`` on a task id collision.
        """

    @abstractmethod
    async def get(self, task_id: str) -> Task:
        """Return a copy of the task; raises ``NotFound``."""

    @abstractmethod
    async def snapshot(self, task_id: str) -> TaskSnapshot:
        """Return the task and its status sequence number read atomically."""

    @abstractmethod
    async def append_history(self, task_id: str, message: Message) -> Task:
        """Append a message to the task history; raises ``DuplicateMessage``."""

    @abstractmethod
    async def append_artifact(self, task_id: str, artifact: Artifact, append: bool = False) -> Task:
        """Append an artifact, or extend an existing one when ``append`` is set.

        Raises ``InvalidParams`` when the task is already terminal.
        """

    @abstractmethod
    async def compare_and_set_status(
        self,
        task_id: str,
        expected: TaskStatus,
        new: TaskStatus,
        *,
        expected_sequence: Optional[int] = None,
    ) -> bool:
        """Atomically replace the status if it still equals ``expected``.

        Returns False, without mutating anything, when the current status (or
        sequence, if given) no longer matches.
        """

    @abstractmethod
    async def find_message(self, context_id: str, message_id: str) -> Optional[str]:
        """Return the id of the task whose history holds this message, if any."""

    @abstractmethod
    async def list_tasks(
        self,
        context_id: Optional[str] = None,
        state: Optional[TaskState] = None,
    ) -> List[Task]:
        """List tasks in creation order with optional filters."""

    @abstractmethod
    async def delete(self, task_id: str) -> bool:
        """Remove a task; returns False when it did not exist."""

    @abstractmethod
    async def terminal_since(self, task_id: str) -> Optional[float]:
        """Epoch seconds at which the task entered a terminal state, if it has."""

    def close(self) -> None:
        """Release store resources."""


@dataclass
class _TaskRecord:
    task: Task
    sequence: int = 0
    terminal_since: Optional[float] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class InMemoryTaskStore(TaskStore):
    """Process-local task store.

    A registry lock guards only the id -> record map and the message index;
    task contents are guarded by the record's own lock, so writers to
    different tasks never contend.
    """

    def __init__(self) -> None:
        self._records: Dict[str, _TaskRecord] = {}
        self._message_index: Dict[Tuple[str, str], str] = {}
        self._registry_lock = threading.Lock()

    def _record(self, task_id: str) -> _TaskRecord:
        with self._registry_lock:
            record = self._records.get(task_id)
        if record is None:
            raise NotFound(f"Task {task_id} not found", data={"taskId": task_id})
        return record

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

        task = Task(
            id=task_id,
            contextId=context_id,
            status=initial_status(),
            history=[message],
            artifacts=[],
            metadata=dict(metadata or {}),
        )

        key = (context_id, message.messageId)
        with self._registry_lock:
            owner = self._message_index.get(key)
            if owner is not None:
                raise DuplicateMessage(owner, context_id, message.messageId)
            if task_id in self._records:
                raise AlreadyExists(f"Task {task_id} already exists", data={"taskId": task_id})
            self._records[task_id] = _TaskRecord(task=task)
            self._message_index[key] = task_id

        logger.debug("Created task", extra={"task_id": task_id, "context_id": context_id})
        return task.model_copy(deep=True)

    async def get(self, task_id: str) -> Task:
        record = self._record(task_id)
        with record.lock:
            return record.task.model_copy(deep=True)

    async def snapshot(self, task_id: str) -> TaskSnapshot:
        record = self._record(task_id)
        with record.lock:
            return TaskSnapshot(task=record.task.model_copy(deep=True), sequence=record.sequence)

    async def append_history(self, task_id: str, message: Message) -> Task:
        record = self._record(task_id)
        with record.lock:
            stamped = stamp_message(message, task_id, record.task.contextId)
            key = (record.task.contextId, stamped.messageId)
            with self._registry_lock:
                owner = self._message_index.get(key)
                if owner is not None:
                    raise DuplicateMessage(owner, record.task.contextId, stamped.messageId)
                self._message_index[key] = task_id
            record.task.history.append(stamped)
            return record.task.model_copy(deep=True)

    async def append_artifact(self, task_id: str, artifact: Artifact, append: bool = False) -> Task:
        record = self._record(task_id)
        with record.lock:
            require_open(record.task)
            merge_artifact(record.task.artifacts, artifact, append)
            return record.task.model_copy(deep=True)

    async def compare_and_set_status(
        self,
        task_id: str,
        expected: TaskStatus,
        new: TaskStatus,
        *,
        expected_sequence: Optional[int] = None,
    ) -> bool:
        record = self._record(task_id)
        with record.lock:
            if record.task.status != expected:
                return False
            if expected_sequence is not None and record.sequence != expected_sequence:
                return False
            record.task.status = new.model_copy(deep=True)
            record.sequence += 1
            if is_terminal(new.state):
                record.terminal_since = time.time()
            return True

    async def find_message(self, context_id: str, message_id: str) -> Optional[str]:
        with self._registry_lock:
            return self._message_index.get((context_id, message_id))

    async def list_tasks(
        self,
        context_id: Optional[str] = None,
        state: Optional[TaskState] = None,
    ) -> List[Task]:
        with self._registry_lock:
            records = list(self._records.values())

        tasks = []
        for record in records:
            with record.lock:
                task = record.task
                if context_id and task.contextId != context_id:
                    continue
                if state and task.status.state != state:
                    continue
                tasks.append(task.model_copy(deep=True))
        return tasks

    async def delete(self, task_id: str) -> bool:
        with self._registry_lock:
            record = self._records.pop(task_id, None)
            if record is None:
                return False
            stale_keys = [key for key, owner in self._message_index.items() if owner == task_id]
            for key in stale_keys:
                del self._message_index[key]
        logger.debug("Deleted task", extra={"task_id": task_id})
        return True

    async def terminal_since(self, task_id: str) -> Optional[float]:
        record = self._record(task_id)
        with record.lock:
            return record.terminal_since
