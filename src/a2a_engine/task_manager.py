"""
A2A Task Manager

Task lifecycle management that ties the store, the state machine, the
subscription hub and the notification dispatcher together. Every applied
status change is fanned out to live streams and to push notification
configurations; agent work runs in background asyncio tasks through an
``AgentExecutor``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Set, Union

from .a2a.models import (
    INTERRUPTED_STATES,
    Artifact,
    Message,
    Part,
    Task,
    TaskArtifactUpdateEvent,
    TaskState,
    TextPart,
    create_message_id,
    generate_id,
    is_terminal,
)
from .errors import IllegalTransition, NotFound, SubscriberOverflow, TaskStreamClosed
from .models import CancelOutcome, StatusChanged
from .notification_dispatcher import NotificationDispatcher
from .state_machine import StateMachine
from .subscription_hub import Subscriber, SubscriptionHub
from .task_store import TaskStore

logger = logging.getLogger(__name__)

PartsLike = Union[str, Sequence[Part]]


def _to_parts(content: PartsLike) -> List[Part]:
    if isinstance(content, str):
        return [TextPart(text=content)]
    return list(content)


class AgentExecutor(ABC):
    """The agent side of a task: turns incoming messages into progress."""

    @abstractmethod
    async def execute(self, updater: "TaskUpdater", message: Message) -> None:
        """Handle ``message`` for the task behind ``updater``."""

    async def cancel(self, updater: "TaskUpdater") -> None:
        """Called after the task was canceled; running work is cancelled separately."""


class TaskUpdater:
    """Convenience wrapper an executor uses to report progress on one task."""

    def __init__(self, manager: "TaskManager", task_id: str, context_id: str):
        self.manager = manager
        self.task_id = task_id
        self.context_id = context_id

    def new_agent_message(self, content: PartsLike) -> Message:
        return Message(
            role="agent",
            parts=_to_parts(content),
            messageId=create_message_id(),
            taskId=self.task_id,
            contextId=self.context_id,
        )

    def _status_message(self, content: Optional[PartsLike]) -> Optional[Message]:
        if content is None:
            return None
        if isinstance(content, Message):
            return content
        return self.new_agent_message(content)

    async def update_status(
        self, state: TaskState, content: Optional[PartsLike] = None
    ) -> StatusChanged:
        return await self.manager.transition(self.task_id, state, self._status_message(content))

    async def start_work(self, content: Optional[PartsLike] = None) -> StatusChanged:
        return await self.update_status(TaskState.WORKING, content)

    async def require_input(self, content: Optional[PartsLike] = None) -> StatusChanged:
        return await self.update_status(TaskState.INPUT_REQUIRED, content)

    async def require_auth(self, content: Optional[PartsLike] = None) -> StatusChanged:
        return await self.update_status(TaskState.AUTH_REQUIRED, content)

    async def complete(self, content: Optional[PartsLike] = None) -> StatusChanged:
        return await self.update_status(TaskState.COMPLETED, content)

    async def fail(self, content: Optional[PartsLike] = None) -> StatusChanged:
        return await self.update_status(TaskState.FAILED, content)

    async def reject(self, content: Optional[PartsLike] = None) -> StatusChanged:
        return await self.update_status(TaskState.REJECTED, content)

    async def add_artifact(
        self,
        content: PartsLike,
        *,
        artifact_id: Optional[str] = None,
        name: Optional[str] = None,
        append: bool = False,
        last_chunk: Optional[bool] = None,
    ) -> Artifact:
        artifact = Artifact(
            artifactId=artifact_id or generate_id("artifact_"),
            name=name,
            parts=_to_parts(content),
        )
        await self.manager.add_artifact(self.task_id, artifact, append=append, last_chunk=last_chunk)
        return artifact

    async def send_agent_message(self, content: PartsLike) -> Message:
        """Append an agent message to the task history."""
        message = self.new_agent_message(content)
        await self.manager.append_message(self.task_id, message)
        return message


class TaskManager:
    """
    Applies task operations and fans out the resulting events.

    The store and the hub are safe to use from any thread; push notification
    delivery is marshalled onto the loop the manager was first used from.
    """

    def __init__(
        self,
        store: TaskStore,
        hub: SubscriptionHub,
        dispatcher: NotificationDispatcher,
        executor: Optional[AgentExecutor] = None,
        state_machine: Optional[StateMachine] = None,
    ):
        self.store = store
        self.hub = hub
        self.dispatcher = dispatcher
        self.executor = executor
        self.state_machine = state_machine or StateMachine(store)
        self._running: Dict[str, Set["asyncio.Task[None]"]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _bind_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            return None
        if self._loop is None or self._loop.is_closed():
            self._loop = running
        return running

    def _emit(self, event: StatusChanged) -> None:
        """Fan a status change out to subscribers and push configurations."""
        self.hub.publish(event.task_id, event.to_update_event())

        running = self._bind_loop()
        if running is self._loop:
            self.dispatcher.dispatch(event)
        elif self._loop is not None:
            self._loop.call_soon_threadsafe(self.dispatcher.dispatch, event)

    # ----- task operations -----

    async def create_task(
        self,
        message: Message,
        *,
        task_id: Optional[str] = None,
        context_id: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> Task:
        self._bind_loop()
        task = await self.store.create(
            message, task_id=task_id, context_id=context_id, metadata=metadata
        )
        logger.info(
            "Created task",
            extra={"task_id": task.id, "context_id": task.contextId, "message_id": message.messageId},
        )
        return task

    async def get_task(self, task_id: str) -> Task:
        return await self.store.get(task_id)

    async def append_message(self, task_id: str, message: Message) -> Task:
        return await self.store.append_history(task_id, message)

    async def transition(
        self,
        task_id: str,
        new_state: Union[TaskState, str],
        message: Optional[Message] = None,
    ) -> StatusChanged:
        event = await self.state_machine.transition(task_id, new_state, message)
        self._emit(event)
        return event

    async def add_artifact(
        self,
        task_id: str,
        artifact: Artifact,
        *,
        append: bool = False,
        last_chunk: Optional[bool] = None,
    ) -> Task:
        task = await self.store.append_artifact(task_id, artifact, append=append)
        self.hub.publish(
            task_id,
            TaskArtifactUpdateEvent(
                taskId=task_id,
                contextId=task.contextId,
                artifact=artifact.model_copy(deep=True),
                append=append or None,
                lastChunk=last_chunk,
            ),
        )
        return task

    async def cancel(self, task_id: str) -> CancelOutcome:
        outcome = await self.state_machine.cancel(task_id)
        if outcome.event is None:
            logger.info(
                "Cancel requested for finished task",
                extra={"task_id": task_id, "state": outcome.task.status.state.value},
            )
            return outcome

        self._emit(outcome.event)
        self._stop_execution(task_id)
        if self.executor is not None:
            await self.executor.cancel(TaskUpdater(self, task_id, outcome.task.contextId))
        logger.info("Canceled task", extra={"task_id": task_id})
        return outcome

    # ----- agent execution -----

    def start_execution(self, task: Task, message: Message) -> Optional["asyncio.Task[None]"]:
        """Run the executor for ``message`` in the background."""
        if self.executor is None:
            return None
        self._bind_loop()

        updater = TaskUpdater(self, task.id, task.contextId)
        running = asyncio.create_task(self._run_executor(updater, message))
        self._running.setdefault(task.id, set()).add(running)
        running.add_done_callback(lambda done: self._execution_done(task.id, done))
        return running

    def _execution_done(self, task_id: str, done: "asyncio.Task[None]") -> None:
        tasks = self._running.get(task_id)
        if tasks is None:
            return
        tasks.discard(done)
        if not tasks:
            del self._running[task_id]

    def _stop_execution(self, task_id: str) -> None:
        for running in list(self._running.get(task_id, ())):
            if running is not asyncio.current_task():
                running.cancel()

    def is_executing(self, task_id: str) -> bool:
        return bool(self._running.get(task_id))

    async def _run_executor(self, updater: TaskUpdater, message: Message) -> None:
        assert self.executor is not None
        try:
            await self.executor.execute(updater, message)
        except Exception as e:
            logger.exception(
                "Agent executor failed",
                extra={"task_id": updater.task_id, "error": str(e)},
            )
            try:
                await updater.fail(f"Agent execution failed: {e}")
            except IllegalTransition:
                logger.debug(
                    "Task already finished when executor failed",
                    extra={"task_id": updater.task_id},
                )

    # ----- waiting and streaming -----

    async def subscribe(self, task_id: str) -> Subscriber:
        """Open a stream on ``task_id``; a finished task yields its final status and closes."""
        snapshot = await self.store.snapshot(task_id)
        task = snapshot.task
        if is_terminal(task.status.state):
            final = StatusChanged.from_snapshot(task, snapshot.sequence)
            self.hub.remember_final(task_id, final.to_update_event())
        return self.hub.subscribe(task_id)

    async def wait_for_interruption(
        self,
        task_id: str,
        timeout: float,
        after_sequence: int = 0,
    ) -> Task:
        """Wait until the task is terminal or interrupted, or ``timeout`` elapses.

        Only status changes newer than ``after_sequence`` count. On timeout the
        current snapshot is returned.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            subscriber = self.hub.subscribe(task_id)
            try:
                snapshot = await self.store.snapshot(task_id)
                if snapshot.sequence > after_sequence and _stops_waiting(snapshot.task.status.state):
                    return snapshot.task

                while True:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        return await self.store.get(task_id)
                    try:
                        event = await subscriber.get(timeout=remaining)
                    except asyncio.TimeoutError:
                        return await self.store.get(task_id)
                    if event is None:
                        return await self.store.get(task_id)

                    state = getattr(getattr(event, "status", None), "state", None)
                    sequence = (event.metadata or {}).get("sequence", 0) if state else 0
                    if state is not None and sequence > after_sequence and _stops_waiting(state):
                        return await self.store.get(task_id)
            except SubscriberOverflow:
                logger.debug("Blocking wait fell behind, resubscribing", extra={"task_id": task_id})
                continue
            except TaskStreamClosed:
                return await self.store.get(task_id)
            finally:
                await subscriber.close()

    # ----- removal -----

    async def delete_task(self, task_id: str, reason: str = "task deleted") -> bool:
        """Remove a task; an unfinished task is canceled first so its streams end with a final status."""
        try:
            current = await self.store.get(task_id)
        except NotFound:
            current = None
        if current is not None and not is_terminal(current.status.state):
            await self.cancel(task_id)
        self._stop_execution(task_id)
        self.hub.close_task(task_id, reason)
        self.dispatcher.forget(task_id)
        deleted = await self.store.delete(task_id)
        if deleted:
            logger.info("Deleted task", extra={"task_id": task_id, "reason": reason})
        return deleted

    async def collect_garbage(self, grace_seconds: float) -> int:
        """Delete terminal tasks older than ``grace_seconds`` that nothing references."""
        now = time.time()
        removed = 0
        for task in await self.store.list_tasks():
            if not is_terminal(task.status.state):
                continue
            since = await self.store.terminal_since(task.id)
            if since is None or now - since < grace_seconds:
                continue
            if (
                self.hub.has_subscribers(task.id)
                or self.dispatcher.has_pending(task.id)
                or self.is_executing(task.id)
            ):
                continue
            if await self.delete_task(task.id, reason="expired"):
                removed += 1

        if removed:
            logger.info("Collected finished tasks", extra={"removed": removed})
        return removed

    async def close(self) -> None:
        """Cancel running executions."""
        tasks = [t for running in self._running.values() for t in running]
        for running in tasks:
            running.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._running.clear()


def _stops_waiting(state: TaskState) -> bool:
    return is_terminal(state) or state in INTERRUPTED_STATES
