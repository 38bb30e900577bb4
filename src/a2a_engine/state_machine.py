"""
Task state machine.

Validates status transitions against the A2A lifecycle and applies them
through the store's compare-and-set, so concurrent writers to one task are
linearized and a terminal status is never overwritten.
"""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Optional, Union

from .a2a.models import Message, TaskState, TaskStatus, current_timestamp, is_terminal
from .errors import IllegalTransition
from .models import CancelOutcome, StatusChanged
from .task_store import TaskStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[TaskState, FrozenSet[TaskState]] = {
    TaskState.SUBMITTED: frozenset({
        TaskState.WORKING,
        TaskState.CANCELED,
        TaskState.FAILED,
        TaskState.REJECTED,
        TaskState.AUTH_REQUIRED,
        TaskState.UNKNOWN,
    }),
    TaskState.WORKING: frozenset({
        TaskState.INPUT_REQUIRED,
        TaskState.COMPLETED,
        TaskState.CANCELED,
        TaskState.FAILED,
        TaskState.REJECTED,
        TaskState.AUTH_REQUIRED,
        TaskState.UNKNOWN,
    }),
    TaskState.INPUT_REQUIRED: frozenset({
        TaskState.WORKING,
        TaskState.CANCELED,
        TaskState.FAILED,
    }),
    TaskState.AUTH_REQUIRED: frozenset({
        TaskState.WORKING,
        TaskState.CANCELED,
        TaskState.FAILED,
    }),
    TaskState.UNKNOWN: frozenset({TaskState.CANCELED}),
    TaskState.COMPLETED: frozenset(),
    TaskState.CANCELED: frozenset(),
    TaskState.FAILED: frozenset(),
    TaskState.REJECTED: frozenset(),
}


def can_transition(from_state: TaskState, to_state: TaskState) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, frozenset())


def _coerce_state(task_id: str, current: TaskState, new_state: Union[TaskState, str]) -> TaskState:
    try:
        return TaskState(new_state)
    except ValueError as exc:
        raise IllegalTransition(
            f"Unrecognized task state '{new_state}'",
            task_id=task_id,
            from_state=current.value,
            to_state=str(new_state),
        ) from exc


class StateMachine:
    """Applies validated status transitions to tasks held in a TaskStore."""

    # Upper bound on compare-and-set retries for one transition. Each lost race
    # means another writer made progress, so this is only hit under a livelock.
    max_attempts = 64

    def __init__(self, store: TaskStore):
        self.store = store

    async def transition(
        self,
        task_id: str,
        new_state: Union[TaskState, str],
        message: Optional[Message] = None,
    ) -> StatusChanged:
        """Move a task to ``new_state``.

        Raises:
            NotFound: unknown task id.
            IllegalTransition: the task is terminal, the target is not a
                recognized state, or the edge is not allowed.
        """
        for _ in range(self.max_attempts):
            snapshot = await self.store.snapshot(task_id)
            task = snapshot.task
            current = task.status.state
            target = _coerce_state(task_id, current, new_state)

            if is_terminal(current):
                raise IllegalTransition(
                    f"Task {task_id} is already {current.value}",
                    task_id=task_id,
                    from_state=current.value,
                    to_state=target.value,
                )
            if not can_transition(current, target):
                raise IllegalTransition(
                    f"Transition {current.value} -> {target.value} is not allowed",
                    task_id=task_id,
                    from_state=current.value,
                    to_state=target.value,
                )

            new_status = TaskStatus(
                state=target,
                message=message.model_copy(deep=True) if message else None,
                timestamp=current_timestamp(),
            )
            applied = await self.store.compare_and_set_status(
                task_id,
                task.status,
                new_status,
                expected_sequence=snapshot.sequence,
            )
            if applied:
                logger.info(
                    "Task state changed",
                    extra={
                        "task_id": task_id,
                        "from_state": current.value,
                        "to_state": target.value,
                        "sequence": snapshot.sequence + 1,
                    },
                )
                return StatusChanged(
                    task_id=task_id,
                    context_id=task.contextId,
                    old_state=current,
                    new_state=target,
                    status=new_status,
                    sequence=snapshot.sequence + 1,
                )

            logger.debug(
                "Lost status race, re-validating",
                extra={"task_id": task_id, "to_state": target.value},
            )

        raise RuntimeError(f"Could not apply transition for task {task_id}")

    async def cancel(self, task_id: str) -> CancelOutcome:
        """Cancel a task unless it already finished.

        A task that is already terminal is returned unchanged; of two
        concurrent cancels exactly one reports ``canceled``.
        """
        try:
            event = await self.transition(task_id, TaskState.CANCELED)
        except IllegalTransition:
            task = await self.store.get(task_id)
            if is_terminal(task.status.state):
                return CancelOutcome(task=task)
            raise
        task = await self.store.get(task_id)
        return CancelOutcome(task=task, event=event)
