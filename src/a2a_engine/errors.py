"""Typed errors raised by the task engine and mapped to JSON-RPC errors by the router."""

from __future__ import annotations

from typing import Any, Optional

from .a2a.models import (
    A2AError,
    AuthenticatedExtendedCardNotConfiguredError,
    InternalError,
    InvalidParamsError,
    PushNotificationNotSupportedError,
    TaskNotCancelableError,
    TaskNotFoundError,
    UnsupportedOperationError,
)


class A2AEngineError(Exception):
    """Base class for every error the engine reports to RPC callers."""

    code: int = InternalError().code
    default_message: str = "Internal error"

    def __init__(self, message: Optional[str] = None, *, data: Optional[Any] = None):
        self.message = message or self.default_message
        self.data = data
        super().__init__(self.message)

    def to_a2a_error(self) -> A2AError:
        return InternalError(code=self.code, message=self.message, data=self.data)


class NotFound(A2AEngineError):
    """Unknown task or push notification configuration id."""

    code = TaskNotFoundError().code
    default_message = "Task not found"

    def to_a2a_error(self) -> A2AError:
        return TaskNotFoundError(message=self.message, data=self.data)


class AlreadyExists(A2AEngineError):
    """A supplied task id collides with an existing task."""

    code = InvalidParamsError().code
    default_message = "Task already exists"

    def to_a2a_error(self) -> A2AError:
        return InvalidParamsError(message=self.message, data=self.data)


class DuplicateMessage(AlreadyExists):
    """A message id was already accepted in this context; ``task_id`` owns it."""

    default_message = "Message already accepted"

    def __init__(self, task_id: str, context_id: str, message_id: str):
        self.task_id = task_id
        self.context_id = context_id
        self.message_id = message_id
        super().__init__(
            f"Message {message_id} already accepted by task {task_id}",
            data={"taskId": task_id, "contextId": context_id, "messageId": message_id},
        )


class IllegalTransition(A2AEngineError):
    """The state machine rejected a status change."""

    code = TaskNotCancelableError().code
    default_message = "Illegal task state transition"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        task_id: Optional[str] = None,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
    ):
        self.task_id = task_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            message,
            data={"taskId": task_id, "fromState": from_state, "toState": to_state},
        )

    def to_a2a_error(self) -> A2AError:
        return TaskNotCancelableError(message=self.message, data=self.data)


class InvalidParams(A2AEngineError):
    """Malformed request shape or parameters that conflict with task state."""

    code = InvalidParamsError().code
    default_message = "Invalid parameters"

    def to_a2a_error(self) -> A2AError:
        return InvalidParamsError(message=self.message, data=self.data)


class PushNotificationNotSupported(A2AEngineError):
    code = PushNotificationNotSupportedError().code
    default_message = PushNotificationNotSupportedError().message

    def to_a2a_error(self) -> A2AError:
        return PushNotificationNotSupportedError(message=self.message, data=self.data)


class UnsupportedOperation(A2AEngineError):
    code = UnsupportedOperationError().code
    default_message = UnsupportedOperationError().message

    def to_a2a_error(self) -> A2AError:
        return UnsupportedOperationError(message=self.message, data=self.data)


class ExtendedCardNotConfigured(A2AEngineError):
    code = AuthenticatedExtendedCardNotConfiguredError().code
    default_message = AuthenticatedExtendedCardNotConfiguredError().message

    def to_a2a_error(self) -> A2AError:
        return AuthenticatedExtendedCardNotConfiguredError(message=self.message, data=self.data)


class Unauthenticated(A2AEngineError):
    """Raised by the authentication collaborator, never by the engine itself."""

    code = -32040
    default_message = "Unauthenticated"


class PermissionDenied(A2AEngineError):
    """Raised by the authentication collaborator, never by the engine itself."""

    code = -32041
    default_message = "Permission denied"


class SubscriberOverflow(A2AEngineError):
    """A streaming subscriber fell behind and was dropped; the task is unaffected."""

    default_message = "Subscriber could not keep up with task updates"

    def __init__(self, task_id: str, dropped_at_sequence: Optional[int] = None):
        self.task_id = task_id
        self.dropped_at_sequence = dropped_at_sequence
        super().__init__(data={"taskId": task_id, "droppedAtSequence": dropped_at_sequence})


class TaskStreamClosed(A2AEngineError):
    """The task was deleted while a stream was still open."""

    default_message = "Task stream closed"

    def __init__(self, task_id: str, reason: str):
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Task stream closed: {reason}", data={"taskId": task_id})


class DeliveryDegraded(A2AEngineError):
    """Push notification delivery exhausted its retries.

    Recorded on the configuration; never propagated to the RPC caller.
    """

    default_message = "Push notification delivery exhausted retries"

    def __init__(self, task_id: str, config_id: str, last_error: str):
        self.task_id = task_id
        self.config_id = config_id
        self.last_error = last_error
        super().__init__(
            f"Delivery to config {config_id} degraded: {last_error}",
            data={"taskId": task_id, "configId": config_id},
        )
