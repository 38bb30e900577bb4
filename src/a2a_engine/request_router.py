"""
A2A request routing.

Maps every A2A RPC onto the task manager and the notification dispatcher,
enforcing message idempotency and the blocking semantics of ``message/send``.
``handle`` accepts a decoded JSON-RPC 2.0 request object and returns the
response object (or an async iterator of response objects for streaming
methods); transport plumbing stays with the caller.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ValidationError

from .a2a.models import (
    SUPPORTED_METHODS,
    AgentCard,
    CancelTaskRequest,
    DeleteTaskPushNotificationConfigParams,
    DeleteTaskPushNotificationConfigRequest,
    GetAuthenticatedExtendedCardRequest,
    GetTaskPushNotificationConfigParams,
    GetTaskPushNotificationConfigRequest,
    GetTaskRequest,
    InternalError,
    InvalidParamsError,
    InvalidRequestError,
    JSONRPCErrorResponse,
    JSONRPCSuccessResponse,
    ListTaskPushNotificationConfigParams,
    ListTaskPushNotificationConfigRequest,
    ListTasksParams,
    ListTasksRequest,
    ListTasksResult,
    MessageSendParams,
    MethodNotFoundError,
    SendMessageRequest,
    SendStreamingMessageRequest,
    SetTaskPushNotificationConfigRequest,
    Task,
    TaskIdParams,
    TaskPushNotificationConfig,
    TaskQueryParams,
    TaskResubscriptionRequest,
    a2a_request_adapter,
    is_terminal,
)
from .agent_card import AgentCardGenerator
from .error_profiles import build_error
from .errors import (
    A2AEngineError,
    DuplicateMessage,
    ExtendedCardNotConfigured,
    InvalidParams,
    NotFound,
    PushNotificationNotSupported,
)
from .notification_dispatcher import NotificationDispatcher
from .settings import Settings
from .subscription_hub import Subscriber
from .task_manager import TaskManager
from .task_store import stamp_message

logger = logging.getLogger(__name__)

# Called with (method, raw request) before dispatch; raises Unauthenticated or
# PermissionDenied to reject the call.
Authorizer = Callable[[str, Dict[str, Any]], Awaitable[None]]

STREAMING_METHODS = frozenset({"message/stream", "tasks/resubscribe"})

DEFAULT_PAGE_SIZE = 50


def apply_history_length(task: Task, history_length: Optional[int]) -> Task:
    """Keep only the most recent ``history_length`` messages of ``task``."""
    if history_length is None:
        return task
    history = task.history[-history_length:] if history_length > 0 else []
    return task.model_copy(update={"history": history})


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, list):
        return [_dump(item) for item in value]
    return value


class RequestRouter:
    """Routes A2A requests to the engine components."""

    def __init__(
        self,
        manager: TaskManager,
        dispatcher: NotificationDispatcher,
        card_generator: AgentCardGenerator,
        settings: Settings,
        authorizer: Optional[Authorizer] = None,
    ):
        self.manager = manager
        self.dispatcher = dispatcher
        self.card_generator = card_generator
        self.settings = settings
        self.authorizer = authorizer

    # ----- message/send and message/stream -----

    async def _accept_message(self, params: MessageSendParams) -> Tuple[Task, bool]:
        """Create or continue the task addressed by ``params``.

        Returns the task and whether the message was newly accepted (False for
        a repeated ``messageId``).
        """
        message = params.message
        configuration = params.configuration
        push_config = configuration.pushNotificationConfig if configuration else None
        if push_config is not None and not self.dispatcher.enabled:
            raise PushNotificationNotSupported()

        store = self.manager.store
        try:
            if message.taskId:
                task = await store.get(message.taskId)
                if message.contextId and message.contextId != task.contextId:
                    raise InvalidParams(
                        f"Message contextId does not match task {task.id}",
                        data={"taskId": task.id, "contextId": message.contextId},
                    )
                existing_id = await store.find_message(task.contextId, message.messageId)
                if existing_id:
                    raise DuplicateMessage(existing_id, task.contextId, message.messageId)
                if is_terminal(task.status.state):
                    raise InvalidParams(
                        f"Task {task.id} is {task.status.state.value} and accepts no messages",
                        data={"taskId": task.id, "state": task.status.state.value},
                    )
                task = await self.manager.append_message(task.id, message)
            else:
                task = await self.manager.create_task(message, metadata=params.metadata)
        except DuplicateMessage as e:
            logger.info(
                "Duplicate message ignored",
                extra={"task_id": e.task_id, "message_id": e.message_id},
            )
            return await store.get(e.task_id), False

        if push_config is not None:
            await self.dispatcher.register(task.id, push_config)
        return task, True

    async def send_message(
        self, params: MessageSendParams, timeout: Optional[float] = None
    ) -> Task:
        """Handle ``message/send``.

        With ``configuration.blocking`` the call waits until the task is
        terminal or interrupted, or until ``timeout`` (default
        ``A2A_BLOCKING_TIMEOUT``) elapses, then returns the current task.
        """
        task, accepted = await self._accept_message(params)
        configuration = params.configuration
        blocking = bool(configuration and configuration.blocking)
        history_length = configuration.historyLength if configuration else None

        if accepted:
            snapshot = await self.manager.store.snapshot(task.id)
            self.manager.start_execution(
                snapshot.task, stamp_message(params.message, task.id, task.contextId)
            )
            if blocking:
                wait = timeout if timeout is not None else self.settings.blocking_timeout
                task = await self.manager.wait_for_interruption(
                    task.id, wait, after_sequence=snapshot.sequence
                )
            else:
                task = await self.manager.get_task(task.id)

        return apply_history_length(task, history_length)

    async def send_streaming_message(self, params: MessageSendParams) -> AsyncIterator[Any]:
        """Handle ``message/stream``: the task snapshot followed by its update events."""
        task, accepted = await self._accept_message(params)
        subscriber = await self.manager.subscribe(task.id)
        if accepted:
            self.manager.start_execution(
                task, stamp_message(params.message, task.id, task.contextId)
            )
        history_length = params.configuration.historyLength if params.configuration else None
        return self._stream(task.id, subscriber, history_length)

    async def _stream(
        self, task_id: str, subscriber: Subscriber, history_length: Optional[int] = None
    ) -> AsyncIterator[Any]:
        try:
            task = await self.manager.get_task(task_id)
            yield apply_history_length(task, history_length)
            async for event in subscriber:
                yield event
        finally:
            await subscriber.close()

    # ----- task RPCs -----

    async def get_task(self, params: TaskQueryParams) -> Task:
        task = await self.manager.get_task(params.id)
        return apply_history_length(task, params.historyLength)

    async def list_tasks(self, params: ListTasksParams) -> ListTasksResult:
        tasks = await self.manager.store.list_tasks(
            context_id=params.contextId, state=params.status
        )

        try:
            offset = int(params.pageToken) if params.pageToken else 0
        except ValueError as exc:
            raise InvalidParams("Invalid pageToken", data={"pageToken": params.pageToken}) from exc
        if offset < 0:
            raise InvalidParams("Invalid pageToken", data={"pageToken": params.pageToken})

        page_size = params.pageSize or DEFAULT_PAGE_SIZE
        page = tasks[offset:offset + page_size]
        next_offset = offset + len(page)

        results = []
        for task in page:
            task = apply_history_length(task, params.historyLength)
            if params.includeArtifacts is False:
                task = task.model_copy(update={"artifacts": []})
            results.append(task)

        return ListTasksResult(
            tasks=results,
            totalSize=len(tasks),
            pageSize=page_size,
            nextPageToken=str(next_offset) if next_offset < len(tasks) else "",
        )

    async def cancel_task(self, params: TaskIdParams) -> Task:
        outcome = await self.manager.cancel(params.id)
        return outcome.task

    async def task_subscription(self, params: TaskIdParams) -> AsyncIterator[Any]:
        """Handle ``tasks/resubscribe``; unknown task ids raise ``NotFound``."""
        subscriber = await self.manager.subscribe(params.id)
        return self._stream(params.id, subscriber)

    # ----- push notification RPCs -----

    async def _require_push_task(self, task_id: str) -> None:
        if not self.dispatcher.enabled:
            raise PushNotificationNotSupported()
        await self.manager.get_task(task_id)

    async def create_task_push_notification(
        self, params: TaskPushNotificationConfig
    ) -> TaskPushNotificationConfig:
        await self._require_push_task(params.taskId)
        return await self.dispatcher.register(params.taskId, params.pushNotificationConfig)

    async def get_task_push_notification(
        self, params: GetTaskPushNotificationConfigParams
    ) -> TaskPushNotificationConfig:
        await self._require_push_task(params.id)
        return await self.dispatcher.get(params.id, params.pushNotificationConfigId)

    async def list_task_push_notification(
        self, params: ListTaskPushNotificationConfigParams
    ) -> List[TaskPushNotificationConfig]:
        await self._require_push_task(params.id)
        return await self.dispatcher.list(params.id)

    async def delete_task_push_notification(
        self, params: DeleteTaskPushNotificationConfigParams
    ) -> None:
        await self._require_push_task(params.id)
        removed = await self.dispatcher.remove(params.id, params.pushNotificationConfigId)
        if not removed:
            raise NotFound(
                f"Push notification config {params.pushNotificationConfigId} not found",
                data={"taskId": params.id, "pushNotificationConfigId": params.pushNotificationConfigId},
            )

    # ----- agent card -----

    def get_agent_card(self) -> AgentCard:
        return self.card_generator.generate_agent_card()

    async def get_authenticated_extended_card(self) -> AgentCard:
        card = self.card_generator.generate_extended_agent_card()
        if card is None:
            raise ExtendedCardNotConfigured()
        return card

    # ----- JSON-RPC -----

    async def _dispatch(self, request: Any) -> Any:
        if isinstance(request, SendMessageRequest):
            return await self.send_message(request.params)
        if isinstance(request, SendStreamingMessageRequest):
            return await self.send_streaming_message(request.params)
        if isinstance(request, GetTaskRequest):
            return await self.get_task(request.params)
        if isinstance(request, ListTasksRequest):
            return await self.list_tasks(request.params)
        if isinstance(request, CancelTaskRequest):
            return await self.cancel_task(request.params)
        if isinstance(request, TaskResubscriptionRequest):
            return await self.task_subscription(request.params)
        if isinstance(request, SetTaskPushNotificationConfigRequest):
            return await self.create_task_push_notification(request.params)
        if isinstance(request, GetTaskPushNotificationConfigRequest):
            return await self.get_task_push_notification(request.params)
        if isinstance(request, ListTaskPushNotificationConfigRequest):
            return await self.list_task_push_notification(request.params)
        if isinstance(request, DeleteTaskPushNotificationConfigRequest):
            return await self.delete_task_push_notification(request.params)
        if isinstance(request, GetAuthenticatedExtendedCardRequest):
            return await self.get_authenticated_extended_card()
        raise TypeError(f"Unhandled request type {type(request).__name__}")

    def _error_response(
        self,
        request_id: Optional[Union[int, str]],
        code: int,
        message: str,
        data: Optional[Any] = None,
    ) -> Dict[str, Any]:
        contract = build_error(
            profile=self.settings.error_profile, code=code, message=message, data=data
        )
        if contract.diagnostics:
            logger.debug(
                "Error detail suppressed by profile",
                extra={"code": code, "diagnostics": contract.diagnostics},
            )
        response = JSONRPCErrorResponse(id=request_id, error=contract.to_jsonrpc_error())
        payload = response.model_dump(mode="json", exclude_none=True)
        payload["id"] = request_id
        return payload

    def _error_from_exception(
        self, request_id: Optional[Union[int, str]], exc: BaseException
    ) -> Dict[str, Any]:
        if isinstance(exc, A2AEngineError):
            error = exc.to_a2a_error()
            return self._error_response(request_id, error.code, error.message, error.data)
        if isinstance(exc, ValidationError):
            return self._error_response(
                request_id,
                InvalidParamsError().code,
                InvalidParamsError().message,
                json.loads(exc.json(include_url=False)),
            )
        return self._error_response(
            request_id, InternalError().code, InternalError().message, str(exc)
        )

    def _success_response(self, request_id: Optional[Union[int, str]], result: Any) -> Dict[str, Any]:
        response = JSONRPCSuccessResponse(id=request_id, result=_dump(result))
        return response.model_dump(mode="json")

    async def handle(self, request: Any) -> Union[Dict[str, Any], AsyncIterator[Dict[str, Any]]]:
        """Dispatch one decoded JSON-RPC request object."""
        if not isinstance(request, dict):
            return self._error_response(
                None, InvalidRequestError().code, InvalidRequestError().message
            )

        request_id = request.get("id")
        method = request.get("method")
        if request.get("jsonrpc") != "2.0" or not isinstance(method, str):
            return self._error_response(
                request_id, InvalidRequestError().code, InvalidRequestError().message
            )
        if method not in SUPPORTED_METHODS:
            return self._error_response(
                request_id,
                MethodNotFoundError().code,
                MethodNotFoundError().message,
                {"method": method},
            )

        try:
            if self.authorizer is not None:
                await self.authorizer(method, request)
            parsed = a2a_request_adapter.validate_python(request)
            result = await self._dispatch(parsed)
        except (A2AEngineError, ValidationError) as e:
            logger.info(
                "Request failed",
                extra={"method": method, "request_id": request_id, "error": str(e)},
            )
            return self._error_from_exception(request_id, e)
        except Exception as e:
            logger.exception(
                "Unhandled error while processing request",
                extra={"method": method, "request_id": request_id},
            )
            return self._error_from_exception(request_id, e)

        if method in STREAMING_METHODS:
            return self._stream_responses(request_id, result)
        return self._success_response(request_id, result)

    async def _stream_responses(
        self, request_id: Optional[Union[int, str]], events: AsyncIterator[Any]
    ) -> AsyncIterator[Dict[str, Any]]:
        try:
            async for event in events:
                yield self._success_response(request_id, event)
        except A2AEngineError as e:
            logger.info(
                "Stream terminated",
                extra={"request_id": request_id, "error": e.message},
            )
            yield self._error_from_exception(request_id, e)
        finally:
            await events.aclose()

