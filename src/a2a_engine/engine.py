"""
Engine assembly.

``A2AEngine`` wires the task store, state machine, subscription hub,
notification dispatcher, task manager and request router together from
``Settings`` and owns the background cleanup loop that garbage-collects
finished tasks.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from httpx import AsyncClient

from .a2a.models import AgentSkill, SecurityScheme
from .agent_card import AgentCardGenerator
from .database import SqliteTaskStore
from .logging_config import configure_logging
from .notification_dispatcher import NotificationDispatcher
from .request_router import Authorizer, RequestRouter
from .settings import Settings, get_settings
from .state_machine import StateMachine
from .subscription_hub import SubscriptionHub
from .task_manager import AgentExecutor, TaskManager
from .task_store import InMemoryTaskStore, TaskStore

logger = logging.getLogger(__name__)


def create_task_store(settings: Settings) -> TaskStore:
    """Build the task store selected by ``A2A_TASK_STORE``."""
    if settings.task_store == "sqlite":
        return SqliteTaskStore(settings.db_path)
    return InMemoryTaskStore()


class A2AEngine:
    """The assembled task engine.

    Usage::

        async with A2AEngine(executor=MyExecutor()) as engine:
            response = await engine.router.handle(request)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        executor: Optional[AgentExecutor] = None,
        *,
        store: Optional[TaskStore] = None,
        http_client: Optional[AsyncClient] = None,
        authorizer: Optional[Authorizer] = None,
        skills: Optional[List[AgentSkill]] = None,
        security_schemes: Optional[Dict[str, SecurityScheme]] = None,
        extended_skills: Optional[List[AgentSkill]] = None,
        configure_logs: bool = True,
    ):
        self.settings = settings or get_settings()
        self.configure_logs = configure_logs

        self.store = store or create_task_store(self.settings)
        self.state_machine = StateMachine(self.store)
        self.hub = SubscriptionHub(
            max_queue_size=self.settings.streaming.queue_size,
            max_subscribers_per_task=self.settings.streaming.max_subscribers_per_task,
        )
        self.dispatcher = NotificationDispatcher(
            self.settings.push_notifications, http_client=http_client
        )
        self.task_manager = TaskManager(
            self.store,
            self.hub,
            self.dispatcher,
            executor=executor,
            state_machine=self.state_machine,
        )
        self.card_generator = AgentCardGenerator(
            self.settings,
            skills=skills,
            security_schemes=security_schemes,
            extended_skills=extended_skills,
        )
        self.router = RequestRouter(
            self.task_manager,
            self.dispatcher,
            self.card_generator,
            self.settings,
            authorizer=authorizer,
        )
        self._cleanup_task: Optional["asyncio.Task[None]"] = None

    async def start(self) -> None:
        if self.configure_logs:
            configure_logging()

        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

        logger.info(
            "A2A task engine started",
            extra={
                "task_store": self.settings.task_store,
                "push_enabled": self.settings.push_notifications.enabled,
            },
        )

    async def _periodic_cleanup(self) -> None:
        """Periodically remove finished tasks past their grace period."""
        while True:
            await asyncio.sleep(self.settings.cleanup_interval)
            try:
                removed = await self.task_manager.collect_garbage(self.settings.task_gc_grace)
                if removed > 0:
                    logger.info(f"Periodic cleanup removed {removed} finished tasks")
            except Exception as e:
                logger.error("Error in periodic cleanup", extra={"error": str(e)})

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        await self.task_manager.close()
        self.hub.close()
        await self.dispatcher.close()
        self.store.close()
        logger.info("A2A task engine stopped")

    async def __aenter__(self) -> "A2AEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def handle(self, request: Any) -> Any:
        """Shortcut for ``self.router.handle``."""
        return await self.router.handle(request)


def create_engine(executor: Optional[AgentExecutor] = None, **kwargs: Any) -> A2AEngine:
    """Create an engine from environment settings."""
    return A2AEngine(get_settings(), executor, **kwargs)
