"""A2A task lifecycle and streaming-update engine."""

from .engine import A2AEngine, create_engine
from .errors import (
    A2AEngineError,
    AlreadyExists,
    IllegalTransition,
    InvalidParams,
    NotFound,
    PermissionDenied,
    PushNotificationNotSupported,
    SubscriberOverflow,
    Unauthenticated,
)
from .task_manager import AgentExecutor, TaskUpdater

__version__ = "0.1.0"

__all__ = [
    "A2AEngine",
    "create_engine",
    "AgentExecutor",
    "TaskUpdater",
    "A2AEngineError",
    "AlreadyExists",
    "IllegalTransition",
    "InvalidParams",
    "NotFound",
    "PermissionDenied",
    "PushNotificationNotSupported",
    "SubscriberOverflow",
    "Unauthenticated",
]
