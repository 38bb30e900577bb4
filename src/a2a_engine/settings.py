from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional

from .error_profiles import ErrorProfile, parse_error_profile

logger = logging.getLogger(__name__)

TASK_STORE_BACKENDS = ("memory", "sqlite")


@dataclass(frozen=True)
class PushNotificationSettings:
    """Push notification specific settings."""

    enabled: bool = True
    webhook_timeout: float = 30.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 60.0

    # Security
    hmac_secret: Optional[str] = None

    # Delivery history kept per configuration
    history_limit: int = 100


@dataclass(frozen=True)
class StreamingSettings:
    """Settings for streaming subscribers."""

    queue_size: int = 100
    max_subscribers_per_task: int = 50


@dataclass(frozen=True)
class Settings:
    """Engine settings sourced from environment variables."""

    # Agent card
    agent_name: str = "A2A Task Engine"
    agent_description: str = "A2A task lifecycle engine"
    agent_url: str = "http://localhost:8001/a2a"
    agent_version: str = "0.1.0"

    # Task storage
    task_store: str = "memory"
    db_path: Path = Path("data/a2a_tasks.db")

    # Lifecycle
    blocking_timeout: float = 60.0
    task_gc_grace: float = 3600.0  # seconds a terminal task is kept
    cleanup_interval: float = 300.0  # seconds between cleanup passes

    push_notifications: PushNotificationSettings = field(
        default_factory=PushNotificationSettings
    )
    streaming: StreamingSettings = field(default_factory=StreamingSettings)

    error_profile: ErrorProfile = ErrorProfile.BASIC


def _get_push_notification_settings() -> PushNotificationSettings:
    """Get push notification specific settings from environment variables."""
    return PushNotificationSettings(
        enabled=os.getenv("A2A_PUSH_ENABLED", "true").lower() == "true",
        webhook_timeout=float(os.getenv("A2A_PUSH_WEBHOOK_TIMEOUT", "30")),
        retry_attempts=int(os.getenv("A2A_PUSH_RETRY_ATTEMPTS", "3")),
        retry_delay=float(os.getenv("A2A_PUSH_RETRY_DELAY", "1.0")),
        max_retry_delay=float(os.getenv("A2A_PUSH_MAX_RETRY_DELAY", "60.0")),
        hmac_secret=os.getenv("A2A_PUSH_HMAC_SECRET"),
        history_limit=int(os.getenv("A2A_PUSH_HISTORY_LIMIT", "100")),
    )


def _get_streaming_settings() -> StreamingSettings:
    """Get streaming settings from environment variables."""
    return StreamingSettings(
        queue_size=int(os.getenv("A2A_STREAM_QUEUE_SIZE", "100")),
        max_subscribers_per_task=int(
            os.getenv("A2A_STREAM_MAX_SUBSCRIBERS_PER_TASK", "50")
        ),
    )


def validate_settings(settings: Settings) -> None:
    """Validate settings and raise ValueError for invalid configurations."""
    errors = []

    if settings.task_store not in TASK_STORE_BACKENDS:
        errors.append(
            f"A2A_TASK_STORE must be one of {', '.join(TASK_STORE_BACKENDS)}"
        )

    if settings.blocking_timeout <= 0:
        errors.append("A2A_BLOCKING_TIMEOUT must be positive")

    if settings.task_gc_grace < 0:
        errors.append("A2A_TASK_GC_GRACE must be non-negative")

    if settings.cleanup_interval <= 0:
        errors.append("A2A_CLEANUP_INTERVAL must be positive")

    streaming = settings.streaming
    if streaming.queue_size <= 0:
        errors.append("A2A_STREAM_QUEUE_SIZE must be positive")
    if streaming.max_subscribers_per_task <= 0:
        errors.append("A2A_STREAM_MAX_SUBSCRIBERS_PER_TASK must be positive")

    push_settings = settings.push_notifications
    if push_settings.enabled:
        if push_settings.webhook_timeout <= 0:
            errors.append("A2A_PUSH_WEBHOOK_TIMEOUT must be positive")

        if push_settings.retry_attempts < 0:
            errors.append("A2A_PUSH_RETRY_ATTEMPTS must be non-negative")

        if push_settings.retry_delay <= 0:
            errors.append("A2A_PUSH_RETRY_DELAY must be positive")

        if push_settings.max_retry_delay < push_settings.retry_delay:
            errors.append(
                "A2A_PUSH_MAX_RETRY_DELAY must not be smaller than A2A_PUSH_RETRY_DELAY"
            )

        if push_settings.history_limit <= 0:
            errors.append("A2A_PUSH_HISTORY_LIMIT must be positive")

        if not push_settings.hmac_secret:
            logger.warning(
                "A2A_PUSH_HMAC_SECRET not set - webhook payloads will not be signed"
            )

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(
            f"  - {error}" for error in errors
        )
        raise ValueError(error_msg)


@lru_cache()
def get_settings() -> Settings:
    """Return cached and validated settings."""
    settings = Settings(
        agent_name=os.getenv("A2A_AGENT_NAME", "A2A Task Engine"),
        agent_description=os.getenv(
            "A2A_AGENT_DESCRIPTION", "A2A task lifecycle engine"
        ),
        agent_url=os.getenv("A2A_AGENT_URL", "http://localhost:8001/a2a"),
        agent_version=os.getenv("A2A_AGENT_VERSION", "0.1.0"),
        task_store=os.getenv("A2A_TASK_STORE", "memory").lower(),
        db_path=Path(os.getenv("A2A_DB_PATH", "data/a2a_tasks.db")),
        blocking_timeout=float(os.getenv("A2A_BLOCKING_TIMEOUT", "60")),
        task_gc_grace=float(os.getenv("A2A_TASK_GC_GRACE", "3600")),
        cleanup_interval=float(os.getenv("A2A_CLEANUP_INTERVAL", "300")),
        push_notifications=_get_push_notification_settings(),
        streaming=_get_streaming_settings(),
        error_profile=parse_error_profile(os.getenv("A2A_ERROR_PROFILE")),
    )

    validate_settings(settings)

    return settings


def is_push_notifications_enabled() -> bool:
    """Check if push notifications are enabled."""
    return get_settings().push_notifications.enabled
