"""
Engine-side models for status events and push notification delivery.

These dataclasses never go on the wire directly; they carry the engine's
bookkeeping and convert to the A2A wire models when needed.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .a2a.models import (
    Task,
    TaskPushNotificationConfig,
    TaskState,
    TaskStatus,
    TaskStatusUpdateEvent,
    PushNotificationConfig,
    is_terminal,
)


class DeliveryStatus(Enum):
    """Enumeration of possible notification delivery statuses."""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"


class ConfigHealth(Enum):
    """Delivery health of a push notification configuration."""
    ACTIVE = "active"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class StatusChanged:
    """A status transition that has been applied to a task."""

    task_id: str
    context_id: str
    old_state: Optional[TaskState]
    new_state: TaskState
    status: TaskStatus
    sequence: int

    @property
    def timestamp(self) -> Optional[str]:
        return self.status.timestamp

    @property
    def final(self) -> bool:
        return is_terminal(self.new_state)

    def to_update_event(self) -> TaskStatusUpdateEvent:
        """Convert to the wire event delivered to subscribers and webhooks."""
        metadata: Dict[str, Any] = {"sequence": self.sequence}
        if self.old_state is not None:
            metadata["previousState"] = self.old_state.value
        return TaskStatusUpdateEvent(
            taskId=self.task_id,
            contextId=self.context_id,
            status=self.status.model_copy(deep=True),
            final=self.final,
            metadata=metadata,
        )

    @classmethod
    def from_snapshot(cls, task: Task, sequence: int) -> "StatusChanged":
        """Describe a task's current status for a subscriber that arrived after the change."""
        return cls(
            task_id=task.id,
            context_id=task.contextId,
            old_state=None,
            new_state=task.status.state,
            status=task.status.model_copy(deep=True),
            sequence=sequence,
        )


@dataclass
class CancelOutcome:
    """Result of a cancel request.

    Exactly one of ``event`` (this call performed the cancellation) or
    ``already_terminal`` (the task had already finished) describes the outcome.
    """

    task: Task
    event: Optional[StatusChanged] = None

    @property
    def canceled(self) -> bool:
        return self.event is not None

    @property
    def already_terminal(self) -> bool:
        return self.event is None


@dataclass
class PushConfigRecord:
    """A registered push notification configuration and its delivery health."""

    task_id: str
    config: PushNotificationConfig
    health: ConfigHealth = ConfigHealth.ACTIVE
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def config_id(self) -> str:
        assert self.config.id is not None
        return self.config.id

    def to_task_config(self) -> TaskPushNotificationConfig:
        return TaskPushNotificationConfig(
            taskId=self.task_id,
            pushNotificationConfig=self.config.model_copy(deep=True),
            deliveryStatus=self.health.value,
            lastError=self.last_error,
        )


@dataclass
class NotificationDelivery:
    """Represents a single notification delivery attempt."""

    id: str
    config_id: str
    task_id: str
    sequence: int
    attempt: int
    delivery_status: str
    response_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None
    attempted_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        if self.attempted_at:
            data['attempted_at'] = self.attempted_at.isoformat()
        if self.delivered_at:
            data['delivered_at'] = self.delivered_at.isoformat()
        return data


@dataclass
class NotificationAnalytics:
    """Running counters for push notification delivery."""

    total_sent: int = 0
    total_delivered: int = 0
    total_failed: int = 0
    total_degraded: int = 0
    last_delivery_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        if self.total_sent == 0:
            return 0.0
        return self.total_delivered / self.total_sent * 100

    def update_from_delivery(self, delivery: NotificationDelivery) -> None:
        self.total_sent += 1
        if delivery.delivery_status == DeliveryStatus.DELIVERED.value:
            self.total_delivered += 1
        else:
            self.total_failed += 1
        self.last_delivery_at = delivery.attempted_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_sent": self.total_sent,
            "total_delivered": self.total_delivered,
            "total_failed": self.total_failed,
            "total_degraded": self.total_degraded,
            "success_rate": self.success_rate,
            "last_delivery_at": self.last_delivery_at.isoformat() if self.last_delivery_at else None,
        }
