"""
Push notification dispatch for task status changes.

This module keeps the push notification configurations registered per task
and delivers every status change to each of them as an HTTP webhook. Each
(task, configuration) pair owns one worker that delivers its events one at a
time, retrying with exponential backoff; a pair whose retries are exhausted is
marked ``degraded`` until a later delivery succeeds.

The dispatcher is bound to the event loop it is used from.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Tuple

import httpx
from httpx import AsyncClient, Response, Timeout

from .a2a.models import PushNotificationConfig, TaskPushNotificationConfig, create_push_config_id
from .errors import DeliveryDegraded, NotFound, PushNotificationNotSupported
from .models import (
    ConfigHealth,
    DeliveryStatus,
    NotificationAnalytics,
    NotificationDelivery,
    PushConfigRecord,
    StatusChanged,
)
from .settings import PushNotificationSettings

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-A2A-Notification-Token"
SIGNATURE_HEADER = "X-A2A-Signature"

_PairKey = Tuple[str, str]


def sign_payload(secret: str, body: bytes) -> str:
    """HMAC-SHA256 signature of a webhook body, as sent in ``X-A2A-Signature``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


@dataclass
class _DeliveryWorker:
    queue: "asyncio.Queue[StatusChanged]" = field(default_factory=asyncio.Queue)
    task: Optional["asyncio.Task[None]"] = None
    last_sequence: int = -1


class NotificationDispatcher:
    """
    Manages push notification configurations and webhook delivery.

    Handles configuration storage, HTTP delivery, authentication headers,
    payload signing, retry logic, and delivery tracking.
    """

    def __init__(
        self,
        settings: Optional[PushNotificationSettings] = None,
        http_client: Optional[AsyncClient] = None,
    ):
        self.settings = settings or PushNotificationSettings()
        self.analytics = NotificationAnalytics()
        self._configs: Dict[str, Dict[str, PushConfigRecord]] = {}
        self._workers: Dict[_PairKey, _DeliveryWorker] = {}
        self._history: Dict[_PairKey, Deque[NotificationDelivery]] = {}
        self._owns_client = http_client is None
        self.http_client: Optional[AsyncClient] = http_client or self._init_http_client()

    def _init_http_client(self) -> AsyncClient:
        """Create the HTTP client used for webhook delivery."""
        timeout = Timeout(self.settings.webhook_timeout, connect=10.0)
        return AsyncClient(timeout=timeout, follow_redirects=True, max_redirects=3)

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def _require_enabled(self) -> None:
        if not self.settings.enabled:
            raise PushNotificationNotSupported()

    # ----- configuration registry -----

    async def register(
        self, task_id: str, config: PushNotificationConfig
    ) -> TaskPushNotificationConfig:
        """Register ``config`` for ``task_id``; an existing config with the same id is replaced."""
        self._require_enabled()

        config = config.model_copy(deep=True)
        if not config.id:
            config.id = create_push_config_id()

        task_configs = self._configs.setdefault(task_id, {})
        previous = task_configs.get(config.id)
        record = PushConfigRecord(task_id=task_id, config=config)
        if previous is not None:
            record.created_at = previous.created_at
        task_configs[config.id] = record

        logger.info(
            "Push notification config registered",
            extra={
                "task_id": task_id,
                "config_id": config.id,
                "url": config.url,
                "replaced": previous is not None,
            },
        )
        return record.to_task_config()

    async def get(self, task_id: str, config_id: Optional[str] = None) -> TaskPushNotificationConfig:
        """Return one configuration; without ``config_id`` the first registered one."""
        self._require_enabled()
        task_configs = self._configs.get(task_id, {})
        if config_id is None:
            record = next(iter(task_configs.values()), None)
        else:
            record = task_configs.get(config_id)
        if record is None:
            raise NotFound(
                f"Push notification config not found for task {task_id}",
                data={"taskId": task_id, "pushNotificationConfigId": config_id},
            )
        return record.to_task_config()

    async def list(self, task_id: str) -> List[TaskPushNotificationConfig]:
        self._require_enabled()
        return [record.to_task_config() for record in self._configs.get(task_id, {}).values()]

    async def remove(self, task_id: str, config_id: str) -> bool:
        self._require_enabled()
        task_configs = self._configs.get(task_id)
        if not task_configs or task_configs.pop(config_id, None) is None:
            return False
        if not task_configs:
            del self._configs[task_id]
        self._history.pop((task_id, config_id), None)
        logger.info(
            "Push notification config removed",
            extra={"task_id": task_id, "config_id": config_id},
        )
        return True

    def forget(self, task_id: str) -> None:
        """Drop every configuration and delivery record of ``task_id``."""
        self._configs.pop(task_id, None)
        for key in [key for key in self._history if key[0] == task_id]:
            del self._history[key]

    # ----- delivery -----

    def dispatch(self, event: StatusChanged) -> int:
        """Queue ``event`` for every configuration of its task; returns the number queued."""
        if not self.settings.enabled:
            return 0

        records = list(self._configs.get(event.task_id, {}).values())
        for record in records:
            key = (event.task_id, record.config_id)
            worker = self._workers.get(key)
            if worker is None:
                worker = _DeliveryWorker()
                self._workers[key] = worker
                worker.task = asyncio.create_task(self._run_worker(key, worker))
            worker.queue.put_nowait(event)
        return len(records)

    async def _run_worker(self, key: _PairKey, worker: _DeliveryWorker) -> None:
        try:
            while not worker.queue.empty():
                event = worker.queue.get_nowait()
                if event.sequence <= worker.last_sequence:
                    continue
                worker.last_sequence = event.sequence
                await self._deliver(key, event)
        finally:
            if self._workers.get(key) is worker:
                del self._workers[key]

    def _get_authentication_headers(self, config: PushNotificationConfig) -> Dict[str, str]:
        """Get authentication headers for the notification request."""
        headers: Dict[str, str] = {}

        if config.token:
            headers[TOKEN_HEADER] = config.token

        auth = config.authentication
        if auth and auth.credentials:
            schemes = {scheme.lower() for scheme in auth.schemes}
            if "bearer" in schemes:
                headers["Authorization"] = f"Bearer {auth.credentials}"
            elif "basic" in schemes:
                encoded = base64.b64encode(auth.credentials.encode("utf-8")).decode("ascii")
                headers["Authorization"] = f"Basic {encoded}"

        return headers

    def _build_request(self, config: PushNotificationConfig, event: StatusChanged) -> Tuple[bytes, Dict[str, str]]:
        payload = event.to_update_event().model_dump(mode="json", exclude_none=True)
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")

        headers = {
            "Content-Type": "application/json",
            "User-Agent": "A2A-Task-Engine-NotificationDispatcher/1.0",
        }
        headers.update(self._get_authentication_headers(config))
        if self.settings.hmac_secret:
            headers[SIGNATURE_HEADER] = sign_payload(self.settings.hmac_secret, body)
        return body, headers

    def _backoff(self, attempt: int) -> float:
        return min(self.settings.retry_delay * (2 ** attempt), self.settings.max_retry_delay)

    async def _deliver(self, key: _PairKey, event: StatusChanged) -> bool:
        """Deliver one event to one configuration with retries."""
        task_id, config_id = key
        record = self._configs.get(task_id, {}).get(config_id)
        if record is None or self.http_client is None:
            return False

        body, headers = self._build_request(record.config, event)
        last_error = "no attempt made"
        delivery: Optional[NotificationDelivery] = None

        for attempt in range(self.settings.retry_attempts + 1):
            if not self._is_registered(record):
                logger.info(
                    "Push notification config changed, abandoning delivery",
                    extra={"config_id": config_id, "task_id": task_id, "sequence": event.sequence},
                )
                return False

            response: Optional[Response] = None
            error: Optional[str] = None
            try:
                response = await self.http_client.post(
                    record.config.url, content=body, headers=headers
                )
                if not response.is_success:
                    error = f"HTTP {response.status_code}"
            except httpx.HTTPError as e:
                error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__

            final_attempt = attempt == self.settings.retry_attempts
            delivery = self._track_delivery_attempt(
                record, event, attempt, response, error, final_attempt
            )

            if error is None:
                logger.info(
                    "Notification delivered successfully",
                    extra={
                        "config_id": config_id,
                        "task_id": task_id,
                        "sequence": event.sequence,
                        "status_code": response.status_code if response else None,
                        "attempt": attempt + 1,
                    },
                )
                self.analytics.update_from_delivery(delivery)
                if record.health is ConfigHealth.DEGRADED:
                    logger.info(
                        "Push notification config restored",
                        extra={"config_id": config_id, "task_id": task_id},
                    )
                record.health = ConfigHealth.ACTIVE
                record.last_error = None
                record.updated_at = datetime.now(timezone.utc)
                return True

            last_error = error
            logger.warning(
                "Notification delivery failed",
                extra={
                    "config_id": config_id,
                    "task_id": task_id,
                    "url": record.config.url,
                    "attempt": attempt + 1,
                    "error": error,
                },
            )

            if not final_attempt:
                await asyncio.sleep(self._backoff(attempt))

        if delivery is not None:
            self.analytics.update_from_delivery(delivery)
        if self._is_registered(record):
            self._mark_degraded(record, DeliveryDegraded(task_id, config_id, last_error))
        return False

    def _is_registered(self, record: PushConfigRecord) -> bool:
        return self._configs.get(record.task_id, {}).get(record.config_id) is record

    def _mark_degraded(self, record: PushConfigRecord, failure: DeliveryDegraded) -> None:
        if record.health is not ConfigHealth.DEGRADED:
            self.analytics.total_degraded += 1
        record.health = ConfigHealth.DEGRADED
        record.last_error = failure.last_error
        record.updated_at = datetime.now(timezone.utc)
        logger.error(
            failure.message,
            extra={"config_id": failure.config_id, "task_id": failure.task_id},
        )

    def _track_delivery_attempt(
        self,
        record: PushConfigRecord,
        event: StatusChanged,
        attempt: int,
        response: Optional[Response],
        error: Optional[str],
        final_attempt: bool,
    ) -> NotificationDelivery:
        """Record a delivery attempt in the bounded per-config history."""
        now = datetime.now(timezone.utc)
        if error is None:
            status = DeliveryStatus.DELIVERED
        elif final_attempt:
            status = DeliveryStatus.FAILED
        else:
            status = DeliveryStatus.RETRYING

        delivery = NotificationDelivery(
            id=str(uuid.uuid4()),
            config_id=record.config_id,
            task_id=record.task_id,
            sequence=event.sequence,
            attempt=attempt + 1,
            delivery_status=status.value,
            response_code=response.status_code if response is not None else None,
            response_body=response.text[:1000] if response is not None and response.text else None,
            error=error,
            attempted_at=now,
            delivered_at=now if error is None else None,
        )

        key = (record.task_id, record.config_id)
        history = self._history.get(key)
        if history is None:
            history = deque(maxlen=self.settings.history_limit)
            self._history[key] = history
        history.append(delivery)
        return delivery

    # ----- introspection and lifecycle -----

    async def get_delivery_history(
        self,
        task_id: Optional[str] = None,
        config_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[NotificationDelivery]:
        """Get notification delivery attempts, oldest first."""
        deliveries: List[NotificationDelivery] = []
        for (owner, cid), history in self._history.items():
            if task_id and owner != task_id:
                continue
            if config_id and cid != config_id:
                continue
            deliveries.extend(history)

        deliveries.sort(key=lambda d: d.attempted_at or datetime.min.replace(tzinfo=timezone.utc))
        if limit:
            deliveries = deliveries[-limit:]
        return deliveries

    def get_analytics(self) -> NotificationAnalytics:
        """Get current notification analytics."""
        return self.analytics

    def has_pending(self, task_id: str) -> bool:
        """True while any delivery for ``task_id`` is queued or in flight."""
        return any(owner == task_id for owner, _ in self._workers)

    async def drain(self) -> None:
        """Wait until every queued delivery has finished."""
        while self._workers:
            tasks = [worker.task for worker in self._workers.values() if worker.task]
            if not tasks:
                break
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding deliveries and close the HTTP client."""
        tasks = [worker.task for worker in self._workers.values() if worker.task]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()

        if self.http_client and self._owns_client:
            await self.http_client.aclose()
        self.http_client = None
