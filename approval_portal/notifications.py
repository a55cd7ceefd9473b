"""
Notification Trigger Module

Workflow transitions write NotificationTrigger rows into an outbox table in
the same transaction as the transition. After commit the dispatcher hands each
pending trigger to the configured sinks and records the outcome; failed
triggers stay in the outbox for retry_pending().

Templating and transport (email, Teams, ...) belong to whatever sits behind a
sink; the webhook sink is the integration point for that.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import uuid

import requests

from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("portal.notifications")


class NotificationIntent(Enum):
    """Why a notification is being sent"""
    REQUEST_SUBMITTED = "request_submitted"
    APPROVAL_REQUIRED = "approval_required"
    STEP_APPROVED = "step_approved"
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"
    REQUEST_CANCELLED = "request_cancelled"


class TriggerStatus(Enum):
    """Delivery status of an outbox row"""
    PENDING = "pending"
    DISPATCHED = "dispatched"
    FAILED = "failed"


@dataclass
class NotificationTrigger(StorageRecord):
    """Outbox row describing one notification to deliver"""
    instance_id: str
    intent: NotificationIntent
    recipient_role: str
    recipient_ids: List[str]
    entity_type: str
    entity_id: str
    sequence_number: Optional[int] = None
    context: Dict[str, Any] = field(default_factory=dict)
    status: TriggerStatus = TriggerStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None

    @classmethod
    def create(cls, instance_id: str, intent: NotificationIntent, recipient_role: str,
               recipient_ids: Iterable[str], entity_type: str, entity_id: str,
               sequence_number: Optional[int] = None,
               context: Optional[Dict[str, Any]] = None) -> 'NotificationTrigger':
        now = datetime.now(timezone.utc)
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            instance_id=instance_id,
            intent=intent,
            recipient_role=recipient_role,
            recipient_ids=sorted(recipient_ids),
            entity_type=entity_type,
            entity_id=entity_id,
            sequence_number=sequence_number,
            context=context or {}
        )

    def payload(self) -> Dict[str, Any]:
        """Body sent to external sinks"""
        return {
            "trigger_id": self.id,
            "intent": self.intent.value,
            "instance_id": self.instance_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "sequence_number": self.sequence_number,
            "recipient_role": self.recipient_role,
            "recipient_ids": self.recipient_ids,
            "context": self.context,
            "timestamp": self.created_at.isoformat(),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['intent'] = self.intent.value
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationTrigger':
        data = dict(data)
        data['intent'] = NotificationIntent(data['intent'])
        data['status'] = TriggerStatus(data['status'])
        return super().from_dict(data)


class NotificationSink(ABC):
    """Abstract base class for notification delivery targets"""

    name = "sink"

    @abstractmethod
    def send(self, trigger: NotificationTrigger) -> None:
        """Deliver a trigger; raise on failure"""
        pass


class LogSink(NotificationSink):
    """Writes triggers to the application log"""

    name = "log"

    def send(self, trigger: NotificationTrigger) -> None:
        log_action(
            logger, "info",
            f"Notification {trigger.intent.value} for {trigger.entity_type}:{trigger.entity_id} "
            f"to {trigger.recipient_role} {trigger.recipient_ids}",
            action=trigger.intent.value,
            resource=f"{trigger.entity_type}:{trigger.entity_id}",
            extra={"trigger_id": trigger.id}
        )


class WebhookSink(NotificationSink):
    """POSTs trigger payloads to an external notification service"""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, trigger: NotificationTrigger) -> None:
        response = requests.post(
            self.url,
            json=trigger.payload(),
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        response.raise_for_status()


class InAppSink(NotificationSink):
    """Stores one in-app notification per recipient"""

    name = "in_app"
    TABLE = "in_app_notifications"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def send(self, trigger: NotificationTrigger) -> None:
        now = datetime.now(timezone.utc).isoformat()
        for recipient_id in trigger.recipient_ids:
            # One row per (trigger, recipient) so re-delivery overwrites
            row_id = f"{trigger.id}:{recipient_id}"
            self.storage.save(self.TABLE, row_id, {
                "id": row_id,
                "created_at": now,
                "updated_at": now,
                "trigger_id": trigger.id,
                "recipient_id": recipient_id,
                "intent": trigger.intent.value,
                "entity_type": trigger.entity_type,
                "entity_id": trigger.entity_id,
                "context": trigger.context,
                "read": False,
            })

    def for_recipient(self, recipient_id: str) -> List[Dict[str, Any]]:
        rows = self.storage.find(self.TABLE, {"recipient_id": recipient_id})
        return sorted(rows, key=lambda r: r["created_at"])


class NotificationOutbox:
    """Outbox table access"""

    TABLE = "workflow_notification_outbox"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def add(self, trigger: NotificationTrigger) -> None:
        self.storage.save(self.TABLE, trigger.id, trigger.to_dict())

    def save(self, trigger: NotificationTrigger) -> None:
        trigger.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.TABLE, trigger.id, trigger.to_dict())

    def get(self, trigger_id: str) -> Optional[NotificationTrigger]:
        data = self.storage.load(self.TABLE, trigger_id)
        return NotificationTrigger.from_dict(data) if data else None

    def for_instance(self, instance_id: str) -> List[NotificationTrigger]:
        rows = self.storage.find(self.TABLE, {"instance_id": instance_id})
        return sorted((NotificationTrigger.from_dict(r) for r in rows), key=lambda t: t.created_at)

    def undelivered(self) -> List[NotificationTrigger]:
        rows = (self.storage.find(self.TABLE, {"status": TriggerStatus.PENDING.value})
                + self.storage.find(self.TABLE, {"status": TriggerStatus.FAILED.value}))
        return sorted((NotificationTrigger.from_dict(r) for r in rows), key=lambda t: t.created_at)


class NotificationDispatcher:
    """
    Delivers outbox triggers to sinks.

    A trigger is dispatched only when every sink accepted it; otherwise it is
    marked failed and every sink receives it again on retry.
    """

    def __init__(self, storage: StorageInterface, sinks: Optional[List[NotificationSink]] = None,
                 max_attempts: int = 5):
        self.outbox = NotificationOutbox(storage)
        self.sinks: List[NotificationSink] = list(sinks) if sinks is not None else [LogSink()]
        self.max_attempts = max_attempts

    def register_sink(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    def _deliver(self, trigger: NotificationTrigger) -> bool:
        trigger.attempts += 1
        for sink in self.sinks:
            try:
                sink.send(trigger)
            except Exception as e:
                trigger.status = TriggerStatus.FAILED
                trigger.last_error = f"{sink.name}: {e}"
                logger.error(
                    f"Notification {trigger.id} ({trigger.intent.value}) failed on {sink.name} sink",
                    exc_info=True
                )
                self.outbox.save(trigger)
                return False

        trigger.status = TriggerStatus.DISPATCHED
        trigger.last_error = None
        self.outbox.save(trigger)
        return True

    def dispatch(self, triggers: Iterable[NotificationTrigger]) -> Dict[str, int]:
        """Deliver triggers that are not yet dispatched"""
        results = {"dispatched": 0, "failed": 0}
        for trigger in triggers:
            if trigger.status == TriggerStatus.DISPATCHED:
                continue
            if self._deliver(trigger):
                results["dispatched"] += 1
            else:
                results["failed"] += 1
        return results

    def retry_pending(self) -> Dict[str, int]:
        """Re-deliver pending and failed triggers below the attempt limit"""
        results = {"attempted": 0, "dispatched": 0, "failed": 0}
        for trigger in self.outbox.undelivered():
            if trigger.attempts >= self.max_attempts:
                continue
            results["attempted"] += 1
            if self._deliver(trigger):
                results["dispatched"] += 1
            else:
                results["failed"] += 1
        return results
