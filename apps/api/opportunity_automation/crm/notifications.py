from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from opportunity_automation.context import get_correlation_id
from opportunity_automation.crm.models import CRMNotificationOutbox


tracer = trace.get_tracer("opportunity_automation.crm.notifications")


class NotificationError(Exception):
    """Raised when a notification batch cannot be handed to the transport."""


@dataclass(frozen=True, slots=True)
class EmailMessage:
    recipient_address: str
    subject: str
    body: str
    entity_id: uuid.UUID | None = None


@dataclass(frozen=True, slots=True)
class SendOutcome:
    recipient_address: str
    success: bool
    error: str | None = None


class NotificationService(Protocol):
    def send(self, messages: Sequence[EmailMessage]) -> list[SendOutcome]: ...


class OutboxNotificationService:
    def __init__(self, session: Session):
        self.session = session

    def send(self, messages: Sequence[EmailMessage]) -> list[SendOutcome]:
        with tracer.start_as_current_span("notifications.outbox.send") as span:
            span.set_attribute("message_count", len(messages))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            rows = [
                CRMNotificationOutbox(
                    recipient_email=message.recipient_address,
                    subject=message.subject,
                    body=message.body,
                    entity_type="opportunity",
                    entity_id=message.entity_id,
                )
                for message in messages
            ]
            self.session.add_all(rows)
            try:
                self.session.flush()
            except SQLAlchemyError as exc:
                self.session.rollback()
                raise NotificationError(f"failed to queue {len(rows)} notification(s)") from exc
            return [SendOutcome(recipient_address=message.recipient_address, success=True) for message in messages]


class InMemoryNotificationService:
    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []

    def send(self, messages: Sequence[EmailMessage]) -> list[SendOutcome]:
        with tracer.start_as_current_span("notifications.memory.send") as span:
            span.set_attribute("message_count", len(messages))
            self.sent.extend(messages)
            return [SendOutcome(recipient_address=message.recipient_address, success=True) for message in messages]

    def clear(self) -> None:
        self.sent.clear()


def build_notification_service(backend: str, session: Session) -> NotificationService:
    if backend.lower() == "memory":
        return InMemoryNotificationService()
    return OutboxNotificationService(session)
