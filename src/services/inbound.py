from __future__ import annotations

from src.domain.errors import DuplicateEvent
from src.models.messages import CanonicalMessage, InboundWebhookResult
from src.models.webhook_events import WebhookEvent, WebhookEventCreate
from src.observability import incr_metric, log_event
from src.services.handlers import MESSAGE_RECEIVED
from src.services.webhook_events import WebhookEventService


def event_key_for(message: CanonicalMessage) -> str:
    return f"{message.gateway}:{message.message_id}"


class InboundMessagePipeline:
    """Records a canonical inbound message once and runs its first processing attempt."""

    def __init__(self, events: WebhookEventService) -> None:
        self._events = events

    def _result(self, message: CanonicalMessage, event: WebhookEvent, status: str) -> InboundWebhookResult:
        return InboundWebhookResult(
            message_id=message.message_id,
            session=message.session,
            organization_id=message.organization_id,
            webhook_event_id=event.id,
            status=status,
            response_sent=bool((event.result or {}).get("response_sent")),
        )

    def handle(self, message: CanonicalMessage, request_id: str | None = None) -> InboundWebhookResult:
        event_key = event_key_for(message)
        existing = self._events.find_by_event_key(message.gateway, event_key)
        if existing is None:
            try:
                event = self._events.create(
                    WebhookEventCreate(
                        gateway=message.gateway,
                        event_type=MESSAGE_RECEIVED,
                        payload=message.to_payload(),
                        organization_id=message.organization_id,
                        event_key=event_key,
                    )
                )
            except DuplicateEvent:
                # lost the insert race to a concurrent delivery of the same message
                existing = self._events.find_by_event_key(message.gateway, event_key)
                if existing is None:
                    raise

        if existing is not None:
            incr_metric("whatsapp.messages.duplicate", gateway=message.gateway)
            log_event(
                "whatsapp_message_duplicate",
                request_id=request_id,
                gateway=message.gateway,
                message_id=message.message_id,
                webhook_event_id=existing.id,
            )
            return self._result(message, existing, "duplicate")

        processed = self._events.process(event.id)
        incr_metric("whatsapp.messages.processed", gateway=message.gateway, status=processed.status)
        log_event(
            "whatsapp_message_processed",
            request_id=request_id,
            gateway=message.gateway,
            message_id=message.message_id,
            organization_id=message.organization_id,
            webhook_event_id=processed.id,
            status=processed.status,
        )
        return self._result(message, processed, processed.status)
