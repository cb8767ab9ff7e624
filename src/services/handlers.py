from __future__ import annotations

from typing import Any, Callable, Mapping, Protocol

from src.domain.errors import DownstreamProcessingFailure
from src.domain.normalization import WAHA, WHATSAPP_BUSINESS
from src.models.webhook_events import WebhookEvent
from src.observability import incr_metric, log_event
from src.providers.waha.client import WahaReplySender
from src.providers.whatsapp_cloud.client import WhatsAppCloudReplySender


MESSAGE_RECEIVED = "message.received"
WILDCARD = "*"

Handler = Callable[[WebhookEvent], Mapping[str, Any] | None]


class ReplySender(Protocol):
    def send_text(self, *, session: str | None, to: str, text: str) -> Mapping[str, Any]: ...


class HandlerRegistry:
    """Downstream processing callables keyed by ``(gateway, event_type)``.

    Lookup order is the exact pair, then ``(gateway, "*")``, then
    ``("*", event_type)``. A handler signals failure by raising; its return
    value is stored as the event ``result``.
    """

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], Handler] = {}

    def register(self, gateway: str, event_type: str, handler: Handler) -> None:
        self._handlers[(gateway, event_type)] = handler

    def resolve(self, gateway: str, event_type: str) -> Handler | None:
        for key in ((gateway, event_type), (gateway, WILDCARD), (WILDCARD, event_type)):
            handler = self._handlers.get(key)
            if handler is not None:
                return handler
        return None

    def dispatch(self, event: WebhookEvent) -> dict[str, Any]:
        handler = self.resolve(event.gateway, event.event_type)
        if handler is None:
            raise DownstreamProcessingFailure(
                f"No handler registered for {event.gateway}/{event.event_type}",
                gateway=event.gateway,
                event_type=event.event_type,
            )
        result = handler(event)
        return dict(result or {})


def make_auto_reply_handler(senders: Mapping[str, ReplySender], reply_text: str | None) -> Handler:
    """Handler for ``message.received`` that answers the customer when configured.

    Provider errors are left to propagate so the event lands in ``failed``
    and stays retryable.
    """

    def _handle(event: WebhookEvent) -> dict[str, Any]:
        message = event.payload
        base = {"message_id": message.get("message_id"), "response_sent": False}
        if message.get("from_me"):
            return {**base, "skipped": "from_me"}
        if not reply_text:
            return {**base, "skipped": "auto_reply_disabled"}
        recipient = message.get("customer_phone") or message.get("from")
        if not recipient:
            return {**base, "skipped": "no_recipient"}
        sender = senders.get(event.gateway)
        if sender is None:
            return {**base, "skipped": "no_sender"}

        response = sender.send_text(session=message.get("session"), to=str(recipient), text=reply_text)
        incr_metric("whatsapp.replies.sent", gateway=event.gateway)
        log_event(
            "whatsapp_auto_reply_sent",
            webhook_event_id=event.id,
            gateway=event.gateway,
            organization_id=event.organization_id,
        )
        return {**base, "response_sent": True, "provider_response": dict(response or {})}

    return _handle


def build_senders(settings: Any) -> dict[str, ReplySender]:
    senders: dict[str, ReplySender] = {}
    if settings.waha_base_url:
        senders[WAHA] = WahaReplySender(
            base_url=settings.waha_base_url,
            api_key=settings.waha_api_key,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    if settings.whatsapp_cloud_access_token:
        senders[WHATSAPP_BUSINESS] = WhatsAppCloudReplySender(
            access_token=settings.whatsapp_cloud_access_token,
            api_base=settings.whatsapp_cloud_api_base,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    return senders


def build_default_registry(settings: Any, senders: Mapping[str, ReplySender] | None = None) -> HandlerRegistry:
    if senders is None:
        senders = build_senders(settings)
    registry = HandlerRegistry()
    handler = make_auto_reply_handler(senders, settings.whatsapp_auto_reply_text)
    for gateway in (WAHA, WHATSAPP_BUSINESS):
        registry.register(gateway, MESSAGE_RECEIVED, handler)
    return registry
