"""Inbound WhatsApp payload normalization.

Each known gateway payload shape is a format object with ``matches`` and
``extract``. ``PayloadNormalizer`` tries the formats in a fixed priority
order and returns the first match as a ``CanonicalMessage``, or an
``Unrecognized`` result when nothing matches. Callers branch on the result
type and never look at the raw shape again.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Callable, Final, Protocol, Sequence

from pydantic import ValidationError as PydanticValidationError
from src.models.messages import CanonicalMessage


WAHA: Final = "waha"
WHATSAPP_BUSINESS: Final = "whatsapp-business"

_JID_SUFFIXES: Final[tuple[str, ...]] = ("@c.us", "@s.whatsapp.net", "@g.us", "@lid")
_WAHA_MESSAGE_EVENTS: Final[frozenset[str]] = frozenset({"message", "message.any"})

OrganizationResolver = Callable[[str | None, str | None], str | None]


@dataclass(frozen=True)
class Unrecognized:
    reason: str
    gateway_hint: str | None = None


NormalizationResult = CanonicalMessage | Unrecognized


class PayloadFormat(Protocol):
    gateway: str
    name: str

    def matches(self, payload: dict[str, Any]) -> bool: ...

    def extract(self, payload: dict[str, Any]) -> dict[str, Any]: ...


def normalize_phone(value: Any) -> str | None:
    if value is None:
        return None
    phone = str(value).strip()
    for suffix in _JID_SUFFIXES:
        if phone.endswith(suffix):
            phone = phone[: -len(suffix)]
            break
    return phone or None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first(value: Any) -> dict[str, Any]:
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return value[0]
    return {}


def _text(value: Any) -> str | None:
    """Scalar payload values as text; objects and lists are dropped."""
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def _timestamp(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _message_id(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("_serialized") or value.get("id")
    if value in (None, ""):
        return str(uuid.uuid4())
    return str(value)


def _waha_message_type(message: dict[str, Any]) -> str:
    if message.get("hasMedia"):
        mimetype = str(_as_dict(message.get("media")).get("mimetype") or "")
        for prefix, kind in (("image/", "image"), ("video/", "video"), ("audio/", "audio"), ("application/", "document")):
            if mimetype.startswith(prefix):
                return kind
        return "media"
    if message.get("location"):
        return "location"
    if message.get("vCards"):
        return "contact"
    if "body" in message and not message.get("body"):
        return "system"
    return "text"


def _waha_customer_name(message: dict[str, Any]) -> str | None:
    candidates = (
        _as_dict(message.get("contact")).get("name"),
        message.get("pushName"),
        _as_dict(message.get("_data")).get("notifyName"),
        _as_dict(_as_dict(message.get("media")).get("_data")).get("notifyName"),
    )
    for candidate in candidates:
        if candidate:
            return _text(candidate)
    return None


class WahaEventFormat:
    """Current WAHA webhook: ``{"event": "message", "session": ..., "payload": {...}}``."""

    gateway = WAHA
    name = "waha_event"

    def matches(self, payload: dict[str, Any]) -> bool:
        return payload.get("event") in _WAHA_MESSAGE_EVENTS and isinstance(payload.get("payload"), dict)

    def extract(self, payload: dict[str, Any]) -> dict[str, Any]:
        message = payload["payload"]
        sender = _text(message.get("from"))
        return {
            "message_id": _message_id(message.get("id")),
            "from": sender,
            "to": _text(message.get("to")),
            "text": _text(message.get("body")),
            "message_type": _waha_message_type(message),
            "timestamp": _timestamp(message.get("timestamp")),
            "customer_phone": normalize_phone(sender),
            "customer_name": _waha_customer_name(message),
            "session": _text(payload.get("session")),
            "from_me": bool(message.get("fromMe", False)),
        }


class WahaLegacyFormat:
    """Older WAHA shape: ``{"message": {...}, "session": ...}``."""

    gateway = WAHA
    name = "waha_legacy"

    def matches(self, payload: dict[str, Any]) -> bool:
        return isinstance(payload.get("message"), dict) and payload.get("session") is not None

    def extract(self, payload: dict[str, Any]) -> dict[str, Any]:
        message = payload["message"]
        sender = _text(message.get("from"))
        text = _as_dict(message.get("text")).get("body")
        if text is None:
            text = message.get("body")
        return {
            "message_id": _message_id(message.get("id")),
            "from": sender,
            "to": _text(message.get("to")),
            "text": _text(text),
            "message_type": _text(message.get("type")) or "text",
            "timestamp": _timestamp(message.get("timestamp")),
            "customer_phone": normalize_phone(sender),
            "customer_name": _text(_as_dict(message.get("contact")).get("name")),
            "session": _text(payload.get("session")),
            "from_me": bool(message.get("fromMe", False)),
        }


class WhatsAppBusinessFormat:
    """Meta Cloud API: ``entry[0].changes[0].value.messages[0]``."""

    gateway = WHATSAPP_BUSINESS
    name = "whatsapp_business"

    def _value(self, payload: dict[str, Any]) -> dict[str, Any]:
        change = _first(_first(payload.get("entry")).get("changes"))
        return _as_dict(change.get("value"))

    def matches(self, payload: dict[str, Any]) -> bool:
        return bool(_first(self._value(payload).get("messages")))

    def extract(self, payload: dict[str, Any]) -> dict[str, Any]:
        value = self._value(payload)
        message = _first(value.get("messages"))
        metadata = _as_dict(value.get("metadata"))
        profile = _as_dict(_first(value.get("contacts")).get("profile"))
        message_type = _text(message.get("type")) or "text"
        text = _as_dict(message.get("text")).get("body")
        if text is None and message_type != "text":
            text = _as_dict(message.get(message_type)).get("caption")
        sender = _text(message.get("from"))
        return {
            "message_id": _message_id(message.get("id")),
            "from": sender,
            "to": _text(metadata.get("display_phone_number")),
            "text": _text(text),
            "message_type": message_type,
            "timestamp": _timestamp(message.get("timestamp")),
            "customer_phone": normalize_phone(sender),
            "customer_name": _text(profile.get("name")),
            "session": _text(metadata.get("phone_number_id")),
            "from_me": False,
        }


DEFAULT_FORMATS: Final[tuple[PayloadFormat, ...]] = (
    WahaEventFormat(),
    WahaLegacyFormat(),
    WhatsAppBusinessFormat(),
)


class PayloadNormalizer:
    def __init__(
        self,
        formats: Sequence[PayloadFormat] = DEFAULT_FORMATS,
        resolve_organization: OrganizationResolver | None = None,
    ) -> None:
        self._formats = tuple(formats)
        self._resolve_organization = resolve_organization

    @property
    def gateways(self) -> set[str]:
        return {fmt.gateway for fmt in self._formats}

    def detect(self, payload: Any, gateway: str | None = None) -> PayloadFormat | None:
        if not isinstance(payload, dict):
            return None
        for fmt in self._formats:
            if gateway and fmt.gateway != gateway:
                continue
            if fmt.matches(payload):
                return fmt
        return None

    def normalize(self, payload: Any, gateway: str | None = None) -> NormalizationResult:
        if not isinstance(payload, dict):
            return Unrecognized(reason="payload is not an object", gateway_hint=gateway)
        if gateway and gateway not in self.gateways:
            return Unrecognized(reason=f"unsupported gateway: {gateway}", gateway_hint=gateway)

        fmt = self.detect(payload, gateway)
        if fmt is None:
            return Unrecognized(reason="no known message format matched", gateway_hint=gateway)

        fields = fmt.extract(payload)
        organization_id = None
        if self._resolve_organization is not None:
            organization_id = self._resolve_organization(normalize_phone(fields.get("to")), fields.get("session"))

        try:
            return CanonicalMessage.model_validate(
                {
                    **fields,
                    "gateway": fmt.gateway,
                    "to": normalize_phone(fields.get("to")),
                    "organization_id": organization_id,
                    "raw_data": payload,
                }
            )
        except PydanticValidationError as exc:
            return Unrecognized(
                reason=f"{fmt.name} payload has invalid fields: {exc.error_count()} error(s)",
                gateway_hint=gateway or fmt.gateway,
            )
