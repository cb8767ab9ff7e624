from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from src.domain.errors import ProviderError


WHATSAPP_CLOUD_API_BASE = "https://graph.facebook.com/v18.0"


class WhatsAppCloudProviderError(ProviderError):
    """Provider-level exception for WhatsApp Business (Cloud API) failures."""

    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None) -> None:
        super().__init__(message, provider="whatsapp-business", retryable=retryable, status_code=status_code)


def _raise_for_status(response: Any) -> None:
    if response.status_code < 400:
        return
    retryable = response.status_code == 429 or response.status_code >= 500
    raise WhatsAppCloudProviderError(
        f"WhatsApp Cloud API returned HTTP {response.status_code}: {response.text[:200]}",
        retryable=retryable,
        status_code=response.status_code,
    )


def _post_json(
    *,
    url: str,
    access_token: str,
    json_payload: dict[str, Any],
    timeout_seconds: float,
) -> dict[str, Any]:
    if not access_token:
        raise WhatsAppCloudProviderError("Missing WhatsApp Cloud API access token")
    try:
        with httpx.Client(timeout=timeout_seconds, verify=True) as client:
            response = client.post(
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                json=json_payload,
            )
    except httpx.HTTPError as exc:
        raise WhatsAppCloudProviderError(f"WhatsApp Cloud API connectivity error: {exc}", retryable=True) from exc

    _raise_for_status(response)
    try:
        payload = response.json()
    except ValueError as exc:
        raise WhatsAppCloudProviderError("WhatsApp Cloud API returned non-JSON response") from exc
    return payload if isinstance(payload, dict) else {"data": payload}


def send_text(
    *,
    access_token: str,
    phone_number_id: str,
    to: str,
    text: str,
    api_base: str = WHATSAPP_CLOUD_API_BASE,
    timeout_seconds: float = 10.0,
) -> dict[str, Any]:
    if not phone_number_id:
        raise WhatsAppCloudProviderError("phone_number_id is required to send a message")
    payload = {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "text",
        "text": {"body": text},
    }
    data = _post_json(
        url=f"{api_base.rstrip('/')}/{phone_number_id}/messages",
        access_token=access_token,
        json_payload=payload,
        timeout_seconds=timeout_seconds,
    )
    messages = data.get("messages")
    if isinstance(messages, list) and messages and isinstance(messages[0], dict):
        data.setdefault("id", messages[0].get("id"))
    return data


@dataclass
class WhatsAppCloudReplySender:
    access_token: str
    api_base: str = WHATSAPP_CLOUD_API_BASE
    timeout_seconds: float = 10.0

    def send_text(self, *, session: str | None, to: str, text: str) -> dict[str, Any]:
        return send_text(
            access_token=self.access_token,
            phone_number_id=session or "",
            to=to,
            text=text,
            api_base=self.api_base,
            timeout_seconds=self.timeout_seconds,
        )
