from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from src.domain.errors import ProviderError


class WahaProviderError(ProviderError):
    """Provider-level exception for WAHA (WhatsApp HTTP API) failures."""

    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None) -> None:
        super().__init__(message, provider="waha", retryable=retryable, status_code=status_code)


def _headers(api_key: str | None) -> dict[str, str]:
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    if api_key:
        headers["X-Api-Key"] = api_key
    return headers


def to_chat_id(phone: str) -> str:
    if "@" in phone:
        return phone
    return f"{phone}@c.us"


def _raise_for_status(response: Any) -> None:
    if response.status_code in {401, 403}:
        raise WahaProviderError("Invalid WAHA API key", status_code=response.status_code)
    if response.status_code == 429 or response.status_code >= 500:
        raise WahaProviderError(
            f"WAHA API returned HTTP {response.status_code}: {response.text[:200]}",
            retryable=True,
            status_code=response.status_code,
        )
    if response.status_code >= 400:
        raise WahaProviderError(
            f"WAHA API returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )


def _post_json(
    *,
    url: str,
    api_key: str | None,
    json_payload: dict[str, Any],
    timeout_seconds: float,
) -> dict[str, Any]:
    try:
        with httpx.Client(timeout=timeout_seconds) as client:
            response = client.post(url, headers=_headers(api_key), json=json_payload)
    except httpx.HTTPError as exc:
        raise WahaProviderError(f"WAHA connectivity error: {exc}", retryable=True) from exc

    _raise_for_status(response)
    try:
        payload = response.json()
    except ValueError as exc:
        raise WahaProviderError("WAHA returned non-JSON response") from exc
    return payload if isinstance(payload, dict) else {"data": payload}


def send_text(
    *,
    base_url: str,
    api_key: str | None,
    session: str,
    phone: str,
    text: str,
    timeout_seconds: float = 10.0,
) -> dict[str, Any]:
    if not session:
        raise WahaProviderError("WAHA session name is required to send a message")
    return _post_json(
        url=f"{base_url.rstrip('/')}/api/sendText",
        api_key=api_key,
        json_payload={"session": session, "chatId": to_chat_id(phone), "text": text},
        timeout_seconds=timeout_seconds,
    )


@dataclass
class WahaReplySender:
    base_url: str
    api_key: str | None = None
    timeout_seconds: float = 10.0

    def send_text(self, *, session: str | None, to: str, text: str) -> dict[str, Any]:
        return send_text(
            base_url=self.base_url,
            api_key=self.api_key,
            session=session or "",
            phone=to,
            text=text,
            timeout_seconds=self.timeout_seconds,
        )
