from __future__ import annotations

import httpx
import pytest

from src.providers.waha import client as waha_client
from src.providers.whatsapp_cloud import client as cloud_client
from src.services.handlers import build_senders


class _FakeResponse:
    def __init__(self, status_code: int, payload: dict | None = None):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = str(payload)

    def json(self):
        return self._payload


class _Settings:
    waha_base_url = "https://waha.example"
    waha_api_key = "waha-key"
    whatsapp_cloud_access_token = None
    whatsapp_cloud_api_base = "https://graph.example/v18.0"
    provider_timeout_seconds = 3.0


def test_waha_send_text_builds_chat_id_and_url(monkeypatch):
    calls: list[dict] = []

    def _fake_post_json(**kwargs):
        calls.append(kwargs)
        return {"id": "true_6281234567890@c.us_OUT1"}

    monkeypatch.setattr(waha_client, "_post_json", _fake_post_json)
    sender = waha_client.WahaReplySender(base_url="https://waha.example/", api_key="waha-key", timeout_seconds=3.0)

    result = sender.send_text(session="default", to="6281234567890", text="hello")

    assert result["id"] == "true_6281234567890@c.us_OUT1"
    assert calls == [
        {
            "url": "https://waha.example/api/sendText",
            "api_key": "waha-key",
            "json_payload": {"session": "default", "chatId": "6281234567890@c.us", "text": "hello"},
            "timeout_seconds": 3.0,
        }
    ]


def test_waha_requires_session():
    with pytest.raises(waha_client.WahaProviderError, match="session"):
        waha_client.send_text(base_url="https://waha.example", api_key=None, session="", phone="1", text="x")


def test_waha_status_mapping():
    waha_client._raise_for_status(_FakeResponse(201))

    with pytest.raises(waha_client.WahaProviderError) as auth_exc:
        waha_client._raise_for_status(_FakeResponse(401))
    assert auth_exc.value.retryable is False

    with pytest.raises(waha_client.WahaProviderError) as rate_exc:
        waha_client._raise_for_status(_FakeResponse(429, {"error": "slow down"}))
    assert rate_exc.value.retryable is True

    with pytest.raises(waha_client.WahaProviderError) as bad_exc:
        waha_client._raise_for_status(_FakeResponse(422, {"error": "bad chatId"}))
    assert bad_exc.value.retryable is False
    assert bad_exc.value.context["status_code"] == 422


def test_waha_connectivity_error_is_retryable(monkeypatch):
    real_client = httpx.Client

    def _refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    monkeypatch.setattr(
        waha_client.httpx,
        "Client",
        lambda **kwargs: real_client(transport=httpx.MockTransport(_refuse), **kwargs),
    )

    with pytest.raises(waha_client.WahaProviderError) as exc:
        waha_client.send_text(base_url="https://waha.example", api_key=None, session="default", phone="1", text="x")
    assert exc.value.retryable is True
    assert exc.value.provider == "waha"


def test_waha_posts_api_key_header(monkeypatch):
    seen: list[httpx.Request] = []
    real_client = httpx.Client

    def _ok(request):
        seen.append(request)
        return httpx.Response(201, json={"id": "out-1"})

    monkeypatch.setattr(
        waha_client.httpx,
        "Client",
        lambda **kwargs: real_client(transport=httpx.MockTransport(_ok), **kwargs),
    )

    result = waha_client.send_text(
        base_url="https://waha.example",
        api_key="waha-key",
        session="default",
        phone="6281@c.us",
        text="hi",
    )

    assert result == {"id": "out-1"}
    assert seen[0].headers["X-Api-Key"] == "waha-key"
    assert seen[0].url == "https://waha.example/api/sendText"


def test_whatsapp_cloud_send_text_payload(monkeypatch):
    calls: list[dict] = []

    def _fake_post_json(**kwargs):
        calls.append(kwargs)
        return {"messaging_product": "whatsapp", "messages": [{"id": "wamid.OUT"}]}

    monkeypatch.setattr(cloud_client, "_post_json", _fake_post_json)
    sender = cloud_client.WhatsAppCloudReplySender(access_token="token-1", api_base="https://graph.example/v18.0")

    result = sender.send_text(session="PNID-1", to="15552223333", text="hello")

    assert result["id"] == "wamid.OUT"
    assert calls[0]["url"] == "https://graph.example/v18.0/PNID-1/messages"
    assert calls[0]["access_token"] == "token-1"
    assert calls[0]["json_payload"] == {
        "messaging_product": "whatsapp",
        "to": "15552223333",
        "type": "text",
        "text": {"body": "hello"},
    }


def test_whatsapp_cloud_validation_errors():
    with pytest.raises(cloud_client.WhatsAppCloudProviderError, match="phone_number_id"):
        cloud_client.send_text(access_token="t", phone_number_id="", to="1", text="x")
    with pytest.raises(cloud_client.WhatsAppCloudProviderError, match="access token"):
        cloud_client._post_json(url="https://graph.example", access_token="", json_payload={}, timeout_seconds=1.0)

    with pytest.raises(cloud_client.WhatsAppCloudProviderError) as exc:
        cloud_client._raise_for_status(_FakeResponse(500, {"error": {"message": "internal"}}))
    assert exc.value.retryable is True
    assert exc.value.provider == "whatsapp-business"


def test_senders_built_only_for_configured_gateways():
    senders = build_senders(_Settings())

    assert set(senders) == {"waha"}
    assert senders["waha"].base_url == "https://waha.example"
    assert senders["waha"].timeout_seconds == 3.0
