from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from src.config import settings
from src.dependencies import get_inbound_pipeline, get_payload_normalizer, request_id_of
from src.domain.errors import (
    OrganizationUnresolved,
    SignatureInvalid,
    UnrecognizedPayload,
    ValidationError,
)
from src.domain.normalization import PayloadNormalizer, Unrecognized
from src.domain.signatures import secrets_match, signature_enforced, verify_signature
from src.models.common import envelope
from src.observability import incr_metric, log_event
from src.services.inbound import InboundMessagePipeline


router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])


def _reject(event: str, *, request_id: str | None, reason: str, gateway: str | None) -> None:
    incr_metric("whatsapp.webhooks.rejected", reason=reason)
    log_event(
        "whatsapp_webhook_rejected",
        level=logging.WARNING,
        request_id=request_id,
        reason=reason,
        gateway_hint=gateway,
        stage=event,
    )


@router.get("/webhook")
async def verify_whatsapp_webhook(
    request: Request,
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
):
    configured_token = settings.whatsapp_verify_token
    if (
        hub_mode != "subscribe"
        or not configured_token
        or not hub_verify_token
        or not secrets_match(hub_verify_token, configured_token)
    ):
        log_event("whatsapp_webhook_verification_failed", request_id=request_id_of(request), mode=hub_mode)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="webhook verification failed")
    log_event("whatsapp_webhook_verified", request_id=request_id_of(request))
    return PlainTextResponse(hub_challenge or "")


@router.post("/webhook")
async def receive_whatsapp_webhook(
    request: Request,
    gateway: str | None = Query(None),
    x_hub_signature_256: str | None = Header(default=None),
    normalizer: PayloadNormalizer = Depends(get_payload_normalizer),
    pipeline: InboundMessagePipeline = Depends(get_inbound_pipeline),
):
    request_id = request_id_of(request)
    raw_body = await request.body()
    incr_metric("whatsapp.webhooks.received")
    log_event("whatsapp_webhook_received", request_id=request_id, size=len(raw_body), gateway_hint=gateway)

    secret = settings.whatsapp_webhook_secret
    if not signature_enforced(secret):
        log_event("whatsapp_signature_not_enforced", level=logging.WARNING, request_id=request_id)
    try:
        verify_signature(raw_body, x_hub_signature_256, secret)
    except SignatureInvalid:
        _reject("signature", request_id=request_id, reason="signature_invalid", gateway=gateway)
        raise

    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        _reject("parse", request_id=request_id, reason="invalid_json", gateway=gateway)
        raise ValidationError("Webhook body is not valid JSON") from exc

    message = normalizer.normalize(payload, gateway)
    if isinstance(message, Unrecognized):
        _reject("normalize", request_id=request_id, reason="unrecognized_payload", gateway=gateway)
        raise UnrecognizedPayload(f"Unrecognized webhook payload: {message.reason}", gateway_hint=gateway)
    if message.organization_id is None:
        _reject("organization", request_id=request_id, reason="organization_unresolved", gateway=message.gateway)
        raise OrganizationUnresolved(
            "No organization is configured for this WhatsApp number",
            gateway=message.gateway,
            to=message.to,
            session=message.session,
        )

    outcome = pipeline.handle(message, request_id=request_id)
    text = "Webhook already processed" if outcome.status == "duplicate" else "Webhook processed successfully"
    return envelope(text, outcome.model_dump(mode="json"))
