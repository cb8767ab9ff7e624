from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, Header, HTTPException, Request, status

from src.config import settings
from src.db import get_supabase
from src.domain.normalization import PayloadNormalizer
from src.domain.signatures import secrets_match
from src.observability import incr_metric, log_event
from src.repositories.channel_configs import ChannelConfigRepository
from src.repositories.webhook_events import WebhookEventRepository
from src.services.handlers import build_default_registry
from src.services.inbound import InboundMessagePipeline
from src.services.webhook_events import WebhookEventService


def request_id_of(request: Request | None) -> str | None:
    return getattr(getattr(request, "state", None), "request_id", None)


@lru_cache(maxsize=1)
def get_webhook_event_service() -> WebhookEventService:
    # one instance per process so per-event retry locks are shared by all requests
    return WebhookEventService(
        WebhookEventRepository(get_supabase()),
        build_default_registry(settings),
        max_retries=settings.webhook_max_retries,
        bulk_workers=settings.webhook_bulk_retry_workers,
        bulk_max_ids=settings.webhook_bulk_retry_max_ids,
        cleanup_days=settings.webhook_cleanup_days,
    )


@lru_cache(maxsize=1)
def get_payload_normalizer() -> PayloadNormalizer:
    channels = ChannelConfigRepository(get_supabase())
    return PayloadNormalizer(resolve_organization=channels.find_organization_id)


def get_inbound_pipeline(
    service: WebhookEventService = Depends(get_webhook_event_service),
) -> InboundMessagePipeline:
    return InboundMessagePipeline(service)


def require_scheduler_secret(
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
) -> None:
    configured_secret = settings.internal_scheduler_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal scheduler secret is not configured",
        )
    if not x_internal_scheduler_secret or not secrets_match(
        x_internal_scheduler_secret,
        configured_secret,
    ):
        incr_metric("webhook.scheduler.auth_failed")
        log_event("webhook_scheduler_auth_failed", request_id=request_id_of(request), path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid scheduler secret",
        )
