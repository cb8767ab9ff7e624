from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, status

from src.config import settings
from src.dependencies import get_webhook_event_service, request_id_of, require_scheduler_secret
from src.domain.lifecycle import WebhookEventStatus
from src.models.common import envelope
from src.models.webhook_events import (
    BulkRetryRequest,
    BulkRetryResponse,
    CleanupRequest,
    SortField,
    WebhookEventCreate,
    WebhookEventFilters,
    WebhookEventUpdate,
)
from src.observability import incr_metric
from src.services.webhook_events import WebhookEventService


router = APIRouter(prefix="/api/webhook-events", tags=["webhook-events"])


def _filters(
    gateway: str | None = Query(None),
    event_type: str | None = Query(None),
    event_status: WebhookEventStatus | None = Query(None, alias="status"),
    organization_id: str | None = Query(None),
    date_from: datetime | None = Query(None),
    date_to: datetime | None = Query(None),
) -> WebhookEventFilters:
    return WebhookEventFilters(
        gateway=gateway,
        event_type=event_type,
        status=event_status,
        organization_id=organization_id,
        date_from=date_from,
        date_to=date_to,
    )


def _summary(event_ids: list[str], results: dict[str, bool]) -> BulkRetryResponse:
    successful = sum(1 for event_id in event_ids if results.get(event_id))
    return BulkRetryResponse(
        total_requested=len(event_ids),
        successful=successful,
        failed=len(event_ids) - successful,
        results=results,
    )


@router.get("")
async def list_webhook_events(
    filters: WebhookEventFilters = Depends(_filters),
    sort_by: SortField = Query("created_at"),
    sort_order: Literal["asc", "desc"] = Query("desc"),
    page: int = Query(1, ge=1),
    per_page: int = Query(15, ge=1),
    service: WebhookEventService = Depends(get_webhook_event_service),
):
    result = service.list_events(
        filters,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        per_page=min(per_page, settings.webhook_events_max_per_page),
    )
    return envelope("Webhook events retrieved successfully", result.model_dump(mode="json"))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_webhook_event(
    data: WebhookEventCreate,
    service: WebhookEventService = Depends(get_webhook_event_service),
):
    event = service.create(data)
    return envelope("Webhook event created successfully", event.model_dump(mode="json"))


@router.get("/ready-for-retry")
async def list_ready_for_retry(
    limit: int | None = Query(None, ge=1),
    service: WebhookEventService = Depends(get_webhook_event_service),
):
    events = [event.model_dump(mode="json") for event in service.ready_for_retry(limit)]
    return envelope("Webhook events ready for retry retrieved successfully", events)


@router.get("/statistics")
async def get_webhook_event_statistics(
    filters: WebhookEventFilters = Depends(_filters),
    service: WebhookEventService = Depends(get_webhook_event_service),
):
    stats = service.get_statistics(filters)
    return envelope("Webhook event statistics retrieved successfully", stats.model_dump(mode="json"))


@router.post("/bulk-retry")
async def bulk_retry_webhook_events(
    data: BulkRetryRequest,
    request: Request,
    service: WebhookEventService = Depends(get_webhook_event_service),
):
    results = service.bulk_retry(data.webhook_event_ids, request_id=request_id_of(request))
    summary = _summary(data.webhook_event_ids, results)
    return envelope("Bulk retry completed", summary.model_dump(mode="json"))


@router.post("/process-ready", dependencies=[Depends(require_scheduler_secret)])
async def process_ready_webhook_events(
    request: Request,
    limit: int | None = Query(None, ge=1),
    service: WebhookEventService = Depends(get_webhook_event_service),
):
    incr_metric("webhook.scheduler.process_ready")
    results = service.process_ready_for_retry(limit, request_id=request_id_of(request))
    summary = _summary(list(results), results)
    return envelope("Ready webhook events processed", summary.model_dump(mode="json"))


@router.post("/cleanup", dependencies=[Depends(require_scheduler_secret)])
async def cleanup_webhook_events(
    data: CleanupRequest | None = None,
    service: WebhookEventService = Depends(get_webhook_event_service),
):
    deleted = service.cleanup(data.days_old if data else None)
    return envelope("Old webhook events cleaned up", {"deleted": deleted})


@router.get("/{event_id}")
async def get_webhook_event(
    event_id: str,
    service: WebhookEventService = Depends(get_webhook_event_service),
):
    event = service.get(event_id)
    return envelope("Webhook event retrieved successfully", event.model_dump(mode="json"))


@router.put("/{event_id}")
async def update_webhook_event(
    event_id: str,
    data: WebhookEventUpdate,
    service: WebhookEventService = Depends(get_webhook_event_service),
):
    event = service.update(event_id, data)
    return envelope("Webhook event updated successfully", event.model_dump(mode="json"))


@router.delete("/{event_id}")
async def delete_webhook_event(
    event_id: str,
    service: WebhookEventService = Depends(get_webhook_event_service),
):
    service.delete(event_id)
    return envelope("Webhook event deleted successfully")


@router.post("/{event_id}/retry")
async def retry_webhook_event(
    event_id: str,
    request: Request,
    service: WebhookEventService = Depends(get_webhook_event_service),
):
    event = service.retry(event_id, request_id=request_id_of(request))
    payload: dict[str, Any] = event.model_dump(mode="json")
    if event.status == "completed":
        return envelope("Webhook event retried successfully", payload)
    return envelope("Webhook event retry failed", payload)


@router.get("/{event_id}/logs")
async def get_webhook_event_logs(
    event_id: str,
    service: WebhookEventService = Depends(get_webhook_event_service),
):
    logs = service.get_logs(event_id)
    return envelope("Webhook event logs retrieved successfully", logs.model_dump(mode="json"))
