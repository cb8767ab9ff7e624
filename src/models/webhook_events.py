from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field, model_validator

from src.domain.lifecycle import WebhookEventStatus, can_retry


SortField = Literal[
    "created_at",
    "updated_at",
    "processed_at",
    "retry_count",
    "status",
    "gateway",
    "event_type",
]


class WebhookEvent(BaseModel):
    id: str
    gateway: str
    event_type: str
    event_key: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    status: WebhookEventStatus = "pending"
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    organization_id: str | None = None
    error_message: str | None = None
    result: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processed_at: datetime | None = None

    @model_validator(mode="after")
    def _retry_count_within_budget(self) -> "WebhookEvent":
        if self.retry_count > self.max_retries:
            raise ValueError("retry_count cannot exceed max_retries")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def can_retry(self) -> bool:
        return can_retry(self.status, self.retry_count, self.max_retries)


class WebhookEventCreate(BaseModel):
    gateway: str | None = None
    event_type: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    organization_id: str | None = None
    event_key: str | None = None
    max_retries: int | None = Field(default=None, ge=0, le=50)


class WebhookEventUpdate(BaseModel):
    gateway: str | None = None
    event_type: str | None = None
    payload: dict[str, Any] | None = None
    organization_id: str | None = None
    max_retries: int | None = Field(default=None, ge=0, le=50)


class WebhookEventFilters(BaseModel):
    gateway: str | None = None
    event_type: str | None = None
    status: WebhookEventStatus | None = None
    organization_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None


class WebhookEventPage(BaseModel):
    items: list[WebhookEvent]
    total: int
    page: int
    per_page: int
    last_page: int


class BulkRetryRequest(BaseModel):
    webhook_event_ids: list[str] = Field(default_factory=list)


class BulkRetryResponse(BaseModel):
    total_requested: int
    successful: int
    failed: int
    results: dict[str, bool]


class WebhookEventStatistics(BaseModel):
    total: int
    by_status: dict[str, int]
    by_gateway: dict[str, int]
    by_event_type: dict[str, int]
    by_hour: dict[str, int]
    success_rate: float
    average_retry_count: float
    retry_eligible: int


class WebhookEventLogEntry(BaseModel):
    timestamp: datetime | None = None
    level: Literal["info", "warning", "error"]
    message: str
    data: dict[str, Any] | None = None


class WebhookEventLogs(BaseModel):
    webhook_event: WebhookEvent
    processing_logs: list[WebhookEventLogEntry]


class CleanupRequest(BaseModel):
    days_old: int | None = Field(default=None, ge=1, le=3650)
