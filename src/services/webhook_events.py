from __future__ import annotations

import logging
import math
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable, Iterator, Mapping

from src.domain.errors import (
    DuplicateEvent,
    NotFound,
    RetryNotEligible,
    ValidationError,
    WebhookCoreError,
)
from src.domain.lifecycle import (
    COMPLETED,
    DEAD,
    FAILED,
    PENDING,
    PROCESSING,
    can_transition,
    row_can_retry,
    status_after_failure,
)
from src.models.webhook_events import (
    WebhookEvent,
    WebhookEventCreate,
    WebhookEventFilters,
    WebhookEventLogEntry,
    WebhookEventLogs,
    WebhookEventPage,
    WebhookEventStatistics,
    WebhookEventUpdate,
)
from src.observability import incr_metric, log_event
from src.repositories.webhook_events import DuplicateEventKey, WebhookEventRepository, parse_ts
from src.services.handlers import HandlerRegistry


_STRING_SORT_FIELDS = {"status", "gateway", "event_type"}
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _required_text(value: Any, field: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError(f"{field} is required", field=field)
    return text


def _sort_value(row: Mapping[str, Any], sort_by: str) -> Any:
    if sort_by == "retry_count":
        return int(row.get("retry_count") or 0)
    if sort_by in _STRING_SORT_FIELDS:
        return str(row.get(sort_by) or "")
    return parse_ts(row.get(sort_by)) or _EPOCH


def _failure_detail(exc: BaseException) -> dict[str, Any]:
    detail: dict[str, Any] = {"error_type": type(exc).__name__, "error": str(exc)}
    if isinstance(exc, WebhookCoreError):
        detail["code"] = exc.code
        detail.update({k: v for k, v in exc.context.items() if v is not None})
    return detail


class WebhookEventService:
    """Lifecycle of stored webhook events.

    Status and retry_count are only ever written here. Every transition goes
    through ``_transition``, which checks the lifecycle table and guards on
    the current status, so two callers racing on the same row cannot both
    win. Retries of one event id are additionally serialized in-process.
    """

    def __init__(
        self,
        repository: WebhookEventRepository,
        handlers: HandlerRegistry,
        *,
        clock: Callable[[], datetime] = utc_now,
        max_retries: int = 3,
        bulk_workers: int = 1,
        bulk_max_ids: int = 100,
        cleanup_days: int = 30,
    ) -> None:
        self._repository = repository
        self._handlers = handlers
        self._clock = clock
        self._max_retries = max_retries
        self._bulk_workers = max(1, bulk_workers)
        self._bulk_max_ids = bulk_max_ids
        self._cleanup_days = cleanup_days
        self._locks: dict[str, list[Any]] = {}
        self._locks_guard = Lock()

    def _now(self) -> str:
        return self._clock().isoformat()

    @contextmanager
    def _event_lock(self, event_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(event_id)
            if entry is None:
                entry = self._locks[event_id] = [Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(event_id, None)

    def _load(self, event_id: str) -> dict[str, Any]:
        row = self._repository.find_by_id(event_id)
        if row is None:
            raise NotFound("Webhook event not found", webhook_event_id=event_id)
        return row

    def _transition(
        self,
        event_id: str,
        current: str,
        target: str,
        changes: Mapping[str, Any],
        **expected: Any,
    ) -> dict[str, Any] | None:
        """Move ``current -> target``; None when the row no longer matches."""
        if not can_transition(current, target):
            raise ValidationError(
                f"Webhook event cannot move from {current} to {target}",
                webhook_event_id=event_id,
                status=current,
            )
        return self._repository.update(
            event_id,
            {**changes, "status": target, "updated_at": self._now()},
            expected={"status": current, **expected},
        )

    # CRUD

    def create(self, data: WebhookEventCreate | Mapping[str, Any]) -> WebhookEvent:
        if not isinstance(data, WebhookEventCreate):
            data = WebhookEventCreate.model_validate(dict(data))
        gateway = _required_text(data.gateway, "gateway")
        event_type = _required_text(data.event_type, "event_type")
        now = self._now()
        row = {
            "id": str(uuid.uuid4()),
            "gateway": gateway,
            "event_type": event_type,
            "event_key": data.event_key,
            "payload": data.payload,
            "status": PENDING,
            "retry_count": 0,
            "max_retries": self._max_retries if data.max_retries is None else data.max_retries,
            "organization_id": data.organization_id,
            "error_message": None,
            "result": None,
            "created_at": now,
            "updated_at": now,
            "processed_at": None,
        }
        try:
            saved = self._repository.save(row)
        except DuplicateEventKey as exc:
            log_event("webhook_event_duplicate", gateway=gateway, event_key=data.event_key)
            raise DuplicateEvent(
                "Webhook event already recorded",
                gateway=gateway,
                event_key=data.event_key,
            ) from exc

        incr_metric("webhook.events.received", gateway=gateway, event_type=event_type)
        log_event(
            "webhook_event_created",
            webhook_event_id=saved["id"],
            gateway=gateway,
            event_type=event_type,
            organization_id=data.organization_id,
        )
        return WebhookEvent.model_validate(saved)

    def get(self, event_id: str) -> WebhookEvent:
        return WebhookEvent.model_validate(self._load(event_id))

    def find_by_event_key(self, gateway: str, event_key: str) -> WebhookEvent | None:
        row = self._repository.find_by_event_key(gateway, event_key)
        return WebhookEvent.model_validate(row) if row else None

    def list_events(
        self,
        filters: WebhookEventFilters | None = None,
        *,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        per_page: int = 15,
    ) -> WebhookEventPage:
        if page < 1 or per_page < 1:
            raise ValidationError("page and per_page must be positive")
        if sort_order not in {"asc", "desc"}:
            raise ValidationError("sort_order must be asc or desc", field="sort_order")
        criteria = filters.model_dump(exclude_none=True) if filters else {}
        rows = self._repository.find_filtered(criteria)
        rows.sort(key=lambda row: _sort_value(row, sort_by), reverse=sort_order == "desc")
        total = len(rows)
        start = (page - 1) * per_page
        items = [WebhookEvent.model_validate(row) for row in rows[start : start + per_page]]
        return WebhookEventPage(
            items=items,
            total=total,
            page=page,
            per_page=per_page,
            last_page=max(1, math.ceil(total / per_page)),
        )

    def update(self, event_id: str, changes: WebhookEventUpdate | Mapping[str, Any]) -> WebhookEvent:
        if not isinstance(changes, WebhookEventUpdate):
            changes = WebhookEventUpdate.model_validate(dict(changes))
        data = changes.model_dump(exclude_unset=True)
        for field in ("gateway", "event_type"):
            if field in data:
                data[field] = _required_text(data[field], field)
        if "payload" in data and data["payload"] is None:
            raise ValidationError("payload cannot be null", field="payload")

        with self._event_lock(event_id):
            current = self._load(event_id)
            if data.get("max_retries") is not None and data["max_retries"] < int(current.get("retry_count") or 0):
                raise ValidationError(
                    "max_retries cannot be lower than retry_count",
                    field="max_retries",
                    retry_count=current.get("retry_count"),
                )
            if "max_retries" in data and data["max_retries"] is None:
                data.pop("max_retries")
            if not data:
                return WebhookEvent.model_validate(current)
            updated = self._repository.update(event_id, {**data, "updated_at": self._now()})
            if updated is None:
                raise NotFound("Webhook event not found", webhook_event_id=event_id)
            log_event("webhook_event_updated", webhook_event_id=event_id, fields=sorted(data))
            if "max_retries" in data:
                updated = self._dead_letter_if_exhausted(updated)
        return WebhookEvent.model_validate(updated)

    def _dead_letter_if_exhausted(self, row: dict[str, Any]) -> dict[str, Any]:
        # a lowered budget can leave a failed event with no retries left
        if row.get("status") != FAILED or row_can_retry(row, self._max_retries):
            return row
        dead = self._transition(
            row["id"],
            FAILED,
            DEAD,
            {},
            retry_count=int(row.get("retry_count") or 0),
        )
        if dead is None:
            return self._load(row["id"])
        incr_metric("webhook.events.dead", gateway=dead.get("gateway"))
        log_event(
            "webhook_event_dead_lettered",
            level=logging.WARNING,
            webhook_event_id=dead["id"],
            retry_count=dead.get("retry_count"),
            max_retries=dead.get("max_retries"),
        )
        return dead

    def delete(self, event_id: str) -> None:
        if not self._repository.delete(event_id):
            raise NotFound("Webhook event not found", webhook_event_id=event_id)
        log_event("webhook_event_deleted", webhook_event_id=event_id)

    # Processing

    def process(self, event_id: str) -> WebhookEvent:
        """First attempt for a ``pending`` event. Handler failures become state."""
        with self._event_lock(event_id):
            row = self._load(event_id)
            if row.get("status") != PENDING:
                raise ValidationError(
                    "Webhook event is not pending",
                    webhook_event_id=event_id,
                    status=row.get("status"),
                )
            claimed = self._transition(event_id, PENDING, PROCESSING, {})
        if claimed is None:
            raise ValidationError("Webhook event is already being processed", webhook_event_id=event_id)
        return self._run_handler(WebhookEvent.model_validate(claimed), attempt="process")

    def retry(self, event_id: str, *, request_id: str | None = None) -> WebhookEvent:
        with self._event_lock(event_id):
            row = self._load(event_id)
            if not row_can_retry(row, self._max_retries):
                incr_metric("webhook.retries.rejected", gateway=row.get("gateway"))
                raise RetryNotEligible(
                    "Webhook event cannot be retried",
                    webhook_event_id=event_id,
                    status=row.get("status"),
                    retry_count=row.get("retry_count"),
                )
            retry_count = int(row.get("retry_count") or 0)
            claimed = self._transition(
                event_id,
                FAILED,
                PROCESSING,
                {"retry_count": retry_count + 1},
                retry_count=retry_count,
            )
            if claimed is None:
                incr_metric("webhook.retries.rejected", gateway=row.get("gateway"))
                raise RetryNotEligible("Webhook event retry already in progress", webhook_event_id=event_id)

        incr_metric("webhook.retries.attempted", gateway=claimed.get("gateway"))
        log_event(
            "webhook_event_retry_started",
            request_id=request_id,
            webhook_event_id=event_id,
            retry_count=retry_count + 1,
        )
        return self._run_handler(WebhookEvent.model_validate(claimed), attempt="retry", request_id=request_id)

    def _run_handler(
        self,
        event: WebhookEvent,
        *,
        attempt: str,
        request_id: str | None = None,
    ) -> WebhookEvent:
        try:
            result = self._handlers.dispatch(event)
        except Exception as exc:
            status = status_after_failure(event.retry_count, event.max_retries)
            changes = {
                "error_message": str(exc) or type(exc).__name__,
                "result": _failure_detail(exc),
            }
            metric = "webhook.retries.failed" if attempt == "retry" else "webhook.events.failed"
            incr_metric(metric, gateway=event.gateway, event_type=event.event_type)
            if status == DEAD:
                incr_metric("webhook.events.dead", gateway=event.gateway)
            log_event(
                f"webhook_event_{attempt}_failed",
                level=logging.WARNING,
                request_id=request_id,
                exc=exc,
                webhook_event_id=event.id,
                gateway=event.gateway,
                event_type=event.event_type,
                status=status,
                retry_count=event.retry_count,
            )
        else:
            status = COMPLETED
            changes = {
                "processed_at": self._now(),
                "error_message": None,
                "result": result,
            }
            metric = "webhook.retries.succeeded" if attempt == "retry" else "webhook.events.completed"
            incr_metric(metric, gateway=event.gateway, event_type=event.event_type)
            log_event(
                f"webhook_event_{attempt}_completed",
                request_id=request_id,
                webhook_event_id=event.id,
                gateway=event.gateway,
                event_type=event.event_type,
                retry_count=event.retry_count,
            )

        updated = self._transition(event.id, PROCESSING, status, changes)
        if updated is None:
            raise NotFound("Webhook event disappeared during processing", webhook_event_id=event.id)
        return WebhookEvent.model_validate(updated)

    def _retry_outcome(self, event_id: str, request_id: str | None) -> bool:
        try:
            self.retry(event_id, request_id=request_id)
        except WebhookCoreError as exc:
            log_event(
                "webhook_event_bulk_retry_skipped",
                request_id=request_id,
                webhook_event_id=event_id,
                reason=exc.code,
            )
            return False
        except Exception as exc:
            log_event(
                "webhook_event_bulk_retry_error",
                level=logging.ERROR,
                request_id=request_id,
                exc=exc,
                webhook_event_id=event_id,
            )
            return False
        return True

    def _retry_many(self, event_ids: list[str], request_id: str | None) -> dict[str, bool]:
        unique_ids = list(dict.fromkeys(event_ids))
        if self._bulk_workers == 1 or len(unique_ids) <= 1:
            outcomes = [self._retry_outcome(event_id, request_id) for event_id in unique_ids]
        else:
            with ThreadPoolExecutor(max_workers=min(self._bulk_workers, len(unique_ids))) as executor:
                outcomes = list(executor.map(lambda event_id: self._retry_outcome(event_id, request_id), unique_ids))
        return dict(zip(unique_ids, outcomes))

    def bulk_retry(self, event_ids: list[str], *, request_id: str | None = None) -> dict[str, bool]:
        """Retry each id independently.

        The result maps id -> whether the retry ran; an eligible event whose
        handler fails again still reports True and carries the failure itself.
        """
        if not event_ids:
            raise ValidationError("webhook_event_ids must not be empty", field="webhook_event_ids")
        if len(event_ids) > self._bulk_max_ids:
            raise ValidationError(
                f"At most {self._bulk_max_ids} webhook events can be retried at once",
                field="webhook_event_ids",
            )
        results = self._retry_many(event_ids, request_id)
        log_event(
            "webhook_event_bulk_retry",
            request_id=request_id,
            requested=len(event_ids),
            retried=sum(1 for ok in results.values() if ok),
        )
        return results

    def ready_for_retry(self, limit: int | None = None) -> Iterator[WebhookEvent]:
        """Lazily yield retry-eligible events, oldest first.

        Each call re-queries the store, so a fresh iteration reflects retries
        that happened since the last one.
        """
        rows = self._repository.find_filtered({"status": FAILED})
        eligible = [row for row in rows if row_can_retry(row, self._max_retries)]
        eligible.sort(key=lambda row: _sort_value(row, "created_at"))
        for index, row in enumerate(eligible):
            if limit is not None and index >= limit:
                return
            yield WebhookEvent.model_validate(row)

    def process_ready_for_retry(self, limit: int | None = None, *, request_id: str | None = None) -> dict[str, bool]:
        event_ids = [event.id for event in self.ready_for_retry(limit)]
        if not event_ids:
            return {}
        results = self._retry_many(event_ids, request_id)
        log_event(
            "webhook_events_ready_processed",
            request_id=request_id,
            processed=len(results),
            retried=sum(1 for ok in results.values() if ok),
        )
        return results

    # Reporting

    def get_statistics(self, filters: WebhookEventFilters | None = None) -> WebhookEventStatistics:
        criteria = filters.model_dump(exclude_none=True) if filters else {}
        rows = self._repository.find_filtered(criteria)
        total = len(rows)
        by_status: Counter[str] = Counter(str(row.get("status")) for row in rows)
        by_hour: Counter[str] = Counter()
        for row in rows:
            created_at = parse_ts(row.get("created_at"))
            if created_at is not None:
                by_hour[created_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:00:00")] += 1

        success_rate = round(by_status.get(COMPLETED, 0) / total * 100, 2) if total else 0.0
        average_retry_count = (
            round(sum(int(row.get("retry_count") or 0) for row in rows) / total, 2) if total else 0.0
        )
        return WebhookEventStatistics(
            total=total,
            by_status=dict(by_status),
            by_gateway=dict(Counter(str(row.get("gateway")) for row in rows)),
            by_event_type=dict(Counter(str(row.get("event_type")) for row in rows)),
            by_hour=dict(sorted(by_hour.items())),
            success_rate=success_rate,
            average_retry_count=average_retry_count,
            retry_eligible=sum(1 for row in rows if row_can_retry(row, self._max_retries)),
        )

    def get_logs(self, event_id: str) -> WebhookEventLogs:
        event = self.get(event_id)
        entries = [
            WebhookEventLogEntry(
                timestamp=event.created_at,
                level="info",
                message="Webhook event received",
                data={"gateway": event.gateway, "event_type": event.event_type},
            )
        ]
        for attempt in range(1, event.retry_count + 1):
            entries.append(
                WebhookEventLogEntry(
                    level="info",
                    message=f"Retry attempt {attempt} of {event.max_retries}",
                    data={"attempt": attempt},
                )
            )
        if event.status == PROCESSING:
            entries.append(WebhookEventLogEntry(timestamp=event.updated_at, level="info", message="Processing in progress"))
        if event.error_message and event.status in {FAILED, DEAD}:
            entries.append(
                WebhookEventLogEntry(
                    timestamp=event.updated_at,
                    level="error",
                    message="Processing failed",
                    data={"error_message": event.error_message, "retry_count": event.retry_count},
                )
            )
        if event.status == COMPLETED:
            entries.append(
                WebhookEventLogEntry(
                    timestamp=event.processed_at,
                    level="info",
                    message="Webhook event processed successfully",
                    data={"retry_count": event.retry_count},
                )
            )
        if event.status == DEAD:
            entries.append(
                WebhookEventLogEntry(
                    timestamp=event.updated_at,
                    level="warning",
                    message="Webhook event moved to dead letter",
                    data={"retry_count": event.retry_count, "max_retries": event.max_retries},
                )
            )
        return WebhookEventLogs(webhook_event=event, processing_logs=entries)

    def cleanup(self, days_old: int | None = None) -> int:
        days = self._cleanup_days if days_old is None else days_old
        if days < 1:
            raise ValidationError("days_old must be at least 1", field="days_old")
        cutoff = self._clock() - timedelta(days=days)
        deleted = self._repository.delete_completed_before(cutoff)
        incr_metric("webhook.events.purged", value=deleted)
        return deleted
