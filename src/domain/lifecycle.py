from __future__ import annotations

from typing import Any, Final, Literal, Mapping


WebhookEventStatus = Literal["pending", "processing", "completed", "failed", "dead"]

PENDING: Final = "pending"
PROCESSING: Final = "processing"
COMPLETED: Final = "completed"
FAILED: Final = "failed"
DEAD: Final = "dead"

STATUSES: Final[tuple[str, ...]] = (PENDING, PROCESSING, COMPLETED, FAILED, DEAD)

ALLOWED_TRANSITIONS: Final[dict[str, frozenset[str]]] = {
    PENDING: frozenset({PROCESSING}),
    PROCESSING: frozenset({COMPLETED, FAILED, DEAD}),
    FAILED: frozenset({PROCESSING, DEAD}),
    COMPLETED: frozenset(),
    DEAD: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def can_retry(status: str, retry_count: int, max_retries: int) -> bool:
    return status == FAILED and retry_count < max_retries


def row_can_retry(row: Mapping[str, Any], default_max_retries: int) -> bool:
    max_retries = row.get("max_retries")
    if max_retries is None:
        max_retries = default_max_retries
    return can_retry(
        str(row.get("status") or ""),
        int(row.get("retry_count") or 0),
        int(max_retries),
    )


def status_after_failure(retry_count: int, max_retries: int) -> WebhookEventStatus:
    """Status a failed attempt lands in: dead once the retry budget is spent."""
    if retry_count >= max_retries:
        return "dead"
    return "failed"
