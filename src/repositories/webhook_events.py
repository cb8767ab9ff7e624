from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from src.observability import log_event


_EQ_FILTERS = ("gateway", "event_type", "status", "organization_id")


class DuplicateEventKey(Exception):
    """Insert collided with an existing (gateway, event_key) pair."""


def parse_ts(value: Any) -> datetime | None:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif not value:
        return None
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _within_window(row: Mapping[str, Any], date_from: datetime | None, date_to: datetime | None) -> bool:
    created_at = parse_ts(row.get("created_at"))
    if created_at is None:
        return date_from is None and date_to is None
    if date_from and created_at < date_from:
        return False
    if date_to and created_at > date_to:
        return False
    return True


class WebhookEventRepository:
    """Row access for ``webhook_events`` over the Supabase table API.

    Rows are plain dicts. Only ``WebhookEventService`` writes ``status`` and
    ``retry_count``; it does so through ``update`` with an ``expected`` guard.
    """

    table_name = "webhook_events"

    def __init__(self, client: Any) -> None:
        self._client = client

    def _table(self) -> Any:
        return self._client.table(self.table_name)

    def find_by_id(self, event_id: str) -> dict[str, Any] | None:
        result = self._table().select("*").eq("id", event_id).execute()
        if not result.data:
            return None
        return result.data[0]

    def find_by_event_key(self, gateway: str, event_key: str) -> dict[str, Any] | None:
        result = self._table().select("*").eq("gateway", gateway).eq("event_key", event_key).execute()
        if not result.data:
            return None
        return result.data[0]

    def find_filtered(self, criteria: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        criteria = criteria or {}
        query = self._table().select("*")
        for key in _EQ_FILTERS:
            value = criteria.get(key)
            if value is not None:
                query = query.eq(key, value)
        rows = query.execute().data or []
        date_from = parse_ts(criteria.get("date_from"))
        date_to = parse_ts(criteria.get("date_to"))
        if date_from is None and date_to is None:
            return rows
        return [row for row in rows if _within_window(row, date_from, date_to)]

    def save(self, row: Mapping[str, Any]) -> dict[str, Any]:
        """Insert a new row, or update an existing one when ``id`` is present."""
        if row.get("id"):
            changes = {k: v for k, v in row.items() if k != "id"}
            updated = self.update(str(row["id"]), changes)
            if updated is None:
                raise LookupError(f"webhook event {row['id']} no longer exists")
            return updated
        try:
            result = self._table().insert(dict(row)).execute()
        except Exception as exc:
            text = str(exc).lower()
            if "duplicate" in text or "unique" in text:
                raise DuplicateEventKey(str(exc)) from exc
            raise
        if not result.data:
            raise RuntimeError("webhook event insert returned no row")
        return result.data[0]

    def update(
        self,
        event_id: str,
        changes: Mapping[str, Any],
        *,
        expected: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Conditional update; returns None when no row matched ``expected``."""
        query = self._table().update(dict(changes)).eq("id", event_id)
        for key, value in (expected or {}).items():
            query = query.eq(key, value)
        result = query.execute()
        if not result.data:
            return None
        return result.data[0]

    def delete(self, event_id: str) -> bool:
        result = self._table().delete().eq("id", event_id).execute()
        return bool(result.data)

    def delete_completed_before(self, cutoff: datetime) -> int:
        result = (
            self._table()
            .delete()
            .eq("status", "completed")
            .lt("created_at", cutoff.isoformat())
            .execute()
        )
        deleted = len(result.data or [])
        log_event("webhook_events_purged", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted
