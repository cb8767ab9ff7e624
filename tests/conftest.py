from datetime import datetime, timedelta, timezone
from threading import Lock

import pytest

from src.main import app
from src.observability import reset_metrics
from src.repositories.webhook_events import WebhookEventRepository
from src.services.handlers import HandlerRegistry
from src.services.webhook_events import WebhookEventService


class FakeResponse:
    def __init__(self, data):
        self.data = data


def _as_dt(value):
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return value


class FakeQuery:
    def __init__(self, table_name: str, db: "FakeSupabase"):
        self.table_name = table_name
        self.db = db
        self.operation = "select"
        self.insert_payload = None
        self.update_payload = None
        self.filters = []

    def select(self, _fields: str):
        self.operation = "select"
        return self

    def insert(self, payload: dict):
        self.operation = "insert"
        self.insert_payload = payload
        return self

    def update(self, payload: dict):
        self.operation = "update"
        self.update_payload = payload
        return self

    def delete(self):
        self.operation = "delete"
        return self

    def eq(self, key: str, value):
        self.filters.append(("eq", key, value))
        return self

    def lt(self, key: str, value):
        self.filters.append(("lt", key, value))
        return self

    def _matches(self, row: dict) -> bool:
        for kind, key, value in self.filters:
            if kind == "eq" and row.get(key) != value:
                return False
            if kind == "lt":
                if row.get(key) is None or not _as_dt(row[key]) < _as_dt(value):
                    return False
        return True

    def execute(self):
        if self.db.fail_with is not None:
            raise self.db.fail_with
        with self.db.lock:
            self.db.calls.append((self.table_name, self.operation, list(self.filters)))
            table = self.db.tables.setdefault(self.table_name, [])
            if self.operation == "insert":
                row = dict(self.insert_payload or {})
                if self.table_name == "webhook_events" and row.get("event_key") is not None:
                    for existing in table:
                        if (existing.get("gateway"), existing.get("event_key")) == (row.get("gateway"), row["event_key"]):
                            raise Exception("duplicate key value violates unique constraint")
                row.setdefault("id", f"{self.table_name}-{len(table) + 1}")
                row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
                table.append(row)
                return FakeResponse([dict(row)])

            if self.operation == "update":
                updated = []
                for row in table:
                    if self._matches(row):
                        row.update(self.update_payload or {})
                        updated.append(dict(row))
                return FakeResponse(updated)

            if self.operation == "delete":
                removed = [row for row in table if self._matches(row)]
                self.db.tables[self.table_name] = [row for row in table if not self._matches(row)]
                return FakeResponse([dict(row) for row in removed])

            return FakeResponse([dict(row) for row in table if self._matches(row)])


class FakeSupabase:
    def __init__(self, tables: dict):
        self.tables = tables
        self.calls = []
        self.lock = Lock()
        self.fail_with = None

    def table(self, table_name: str):
        return FakeQuery(table_name, self)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _isolate_app_state():
    reset_metrics()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def fake_db():
    return FakeSupabase({"webhook_events": [], "channel_configs": []})


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def make_service(fake_db, registry, clock):
    def _make(**kwargs):
        kwargs.setdefault("clock", clock)
        return WebhookEventService(WebhookEventRepository(fake_db), registry, **kwargs)

    return _make


@pytest.fixture
def service(make_service):
    return make_service()
