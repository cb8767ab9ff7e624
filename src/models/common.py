from __future__ import annotations

from typing import Any


def envelope(message: str, data: Any | None = None, error: str | None = None) -> dict[str, Any]:
    """Uniform response body: ``message`` always, ``data``/``error`` only when present."""
    body: dict[str, Any] = {"message": message}
    if data is not None:
        body["data"] = data
    if error is not None:
        body["error"] = error
    return body
