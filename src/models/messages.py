from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class CanonicalMessage(BaseModel):
    """Inbound chat message, independent of the gateway payload it came from."""

    model_config = ConfigDict(populate_by_name=True)

    gateway: str
    message_id: str
    from_: str | None = Field(default=None, alias="from")
    to: str | None = None
    text: str | None = None
    message_type: str = "text"
    timestamp: int | None = None
    organization_id: str | None = None
    customer_phone: str | None = None
    customer_name: str | None = None
    session: str | None = None
    from_me: bool = False
    raw_data: dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class InboundWebhookResult(BaseModel):
    message_id: str
    session: str | None = None
    organization_id: str | None = None
    webhook_event_id: str | None = None
    status: Literal["completed", "failed", "dead", "duplicate"]
    response_sent: bool = False
