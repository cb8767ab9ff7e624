from __future__ import annotations

from typing import Any


class ChannelConfigRepository:
    """Tenant lookup: WhatsApp phone number or WAHA session name -> organization."""

    table_name = "channel_configs"

    def __init__(self, client: Any, channel: str = "whatsapp") -> None:
        self._client = client
        self._channel = channel

    def find_organization_id(self, phone: str | None, session: str | None = None) -> str | None:
        for identifier in (phone, session):
            if not identifier:
                continue
            result = (
                self._client.table(self.table_name)
                .select("organization_id")
                .eq("channel", self._channel)
                .eq("channel_identifier", identifier)
                .eq("is_active", True)
                .execute()
            )
            if result.data:
                return result.data[0].get("organization_id")
        return None
