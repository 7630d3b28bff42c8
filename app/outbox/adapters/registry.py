from __future__ import annotations

from app.models.tables import Connection
from app.outbox.adapters.base import ChannelAdapter
from app.outbox.adapters.official import OfficialApiAdapter
from app.outbox.adapters.session import SessionChannelAdapter

OFFICIAL_PROVIDERS = {"oficial", "official", "beta"}
OFFICIAL_CHANNELS = {"whatsapp-oficial", "whatsapp_oficial", "whatsapp_official", "whatsapp-official"}


def is_official(connection: Connection) -> bool:
    provider = (connection.provider or "").lower()
    channel = (connection.channel or "").lower()
    return provider in OFFICIAL_PROVIDERS or channel in OFFICIAL_CHANNELS


def get_adapter(connection: Connection, *, default_country_code: str = "55") -> ChannelAdapter:
    if is_official(connection):
        return OfficialApiAdapter(connection=connection, default_country_code=default_country_code)
    return SessionChannelAdapter(connection=connection, default_country_code=default_country_code)
