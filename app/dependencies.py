"""FastAPI providers for the external clients, overridable in tests."""
from typing import Callable

from app.integrations.telegram import TelegramGateway
from app.services.sync import Connector, get_connector


def get_gateway() -> TelegramGateway:
    return TelegramGateway.from_settings()


def get_connector_factory() -> Callable[..., Connector]:
    return get_connector
