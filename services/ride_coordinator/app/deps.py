from functools import lru_cache

from pydantic_settings import BaseSettings

from src.common.settings import SettingsMeta

SERVICE_NAME = "ride_coordinator"


class Settings(BaseSettings, metaclass=SettingsMeta):
    kafka_brokers: str | None = None
    inbound_topic: str = "driver.events"
    outbound_topic: str = "driver.commands"

    driver_id: str = "driver-local"
    driver_token: str | None = None
    device_platform: str = "android"

    status_api_url: str = "http://localhost:3000/api"
    status_api_timeout: float = 5.0

    offer_ttl_seconds: float = 30.0
    ack_timeout_seconds: float = 5.0
    reconnect_grace_seconds: float = 3.0

    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_max_attempts: int = 10

    reconcile_base_delay: float = 1.0
    reconcile_max_delay: float = 30.0
    reconcile_max_attempts: int = 8

    record_earnings: bool = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
