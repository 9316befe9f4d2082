"""Process-wide settings loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings
from pydantic._internal._model_construction import ModelMetaclass


class SettingsMeta(ModelMetaclass):
    """Lets subclasses override a field's default with a bare class attribute."""

    def __new__(mcls, name, bases, namespace, **kwargs):  # type: ignore[override]
        annotations = dict(namespace.get("__annotations__", {}))
        for base in bases:
            # model_fields includes fields inherited from every ancestor
            for field, info in getattr(base, "model_fields", {}).items():
                if field in namespace and field not in annotations:
                    annotations[field] = info.annotation
        namespace["__annotations__"] = annotations
        return super().__new__(mcls, name, bases, namespace, **kwargs)


class Settings(BaseSettings, metaclass=SettingsMeta):
    """Infrastructure shared by every component: telemetry, storage, logging.

    Ride behaviour (topics, timeouts, backoff) lives in the service's own
    ``deps.Settings``.
    """

    otel_exporter_otlp_endpoint: str | None = Field(
        default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )
    database_url: str = Field(
        "sqlite+aiosqlite:///./ride_coordinator.db", alias="DATABASE_URL"
    )
    sql_echo: bool = Field(False, alias="SQL_ECHO")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
        "case_sensitive": False,
        "populate_by_name": True,
    }


settings = Settings()
"""Singleton instance of :class:`Settings`."""
