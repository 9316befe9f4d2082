"""Entrypoint for the driver ride coordinator."""

from __future__ import annotations

import time

from fastapi import FastAPI

from src.common import settings as common_settings
from src.common.db import dispose_engine, init_models
from src.common.logging import bind_driver, get_logger, setup_logging
from src.common.metrics import JOB_DURATION, setup_metrics
from src.common.telemetry import setup_otel

from . import deps
from .api import router
from .channel import KafkaChannel
from .coordinator import RideCoordinator
from .earnings import EarningsLedger
from .reconciliation import StatusClient
from .session import DriverSession

logger = get_logger(__name__)

app = FastAPI(title=deps.SERVICE_NAME)
setup_metrics(app, deps.SERVICE_NAME)
setup_otel(app, deps.SERVICE_NAME)


@app.on_event("startup")
async def on_startup() -> None:
    start = time.monotonic()
    setup_logging(common_settings.settings.log_level)
    settings = deps.get_settings()
    session = DriverSession.from_settings(settings)
    bind_driver(session.driver_id)

    ledger: EarningsLedger | None = None
    if settings.record_earnings:
        await init_models()
        ledger = EarningsLedger(session)

    status_client = StatusClient(settings, session)
    coordinator = RideCoordinator(
        session, settings, fetcher=status_client, ledger=ledger
    )
    await coordinator.start()

    channel: KafkaChannel | None = None
    if settings.kafka_brokers:
        channel = KafkaChannel(
            settings,
            session,
            on_event=coordinator.on_event,
            on_connection=coordinator.on_connection,
            on_give_up=coordinator.on_channel_give_up,
        )
        coordinator.attach_channel(channel)
        await channel.open()
    else:
        logger.warning("channel_not_configured")

    app.state.coordinator = coordinator
    app.state.channel = channel
    app.state.ledger = ledger
    app.state.status_client = status_client
    JOB_DURATION.labels(deps.SERVICE_NAME, "startup").observe(time.monotonic() - start)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    channel = getattr(app.state, "channel", None)
    if channel is not None:
        await channel.close()
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is not None:
        await coordinator.stop()
    status_client = getattr(app.state, "status_client", None)
    if status_client is not None:
        await status_client.aclose()
    await dispose_engine()


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
async def readyz() -> dict[str, str]:
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is None:
        return {"status": "starting"}
    snapshot = coordinator.get_snapshot()
    return {"status": "ready", "connection": snapshot.connection.value}


app.include_router(router)
