from datetime import timedelta

import httpx
import pytest

from services.ride_coordinator.app.errors import ReconciliationFailed
from services.ride_coordinator.app.reconciliation import (
    ReconciliationHandler,
    StatusClient,
)
from services.ride_coordinator.app.session import DriverSession

from tests.ride_fakes import T0, FakeFetcher, RigSettings, ride_status


@pytest.mark.anyio
async def test_status_client_fetches_current_ride() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "rideId": "r3",
                "status": "started",
                "version": 7,
                "ride": {
                    "rider": {"name": "Bob"},
                    "pickup": {"address": "A", "latitude": 1.5, "longitude": 2.5},
                    "destination": {"address": "B", "lat": 3.5, "lng": 4.5},
                    "fare": 1800,
                },
            },
        )

    client = StatusClient(
        RigSettings(),
        DriverSession("d1", token="secret"),
        transport=httpx.MockTransport(handler),
    )
    try:
        status = await client.fetch()
    finally:
        await client.aclose()

    assert status.ride_id == "r3"
    assert status.version == 7
    assert status.ride is not None and status.ride.fare == 1800
    assert seen[0].url.path.endswith("/drivers/d1/current-ride")
    assert seen[0].headers["Authorization"] == "Bearer secret"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="down"),
        httpx.Response(200, text="<html>"),
        httpx.Response(200, json={"rideId": "r1", "version": "many"}),
    ],
)
async def test_status_client_failures_raise(response: httpx.Response) -> None:
    client = StatusClient(
        RigSettings(),
        DriverSession("d1"),
        transport=httpx.MockTransport(lambda request: response),
    )
    try:
        with pytest.raises(ReconciliationFailed):
            await client.fetch()
    finally:
        await client.aclose()


@pytest.mark.anyio
async def test_handler_retries_with_backoff() -> None:
    class Backoff(RigSettings):
        reconcile_max_attempts = 5
        reconcile_base_delay = 1.0
        reconcile_max_delay = 4.0

    delays: list[float] = []
    failures: list[int] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    async def on_failure(attempt: int, exc: ReconciliationFailed) -> None:
        failures.append(attempt)

    fetcher = FakeFetcher(
        ReconciliationFailed("a"),
        ReconciliationFailed("b"),
        ReconciliationFailed("c"),
        ReconciliationFailed("d"),
        ride_status("r1", "accepted", 2),
    )
    handler = ReconciliationHandler(fetcher, Backoff(), sleep=fake_sleep)
    status = await handler.run(on_failure=on_failure)

    assert status.ride_id == "r1"
    assert fetcher.calls == 5
    assert delays == [1.0, 2.0, 4.0, 4.0]
    assert failures == [1, 2, 3, 4]


@pytest.mark.anyio
async def test_handler_gives_up_after_max_attempts() -> None:
    async def fake_sleep(delay: float) -> None:
        pass

    fetcher = FakeFetcher(ReconciliationFailed("down"))
    handler = ReconciliationHandler(fetcher, RigSettings(), sleep=fake_sleep)
    with pytest.raises(ReconciliationFailed):
        await handler.run()
    assert fetcher.calls == RigSettings().reconcile_max_attempts


def test_reconnect_gap_against_grace_window() -> None:
    handler = ReconciliationHandler(FakeFetcher(), RigSettings())
    assert handler.note_connected(T0) is True
    assert handler.note_connected(T0 + timedelta(seconds=1)) is False

    handler.note_disconnected(T0)
    assert handler.note_connected(T0 + timedelta(seconds=3)) is False

    handler.note_disconnected(T0 + timedelta(seconds=10))
    handler.note_disconnected(T0 + timedelta(seconds=12))
    assert handler.note_connected(T0 + timedelta(seconds=13.5)) is True
