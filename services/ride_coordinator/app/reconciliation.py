"""Resynchronisation of local ride state with the backend's authoritative view."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Protocol

import httpx

from src.common.logging import get_logger
from src.common.metrics import RECONCILIATIONS

from . import deps
from .channel import backoff_delay
from .deps import SERVICE_NAME
from .errors import ReconciliationFailed
from .schemas import CurrentRideStatus
from .session import DriverSession

logger = get_logger(__name__)

FailureHandler = Callable[[int, ReconciliationFailed], Awaitable[None]]


class StatusFetcher(Protocol):
    async def fetch(self) -> CurrentRideStatus: ...


class StatusClient:
    """Client for ``GET /drivers/{driver_id}/current-ride``."""

    def __init__(
        self,
        settings: deps.Settings,
        session: DriverSession,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._session = session
        self._client = httpx.AsyncClient(
            base_url=settings.status_api_url,
            timeout=settings.status_api_timeout,
            headers=session.auth_headers(),
            transport=transport,
        )

    async def fetch(self) -> CurrentRideStatus:
        path = f"/drivers/{self._session.driver_id}/current-ride"
        try:
            response = await self._client.get(path)
            response.raise_for_status()
            return CurrentRideStatus.model_validate(response.json())
        except httpx.HTTPError as exc:
            raise ReconciliationFailed(f"status request failed: {exc}") from exc
        except ValueError as exc:
            # invalid JSON or a body that does not match the schema
            raise ReconciliationFailed("status response malformed") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


class ReconciliationHandler:
    """Fetches the current ride status with capped exponential backoff.

    Also tracks connection gaps so the coordinator knows when a reconnect
    warrants a resync: the first connect of a session always does (cold
    start), later ones only after a disconnect longer than the grace window.
    """

    def __init__(
        self,
        fetcher: StatusFetcher,
        settings: deps.Settings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._fetcher = fetcher
        self._settings = settings
        self._sleep = sleep
        self._ever_connected = False
        self._disconnected_at: datetime | None = None

    def note_disconnected(self, now: datetime) -> None:
        if self._disconnected_at is None:
            self._disconnected_at = now

    def note_connected(self, now: datetime) -> bool:
        """Record a (re)connect and tell whether a resync is required."""

        if not self._ever_connected:
            self._ever_connected = True
            self._disconnected_at = None
            return True
        gap_started, self._disconnected_at = self._disconnected_at, None
        if gap_started is None:
            return False
        gap = (now - gap_started).total_seconds()
        return gap > self._settings.reconnect_grace_seconds

    async def run(self, on_failure: FailureHandler | None = None) -> CurrentRideStatus:
        """Fetch until success or ``reconcile_max_attempts`` failures."""

        settings = self._settings
        attempt = 0
        while True:
            attempt += 1
            try:
                status = await self._fetcher.fetch()
            except ReconciliationFailed as exc:
                RECONCILIATIONS.labels(SERVICE_NAME, "failed").inc()
                logger.warning(
                    "reconciliation_attempt_failed", attempt=attempt, error=exc.message
                )
                if on_failure is not None:
                    await on_failure(attempt, exc)
                if attempt >= settings.reconcile_max_attempts:
                    RECONCILIATIONS.labels(SERVICE_NAME, "exhausted").inc()
                    raise ReconciliationFailed(
                        f"giving up after {attempt} attempts"
                    ) from exc
                await self._sleep(
                    backoff_delay(
                        attempt,
                        settings.reconcile_base_delay,
                        settings.reconcile_max_delay,
                    )
                )
                continue
            RECONCILIATIONS.labels(SERVICE_NAME, "succeeded").inc()
            logger.info(
                "reconciliation_fetched",
                ride_id=status.ride_id,
                status=status.status,
                version=status.version,
            )
            return status
