"""Ledger of settled rides and the driver's earnings."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from src.common.db import get_session
from src.common.logging import get_logger

from . import models
from .domain import CompletedRide
from .session import DriverSession

logger = get_logger(__name__)


class EarningsLedger:
    """Persists every :class:`CompletedRide` of a driver session."""

    def __init__(self, session: DriverSession) -> None:
        self._driver_id = session.driver_id

    async def record(self, completed: CompletedRide) -> bool:
        """Store ``completed``; a ride recorded twice keeps its latest values."""

        try:
            async with get_session() as db:
                await db.merge(
                    models.CompletedRideRecord(
                        ride_id=completed.ride_id,
                        driver_id=self._driver_id,
                        fare=completed.fare,
                        distance_km=completed.distance_km,
                        duration_seconds=completed.duration_seconds,
                        completed_at=completed.completed_at,
                    )
                )
                await db.commit()
        except SQLAlchemyError:
            logger.exception("earnings_record_failed", ride_id=completed.ride_id)
            return False
        logger.info(
            "earnings_recorded",
            ride_id=completed.ride_id,
            fare=completed.fare,
            duration_seconds=completed.duration_seconds,
        )
        return True

    async def total_since(self, since: datetime) -> int:
        """Sum of fares (minor units) completed at or after ``since``."""

        stmt = select(func.coalesce(func.sum(models.CompletedRideRecord.fare), 0)).where(
            models.CompletedRideRecord.driver_id == self._driver_id,
            models.CompletedRideRecord.completed_at >= since,
        )
        async with get_session() as db:
            total = await db.scalar(stmt)
        return int(total or 0)

    async def rides(
        self, since: datetime | None = None
    ) -> list[models.CompletedRideRecord]:
        stmt = select(models.CompletedRideRecord).where(
            models.CompletedRideRecord.driver_id == self._driver_id
        )
        if since is not None:
            stmt = stmt.where(models.CompletedRideRecord.completed_at >= since)
        stmt = stmt.order_by(models.CompletedRideRecord.completed_at)
        async with get_session() as db:
            return list(await db.scalars(stmt))
