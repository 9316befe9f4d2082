"""Driver session context shared by the coordinator components."""

from __future__ import annotations

from dataclasses import dataclass

from . import deps


@dataclass(frozen=True)
class DriverSession:
    """Who is driving and how to reach the backend on their behalf.

    Passed explicitly to the channel, dispatcher and reconciliation handler
    instead of living in module globals.
    """

    driver_id: str
    token: str | None = None
    platform: str = "android"

    @classmethod
    def from_settings(cls, settings: deps.Settings) -> "DriverSession":
        return cls(
            driver_id=settings.driver_id,
            token=settings.driver_token,
            platform=settings.device_platform,
        )

    def auth_headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}
