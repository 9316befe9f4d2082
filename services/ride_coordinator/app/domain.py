"""Domain types for the driver's ride lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum


class RideState(str, Enum):
    IDLE = "idle"
    OFFER_PENDING = "offer_pending"
    EN_ROUTE_TO_PICKUP = "en_route_to_pickup"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RECONCILING = "reconciling"


RIDE_STATES = (RideState.EN_ROUTE_TO_PICKUP, RideState.IN_PROGRESS)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class CommandKind(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    START = "start"
    COMPLETE = "complete"
    ABANDON = "abandon"
    NAVIGATE = "navigate"

    @property
    def event_name(self) -> str:
        """Outbound channel event carrying this command."""

        return f"ride:{self.value}"


# Ride state a command is acknowledged by when the server reports it.
COMMAND_TARGETS: dict[CommandKind, RideState] = {
    CommandKind.ACCEPT: RideState.EN_ROUTE_TO_PICKUP,
    CommandKind.START: RideState.IN_PROGRESS,
    CommandKind.COMPLETE: RideState.COMPLETED,
}

_PROGRESS = {
    RideState.EN_ROUTE_TO_PICKUP: 1,
    RideState.IN_PROGRESS: 2,
    RideState.COMPLETED: 3,
    RideState.CANCELLED: 3,
}

_SERVER_STATUSES: dict[str, RideState] = {
    "accepted": RideState.EN_ROUTE_TO_PICKUP,
    "en_route": RideState.EN_ROUTE_TO_PICKUP,
    "en_route_to_pickup": RideState.EN_ROUTE_TO_PICKUP,
    "arriving": RideState.EN_ROUTE_TO_PICKUP,
    "started": RideState.IN_PROGRESS,
    "in_progress": RideState.IN_PROGRESS,
    "in-progress": RideState.IN_PROGRESS,
    "completed": RideState.COMPLETED,
    "cancelled": RideState.CANCELLED,
    "canceled": RideState.CANCELLED,
}


def state_for_server_status(status: str | None) -> RideState | None:
    """Map a backend ride status string onto a local state.

    ``cancelled_user``/``cancelled_driver`` style variants map to
    :attr:`RideState.CANCELLED`; unknown strings return ``None``.
    """

    if not status:
        return None
    key = status.strip().lower()
    if key.startswith("cancel"):
        return RideState.CANCELLED
    return _SERVER_STATUSES.get(key)


def reaches(state: RideState, target: RideState) -> bool:
    """Whether ``state`` is at or past ``target`` in the ride progression."""

    return _PROGRESS.get(state, 0) >= _PROGRESS.get(target, 99)


@dataclass(frozen=True)
class Rider:
    name: str
    rating: float | None = None


@dataclass(frozen=True)
class Location:
    address: str
    lat: float
    lon: float

    @property
    def coordinates(self) -> tuple[float, float]:
        return (self.lat, self.lon)


@dataclass(frozen=True)
class RideOffer:
    """A ride proposed to the driver, awaiting accept or reject."""

    id: str
    rider: Rider
    pickup: Location
    destination: Location
    fare: int
    distance_km: float
    estimated_minutes: int
    issued_at: datetime
    expires_at: datetime
    version: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class ActiveRide:
    """The ride the driver committed to."""

    id: str
    rider: Rider
    pickup: Location
    destination: Location
    fare: int
    distance_km: float
    estimated_minutes: int
    status: RideState
    accepted_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    version: int = 0

    @classmethod
    def from_offer(cls, offer: RideOffer, accepted_at: datetime) -> "ActiveRide":
        return cls(
            id=offer.id,
            rider=offer.rider,
            pickup=offer.pickup,
            destination=offer.destination,
            fare=offer.fare,
            distance_km=offer.distance_km,
            estimated_minutes=offer.estimated_minutes,
            status=RideState.EN_ROUTE_TO_PICKUP,
            accepted_at=accepted_at,
            version=offer.version,
        )

    def evolve(self, **changes: object) -> "ActiveRide":
        return replace(self, **changes)


@dataclass(frozen=True)
class CompletedRide:
    ride_id: str
    fare: int
    distance_km: float
    duration_seconds: int
    completed_at: datetime


@dataclass
class PendingCommand:
    """An outbound command waiting for the server's acknowledgment."""

    command_id: str
    kind: CommandKind
    target_id: str
    submitted_at: datetime
    attempts: int = 1


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    message: str


@dataclass(frozen=True)
class Snapshot:
    """Read-only view of the coordinator handed to presentation code."""

    state: RideState
    offer: RideOffer | None = None
    active_ride: ActiveRide | None = None
    connection: ConnectionState = ConnectionState.DISCONNECTED
    reconnecting: bool = False
    support_required: bool = False
    last_error: ErrorInfo | None = None
    last_completed: CompletedRide | None = None
    pending: tuple[str, ...] = field(default_factory=tuple)
