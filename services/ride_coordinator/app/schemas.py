"""Pydantic schemas for channel payloads, the status API and HTTP responses."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .domain import (
    ActiveRide,
    CommandKind,
    CompletedRide,
    ConnectionState,
    ErrorInfo,
    Location,
    RideOffer,
    Rider,
    RideState,
    Snapshot,
)
from .errors import CommandResult


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


_RIDE_ID = AliasChoices("rideId", "ride_id", "id")


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RiderSchema(_Payload):
    name: str = "Rider"
    rating: float | None = None

    def to_domain(self) -> Rider:
        return Rider(name=self.name, rating=self.rating)


class LocationSchema(_Payload):
    address: str = ""
    lat: float = Field(validation_alias=AliasChoices("lat", "latitude"))
    lon: float = Field(validation_alias=AliasChoices("lon", "lng", "longitude"))

    def to_domain(self) -> Location:
        return Location(address=self.address, lat=self.lat, lon=self.lon)


class RideOfferPayload(_Payload):
    """``ride:request`` event body."""

    ride_id: str = Field(validation_alias=_RIDE_ID)
    rider: RiderSchema = Field(default_factory=RiderSchema)
    pickup: LocationSchema
    destination: LocationSchema
    fare: int = Field(ge=0)
    distance_km: float = Field(
        0.0, ge=0, validation_alias=AliasChoices("distanceKm", "distance_km")
    )
    estimated_minutes: int = Field(
        0, ge=0, validation_alias=AliasChoices("estimatedMinutes", "estimated_minutes")
    )
    issued_at: datetime | None = Field(
        None, validation_alias=AliasChoices("issuedAt", "issued_at")
    )
    expires_at: datetime | None = Field(
        None, validation_alias=AliasChoices("expiresAt", "expires_at")
    )
    version: int = 0

    def to_offer(self, received_at: datetime, ttl_seconds: float) -> RideOffer:
        issued = _aware(self.issued_at) if self.issued_at else received_at
        if self.expires_at is not None:
            expires = _aware(self.expires_at)
        else:
            expires = issued + timedelta(seconds=ttl_seconds)
        return RideOffer(
            id=self.ride_id,
            rider=self.rider.to_domain(),
            pickup=self.pickup.to_domain(),
            destination=self.destination.to_domain(),
            fare=self.fare,
            distance_km=self.distance_km,
            estimated_minutes=self.estimated_minutes,
            issued_at=issued,
            expires_at=expires,
            version=self.version,
        )


class RideCancelledPayload(_Payload):
    ride_id: str = Field(validation_alias=_RIDE_ID)
    version: int | None = None
    reason: str | None = None


class RideStatusPayload(_Payload):
    ride_id: str = Field(validation_alias=_RIDE_ID)
    status: str
    version: int


class RideExpiredPayload(_Payload):
    ride_id: str = Field(validation_alias=_RIDE_ID)


class RideAckPayload(_Payload):
    """Server acknowledgment of an outbound command."""

    ride_id: str = Field(validation_alias=_RIDE_ID)
    command: CommandKind
    ok: bool = True
    reason: str | None = None
    version: int | None = None
    command_id: str | None = Field(
        None, validation_alias=AliasChoices("commandId", "command_id")
    )


class RideDetails(_Payload):
    rider: RiderSchema = Field(default_factory=RiderSchema)
    pickup: LocationSchema
    destination: LocationSchema
    fare: int = Field(0, ge=0)
    distance_km: float = Field(
        0.0, ge=0, validation_alias=AliasChoices("distanceKm", "distance_km")
    )
    estimated_minutes: int = Field(
        0, ge=0, validation_alias=AliasChoices("estimatedMinutes", "estimated_minutes")
    )
    accepted_at: datetime | None = Field(
        None, validation_alias=AliasChoices("acceptedAt", "accepted_at")
    )
    started_at: datetime | None = Field(
        None, validation_alias=AliasChoices("startedAt", "started_at")
    )


class CurrentRideStatus(_Payload):
    """Response of ``GET current-ride-status(driverId)``."""

    ride_id: str | None = Field(
        None, validation_alias=AliasChoices("rideId", "ride_id")
    )
    status: str | None = None
    version: int = 0
    ride: RideDetails | None = None

    def build_ride(self, state: RideState, now: datetime) -> ActiveRide:
        """Reconstruct an :class:`ActiveRide` from the server's view."""

        assert self.ride_id is not None
        details = self.ride
        if details is None:
            unknown = Location(address="", lat=0.0, lon=0.0)
            return ActiveRide(
                id=self.ride_id,
                rider=Rider(name="Rider"),
                pickup=unknown,
                destination=unknown,
                fare=0,
                distance_km=0.0,
                estimated_minutes=0,
                status=state,
                accepted_at=now,
                started_at=now if state is RideState.IN_PROGRESS else None,
                version=self.version,
            )
        started = _aware(details.started_at) if details.started_at else None
        if started is None and state is RideState.IN_PROGRESS:
            started = now
        return ActiveRide(
            id=self.ride_id,
            rider=details.rider.to_domain(),
            pickup=details.pickup.to_domain(),
            destination=details.destination.to_domain(),
            fare=details.fare,
            distance_km=details.distance_km,
            estimated_minutes=details.estimated_minutes,
            status=state,
            accepted_at=_aware(details.accepted_at) if details.accepted_at else now,
            started_at=started,
            version=self.version,
        )


class DispatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: CommandKind
    target_id: str | None = Field(None, alias="targetId")
    confirm: bool = False


class ErrorSchema(BaseModel):
    code: str
    message: str


class CommandResultSchema(BaseModel):
    ok: bool
    state: RideState
    ride_id: str | None = None
    error: ErrorSchema | None = None

    @classmethod
    def from_result(cls, result: CommandResult) -> "CommandResultSchema":
        error = None
        if result.error is not None:
            info = result.error.info()
            error = ErrorSchema(code=info.code, message=info.message)
        return cls(ok=result.ok, state=result.state, ride_id=result.ride_id, error=error)


class SnapshotSchema(BaseModel):
    state: RideState
    offer: RideOffer | None = None
    active_ride: ActiveRide | None = None
    connection: ConnectionState
    reconnecting: bool
    support_required: bool
    last_error: ErrorInfo | None = None
    last_completed: CompletedRide | None = None
    pending: list[str] = Field(default_factory=list)

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "SnapshotSchema":
        return cls(
            state=snapshot.state,
            offer=snapshot.offer,
            active_ride=snapshot.active_ride,
            connection=snapshot.connection,
            reconnecting=snapshot.reconnecting,
            support_required=snapshot.support_required,
            last_error=snapshot.last_error,
            last_completed=snapshot.last_completed,
            pending=list(snapshot.pending),
        )


class CompletedRideSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ride_id: str
    fare: int
    distance_km: float
    duration_seconds: int
    completed_at: datetime


class EarningsResponse(BaseModel):
    since: datetime
    total: int
    rides: list[CompletedRideSchema] = Field(default_factory=list)
