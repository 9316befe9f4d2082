"""Ride lifecycle state machine.

Owns the single pending :class:`RideOffer` and the single :class:`ActiveRide`
of a driver session. All methods are synchronous and must only be called from
the coordinator's processing loop; they either apply a transition or raise one
of the errors from :mod:`.errors` without touching state.

Transitions::

    idle            --offer-received-->   offer_pending
    offer_pending   --accept-->           en_route_to_pickup
    offer_pending   --reject/expired-->   idle
    en_route        --start-->            in_progress
    in_progress     --complete-->         completed --> idle
    ride states     --abandon-->          idle
    any active      --cancelled-->        cancelled --> idle
    any             --reconcile-->        reconciling --> server truth
"""

from __future__ import annotations

from datetime import datetime

from src.common.logging import get_logger
from src.common.metrics import RIDE_TRANSITIONS

from .deps import SERVICE_NAME
from .domain import (
    RIDE_STATES,
    ActiveRide,
    CommandKind,
    CompletedRide,
    RideOffer,
    RideState,
    state_for_server_status,
)
from .errors import (
    DuplicateCommand,
    InvalidStateTransition,
    OfferExpired,
    StaleEvent,
)
from .schemas import CurrentRideStatus

logger = get_logger(__name__)

HISTORY_SIZE = 64


def _remember(store: dict[str, str], key: str, value: str) -> None:
    store.pop(key, None)
    store[key] = value
    while len(store) > HISTORY_SIZE:
        store.pop(next(iter(store)))


class RideStateMachine:
    """Decides which ride state the driver is in and which actions are valid."""

    def __init__(self) -> None:
        self._state = RideState.IDLE
        self._offer: RideOffer | None = None
        self._ride: ActiveRide | None = None
        # offer id -> "accept" | "reject"; guards against repeated decisions
        self._decided: dict[str, str] = {}
        # ride/offer id -> how it left local state
        self._history: dict[str, str] = {}
        # newest offer seen; the implicit target of an id-less accept or reject
        self._last_offer_id: str | None = None

    @property
    def state(self) -> RideState:
        return self._state

    @property
    def offer(self) -> RideOffer | None:
        return self._offer

    @property
    def active_ride(self) -> ActiveRide | None:
        return self._ride

    @property
    def reconciling(self) -> bool:
        return self._state is RideState.RECONCILING

    def current_id(self) -> str | None:
        if self._ride is not None:
            return self._ride.id
        if self._offer is not None:
            return self._offer.id
        return None

    def is_known(self, ride_id: str) -> bool:
        """Whether ``ride_id`` is current or recently left local state."""

        return ride_id == self.current_id() or ride_id in self._history

    def outcome(self, ride_id: str) -> str | None:
        return self._history.get(ride_id)

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------

    def check_command(self, kind: CommandKind, target_id: str | None = None) -> str:
        """Validate ``kind`` for the current state and return the target id.

        Does not mutate anything; the dispatcher calls it before emitting.
        """

        if self._state is RideState.RECONCILING:
            raise InvalidStateTransition(
                f"cannot {kind.value} while reconciling", ride_id=target_id
            )
        if kind in (CommandKind.ACCEPT, CommandKind.REJECT):
            target = target_id or (
                self._offer.id if self._offer else self._last_offer_id
            )
            if target is None:
                raise InvalidStateTransition(
                    f"no offer to {kind.value} in state {self._state.value}"
                )
            if target in self._decided:
                raise DuplicateCommand(
                    f"offer {target} was already handled ({self._decided[target]})",
                    ride_id=target,
                )
            if self._history.get(target) == "expired":
                raise OfferExpired(f"offer {target} has expired", ride_id=target)
            if (
                self._state is not RideState.OFFER_PENDING
                or self._offer is None
                or self._offer.id != target
            ):
                raise InvalidStateTransition(
                    f"offer {target} is not pending (state {self._state.value})",
                    ride_id=target,
                )
            return target

        required: tuple[RideState, ...]
        if kind is CommandKind.START:
            required = (RideState.EN_ROUTE_TO_PICKUP,)
        elif kind is CommandKind.COMPLETE:
            required = (RideState.IN_PROGRESS,)
        else:
            required = RIDE_STATES
        if self._state not in required or self._ride is None:
            raise InvalidStateTransition(
                f"cannot {kind.value} in state {self._state.value}",
                ride_id=target_id,
            )
        if target_id is not None and target_id != self._ride.id:
            raise InvalidStateTransition(
                f"ride {target_id} is not the active ride", ride_id=target_id
            )
        return self._ride.id

    # ------------------------------------------------------------------
    # offers
    # ------------------------------------------------------------------

    def receive_offer(self, offer: RideOffer, now: datetime) -> str | None:
        """Make ``offer`` the pending offer.

        Returns the id of a superseded offer, if any.
        """

        if offer.id in self._decided or offer.id in self._history:
            raise StaleEvent(f"offer {offer.id} was already handled", ride_id=offer.id)
        if offer.is_expired(now):
            _remember(self._history, offer.id, "expired")
            raise StaleEvent(f"offer {offer.id} arrived expired", ride_id=offer.id)
        superseded: str | None = None
        if self._state is RideState.OFFER_PENDING and self._offer is not None:
            if self._offer.id == offer.id:
                raise StaleEvent(f"offer {offer.id} redelivered", ride_id=offer.id)
            superseded = self._offer.id
            _remember(self._history, superseded, "superseded")
            self._offer = None
            self._move(RideState.IDLE, "offer-superseded", superseded)
        elif self._state is not RideState.IDLE:
            raise InvalidStateTransition(
                f"offer {offer.id} received in state {self._state.value}",
                ride_id=offer.id,
            )
        self._last_offer_id = offer.id
        self._offer = offer
        self._move(RideState.OFFER_PENDING, "offer-received", offer.id)
        return superseded

    def expire_offer(self, offer_id: str) -> bool:
        """Drop the pending offer if it is ``offer_id``; False if already gone."""

        if self._offer is None or self._offer.id != offer_id:
            return False
        self._offer = None
        _remember(self._history, offer_id, "expired")
        if self._state is not RideState.RECONCILING:
            self._move(RideState.IDLE, "offer-expired", offer_id)
        return True

    def accept(self, offer_id: str | None, now: datetime) -> ActiveRide:
        target = self.check_command(CommandKind.ACCEPT, offer_id)
        assert self._offer is not None
        offer = self._offer
        if offer.is_expired(now):
            self._offer = None
            _remember(self._history, target, "expired")
            self._move(RideState.IDLE, "offer-expired", target)
            raise OfferExpired(f"offer {target} has expired", ride_id=target)
        _remember(self._decided, target, "accept")
        self._offer = None
        self._ride = ActiveRide.from_offer(offer, accepted_at=now)
        self._move(RideState.EN_ROUTE_TO_PICKUP, "accept", target)
        return self._ride

    def reject(self, offer_id: str | None) -> str:
        target = self.check_command(CommandKind.REJECT, offer_id)
        _remember(self._decided, target, "reject")
        _remember(self._history, target, "rejected")
        self._offer = None
        self._move(RideState.IDLE, "reject", target)
        return target

    # ------------------------------------------------------------------
    # active ride
    # ------------------------------------------------------------------

    def start(self, ride_id: str | None, now: datetime) -> ActiveRide:
        target = self.check_command(CommandKind.START, ride_id)
        assert self._ride is not None
        self._ride = self._ride.evolve(status=RideState.IN_PROGRESS, started_at=now)
        self._move(RideState.IN_PROGRESS, "start", target)
        return self._ride

    def complete(self, ride_id: str | None, now: datetime) -> CompletedRide:
        target = self.check_command(CommandKind.COMPLETE, ride_id)
        return self._finish_completed(target, now, "complete")

    def abandon(self, ride_id: str | None) -> str:
        target = self.check_command(CommandKind.ABANDON, ride_id)
        self._ride = None
        _remember(self._history, target, "abandoned")
        self._release_offer(target)
        self._move(RideState.IDLE, "abandon", target)
        return target

    def rollback(self, ride_id: str) -> bool:
        """Undo an optimistic accept the server refused."""

        if self._ride is None or self._ride.id != ride_id:
            return False
        self._ride = None
        _remember(self._history, ride_id, "rolled_back")
        self._move(RideState.IDLE, "rollback", ride_id)
        return True

    def confirm(self, ride_id: str, version: int | None) -> None:
        """Record the version carried by a positive acknowledgment."""

        if self._ride is None or self._ride.id != ride_id or version is None:
            return
        if version > self._ride.version:
            self._ride = self._ride.evolve(version=version)

    # ------------------------------------------------------------------
    # authoritative server events
    # ------------------------------------------------------------------

    def cancel(self, ride_id: str, version: int | None = None) -> None:
        """Apply a server-initiated cancellation."""

        if self._offer is not None and self._offer.id == ride_id:
            self._offer = None
            _remember(self._history, ride_id, "cancelled")
            self._move(RideState.CANCELLED, "cancelled", ride_id)
            self._move(RideState.IDLE, "cleared", ride_id)
            return
        if self._ride is None or self._ride.id != ride_id:
            raise StaleEvent(f"cancellation for unknown ride {ride_id}", ride_id=ride_id)
        if version is not None and version <= self._ride.version:
            raise StaleEvent(
                f"cancellation version {version} <= {self._ride.version}",
                ride_id=ride_id,
            )
        self._ride = None
        _remember(self._history, ride_id, "cancelled")
        self._release_offer(ride_id)
        self._move(RideState.CANCELLED, "cancelled", ride_id)
        self._move(RideState.IDLE, "cleared", ride_id)

    def apply_status(
        self, ride_id: str, status: str, version: int, now: datetime
    ) -> CompletedRide | None:
        """Apply a ``ride:status`` push; returns the settlement on completion."""

        target = state_for_server_status(status)
        if target is None:
            raise StaleEvent(f"unknown ride status {status!r}", ride_id=ride_id)
        if self._ride is None or self._ride.id != ride_id:
            raise StaleEvent(f"status for unknown ride {ride_id}", ride_id=ride_id)
        if version <= self._ride.version:
            raise StaleEvent(
                f"status version {version} <= {self._ride.version}", ride_id=ride_id
            )
        if target is RideState.CANCELLED:
            self.cancel(ride_id, version)
            return None
        if target is RideState.COMPLETED:
            self._ride = self._ride.evolve(version=version)
            return self._finish_completed(ride_id, now, "status")
        started_at = self._ride.started_at
        if target is RideState.IN_PROGRESS and started_at is None:
            started_at = now
        self._ride = self._ride.evolve(
            status=target, version=version, started_at=started_at
        )
        if target is not self._state:
            self._move(target, "status", ride_id)
        return None

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------

    def begin_reconciling(self) -> bool:
        if self._state is RideState.RECONCILING:
            return False
        self._move(RideState.RECONCILING, "reconcile", self.current_id())
        return True

    def resolve(self, status: CurrentRideStatus, now: datetime) -> CompletedRide | None:
        """Converge on the server's view; the server wins unconditionally."""

        target = state_for_server_status(status.status) if status.ride_id else None
        completed: CompletedRide | None = None

        if target in RIDE_STATES and status.ride_id is not None:
            if self._ride is not None and self._ride.id == status.ride_id:
                started_at = self._ride.started_at
                if target is RideState.IN_PROGRESS and started_at is None:
                    started_at = now
                self._ride = self._ride.evolve(
                    status=target, version=status.version, started_at=started_at
                )
            else:
                if self._ride is not None:
                    logger.warning(
                        "ride_diverged",
                        local_ride_id=self._ride.id,
                        server_ride_id=status.ride_id,
                    )
                    _remember(self._history, self._ride.id, "diverged")
                self._ride = status.build_ride(target, now)
                self._decided.setdefault(status.ride_id, "accept")
                logger.info("ride_restored", ride_id=status.ride_id, status=target.value)
            if self._offer is not None:
                _remember(self._history, self._offer.id, "superseded")
                self._offer = None
            self._move(target, "reconciled", status.ride_id)
            return None

        if self._ride is not None:
            ride = self._ride
            if target is RideState.COMPLETED and ride.id == status.ride_id:
                completed = self._settlement(ride, now)
                _remember(self._history, ride.id, "completed")
            else:
                _remember(self._history, ride.id, "cleared")
            self._ride = None
        if self._offer is not None and not self._offer.is_expired(now):
            self._move(RideState.OFFER_PENDING, "reconciled", self._offer.id)
        else:
            if self._offer is not None:
                _remember(self._history, self._offer.id, "expired")
                self._offer = None
            self._move(RideState.IDLE, "reconciled", status.ride_id)
        return completed

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _finish_completed(self, ride_id: str, now: datetime, trigger: str) -> CompletedRide:
        assert self._ride is not None
        completed = self._settlement(self._ride, now)
        self._ride = self._ride.evolve(status=RideState.COMPLETED, completed_at=now)
        self._move(RideState.COMPLETED, trigger, ride_id)
        self._ride = None
        _remember(self._history, ride_id, "completed")
        self._release_offer(ride_id)
        self._move(RideState.IDLE, "settled", ride_id)
        return completed

    def _release_offer(self, ride_id: str) -> None:
        if self._last_offer_id == ride_id:
            self._last_offer_id = None

    @staticmethod
    def _settlement(ride: ActiveRide, now: datetime) -> CompletedRide:
        began = ride.started_at or ride.accepted_at
        duration = max(int((now - began).total_seconds()), 0)
        return CompletedRide(
            ride_id=ride.id,
            fare=ride.fare,
            distance_km=ride.distance_km,
            duration_seconds=duration,
            completed_at=now,
        )

    def _move(self, target: RideState, trigger: str, ride_id: str | None) -> None:
        source = self._state
        self._state = target
        RIDE_TRANSITIONS.labels(SERVICE_NAME, source.value, target.value).inc()
        logger.info(
            "ride_state_changed",
            source=source.value,
            target=target.value,
            trigger=trigger,
            ride_id=ride_id,
        )
