from datetime import timedelta

import pytest

from services.ride_coordinator.app.domain import CommandKind, RideState
from services.ride_coordinator.app.errors import (
    DuplicateCommand,
    InvalidStateTransition,
    OfferExpired,
    StaleEvent,
)
from services.ride_coordinator.app.schemas import RideOfferPayload, RideStatusPayload
from services.ride_coordinator.app.state_machine import RideStateMachine

from tests.ride_fakes import T0, offer_event, ride_status


def _offer(ride_id: str = "r1", **extra):
    return RideOfferPayload.model_validate(offer_event(ride_id, **extra)).to_offer(T0, 30)


def _machine_with_ride(ride_id: str = "r1") -> RideStateMachine:
    machine = RideStateMachine()
    machine.receive_offer(_offer(ride_id), T0)
    machine.accept(ride_id, T0)
    return machine


def test_offer_then_accept_start_complete() -> None:
    machine = RideStateMachine()
    machine.receive_offer(_offer(), T0)
    assert machine.state is RideState.OFFER_PENDING
    assert machine.offer is not None and machine.offer.fare == 1200

    ride = machine.accept("r1", T0 + timedelta(seconds=5))
    assert machine.state is RideState.EN_ROUTE_TO_PICKUP
    assert ride.id == "r1" and ride.fare == 1200
    assert machine.offer is None

    machine.start("r1", T0 + timedelta(minutes=10))
    assert machine.state is RideState.IN_PROGRESS

    completed = machine.complete("r1", T0 + timedelta(minutes=30))
    assert machine.state is RideState.IDLE
    assert machine.active_ride is None
    assert completed.fare == 1200
    assert completed.duration_seconds == 20 * 60


def test_offer_expiry_boundary() -> None:
    machine = RideStateMachine()
    machine.receive_offer(_offer(), T0)
    with pytest.raises(OfferExpired):
        machine.accept("r1", T0 + timedelta(seconds=30))
    assert machine.state is RideState.IDLE
    with pytest.raises(OfferExpired):
        machine.check_command(CommandKind.ACCEPT, "r1")


def test_offer_received_expired_is_discarded() -> None:
    machine = RideStateMachine()
    with pytest.raises(StaleEvent):
        machine.receive_offer(_offer(), T0 + timedelta(seconds=45))
    assert machine.state is RideState.IDLE


def test_second_offer_supersedes_first() -> None:
    machine = RideStateMachine()
    machine.receive_offer(_offer("r1"), T0)
    superseded = machine.receive_offer(_offer("r2"), T0)
    assert superseded == "r1"
    assert machine.offer is not None and machine.offer.id == "r2"
    assert machine.state is RideState.OFFER_PENDING
    with pytest.raises(StaleEvent):
        machine.receive_offer(_offer("r1"), T0)


def test_offer_ignored_while_on_a_ride() -> None:
    machine = _machine_with_ride()
    with pytest.raises(InvalidStateTransition):
        machine.receive_offer(_offer("r2"), T0)
    assert machine.state is RideState.EN_ROUTE_TO_PICKUP


def test_repeated_decision_is_duplicate() -> None:
    machine = _machine_with_ride()
    with pytest.raises(DuplicateCommand):
        machine.check_command(CommandKind.ACCEPT, "r1")
    with pytest.raises(DuplicateCommand):
        machine.check_command(CommandKind.REJECT, "r1")


@pytest.mark.parametrize(
    ("kind", "state_setup"),
    [
        (CommandKind.START, "idle"),
        (CommandKind.COMPLETE, "en_route"),
        (CommandKind.ABANDON, "idle"),
        (CommandKind.ACCEPT, "idle"),
    ],
)
def test_commands_outside_their_state_are_refused(kind, state_setup) -> None:
    machine = RideStateMachine() if state_setup == "idle" else _machine_with_ride()
    before = machine.state
    with pytest.raises(InvalidStateTransition):
        machine.check_command(kind)
    assert machine.state is before


def test_status_version_guard() -> None:
    machine = _machine_with_ride()
    machine.apply_status("r1", "in_progress", 3, T0)
    assert machine.state is RideState.IN_PROGRESS
    assert machine.active_ride is not None and machine.active_ride.version == 3

    with pytest.raises(StaleEvent):
        machine.apply_status("r1", "en_route", 2, T0)
    with pytest.raises(StaleEvent):
        machine.apply_status("r1", "en_route", 3, T0)
    assert machine.state is RideState.IN_PROGRESS


def test_status_completed_settles_ride() -> None:
    machine = _machine_with_ride()
    completed = machine.apply_status("r1", "completed", 4, T0 + timedelta(minutes=12))
    assert completed is not None and completed.ride_id == "r1"
    assert machine.state is RideState.IDLE


def test_cancel_pending_offer_and_ride() -> None:
    machine = RideStateMachine()
    machine.receive_offer(_offer("r1"), T0)
    machine.cancel("r1")
    assert machine.state is RideState.IDLE
    assert machine.outcome("r1") == "cancelled"

    machine = _machine_with_ride("r2")
    machine.cancel("r2", version=1)
    assert machine.state is RideState.IDLE
    assert machine.active_ride is None
    with pytest.raises(StaleEvent):
        machine.cancel("r2")


def test_status_cancelled_variant_clears_ride() -> None:
    machine = _machine_with_ride()
    machine.apply_status("r1", "cancelled_by_rider", 2, T0)
    assert machine.state is RideState.IDLE
    assert machine.outcome("r1") == "cancelled"


def test_rollback_restores_idle() -> None:
    machine = _machine_with_ride()
    assert machine.rollback("r1") is True
    assert machine.state is RideState.IDLE
    assert machine.rollback("r1") is False


def test_commands_refused_while_reconciling() -> None:
    machine = _machine_with_ride()
    assert machine.begin_reconciling() is True
    assert machine.begin_reconciling() is False
    with pytest.raises(InvalidStateTransition):
        machine.check_command(CommandKind.START)


def test_resolve_server_wins_over_local_ride() -> None:
    machine = _machine_with_ride("r1")
    machine.begin_reconciling()
    machine.resolve(
        ride_status(
            "r7",
            "in_progress",
            5,
            pickup={"address": "A", "lat": 1, "lon": 2},
            destination={"address": "B", "lat": 3, "lon": 4},
            fare=900,
        ),
        T0,
    )
    assert machine.state is RideState.IN_PROGRESS
    ride = machine.active_ride
    assert ride is not None
    assert ride.id == "r7" and ride.version == 5 and ride.fare == 900
    assert ride.destination.coordinates == (3.0, 4.0)
    assert machine.outcome("r1") == "diverged"


def test_resolve_without_ride_keeps_live_offer() -> None:
    machine = RideStateMachine()
    machine.receive_offer(_offer("r1"), T0)
    machine.begin_reconciling()
    machine.expire_offer("other")
    machine.resolve(ride_status(None, None), T0 + timedelta(seconds=10))
    assert machine.state is RideState.OFFER_PENDING


def test_offer_expiring_during_reconciliation_stays_reconciling() -> None:
    machine = RideStateMachine()
    machine.receive_offer(_offer("r1"), T0)
    machine.begin_reconciling()
    assert machine.expire_offer("r1") is True
    assert machine.state is RideState.RECONCILING
    machine.resolve(ride_status(None, None), T0)
    assert machine.state is RideState.IDLE


def test_resolve_completed_ride_is_settled() -> None:
    machine = _machine_with_ride("r1")
    machine.begin_reconciling()
    completed = machine.resolve(ride_status("r1", "completed", 9), T0)
    assert completed is not None and completed.ride_id == "r1"
    assert machine.state is RideState.IDLE


def test_expired_offer_is_the_implicit_target_of_an_id_less_accept() -> None:
    machine = RideStateMachine()
    machine.receive_offer(_offer("r1"), T0)
    assert machine.expire_offer("r1") is True
    with pytest.raises(OfferExpired):
        machine.check_command(CommandKind.ACCEPT)
    with pytest.raises(OfferExpired):
        machine.check_command(CommandKind.REJECT)


def test_id_less_accept_after_accepting_is_duplicate() -> None:
    machine = _machine_with_ride("r1")
    with pytest.raises(DuplicateCommand):
        machine.check_command(CommandKind.ACCEPT)


@pytest.mark.parametrize("key", ["rideId", "ride_id", "id"])
def test_ride_id_aliases(key: str) -> None:
    payload = RideStatusPayload.model_validate(
        {key: "r7", "status": "accepted", "version": 1}
    )
    assert payload.ride_id == "r7"
