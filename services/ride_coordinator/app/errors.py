"""Error taxonomy of the ride coordinator and the result type built from it."""

from __future__ import annotations

from dataclasses import dataclass

from .domain import ErrorInfo, RideState


class RideCoordinatorError(Exception):
    """Base error; ``code`` is the stable identifier shown to presentation code."""

    code = "ride_coordinator_error"

    def __init__(self, message: str = "", *, ride_id: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.ride_id = ride_id

    def info(self) -> ErrorInfo:
        return ErrorInfo(code=self.code, message=self.message)


class InvalidStateTransition(RideCoordinatorError):
    """A command or event is not allowed in the current state."""

    code = "invalid_state_transition"


class OfferExpired(RideCoordinatorError):
    """The offer's ``expires_at`` has passed."""

    code = "offer_expired"


class DuplicateCommand(RideCoordinatorError):
    """The same command was already submitted for this ride."""

    code = "duplicate_command"


class RideNoLongerAvailable(RideCoordinatorError):
    """The server rejected an optimistic accept."""

    code = "ride_no_longer_available"


class CommandTimedOut(RideCoordinatorError):
    """No acknowledgment arrived after the single retry."""

    code = "command_timed_out"


class StaleEvent(RideCoordinatorError):
    """An inbound event is outdated or references an unknown ride."""

    code = "stale_event"


class ReconciliationFailed(RideCoordinatorError):
    """Fetching the authoritative ride status failed."""

    code = "reconciliation_failed"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a dispatched command."""

    ok: bool
    state: RideState
    error: RideCoordinatorError | None = None
    ride_id: str | None = None

    @classmethod
    def success(cls, state: RideState, ride_id: str | None = None) -> "CommandResult":
        return cls(ok=True, state=state, ride_id=ride_id)

    @classmethod
    def failure(
        cls, state: RideState, error: RideCoordinatorError
    ) -> "CommandResult":
        return cls(ok=False, state=state, error=error, ride_id=error.ride_id)
