"""Turns driver intents into channel commands and local transitions."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Coroutine, Protocol
from uuid import uuid4

from src.common.logging import get_logger
from src.common.metrics import RIDE_COMMANDS

from . import deps
from .channel import Channel, ChannelUnavailable
from .deps import SERVICE_NAME
from .domain import (
    COMMAND_TARGETS,
    CommandKind,
    CompletedRide,
    PendingCommand,
    RideState,
    reaches,
)
from .errors import (
    CommandResult,
    CommandTimedOut,
    DuplicateCommand,
    InvalidStateTransition,
    RideCoordinatorError,
    RideNoLongerAvailable,
)
from .navigator import Navigator
from .schemas import RideAckPayload
from .session import DriverSession
from .state_machine import RideStateMachine

logger = get_logger(__name__)

MAX_ATTEMPTS = 2

Job = Callable[[], Awaitable[None]]


class DispatcherHost(Protocol):
    """Services the coordinator provides to the dispatcher."""

    def later(self, delay: float, job: Job) -> asyncio.TimerHandle: ...

    def spawn(self, coro: Coroutine[Any, Any, None]) -> None: ...

    def surface(self, error: RideCoordinatorError) -> None: ...

    async def request_reconcile(self, reason: str) -> None: ...

    async def settle(self, completed: CompletedRide) -> None: ...


class ActionDispatcher:
    """Validates commands, applies them optimistically and tracks acknowledgments.

    Accept, start and complete stay pending until the server acknowledges
    them, either with ``ride:ack`` or with a ``ride:status`` that reaches the
    command's target state. Each is re-sent at most once; reject and abandon
    are fire-and-forget.
    """

    def __init__(
        self,
        machine: RideStateMachine,
        host: DispatcherHost,
        session: DriverSession,
        settings: deps.Settings,
        *,
        navigator: Navigator,
        clock: Callable[[], datetime],
    ) -> None:
        self._machine = machine
        self._host = host
        self._session = session
        self._settings = settings
        self._navigator = navigator
        self._clock = clock
        self.channel: Channel | None = None
        self._pending: dict[tuple[CommandKind, str], PendingCommand] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def pending_keys(self) -> tuple[str, ...]:
        return tuple(f"{kind.value}:{target}" for kind, target in self._pending)

    def pending_for(self, kind: CommandKind, target_id: str) -> PendingCommand | None:
        return self._pending.get((kind, target_id))

    async def submit(
        self,
        kind: CommandKind,
        target_id: str | None = None,
        *,
        confirm: bool = False,
    ) -> CommandResult:
        now = self._clock()
        machine = self._machine
        try:
            if kind is CommandKind.NAVIGATE:
                return self._navigate()
            target = machine.check_command(kind, target_id)
            if (kind, target) in self._pending:
                raise DuplicateCommand(
                    f"{kind.value} for {target} is awaiting acknowledgment",
                    ride_id=target,
                )
            if kind is CommandKind.ABANDON and not confirm:
                raise InvalidStateTransition(
                    "abandoning a ride requires confirmation", ride_id=target
                )
            completed: CompletedRide | None = None
            if kind is CommandKind.ACCEPT:
                machine.accept(target, now)
            elif kind is CommandKind.REJECT:
                machine.reject(target)
            elif kind is CommandKind.START:
                machine.start(target, now)
            elif kind is CommandKind.COMPLETE:
                completed = machine.complete(target, now)
            else:
                machine.abandon(target)
                self.discard_for(target)
        except RideCoordinatorError as exc:
            RIDE_COMMANDS.labels(SERVICE_NAME, kind.value, exc.code).inc()
            logger.info(
                "command_refused",
                kind=kind.value,
                ride_id=exc.ride_id or target_id,
                code=exc.code,
                reason=exc.message,
            )
            return CommandResult.failure(machine.state, exc)

        await self._emit(kind, target, now)
        if completed is not None:
            await self._host.settle(completed)
        RIDE_COMMANDS.labels(SERVICE_NAME, kind.value, "applied").inc()
        return CommandResult.success(machine.state, target)

    async def handle_ack(self, ack: RideAckPayload) -> None:
        key = (ack.command, ack.ride_id)
        pending = self._pending.get(key)
        if pending is None or (
            ack.command_id is not None and ack.command_id != pending.command_id
        ):
            logger.debug("ack_unmatched", command=ack.command.value, ride_id=ack.ride_id)
            if ack.ok:
                self._machine.confirm(ack.ride_id, ack.version)
            return
        self._discard(key)
        if ack.ok:
            self._machine.confirm(ack.ride_id, ack.version)
            logger.info("command_acknowledged", kind=ack.command.value, ride_id=ack.ride_id)
            return
        RIDE_COMMANDS.labels(SERVICE_NAME, ack.command.value, "refused_by_server").inc()
        logger.warning(
            "command_refused_by_server",
            kind=ack.command.value,
            ride_id=ack.ride_id,
            reason=ack.reason,
        )
        if ack.command is CommandKind.ACCEPT and self._machine.rollback(ack.ride_id):
            self._host.surface(
                RideNoLongerAvailable(
                    ack.reason or "the ride is no longer available",
                    ride_id=ack.ride_id,
                )
            )
            return
        await self._host.request_reconcile("command_refused")

    def acknowledge_status(self, ride_id: str, state: RideState) -> None:
        """Treat a status push that reached a command's target as its ack."""

        for kind, target in list(self._pending):
            goal = COMMAND_TARGETS.get(kind)
            if target == ride_id and goal is not None and reaches(state, goal):
                self._discard((kind, target))

    def discard_for(self, ride_id: str) -> None:
        for key in [key for key in self._pending if key[1] == ride_id]:
            self._discard(key)

    def retain_only(self, ride_id: str | None) -> None:
        for key in [key for key in self._pending if key[1] != ride_id]:
            self._discard(key)

    def close(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._pending.clear()

    async def _emit(self, kind: CommandKind, target: str, now: datetime) -> None:
        pending = PendingCommand(
            command_id=uuid4().hex, kind=kind, target_id=target, submitted_at=now
        )
        if kind not in COMMAND_TARGETS:
            await self._send(pending)
            return
        self._pending[(kind, target)] = pending
        await self._send(pending)
        self._arm(pending)

    async def _send(self, pending: PendingCommand) -> None:
        payload = {
            "rideId": pending.target_id,
            "commandId": pending.command_id,
            "driverId": self._session.driver_id,
        }
        event = pending.kind.event_name
        try:
            if self.channel is None:
                raise ChannelUnavailable(f"no channel attached for {event}")
            await self.channel.publish(event, payload)
        except ChannelUnavailable as exc:
            logger.warning(
                "command_send_failed",
                kind=pending.kind.value,
                ride_id=pending.target_id,
                attempt=pending.attempts,
                error=str(exc),
            )
            return
        logger.info(
            "command_sent",
            kind=pending.kind.value,
            ride_id=pending.target_id,
            attempt=pending.attempts,
        )

    def _arm(self, pending: PendingCommand) -> None:
        command_id = pending.command_id

        async def expire() -> None:
            await self._on_ack_timeout(command_id)

        self._timers[command_id] = self._host.later(
            self._settings.ack_timeout_seconds, expire
        )

    async def _on_ack_timeout(self, command_id: str) -> None:
        self._timers.pop(command_id, None)
        pending = next(
            (p for p in self._pending.values() if p.command_id == command_id), None
        )
        if pending is None:
            return
        if pending.attempts < MAX_ATTEMPTS:
            pending.attempts += 1
            logger.info(
                "command_retry", kind=pending.kind.value, ride_id=pending.target_id
            )
            await self._send(pending)
            self._arm(pending)
            return
        self._discard((pending.kind, pending.target_id))
        RIDE_COMMANDS.labels(SERVICE_NAME, pending.kind.value, "timed_out").inc()
        self._host.surface(
            CommandTimedOut(
                f"{pending.kind.value} was not acknowledged",
                ride_id=pending.target_id,
            )
        )
        await self._host.request_reconcile("command_timed_out")

    def _discard(self, key: tuple[CommandKind, str]) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            return
        handle = self._timers.pop(pending.command_id, None)
        if handle is not None:
            handle.cancel()

    def _navigate(self) -> CommandResult:
        machine = self._machine
        ride = machine.active_ride
        if ride is None or machine.state not in (
            RideState.EN_ROUTE_TO_PICKUP,
            RideState.IN_PROGRESS,
        ):
            raise InvalidStateTransition(
                f"nothing to navigate to in state {machine.state.value}"
            )
        place = ride.pickup if machine.state is RideState.EN_ROUTE_TO_PICKUP else ride.destination
        self._host.spawn(self._navigator.open(place.coordinates, place.address))
        RIDE_COMMANDS.labels(SERVICE_NAME, CommandKind.NAVIGATE.value, "applied").inc()
        return CommandResult.success(machine.state, ride.id)
