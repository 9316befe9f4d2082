"""Single-actor coordinator for one driver session.

Channel events, driver commands, timers and reconciliation outcomes are all
funnelled through one :class:`asyncio.Queue` and processed one at a time, so
the state machine and the pending command set never see concurrent writers.
While the session is reconciling, commands and events are held in arrival
order and replayed once the server's view has been applied.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine

from pydantic import ValidationError

from src.common.logging import get_logger
from src.common.metrics import JOB_DURATION, RIDE_EVENTS

from . import deps
from .channel import Channel
from .deps import SERVICE_NAME
from .dispatcher import ActionDispatcher, Job
from .domain import (
    CommandKind,
    CompletedRide,
    ConnectionState,
    ErrorInfo,
    RideOffer,
    Snapshot,
    state_for_server_status,
)
from .earnings import EarningsLedger
from .errors import (
    CommandResult,
    ReconciliationFailed,
    RideCoordinatorError,
    StaleEvent,
)
from .navigator import ExternalNavigator, Navigator
from .reconciliation import ReconciliationHandler, StatusFetcher
from .schemas import (
    CurrentRideStatus,
    RideAckPayload,
    RideCancelledPayload,
    RideExpiredPayload,
    RideOfferPayload,
    RideStatusPayload,
)
from .session import DriverSession
from .state_machine import RideStateMachine

logger = get_logger(__name__)

Clock = Callable[[], datetime]

# Inbound events whose unknown ride id means local state may have drifted.
_RESYNC_ON_UNKNOWN = frozenset({"ride:status", "ride:cancelled"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RideCoordinator:
    """Owns the ride state of a driver session and serialises every change."""

    def __init__(
        self,
        session: DriverSession,
        settings: deps.Settings,
        *,
        fetcher: StatusFetcher,
        navigator: Navigator | None = None,
        ledger: EarningsLedger | None = None,
        clock: Clock = _utcnow,
        reconciler: ReconciliationHandler | None = None,
    ) -> None:
        self.session = session
        self._settings = settings
        self._clock = clock
        self._ledger = ledger
        self._machine = RideStateMachine()
        self._reconciler = reconciler or ReconciliationHandler(fetcher, settings)
        self._dispatcher = ActionDispatcher(
            self._machine,
            self,
            session,
            settings,
            navigator=navigator or ExternalNavigator(session.platform),
            clock=clock,
        )
        self._queue: asyncio.Queue[tuple[Any, ...]] = asyncio.Queue()
        self._held: deque[tuple[Any, ...]] = deque()
        self._connection = ConnectionState.DISCONNECTED
        self._reconnecting = False
        self._support_required = False
        self._last_error: ErrorInfo | None = None
        self._last_completed: CompletedRide | None = None
        self._offer_timer: asyncio.TimerHandle | None = None
        self._worker: asyncio.Task[None] | None = None
        self._reconcile_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def attach_channel(self, channel: Channel) -> None:
        self._dispatcher.channel = channel

    async def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="ride-coordinator")

    async def stop(self) -> None:
        if self._offer_timer is not None:
            self._offer_timer.cancel()
            self._offer_timer = None
        self._dispatcher.close()
        tasks = [self._worker, self._reconcile_task, *self._background]
        self._worker = self._reconcile_task = None
        for task in tasks:
            if task is not None and not task.done():
                task.cancel()
        for task in tasks:
            if task is None:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        for item in self._held:
            self._refuse(item, ReconciliationFailed("coordinator stopped"))
        self._held.clear()

    async def drain(self) -> None:
        """Wait until everything queued so far has been processed."""

        await self._queue.join()

    # ------------------------------------------------------------------
    # inputs
    # ------------------------------------------------------------------

    async def on_event(self, name: str, data: dict[str, Any]) -> None:
        await self._queue.put(("event", name, data))

    async def on_connection(self, state: ConnectionState) -> None:
        await self._queue.put(("connection", state))

    async def on_channel_give_up(self) -> None:
        await self._queue.put(("channel_lost",))

    async def dispatch(
        self,
        kind: CommandKind,
        target_id: str | None = None,
        *,
        confirm: bool = False,
    ) -> CommandResult:
        """Submit a driver command and wait for its local outcome."""

        future: asyncio.Future[CommandResult] = asyncio.get_running_loop().create_future()
        await self._queue.put(("command", kind, target_id, confirm, future))
        return await future

    async def resync(self) -> None:
        """Ask for a reconciliation cycle, e.g. after support was required."""

        await self._queue.put(("resync",))

    def get_snapshot(self) -> Snapshot:
        machine = self._machine
        return Snapshot(
            state=machine.state,
            offer=machine.offer,
            active_ride=machine.active_ride,
            connection=self._connection,
            reconnecting=self._reconnecting,
            support_required=self._support_required,
            last_error=self._last_error,
            last_completed=self._last_completed,
            pending=self._dispatcher.pending_keys(),
        )

    # ------------------------------------------------------------------
    # services used by the dispatcher
    # ------------------------------------------------------------------

    def later(self, delay: float, job: Job) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(delay, 0.0), self._queue.put_nowait, ("job", job))

    def spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def surface(self, error: RideCoordinatorError) -> None:
        self._last_error = error.info()
        logger.info(
            "error_surfaced", code=error.code, ride_id=error.ride_id, reason=error.message
        )

    async def request_reconcile(self, reason: str) -> None:
        await self._begin_reconciliation(reason)

    async def settle(self, completed: CompletedRide) -> None:
        self._last_completed = completed
        if self._ledger is not None and self._settings.record_earnings:
            await self._ledger.record(completed)

    # ------------------------------------------------------------------
    # processing loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._process(item)
            except Exception:  # noqa: BLE001
                logger.exception("coordinator_item_failed", item=item[0])
                self._refuse(item, RideCoordinatorError("internal error"))
            finally:
                self._queue.task_done()

    async def _process(self, item: tuple[Any, ...]) -> None:
        tag = item[0]
        if tag == "command" and self._support_required:
            self._refuse(item, ReconciliationFailed("ride state could not be verified"))
            return
        if tag in ("event", "command") and self._machine.reconciling:
            if tag == "event" and self._support_required:
                # state is refetched by the next resync
                RIDE_EVENTS.labels(SERVICE_NAME, item[1], "dropped").inc()
                logger.info("event_dropped", event_name=item[1])
                return
            self._held.append(item)
            return
        if tag == "event":
            await self._handle_event(item[1], item[2])
        elif tag == "command":
            _, kind, target_id, confirm, future = item
            result = await self._dispatcher.submit(kind, target_id, confirm=confirm)
            if not future.done():
                future.set_result(result)
        elif tag == "connection":
            await self._handle_connection(item[1])
        elif tag == "job":
            await item[1]()
        elif tag == "reconciled":
            await self._finish_reconciliation(item[1])
        elif tag == "reconcile_failed":
            self.surface(item[1])
        elif tag == "reconcile_exhausted":
            self._give_up_reconciliation(item[1])
        elif tag == "resync":
            self._support_required = False
            await self._begin_reconciliation("requested")
        elif tag == "channel_lost":
            self._reconnecting = False
            self._support_required = True
            logger.error("channel_gave_up")
        else:
            logger.warning("coordinator_item_unknown", item=tag)

    def _refuse(self, item: tuple[Any, ...], error: RideCoordinatorError) -> None:
        if item[0] != "command":
            return
        future = item[-1]
        if not future.done():
            future.set_result(CommandResult.failure(self._machine.state, error))

    # ------------------------------------------------------------------
    # inbound events
    # ------------------------------------------------------------------

    async def _handle_event(self, name: str, data: dict[str, Any]) -> None:
        now = self._clock()
        machine = self._machine
        try:
            if name == "ride:request":
                offer = RideOfferPayload.model_validate(data).to_offer(
                    now, self._settings.offer_ttl_seconds
                )
                superseded = machine.receive_offer(offer, now)
                if superseded is not None:
                    logger.info("offer_superseded", ride_id=superseded, by=offer.id)
                self._arm_offer_timer(offer, now)
            elif name == "ride:cancelled":
                cancelled = RideCancelledPayload.model_validate(data)
                machine.cancel(cancelled.ride_id, cancelled.version)
                self._dispatcher.discard_for(cancelled.ride_id)
                self._sync_offer_timer(now)
                logger.info(
                    "ride_cancelled", ride_id=cancelled.ride_id, reason=cancelled.reason
                )
            elif name == "ride:status":
                status = RideStatusPayload.model_validate(data)
                completed = machine.apply_status(
                    status.ride_id, status.status, status.version, now
                )
                # only a status that passed the version guard acknowledges
                target = state_for_server_status(status.status)
                if target is not None:
                    self._dispatcher.acknowledge_status(status.ride_id, target)
                if completed is not None:
                    await self.settle(completed)
                if machine.active_ride is None:
                    self._dispatcher.discard_for(status.ride_id)
            elif name == "ride:expired":
                expired = RideExpiredPayload.model_validate(data)
                if not machine.expire_offer(expired.ride_id):
                    raise StaleEvent(
                        f"offer {expired.ride_id} is not pending", ride_id=expired.ride_id
                    )
                self._sync_offer_timer(now)
            elif name == "ride:ack":
                await self._dispatcher.handle_ack(RideAckPayload.model_validate(data))
            else:
                logger.debug("event_ignored", event_name=name)
                RIDE_EVENTS.labels(SERVICE_NAME, name, "ignored").inc()
                return
        except ValidationError as exc:
            RIDE_EVENTS.labels(SERVICE_NAME, name, "malformed").inc()
            logger.warning("event_malformed", event_name=name, errors=exc.error_count())
            return
        except StaleEvent as exc:
            RIDE_EVENTS.labels(SERVICE_NAME, name, "stale").inc()
            logger.info(
                "event_discarded", event_name=name, ride_id=exc.ride_id, reason=exc.message
            )
            if (
                name in _RESYNC_ON_UNKNOWN
                and exc.ride_id is not None
                and not machine.is_known(exc.ride_id)
            ):
                await self._begin_reconciliation("stale_event")
            return
        except RideCoordinatorError as exc:
            RIDE_EVENTS.labels(SERVICE_NAME, name, "rejected").inc()
            logger.warning(
                "event_rejected", event_name=name, ride_id=exc.ride_id, reason=exc.message
            )
            return
        RIDE_EVENTS.labels(SERVICE_NAME, name, "applied").inc()

    def _arm_offer_timer(self, offer: RideOffer, now: datetime) -> None:
        if self._offer_timer is not None:
            self._offer_timer.cancel()
        offer_id = offer.id

        async def expire() -> None:
            if self._machine.expire_offer(offer_id):
                logger.info("offer_expired", ride_id=offer_id)
                RIDE_EVENTS.labels(SERVICE_NAME, "offer-timer", "applied").inc()

        delay = (offer.expires_at - now).total_seconds()
        self._offer_timer = self.later(delay, expire)

    def _sync_offer_timer(self, now: datetime) -> None:
        offer = self._machine.offer
        if offer is not None:
            self._arm_offer_timer(offer, now)
        elif self._offer_timer is not None:
            self._offer_timer.cancel()
            self._offer_timer = None

    # ------------------------------------------------------------------
    # connection and reconciliation
    # ------------------------------------------------------------------

    async def _handle_connection(self, state: ConnectionState) -> None:
        self._connection = state
        now = self._clock()
        if state is ConnectionState.DISCONNECTED:
            self._reconciler.note_disconnected(now)
        elif state is ConnectionState.CONNECTED:
            if self._reconciler.note_connected(now):
                self._support_required = False
                await self._begin_reconciliation("reconnected")

    async def _begin_reconciliation(self, reason: str) -> None:
        if self._reconcile_task is not None and not self._reconcile_task.done():
            return
        self._machine.begin_reconciling()
        self._reconnecting = True
        logger.info("reconciliation_started", reason=reason)
        self._reconcile_task = asyncio.create_task(
            self._reconcile(), name="ride-reconciliation"
        )

    async def _reconcile(self) -> None:
        start = time.monotonic()

        async def report(attempt: int, exc: ReconciliationFailed) -> None:
            await self._queue.put(("reconcile_failed", exc))

        try:
            status = await self._reconciler.run(on_failure=report)
        except ReconciliationFailed as exc:
            await self._queue.put(("reconcile_exhausted", exc))
            return
        finally:
            JOB_DURATION.labels(SERVICE_NAME, "reconciliation").observe(
                time.monotonic() - start
            )
        await self._queue.put(("reconciled", status))

    async def _finish_reconciliation(self, status: CurrentRideStatus) -> None:
        now = self._clock()
        self._reconcile_task = None
        self._reconnecting = False
        self._support_required = False
        completed = self._machine.resolve(status, now)
        self._dispatcher.retain_only(self._machine.current_id())
        if completed is not None:
            await self.settle(completed)
        self._sync_offer_timer(now)
        logger.info(
            "reconciliation_finished",
            state=self._machine.state.value,
            ride_id=self._machine.current_id(),
            held=len(self._held),
        )
        held, self._held = self._held, deque()
        while held:
            await self._process(held.popleft())
            if self._machine.reconciling:
                # a replayed item triggered another cycle; keep the rest in order
                self._held.extendleft(reversed(held))
                return

    def _give_up_reconciliation(self, error: ReconciliationFailed) -> None:
        self._reconcile_task = None
        self._reconnecting = False
        self._support_required = True
        self.surface(error)
        logger.error("reconciliation_exhausted", reason=error.message)
        held, self._held = self._held, deque()
        for item in held:
            if item[0] == "command":
                self._refuse(item, error)
            else:
                self._held.append(item)
