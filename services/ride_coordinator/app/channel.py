"""Reconnecting publish/subscribe channel between the driver and the backend."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Protocol

from aiokafka.errors import KafkaError
from opentelemetry import trace

from src.common.kafka import Envelope, KafkaConsumer, KafkaProducer
from src.common.logging import get_logger
from src.common.metrics import CHANNEL_CONNECTED

from . import deps
from .deps import SERVICE_NAME
from .domain import ConnectionState
from .session import DriverSession

logger = get_logger(__name__)

INBOUND_EVENTS = frozenset(
    {"ride:request", "ride:cancelled", "ride:status", "ride:expired", "ride:ack"}
)

EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]
ConnectionHandler = Callable[[ConnectionState], Awaitable[None]]


class ChannelUnavailable(Exception):
    """The channel cannot deliver a message right now."""


class Channel(Protocol):
    """What the dispatcher needs from a transport."""

    @property
    def state(self) -> ConnectionState: ...

    async def publish(self, event: str, data: dict[str, Any]) -> None: ...


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential delay for the ``attempt``-th retry (1-based), capped."""

    return min(base * 2 ** max(attempt - 1, 0), cap)


class KafkaChannel:
    """Kafka-backed channel owning the session's single subscription.

    Inbound messages on ``inbound_topic`` keyed by the driver id are handed to
    ``on_event``; connection changes go to ``on_connection``. The channel never
    touches ride state itself.
    """

    _tracer = trace.get_tracer(__name__)

    def __init__(
        self,
        settings: deps.Settings,
        session: DriverSession,
        *,
        on_event: EventHandler,
        on_connection: ConnectionHandler,
        on_give_up: Callable[[], Awaitable[None]] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not settings.kafka_brokers:
            raise ValueError("kafka_brokers must be configured for KafkaChannel")
        self._settings = settings
        self._session = session
        self._on_event = on_event
        self._on_connection = on_connection
        self._on_give_up = on_give_up
        self._sleep = sleep
        self._producer: KafkaProducer | None = None
        self._state = ConnectionState.DISCONNECTED
        self._task: asyncio.Task[None] | None = None
        self._closing = False
        self.attempts = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def open(self) -> None:
        if self._task is not None:
            return
        self._closing = False
        self._task = asyncio.create_task(self._run(), name="ride-channel")

    async def close(self) -> None:
        """Tear down the subscription; no reconnect is attempted afterwards."""

        self._closing = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._set_state(ConnectionState.DISCONNECTED)

    async def __aenter__(self) -> "KafkaChannel":
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def publish(self, event: str, data: dict[str, Any]) -> None:
        producer = self._producer
        if self._state is not ConnectionState.CONNECTED or producer is None:
            raise ChannelUnavailable(f"cannot publish {event}: channel {self._state.value}")
        try:
            await producer.send_event(
                self._settings.outbound_topic, self._session.driver_id, event, data
            )
        except KafkaError as exc:
            raise ChannelUnavailable(f"publishing {event} failed") from exc

    async def _run(self) -> None:
        settings = self._settings
        assert settings.kafka_brokers is not None
        while not self._closing:
            await self._set_state(ConnectionState.CONNECTING)
            producer = KafkaProducer(settings.kafka_brokers)
            consumer = KafkaConsumer(
                settings.kafka_brokers,
                settings.inbound_topic,
                group_id=f"driver-{self._session.driver_id}",
            )
            try:
                await producer.start()
                await consumer.start()
                self._producer = producer
                self.attempts = 0
                await self._set_state(ConnectionState.CONNECTED)
                async for envelope in consumer:
                    await self._deliver(envelope)
                logger.warning("channel_stream_ended")
            except KafkaError as exc:
                logger.warning("channel_lost", error=str(exc))
            finally:
                self._producer = None
                await self._stop_quietly(consumer)
                await self._stop_quietly(producer)
            if self._closing:
                break
            await self._set_state(ConnectionState.DISCONNECTED)
            self.attempts += 1
            if self.attempts > settings.reconnect_max_attempts:
                logger.error("channel_reconnect_failed", attempts=self.attempts - 1)
                if self._on_give_up is not None:
                    await self._on_give_up()
                return
            delay = backoff_delay(
                self.attempts, settings.reconnect_base_delay, settings.reconnect_max_delay
            )
            logger.info("channel_reconnect_scheduled", attempt=self.attempts, delay=delay)
            await self._sleep(delay)

    async def _deliver(self, envelope: Envelope) -> None:
        if envelope.key is not None and envelope.key != self._session.driver_id:
            return
        name = envelope.event
        if name not in INBOUND_EVENTS:
            logger.debug("channel_event_ignored", event_name=name)
            return
        with self._tracer.start_as_current_span(f"event.consume:{name}"):
            await self._on_event(name, envelope.data)

    async def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        CHANNEL_CONNECTED.labels(SERVICE_NAME).set(
            1 if state is ConnectionState.CONNECTED else 0
        )
        logger.info("channel_state_changed", state=state.value)
        await self._on_connection(state)

    @staticmethod
    async def _stop_quietly(client: KafkaProducer | KafkaConsumer) -> None:
        try:
            await client.stop()
        except KafkaError as exc:
            logger.warning("channel_stop_failed", error=str(exc))
