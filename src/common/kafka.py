"""aiokafka clients speaking the ``{"event": ..., "data": {...}}`` envelope."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Final, NamedTuple

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from opentelemetry import trace

from .logging import get_logger

logger = get_logger(__name__)


class Envelope(NamedTuple):
    """One decoded channel message."""

    key: str | None
    event: str
    data: dict[str, Any]


def encode_envelope(event: str, data: dict[str, Any]) -> bytes:
    return json.dumps(
        {"event": event, "data": data}, ensure_ascii=False, separators=(",", ":")
    ).encode("utf-8")


def decode_envelope(raw: bytes | None) -> tuple[str, dict[str, Any]] | None:
    """Return ``(event, data)`` or ``None`` when ``raw`` is not an envelope."""

    if not raw:
        return None
    try:
        value = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(value, dict) or not isinstance(value.get("event"), str):
        return None
    data = value.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return None
    return value["event"], data


def _brokers(brokers: str) -> list[str]:
    return [b.strip() for b in brokers.split(",") if b.strip()]


class KafkaProducer:
    """Publishes envelopes; values are encoded here, not by aiokafka."""

    __slots__ = ("_producer", "_started")

    _tracer = trace.get_tracer(__name__)
    _empty_key: Final[bytes] = b""

    def __init__(self, brokers: str) -> None:
        self._producer = AIOKafkaProducer(bootstrap_servers=_brokers(brokers))
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        await self._producer.start()
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        await self._producer.stop()
        self._started = False

    async def send_event(
        self, topic: str, key: str | None, event: str, data: dict[str, Any]
    ) -> None:
        """Send one envelope and wait for the broker's ack."""

        if not self._started:
            raise RuntimeError("KafkaProducer must be started before sending messages")
        with self._tracer.start_as_current_span(f"event.produce:{event}") as span:
            span.set_attribute("messaging.destination", topic)
            await self._producer.send_and_wait(
                topic,
                value=encode_envelope(event, data),
                key=key.encode("utf-8") if key else self._empty_key,
            )

    async def __aenter__(self) -> "KafkaProducer":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()


class KafkaConsumer:
    """Yields decoded :class:`Envelope` records from one topic."""

    __slots__ = ("_consumer", "_started", "_topic")

    def __init__(
        self,
        brokers: str,
        topic: str,
        group_id: str,
        *,
        auto_offset_reset: str = "latest",
    ) -> None:
        self._topic = topic
        self._consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=_brokers(brokers),
            group_id=group_id,
            auto_offset_reset=auto_offset_reset,
        )
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self._consumer.start()
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        await self._consumer.stop()
        self._started = False

    async def __aenter__(self) -> "KafkaConsumer":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    def __aiter__(self) -> AsyncIterator[Envelope]:
        if not self._started:
            raise RuntimeError("KafkaConsumer must be started before iteration")
        return self._consume()

    async def _consume(self) -> AsyncIterator[Envelope]:
        async for msg in self._consumer:
            decoded = decode_envelope(msg.value)
            if decoded is None:
                logger.warning(
                    "kafka_message_malformed", topic=self._topic, offset=msg.offset
                )
                continue
            key = msg.key.decode("utf-8", errors="replace") if msg.key else None
            yield Envelope(key, *decoded)
