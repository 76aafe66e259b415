"""Kafka envelope + producer helper.

Billing publishes profile state to other services through this bus. The
Kafka client ships in the `kafka` extra and is only imported once a producer
is actually started.
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from billflow.common.errors import TransientExternalError
from billflow.common.logging import logger, trace_id_ctx


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = Field(default_factory=lambda: trace_id_ctx.get() or str(uuid4()))
    payload: dict[str, Any]

    def encode(self) -> bytes:
        return json.dumps(self.model_dump()).encode("utf-8")


class KafkaBus:
    """Lazy Kafka producer wrapper; broker failures surface as transient errors."""

    def __init__(self, bootstrap_servers: str) -> None:
        self.bootstrap_servers = bootstrap_servers
        self._producer = None

    async def producer(self):
        if self._producer is None:
            from aiokafka import AIOKafkaProducer

            producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers)
            await producer.start()
            self._producer = producer
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        from aiokafka.errors import KafkaError

        try:
            producer = await self.producer()
            # Keyed by aggregate so every change of one account lands on one partition.
            await producer.send_and_wait(topic, event.encode(), key=event.aggregate_id.encode("utf-8"))
        except KafkaError as exc:
            logger.warning("kafka publish failed topic=%s event_type=%s error=%s", topic, event.event_type, exc)
            raise TransientExternalError(f"publish to {topic} failed: {exc}") from exc

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None
