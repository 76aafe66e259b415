"""Publishes payment profile state changes for the accounts service."""

from typing import Protocol

from billflow.common.events import EventEnvelope, KafkaBus
from billflow.common.logging import logger


class ProfileStateSyncer(Protocol):
    async def sync(self, account_id: str, version: int, state: str, event_id: str) -> None: ...


class KafkaProfileStateSyncer:
    """Emits one `payment_profile.state_changed` event per profile version.

    The event id is derived from account and version, so a re-sent sync is a
    duplicate the consumer's inbox can drop.
    """

    event_type = "payment_profile.state_changed"

    def __init__(self, bus: KafkaBus, topic: str) -> None:
        self.bus = bus
        self.topic = topic

    async def sync(self, account_id: str, version: int, state: str, event_id: str) -> None:
        event = EventEnvelope(
            event_id=event_id,
            event_type=self.event_type,
            aggregate_id=account_id,
            payload={"account_id": account_id, "version": version, "state": state},
        )
        await self.bus.publish(self.topic, event)
        logger.info("profile state synced account_id=%s version=%s state=%s", account_id, version, state)
