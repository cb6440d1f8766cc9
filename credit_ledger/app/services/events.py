"""
Credit domain events.

Events are published after the mutation they describe has committed.
Subscriber failures are logged and never undo or fail that mutation.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List

import redis.asyncio as redis

from credit_ledger.app.core.config import settings

logger = logging.getLogger(__name__)


class EventName:
    CREDITS_SPENT = "credits.spent"
    OVERAGE_GRANTED = "credits.overage_granted"
    BALANCE_ADJUSTED = "credits.balance_adjusted"
    CYCLE_REFILLED = "credits.cycle_refilled"
    TIER_CHANGED = "credits.tier_changed"


@dataclass
class CreditEvent:
    name: str
    account_id: int
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


Subscriber = Callable[[CreditEvent], Awaitable[None]]


class EventBus:
    """Fan-out of credit events to async subscribers."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    async def publish(self, event: CreditEvent) -> None:
        for subscriber in self._subscribers:
            try:
                await subscriber(event)
            except Exception:
                logger.exception(
                    "Credit event subscriber failed",
                    extra={"event": event.name, "account_id": event.account_id},
                )


class RedisEventPublisher:
    """Subscriber that forwards events to a Redis pub/sub channel."""

    def __init__(self, client, channel: str = None):
        self.client = client
        self.channel = channel or settings.events_channel

    async def __call__(self, event: CreditEvent) -> None:
        await self.client.publish(self.channel, event.to_json())


def build_redis_client():
    """Async Redis client for event fan-out."""
    return redis.from_url(
        settings.redis_url,
        decode_responses=settings.redis_decode_responses,
    )


async def ping_redis(client) -> bool:
    """
    Test Redis connection.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        return bool(await client.ping())
    except Exception:
        return False
