"""
Read tracking for admin notifications.

A ReadStatusStore is created by whoever builds the dispatcher and passed
in explicitly. Entries expire after a TTL so the store never grows
without bound.
"""
import time
from datetime import datetime
from typing import Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel

from storebot.database import utcnow

logger = structlog.get_logger(__name__)


class ReadStatus(BaseModel):
    """Delivery and read state of one admin notification."""

    admin_id: int
    admin_telegram_id: int
    notification_type: str
    sent_at: datetime
    read: bool = False
    read_at: Optional[datetime] = None


class ReadStatusStore(Protocol):
    """Storage for admin notification read status, keyed by chat and message id."""

    async def record_sent(self, message_id: int, status: ReadStatus) -> None:
        ...

    async def mark_read(self, message_id: int, admin_telegram_id: int) -> bool:
        ...

    async def get(self, message_id: int, admin_telegram_id: int) -> Optional[ReadStatus]:
        ...


class InMemoryReadStatusStore:
    """Process-local store for tests and single-process deployments."""

    def __init__(self, ttl_seconds: float = 7 * 86400):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[Tuple[int, int], Tuple[float, ReadStatus]] = {}

    def _prune(self) -> None:
        now = time.monotonic()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]

    async def record_sent(self, message_id: int, status: ReadStatus) -> None:
        self._prune()
        key = (status.admin_telegram_id, message_id)
        self._entries[key] = (time.monotonic() + self.ttl_seconds, status)

    async def mark_read(self, message_id: int, admin_telegram_id: int) -> bool:
        self._prune()
        key = (admin_telegram_id, message_id)
        entry = self._entries.get(key)
        if entry is None:
            return False
        expires_at, status = entry
        self._entries[key] = (
            expires_at,
            status.model_copy(update={"read": True, "read_at": utcnow()}),
        )
        return True

    async def get(self, message_id: int, admin_telegram_id: int) -> Optional[ReadStatus]:
        self._prune()
        entry = self._entries.get((admin_telegram_id, message_id))
        return entry[1] if entry else None

    def __len__(self) -> int:
        self._prune()
        return len(self._entries)


class RedisReadStatusStore:
    """Store shared between processes, with Redis key expiry."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        ttl_seconds: int = 7 * 86400,
        key_prefix: str = "admin_notification",
    ):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, message_id: int, admin_telegram_id: int) -> str:
        return f"{self.key_prefix}:{admin_telegram_id}:{message_id}"

    async def record_sent(self, message_id: int, status: ReadStatus) -> None:
        await self.redis_client.set(
            self._key(message_id, status.admin_telegram_id),
            status.model_dump_json(),
            ex=self.ttl_seconds,
        )

    async def mark_read(self, message_id: int, admin_telegram_id: int) -> bool:
        key = self._key(message_id, admin_telegram_id)
        raw = await self.redis_client.get(key)
        if raw is None:
            return False
        status = ReadStatus.model_validate_json(raw)
        updated = status.model_copy(update={"read": True, "read_at": utcnow()})
        await self.redis_client.set(key, updated.model_dump_json(), keepttl=True)
        return True

    async def get(self, message_id: int, admin_telegram_id: int) -> Optional[ReadStatus]:
        raw = await self.redis_client.get(self._key(message_id, admin_telegram_id))
        if raw is None:
            return None
        return ReadStatus.model_validate_json(raw)
