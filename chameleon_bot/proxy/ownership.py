from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, TypeVar

from ..models import ProxyMessageRecord, utcnow
from .errors import StorageFailure

logger = logging.getLogger("chameleon_bot")

T = TypeVar("T")


class MessageOwnershipStore:
    """Links dispatched messages back to their original message, alter and system."""

    def __init__(self, store: Any) -> None:
        self.store = store

    async def _call(self, operation: str, pending: Awaitable[T]) -> T:
        try:
            return await pending
        except StorageFailure:
            raise
        except Exception as exc:
            logger.error("[ownership.error] op=%s error=%s", operation, exc)
            raise StorageFailure(operation, exc) from exc

    async def put(self, record: ProxyMessageRecord) -> None:
        await self._call("put", self.store.insert_proxy_message(record))

    async def get_by_dispatched_id(self, dispatched_message_id: str) -> ProxyMessageRecord | None:
        return await self._call(
            "get_by_dispatched_id",
            self.store.get_proxy_message_by_dispatched(dispatched_message_id),
        )

    async def get_by_original_id(self, original_message_id: str) -> ProxyMessageRecord | None:
        return await self._call(
            "get_by_original_id",
            self.store.get_proxy_message_by_original(original_message_id),
        )

    async def latest_for_author(self, author_id: str, channel_id: str) -> ProxyMessageRecord | None:
        return await self._call(
            "latest_for_author",
            self.store.latest_proxy_message_for_author(author_id, channel_id),
        )

    async def mark_deleted(self, dispatched_message_id: str, at: datetime | None = None) -> bool:
        return await self._call(
            "mark_deleted",
            self.store.mark_proxy_message_deleted(dispatched_message_id, at or utcnow()),
        )

    async def update_alter(self, dispatched_message_id: str, alter_id: str) -> bool:
        return await self._call(
            "update_alter",
            self.store.update_proxy_message_alter(dispatched_message_id, alter_id),
        )

    async def replace_dispatched(self, old_id: str, new_id: str, alter_id: str) -> bool:
        return await self._call(
            "replace_dispatched",
            self.store.replace_proxy_message_dispatched(old_id, new_id, alter_id),
        )

    async def touch_edited(self, dispatched_message_id: str, at: datetime | None = None) -> None:
        await self._call(
            "touch_edited",
            self.store.touch_proxy_message_edited(dispatched_message_id, at or utcnow()),
        )

    async def purge_older_than(self, cutoff: datetime) -> int:
        purged = await self._call("purge_older_than", self.store.purge_proxy_messages(cutoff))
        if purged:
            logger.info("[ownership.purge] cutoff=%s purged=%s", cutoff.isoformat(), purged)
        return purged
