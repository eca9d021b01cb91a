from __future__ import annotations

from datetime import datetime
from typing import Optional

import aiosqlite

from ..models import ProxyMessageRecord, utcnow
from .utils import _from_iso, _sqlite_connection, _to_iso


def _row_to_record(row: aiosqlite.Row) -> ProxyMessageRecord:
    return ProxyMessageRecord(
        dispatched_message_id=str(row["dispatched_message_id"]),
        original_message_id=str(row["original_message_id"]),
        channel_id=str(row["channel_id"]),
        guild_id=str(row["guild_id"]),
        system_id=str(row["system_id"]),
        alter_id=str(row["alter_id"]),
        author_id=str(row["author_id"]),
        created_at=_from_iso(row["created_at"]) or utcnow(),
        deleted=bool(row["deleted"]),
        deleted_at=_from_iso(row["deleted_at"]),
        edited_at=_from_iso(row["edited_at"]),
    )


class StoreMessagesMixin:
    async def insert_proxy_message(self, record: ProxyMessageRecord) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO proxy_messages (
                    dispatched_message_id, original_message_id, channel_id, guild_id, system_id,
                    alter_id, author_id, created_at, deleted, deleted_at, edited_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.dispatched_message_id,
                    record.original_message_id,
                    record.channel_id,
                    record.guild_id,
                    record.system_id,
                    record.alter_id,
                    record.author_id,
                    _to_iso(record.created_at),
                    int(record.deleted),
                    _to_iso(record.deleted_at),
                    _to_iso(record.edited_at),
                ),
            )
            await db.commit()

    async def _fetch_proxy_message(self, column: str, value: str) -> Optional[ProxyMessageRecord]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(f"SELECT * FROM proxy_messages WHERE {column} = ?", (value,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_record(row)

    async def get_proxy_message_by_dispatched(self, dispatched_message_id: str) -> Optional[ProxyMessageRecord]:
        return await self._fetch_proxy_message("dispatched_message_id", dispatched_message_id)

    async def get_proxy_message_by_original(self, original_message_id: str) -> Optional[ProxyMessageRecord]:
        return await self._fetch_proxy_message("original_message_id", original_message_id)

    async def latest_proxy_message_for_author(
        self,
        author_id: str,
        channel_id: str,
    ) -> Optional[ProxyMessageRecord]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT *
                FROM proxy_messages
                WHERE author_id = ? AND channel_id = ? AND deleted = 0
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (author_id, channel_id),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_record(row)

    async def mark_proxy_message_deleted(self, dispatched_message_id: str, deleted_at: datetime) -> bool:
        async with _sqlite_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE proxy_messages
                SET deleted = 1, deleted_at = ?
                WHERE dispatched_message_id = ? AND deleted = 0
                """,
                (_to_iso(deleted_at), dispatched_message_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def update_proxy_message_alter(self, dispatched_message_id: str, alter_id: str) -> bool:
        async with _sqlite_connection(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE proxy_messages SET alter_id = ? WHERE dispatched_message_id = ?",
                (alter_id, dispatched_message_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def replace_proxy_message_dispatched(
        self,
        old_dispatched_message_id: str,
        new_dispatched_message_id: str,
        alter_id: str,
    ) -> bool:
        async with _sqlite_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE proxy_messages
                SET dispatched_message_id = ?, alter_id = ?, deleted = 0, deleted_at = NULL
                WHERE dispatched_message_id = ?
                """,
                (new_dispatched_message_id, alter_id, old_dispatched_message_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def touch_proxy_message_edited(self, dispatched_message_id: str, edited_at: datetime) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                "UPDATE proxy_messages SET edited_at = ? WHERE dispatched_message_id = ?",
                (_to_iso(edited_at), dispatched_message_id),
            )
            await db.commit()

    async def purge_proxy_messages(self, cutoff: datetime) -> int:
        async with _sqlite_connection(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM proxy_messages WHERE deleted = 1 AND deleted_at IS NOT NULL AND deleted_at < ?",
                (_to_iso(cutoff),),
            )
            await db.commit()
            return max(0, cursor.rowcount)
