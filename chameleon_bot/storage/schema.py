from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_connection


class StoreSchemaMixin:
    SCHEMA_VERSION = 2

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("STORE_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                raise RuntimeError(
                    "SQLite schema version mismatch detected (database is newer than this bot build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set STORE_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            await self._create_schema(db)
            if has_tables and version < self.SCHEMA_VERSION:
                await self._migrate_schema(db, version)
            if version != self.SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def _table_columns(self, db: aiosqlite.Connection, table_name: str) -> set[str]:
        async with db.execute(f"PRAGMA table_info({table_name})") as cursor:
            rows = await cursor.fetchall()
        return {str(row[1]) for row in rows}

    async def _add_column_if_missing(self, db: aiosqlite.Connection, table_name: str, column_sql: str) -> None:
        column_name = column_sql.split()[0]
        if column_name in await self._table_columns(db, table_name):
            return
        await db.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_sql}")

    async def _migrate_schema(self, db: aiosqlite.Connection, from_version: int) -> None:
        if from_version < 2:
            # v2: break cooldown and closed-character names.
            await self._add_column_if_missing(db, "systems", "autoproxy_cooldown_seconds INTEGER NOT NULL DEFAULT 0")
            await self._add_column_if_missing(db, "systems", "last_proxied_at TEXT")
            await self._add_column_if_missing(db, "alters", "closed_name TEXT NOT NULL DEFAULT ''")

    async def close(self) -> None:
        # Connections are opened per operation.
        return None

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        tables = (
            "proxy_messages",
            "switches",
            "group_members",
            "groups",
            "alter_tags",
            "alters",
            "account_links",
            "guild_configs",
            "systems",
        )
        for table in tables:
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS systems (
                system_id TEXT PRIMARY KEY,
                name TEXT NOT NULL DEFAULT '',
                tag TEXT NOT NULL DEFAULT '',
                autoproxy_mode TEXT NOT NULL DEFAULT 'off',
                proxy_layout TEXT NOT NULL DEFAULT '',
                allow_empty_body INTEGER NOT NULL DEFAULT 0,
                avatar_url TEXT,
                color TEXT,
                autoproxy_break INTEGER NOT NULL DEFAULT 0,
                last_proxied_alter_id TEXT,
                autoproxy_cooldown_seconds INTEGER NOT NULL DEFAULT 0,
                last_proxied_at TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS account_links (
                account_id TEXT PRIMARY KEY,
                system_id TEXT NOT NULL,
                linked_at TEXT NOT NULL,
                FOREIGN KEY(system_id) REFERENCES systems(system_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS alters (
                alter_id TEXT PRIMARY KEY,
                system_id TEXT NOT NULL,
                name TEXT NOT NULL,
                display_name TEXT NOT NULL DEFAULT '',
                avatar_url TEXT,
                color TEXT,
                pronouns TEXT NOT NULL DEFAULT '[]',
                deleted INTEGER NOT NULL DEFAULT 0,
                deleted_at TEXT,
                closed_name TEXT NOT NULL DEFAULT '',
                FOREIGN KEY(system_id) REFERENCES systems(system_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS alter_tags (
                alter_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                prefix TEXT NOT NULL DEFAULT '',
                suffix TEXT NOT NULL DEFAULT '',
                PRIMARY KEY (alter_id, position),
                FOREIGN KEY(alter_id) REFERENCES alters(alter_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS groups (
                group_id TEXT PRIMARY KEY,
                system_id TEXT NOT NULL,
                name TEXT NOT NULL,
                tag_prefix TEXT,
                tag_suffix TEXT,
                FOREIGN KEY(system_id) REFERENCES systems(system_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS group_members (
                group_id TEXT NOT NULL,
                alter_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY (group_id, alter_id),
                FOREIGN KEY(group_id) REFERENCES groups(group_id) ON DELETE CASCADE,
                FOREIGN KEY(alter_id) REFERENCES alters(alter_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS switches (
                switch_id TEXT PRIMARY KEY,
                system_id TEXT NOT NULL,
                alter_ids TEXT NOT NULL DEFAULT '[]',
                started_at TEXT NOT NULL,
                ended_at TEXT,
                triggered_by TEXT NOT NULL DEFAULT '',
                FOREIGN KEY(system_id) REFERENCES systems(system_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS proxy_messages (
                dispatched_message_id TEXT PRIMARY KEY,
                original_message_id TEXT NOT NULL UNIQUE,
                channel_id TEXT NOT NULL,
                guild_id TEXT NOT NULL,
                system_id TEXT NOT NULL,
                alter_id TEXT NOT NULL,
                author_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0,
                deleted_at TEXT,
                edited_at TEXT
            );

            CREATE TABLE IF NOT EXISTS guild_configs (
                guild_id TEXT PRIMARY KEY,
                proxying_enabled INTEGER NOT NULL DEFAULT 1,
                case_sensitive_tags INTEGER NOT NULL DEFAULT 0,
                trim_whitespace_before_match INTEGER NOT NULL DEFAULT 1,
                autoproxy_enabled INTEGER NOT NULL DEFAULT 1,
                log_channel_id TEXT,
                blocked_channel_ids TEXT NOT NULL DEFAULT '[]',
                allow_closed_names INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_account_links_system
            ON account_links(system_id);

            CREATE INDEX IF NOT EXISTS idx_alters_system
            ON alters(system_id, deleted);

            CREATE INDEX IF NOT EXISTS idx_groups_system
            ON groups(system_id);

            CREATE UNIQUE INDEX IF NOT EXISTS idx_switches_one_open
            ON switches(system_id) WHERE ended_at IS NULL;

            CREATE INDEX IF NOT EXISTS idx_switches_history
            ON switches(system_id, started_at DESC);

            CREATE INDEX IF NOT EXISTS idx_proxy_messages_author
            ON proxy_messages(author_id, channel_id, created_at DESC);

            CREATE INDEX IF NOT EXISTS idx_proxy_messages_purge
            ON proxy_messages(deleted, deleted_at);
            """
        )
