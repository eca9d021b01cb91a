from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, List, Optional

import asyncpg

from .models import (
    Alter,
    Group,
    GuildConfig,
    ProxyMessageRecord,
    ProxyTag,
    SwitchRecord,
    System,
    utcnow,
)


logger = logging.getLogger("chameleon_bot")

_UNSET = object()


def _row_to_system(row: Any) -> System:
    return System(
        system_id=row["system_id"],
        name=row["name"],
        tag=row["tag"],
        created_at=row["created_at"],
        autoproxy_mode=row["autoproxy_mode"],
        proxy_layout=row["proxy_layout"],
        allow_empty_body=bool(row["allow_empty_body"]),
        avatar_url=row["avatar_url"],
        color=row["color"],
        autoproxy_break=bool(row["autoproxy_break"]),
        last_proxied_alter_id=row["last_proxied_alter_id"],
        autoproxy_cooldown_seconds=int(row["autoproxy_cooldown_seconds"] or 0),
        last_proxied_at=row["last_proxied_at"],
    )


def _row_to_switch(row: Any) -> SwitchRecord:
    return SwitchRecord(
        switch_id=row["switch_id"],
        system_id=row["system_id"],
        alter_ids=tuple(row["alter_ids"] or ()),
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        triggered_by=row["triggered_by"],
    )


def _row_to_record(row: Any) -> ProxyMessageRecord:
    return ProxyMessageRecord(
        dispatched_message_id=row["dispatched_message_id"],
        original_message_id=row["original_message_id"],
        channel_id=row["channel_id"],
        guild_id=row["guild_id"],
        system_id=row["system_id"],
        alter_id=row["alter_id"],
        author_id=row["author_id"],
        created_at=row["created_at"],
        deleted=bool(row["deleted"]),
        deleted_at=row["deleted_at"],
        edited_at=row["edited_at"],
    )


def _affected(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1" / "DELETE 3".
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresProxyStore:
    """Postgres-backed store implementing the same API as ProxyStore."""

    SCHEMA_VERSION = 2
    backend_name = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("STORE_POSTGRES_DSN cannot be empty")
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=6,
                command_timeout=30.0,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres store schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade the bot before starting."
                        )
                    await self._create_schema(conn)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True
            logger.info("[store.init] backend=postgres schema=%s", self.SCHEMA_VERSION)

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS store_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM store_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO store_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
            """,
            str(version),
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS systems (
                system_id TEXT PRIMARY KEY,
                name TEXT NOT NULL DEFAULT '',
                tag TEXT NOT NULL DEFAULT '',
                autoproxy_mode TEXT NOT NULL DEFAULT 'off',
                proxy_layout TEXT NOT NULL DEFAULT '',
                allow_empty_body BOOLEAN NOT NULL DEFAULT FALSE,
                avatar_url TEXT,
                color TEXT,
                autoproxy_break BOOLEAN NOT NULL DEFAULT FALSE,
                last_proxied_alter_id TEXT,
                autoproxy_cooldown_seconds INTEGER NOT NULL DEFAULT 0,
                last_proxied_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL
            );

            CREATE TABLE IF NOT EXISTS account_links (
                account_id TEXT PRIMARY KEY,
                system_id TEXT NOT NULL REFERENCES systems(system_id) ON DELETE CASCADE,
                linked_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS alters (
                alter_id TEXT PRIMARY KEY,
                system_id TEXT NOT NULL REFERENCES systems(system_id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                display_name TEXT NOT NULL DEFAULT '',
                avatar_url TEXT,
                color TEXT,
                pronouns TEXT[] NOT NULL DEFAULT '{}',
                deleted BOOLEAN NOT NULL DEFAULT FALSE,
                deleted_at TIMESTAMPTZ,
                closed_name TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS alter_tags (
                alter_id TEXT NOT NULL REFERENCES alters(alter_id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                prefix TEXT NOT NULL DEFAULT '',
                suffix TEXT NOT NULL DEFAULT '',
                PRIMARY KEY (alter_id, position)
            );

            CREATE TABLE IF NOT EXISTS alter_groups (
                group_id TEXT PRIMARY KEY,
                system_id TEXT NOT NULL REFERENCES systems(system_id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                tag_prefix TEXT,
                tag_suffix TEXT
            );

            CREATE TABLE IF NOT EXISTS group_members (
                group_id TEXT NOT NULL REFERENCES alter_groups(group_id) ON DELETE CASCADE,
                alter_id TEXT NOT NULL REFERENCES alters(alter_id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                PRIMARY KEY (group_id, alter_id)
            );

            CREATE TABLE IF NOT EXISTS switches (
                switch_id TEXT PRIMARY KEY,
                system_id TEXT NOT NULL REFERENCES systems(system_id) ON DELETE CASCADE,
                alter_ids TEXT[] NOT NULL DEFAULT '{}',
                started_at TIMESTAMPTZ NOT NULL,
                ended_at TIMESTAMPTZ,
                triggered_by TEXT NOT NULL DEFAULT '',
                seq BIGSERIAL
            );

            CREATE TABLE IF NOT EXISTS proxy_messages (
                dispatched_message_id TEXT PRIMARY KEY,
                original_message_id TEXT NOT NULL UNIQUE,
                channel_id TEXT NOT NULL,
                guild_id TEXT NOT NULL,
                system_id TEXT NOT NULL,
                alter_id TEXT NOT NULL,
                author_id TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                deleted BOOLEAN NOT NULL DEFAULT FALSE,
                deleted_at TIMESTAMPTZ,
                edited_at TIMESTAMPTZ
            );

            CREATE TABLE IF NOT EXISTS guild_configs (
                guild_id TEXT PRIMARY KEY,
                proxying_enabled BOOLEAN NOT NULL DEFAULT TRUE,
                case_sensitive_tags BOOLEAN NOT NULL DEFAULT FALSE,
                trim_whitespace_before_match BOOLEAN NOT NULL DEFAULT TRUE,
                autoproxy_enabled BOOLEAN NOT NULL DEFAULT TRUE,
                log_channel_id TEXT,
                blocked_channel_ids TEXT[] NOT NULL DEFAULT '{}',
                allow_closed_names BOOLEAN NOT NULL DEFAULT TRUE,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS idx_account_links_system ON account_links(system_id);
            CREATE INDEX IF NOT EXISTS idx_alters_system ON alters(system_id, deleted);
            CREATE INDEX IF NOT EXISTS idx_alter_groups_system ON alter_groups(system_id);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_switches_one_open
            ON switches(system_id) WHERE ended_at IS NULL;
            CREATE INDEX IF NOT EXISTS idx_switches_history ON switches(system_id, started_at DESC);
            CREATE INDEX IF NOT EXISTS idx_proxy_messages_author
            ON proxy_messages(author_id, channel_id, created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_proxy_messages_purge ON proxy_messages(deleted, deleted_at);

            ALTER TABLE systems
            ADD COLUMN IF NOT EXISTS autoproxy_cooldown_seconds INTEGER NOT NULL DEFAULT 0;

            ALTER TABLE systems
            ADD COLUMN IF NOT EXISTS last_proxied_at TIMESTAMPTZ;

            ALTER TABLE alters
            ADD COLUMN IF NOT EXISTS closed_name TEXT NOT NULL DEFAULT '';
            """
        )

    async def save_system(self, system: System) -> None:
        pool = await self._ensure_pool()
        await pool.execute(
            """
            INSERT INTO systems (
                system_id, name, tag, autoproxy_mode, proxy_layout, allow_empty_body,
                avatar_url, color, autoproxy_break, last_proxied_alter_id, autoproxy_cooldown_seconds,
                last_proxied_at, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            ON CONFLICT (system_id) DO UPDATE SET
                name = EXCLUDED.name,
                tag = EXCLUDED.tag,
                autoproxy_mode = EXCLUDED.autoproxy_mode,
                proxy_layout = EXCLUDED.proxy_layout,
                allow_empty_body = EXCLUDED.allow_empty_body,
                avatar_url = EXCLUDED.avatar_url,
                color = EXCLUDED.color,
                autoproxy_break = EXCLUDED.autoproxy_break,
                last_proxied_alter_id = EXCLUDED.last_proxied_alter_id,
                autoproxy_cooldown_seconds = EXCLUDED.autoproxy_cooldown_seconds,
                last_proxied_at = EXCLUDED.last_proxied_at
            """,
            system.system_id,
            system.name,
            system.tag,
            system.autoproxy_mode,
            system.proxy_layout,
            system.allow_empty_body,
            system.avatar_url,
            system.color,
            system.autoproxy_break,
            system.last_proxied_alter_id,
            system.autoproxy_cooldown_seconds,
            system.last_proxied_at,
            system.created_at,
        )

    async def get_system(self, system_id: str) -> Optional[System]:
        pool = await self._ensure_pool()
        row = await pool.fetchrow("SELECT * FROM systems WHERE system_id = $1", system_id)
        return _row_to_system(row) if row is not None else None

    async def update_autoproxy_state(
        self,
        system_id: str,
        *,
        autoproxy_break: bool | None = None,
        last_proxied_alter_id: object = _UNSET,
        last_proxied_at: datetime | None = None,
    ) -> None:
        assignments: list[str] = []
        params: list[object] = []
        if autoproxy_break is not None:
            params.append(autoproxy_break)
            assignments.append(f"autoproxy_break = ${len(params)}")
        if last_proxied_alter_id is not _UNSET:
            params.append(last_proxied_alter_id)
            assignments.append(f"last_proxied_alter_id = ${len(params)}")
        if last_proxied_at is not None:
            params.append(last_proxied_at)
            assignments.append(f"last_proxied_at = ${len(params)}")
        if not assignments:
            return
        params.append(system_id)
        pool = await self._ensure_pool()
        await pool.execute(
            f"UPDATE systems SET {', '.join(assignments)} WHERE system_id = ${len(params)}",
            *params,
        )

    async def link_account(self, account_id: str, system_id: str) -> None:
        pool = await self._ensure_pool()
        await pool.execute(
            """
            INSERT INTO account_links (account_id, system_id, linked_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (account_id) DO UPDATE SET
                system_id = EXCLUDED.system_id,
                linked_at = EXCLUDED.linked_at
            """,
            account_id,
            system_id,
            utcnow(),
        )

    async def unlink_account(self, account_id: str) -> None:
        pool = await self._ensure_pool()
        await pool.execute("DELETE FROM account_links WHERE account_id = $1", account_id)

    async def find_system_id_by_account(self, account_id: str) -> Optional[str]:
        pool = await self._ensure_pool()
        value = await pool.fetchval("SELECT system_id FROM account_links WHERE account_id = $1", account_id)
        return str(value) if value is not None else None

    async def list_system_accounts(self, system_id: str) -> List[str]:
        pool = await self._ensure_pool()
        rows = await pool.fetch(
            "SELECT account_id FROM account_links WHERE system_id = $1 ORDER BY linked_at",
            system_id,
        )
        return [str(row["account_id"]) for row in rows]

    async def save_alter(self, alter: Alter) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO alters (
                        alter_id, system_id, name, display_name, avatar_url, color, pronouns, deleted, deleted_at, closed_name
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    ON CONFLICT (alter_id) DO UPDATE SET
                        name = EXCLUDED.name,
                        display_name = EXCLUDED.display_name,
                        avatar_url = EXCLUDED.avatar_url,
                        color = EXCLUDED.color,
                        pronouns = EXCLUDED.pronouns,
                        deleted = EXCLUDED.deleted,
                        deleted_at = EXCLUDED.deleted_at,
                        closed_name = EXCLUDED.closed_name
                    """,
                    alter.alter_id,
                    alter.system_id,
                    alter.name,
                    alter.display_name,
                    alter.avatar_url,
                    alter.color,
                    list(alter.pronouns),
                    alter.deleted,
                    alter.deleted_at,
                    alter.closed_name,
                )
                await conn.execute("DELETE FROM alter_tags WHERE alter_id = $1", alter.alter_id)
                await conn.executemany(
                    "INSERT INTO alter_tags (alter_id, position, prefix, suffix) VALUES ($1, $2, $3, $4)",
                    [(alter.alter_id, index, tag.prefix, tag.suffix) for index, tag in enumerate(alter.tags)],
                )

    async def _load_alters(self, where: str, *params: object) -> List[Alter]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(f"SELECT * FROM alters WHERE {where} ORDER BY name, alter_id", *params)
            if not rows:
                return []
            ids = [str(row["alter_id"]) for row in rows]
            tag_rows = await conn.fetch(
                """
                SELECT alter_id, prefix, suffix
                FROM alter_tags
                WHERE alter_id = ANY($1::text[])
                ORDER BY alter_id, position
                """,
                ids,
            )
            member_rows = await conn.fetch(
                "SELECT alter_id, group_id FROM group_members WHERE alter_id = ANY($1::text[]) ORDER BY group_id",
                ids,
            )

        tags: dict[str, list[ProxyTag]] = {alter_id: [] for alter_id in ids}
        for tag_row in tag_rows:
            tags[str(tag_row["alter_id"])].append(ProxyTag(tag_row["prefix"], tag_row["suffix"]))
        memberships: dict[str, list[str]] = {alter_id: [] for alter_id in ids}
        for member_row in member_rows:
            memberships[str(member_row["alter_id"])].append(str(member_row["group_id"]))

        return [
            Alter(
                alter_id=row["alter_id"],
                system_id=row["system_id"],
                name=row["name"],
                display_name=row["display_name"],
                avatar_url=row["avatar_url"],
                color=row["color"],
                pronouns=tuple(row["pronouns"] or ()),
                tags=tuple(tags[str(row["alter_id"])]),
                group_ids=tuple(memberships[str(row["alter_id"])]),
                deleted=bool(row["deleted"]),
                deleted_at=row["deleted_at"],
                closed_name=row["closed_name"] or "",
            )
            for row in rows
        ]

    async def get_alter(self, alter_id: str) -> Optional[Alter]:
        alters = await self._load_alters("alter_id = $1", alter_id)
        return alters[0] if alters else None

    async def list_alters(self, system_id: str, *, include_deleted: bool = False) -> List[Alter]:
        where = "system_id = $1" if include_deleted else "system_id = $1 AND deleted = FALSE"
        return await self._load_alters(where, system_id)

    async def save_group(self, group: Group) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO alter_groups (group_id, system_id, name, tag_prefix, tag_suffix)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (group_id) DO UPDATE SET
                        name = EXCLUDED.name,
                        tag_prefix = EXCLUDED.tag_prefix,
                        tag_suffix = EXCLUDED.tag_suffix
                    """,
                    group.group_id,
                    group.system_id,
                    group.name,
                    group.tag.prefix if group.tag else None,
                    group.tag.suffix if group.tag else None,
                )
                await conn.execute("DELETE FROM group_members WHERE group_id = $1", group.group_id)
                await conn.executemany(
                    "INSERT INTO group_members (group_id, alter_id, position) VALUES ($1, $2, $3)",
                    [(group.group_id, alter_id, index) for index, alter_id in enumerate(group.member_ids)],
                )

    async def list_groups(self, system_id: str) -> List[Group]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM alter_groups WHERE system_id = $1 ORDER BY name, group_id",
                system_id,
            )
            member_rows = await conn.fetch(
                """
                SELECT gm.group_id, gm.alter_id
                FROM group_members gm
                JOIN alter_groups g ON g.group_id = gm.group_id
                WHERE g.system_id = $1
                ORDER BY gm.group_id, gm.position
                """,
                system_id,
            )
        members: dict[str, list[str]] = {str(row["group_id"]): [] for row in rows}
        for member_row in member_rows:
            members[str(member_row["group_id"])].append(str(member_row["alter_id"]))

        groups: List[Group] = []
        for row in rows:
            prefix = row["tag_prefix"] or ""
            suffix = row["tag_suffix"] or ""
            groups.append(
                Group(
                    group_id=row["group_id"],
                    system_id=row["system_id"],
                    name=row["name"],
                    member_ids=tuple(members[str(row["group_id"])]),
                    tag=ProxyTag(prefix, suffix) if (prefix or suffix) else None,
                )
            )
        return groups

    async def get_open_switch(self, system_id: str) -> Optional[SwitchRecord]:
        pool = await self._ensure_pool()
        row = await pool.fetchrow(
            "SELECT * FROM switches WHERE system_id = $1 AND ended_at IS NULL",
            system_id,
        )
        return _row_to_switch(row) if row is not None else None

    async def apply_switch(
        self,
        record: SwitchRecord,
        *,
        close_switch_id: str | None,
        closed_at: datetime | None,
    ) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                if close_switch_id is not None:
                    status = await conn.execute(
                        "UPDATE switches SET ended_at = $1 WHERE switch_id = $2 AND ended_at IS NULL",
                        closed_at,
                        close_switch_id,
                    )
                    if _affected(status) != 1:
                        raise RuntimeError(f"switch {close_switch_id} is no longer open")
                await conn.execute(
                    """
                    INSERT INTO switches (switch_id, system_id, alter_ids, started_at, ended_at, triggered_by)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    record.switch_id,
                    record.system_id,
                    list(record.alter_ids),
                    record.started_at,
                    record.ended_at,
                    record.triggered_by,
                )

    async def list_switches(self, system_id: str, limit: int = 20) -> List[SwitchRecord]:
        pool = await self._ensure_pool()
        rows = await pool.fetch(
            """
            SELECT *
            FROM switches
            WHERE system_id = $1
            ORDER BY started_at DESC, seq DESC
            LIMIT $2
            """,
            system_id,
            max(1, int(limit)),
        )
        return [_row_to_switch(row) for row in rows]

    async def count_open_switches(self, system_id: str) -> int:
        pool = await self._ensure_pool()
        value = await pool.fetchval(
            "SELECT COUNT(*) FROM switches WHERE system_id = $1 AND ended_at IS NULL",
            system_id,
        )
        return int(value or 0)

    async def insert_proxy_message(self, record: ProxyMessageRecord) -> None:
        pool = await self._ensure_pool()
        await pool.execute(
            """
            INSERT INTO proxy_messages (
                dispatched_message_id, original_message_id, channel_id, guild_id, system_id,
                alter_id, author_id, created_at, deleted, deleted_at, edited_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
            record.dispatched_message_id,
            record.original_message_id,
            record.channel_id,
            record.guild_id,
            record.system_id,
            record.alter_id,
            record.author_id,
            record.created_at,
            record.deleted,
            record.deleted_at,
            record.edited_at,
        )

    async def get_proxy_message_by_dispatched(self, dispatched_message_id: str) -> Optional[ProxyMessageRecord]:
        pool = await self._ensure_pool()
        row = await pool.fetchrow(
            "SELECT * FROM proxy_messages WHERE dispatched_message_id = $1",
            dispatched_message_id,
        )
        return _row_to_record(row) if row is not None else None

    async def get_proxy_message_by_original(self, original_message_id: str) -> Optional[ProxyMessageRecord]:
        pool = await self._ensure_pool()
        row = await pool.fetchrow(
            "SELECT * FROM proxy_messages WHERE original_message_id = $1",
            original_message_id,
        )
        return _row_to_record(row) if row is not None else None

    async def latest_proxy_message_for_author(
        self,
        author_id: str,
        channel_id: str,
    ) -> Optional[ProxyMessageRecord]:
        pool = await self._ensure_pool()
        row = await pool.fetchrow(
            """
            SELECT *
            FROM proxy_messages
            WHERE author_id = $1 AND channel_id = $2 AND deleted = FALSE
            ORDER BY created_at DESC
            LIMIT 1
            """,
            author_id,
            channel_id,
        )
        return _row_to_record(row) if row is not None else None

    async def mark_proxy_message_deleted(self, dispatched_message_id: str, deleted_at: datetime) -> bool:
        pool = await self._ensure_pool()
        status = await pool.execute(
            """
            UPDATE proxy_messages
            SET deleted = TRUE, deleted_at = $1
            WHERE dispatched_message_id = $2 AND deleted = FALSE
            """,
            deleted_at,
            dispatched_message_id,
        )
        return _affected(status) > 0

    async def update_proxy_message_alter(self, dispatched_message_id: str, alter_id: str) -> bool:
        pool = await self._ensure_pool()
        status = await pool.execute(
            "UPDATE proxy_messages SET alter_id = $1 WHERE dispatched_message_id = $2",
            alter_id,
            dispatched_message_id,
        )
        return _affected(status) > 0

    async def replace_proxy_message_dispatched(
        self,
        old_dispatched_message_id: str,
        new_dispatched_message_id: str,
        alter_id: str,
    ) -> bool:
        pool = await self._ensure_pool()
        status = await pool.execute(
            """
            UPDATE proxy_messages
            SET dispatched_message_id = $1, alter_id = $2, deleted = FALSE, deleted_at = NULL
            WHERE dispatched_message_id = $3
            """,
            new_dispatched_message_id,
            alter_id,
            old_dispatched_message_id,
        )
        return _affected(status) > 0

    async def touch_proxy_message_edited(self, dispatched_message_id: str, edited_at: datetime) -> None:
        pool = await self._ensure_pool()
        await pool.execute(
            "UPDATE proxy_messages SET edited_at = $1 WHERE dispatched_message_id = $2",
            edited_at,
            dispatched_message_id,
        )

    async def purge_proxy_messages(self, cutoff: datetime) -> int:
        pool = await self._ensure_pool()
        status = await pool.execute(
            "DELETE FROM proxy_messages WHERE deleted = TRUE AND deleted_at IS NOT NULL AND deleted_at < $1",
            cutoff,
        )
        return _affected(status)

    async def save_guild_config(self, config: GuildConfig) -> None:
        pool = await self._ensure_pool()
        await pool.execute(
            """
            INSERT INTO guild_configs (
                guild_id, proxying_enabled, case_sensitive_tags, trim_whitespace_before_match,
                autoproxy_enabled, log_channel_id, blocked_channel_ids, allow_closed_names, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, NOW())
            ON CONFLICT (guild_id) DO UPDATE SET
                proxying_enabled = EXCLUDED.proxying_enabled,
                case_sensitive_tags = EXCLUDED.case_sensitive_tags,
                trim_whitespace_before_match = EXCLUDED.trim_whitespace_before_match,
                autoproxy_enabled = EXCLUDED.autoproxy_enabled,
                log_channel_id = EXCLUDED.log_channel_id,
                blocked_channel_ids = EXCLUDED.blocked_channel_ids,
                allow_closed_names = EXCLUDED.allow_closed_names,
                updated_at = NOW()
            """,
            config.guild_id,
            config.proxying_enabled,
            config.case_sensitive_tags,
            config.trim_whitespace_before_match,
            config.autoproxy_enabled,
            config.log_channel_id,
            sorted(config.blocked_channel_ids),
            config.allow_closed_names,
        )

    async def get_guild_config(self, guild_id: str) -> Optional[GuildConfig]:
        pool = await self._ensure_pool()
        row = await pool.fetchrow("SELECT * FROM guild_configs WHERE guild_id = $1", guild_id)
        if row is None:
            return None
        return GuildConfig(
            guild_id=row["guild_id"],
            proxying_enabled=bool(row["proxying_enabled"]),
            case_sensitive_tags=bool(row["case_sensitive_tags"]),
            trim_whitespace_before_match=bool(row["trim_whitespace_before_match"]),
            autoproxy_enabled=bool(row["autoproxy_enabled"]),
            log_channel_id=row["log_channel_id"],
            blocked_channel_ids=frozenset(row["blocked_channel_ids"] or ()),
            allow_closed_names=bool(row["allow_closed_names"]),
        )
