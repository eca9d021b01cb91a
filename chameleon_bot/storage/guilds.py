from __future__ import annotations

from typing import Optional

from ..models import GuildConfig, utcnow
from .utils import _dump_ids, _load_ids, _sqlite_connection, _to_iso


class StoreGuildsMixin:
    async def save_guild_config(self, config: GuildConfig) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO guild_configs (
                    guild_id, proxying_enabled, case_sensitive_tags, trim_whitespace_before_match,
                    autoproxy_enabled, log_channel_id, blocked_channel_ids, allow_closed_names, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(guild_id) DO UPDATE SET
                    proxying_enabled = excluded.proxying_enabled,
                    case_sensitive_tags = excluded.case_sensitive_tags,
                    trim_whitespace_before_match = excluded.trim_whitespace_before_match,
                    autoproxy_enabled = excluded.autoproxy_enabled,
                    log_channel_id = excluded.log_channel_id,
                    blocked_channel_ids = excluded.blocked_channel_ids,
                    allow_closed_names = excluded.allow_closed_names,
                    updated_at = excluded.updated_at
                """,
                (
                    config.guild_id,
                    int(config.proxying_enabled),
                    int(config.case_sensitive_tags),
                    int(config.trim_whitespace_before_match),
                    int(config.autoproxy_enabled),
                    config.log_channel_id,
                    _dump_ids(sorted(config.blocked_channel_ids)),
                    int(config.allow_closed_names),
                    _to_iso(utcnow()),
                ),
            )
            await db.commit()

    async def get_guild_config(self, guild_id: str) -> Optional[GuildConfig]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute("SELECT * FROM guild_configs WHERE guild_id = ?", (guild_id,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return GuildConfig(
            guild_id=str(row["guild_id"]),
            proxying_enabled=bool(row["proxying_enabled"]),
            case_sensitive_tags=bool(row["case_sensitive_tags"]),
            trim_whitespace_before_match=bool(row["trim_whitespace_before_match"]),
            autoproxy_enabled=bool(row["autoproxy_enabled"]),
            log_channel_id=row["log_channel_id"],
            blocked_channel_ids=frozenset(_load_ids(row["blocked_channel_ids"])),
            allow_closed_names=bool(row["allow_closed_names"]),
        )
