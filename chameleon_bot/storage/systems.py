from __future__ import annotations

import json
from datetime import datetime
from typing import List, Optional

import aiosqlite

from ..models import Alter, Group, ProxyTag, System, utcnow
from .utils import _from_iso, _sqlite_connection, _to_iso

_UNSET = object()


def _row_to_system(row: aiosqlite.Row) -> System:
    return System(
        system_id=str(row["system_id"]),
        name=str(row["name"]),
        tag=str(row["tag"]),
        created_at=_from_iso(row["created_at"]) or utcnow(),
        autoproxy_mode=str(row["autoproxy_mode"]),
        proxy_layout=str(row["proxy_layout"]),
        allow_empty_body=bool(row["allow_empty_body"]),
        avatar_url=row["avatar_url"],
        color=row["color"],
        autoproxy_break=bool(row["autoproxy_break"]),
        last_proxied_alter_id=row["last_proxied_alter_id"],
        autoproxy_cooldown_seconds=int(row["autoproxy_cooldown_seconds"] or 0),
        last_proxied_at=_from_iso(row["last_proxied_at"]),
    )


class StoreSystemsMixin:
    async def save_system(self, system: System) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO systems (
                    system_id, name, tag, autoproxy_mode, proxy_layout, allow_empty_body,
                    avatar_url, color, autoproxy_break, last_proxied_alter_id, autoproxy_cooldown_seconds,
                    last_proxied_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(system_id) DO UPDATE SET
                    name = excluded.name,
                    tag = excluded.tag,
                    autoproxy_mode = excluded.autoproxy_mode,
                    proxy_layout = excluded.proxy_layout,
                    allow_empty_body = excluded.allow_empty_body,
                    avatar_url = excluded.avatar_url,
                    color = excluded.color,
                    autoproxy_break = excluded.autoproxy_break,
                    last_proxied_alter_id = excluded.last_proxied_alter_id,
                    autoproxy_cooldown_seconds = excluded.autoproxy_cooldown_seconds,
                    last_proxied_at = excluded.last_proxied_at
                """,
                (
                    system.system_id,
                    system.name,
                    system.tag,
                    system.autoproxy_mode,
                    system.proxy_layout,
                    int(system.allow_empty_body),
                    system.avatar_url,
                    system.color,
                    int(system.autoproxy_break),
                    system.last_proxied_alter_id,
                    system.autoproxy_cooldown_seconds,
                    _to_iso(system.last_proxied_at),
                    _to_iso(system.created_at),
                ),
            )
            await db.commit()

    async def get_system(self, system_id: str) -> Optional[System]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute("SELECT * FROM systems WHERE system_id = ?", (system_id,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_system(row)

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
            assignments.append("autoproxy_break = ?")
            params.append(int(autoproxy_break))
        if last_proxied_alter_id is not _UNSET:
            assignments.append("last_proxied_alter_id = ?")
            params.append(last_proxied_alter_id)
        if last_proxied_at is not None:
            assignments.append("last_proxied_at = ?")
            params.append(_to_iso(last_proxied_at))
        if not assignments:
            return
        params.append(system_id)
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                f"UPDATE systems SET {', '.join(assignments)} WHERE system_id = ?",
                tuple(params),
            )
            await db.commit()

    async def link_account(self, account_id: str, system_id: str) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO account_links (account_id, system_id, linked_at)
                VALUES (?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    system_id = excluded.system_id,
                    linked_at = excluded.linked_at
                """,
                (account_id, system_id, _to_iso(utcnow())),
            )
            await db.commit()

    async def unlink_account(self, account_id: str) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("DELETE FROM account_links WHERE account_id = ?", (account_id,))
            await db.commit()

    async def find_system_id_by_account(self, account_id: str) -> Optional[str]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT system_id FROM account_links WHERE account_id = ?",
                (account_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return str(row["system_id"])

    async def list_system_accounts(self, system_id: str) -> List[str]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT account_id FROM account_links WHERE system_id = ? ORDER BY linked_at",
                (system_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [str(row["account_id"]) for row in rows]

    async def save_alter(self, alter: Alter) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO alters (
                    alter_id, system_id, name, display_name, avatar_url, color, pronouns, deleted, deleted_at, closed_name
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(alter_id) DO UPDATE SET
                    name = excluded.name,
                    display_name = excluded.display_name,
                    avatar_url = excluded.avatar_url,
                    color = excluded.color,
                    pronouns = excluded.pronouns,
                    deleted = excluded.deleted,
                    deleted_at = excluded.deleted_at,
                    closed_name = excluded.closed_name
                """,
                (
                    alter.alter_id,
                    alter.system_id,
                    alter.name,
                    alter.display_name,
                    alter.avatar_url,
                    alter.color,
                    json.dumps(list(alter.pronouns)),
                    int(alter.deleted),
                    _to_iso(alter.deleted_at),
                    alter.closed_name,
                ),
            )
            await db.execute("DELETE FROM alter_tags WHERE alter_id = ?", (alter.alter_id,))
            await db.executemany(
                "INSERT INTO alter_tags (alter_id, position, prefix, suffix) VALUES (?, ?, ?, ?)",
                [(alter.alter_id, index, tag.prefix, tag.suffix) for index, tag in enumerate(alter.tags)],
            )
            await db.commit()

    async def _load_alters(self, db: aiosqlite.Connection, where: str, params: tuple[object, ...]) -> List[Alter]:
        async with db.execute(f"SELECT * FROM alters WHERE {where} ORDER BY name, alter_id", params) as cursor:
            rows = await cursor.fetchall()
        if not rows:
            return []

        ids = [str(row["alter_id"]) for row in rows]
        placeholders = ", ".join("?" for _ in ids)
        tags: dict[str, list[ProxyTag]] = {alter_id: [] for alter_id in ids}
        async with db.execute(
            f"""
            SELECT alter_id, prefix, suffix
            FROM alter_tags
            WHERE alter_id IN ({placeholders})
            ORDER BY alter_id, position
            """,
            tuple(ids),
        ) as cursor:
            for tag_row in await cursor.fetchall():
                tags[str(tag_row["alter_id"])].append(ProxyTag(str(tag_row["prefix"]), str(tag_row["suffix"])))

        memberships: dict[str, list[str]] = {alter_id: [] for alter_id in ids}
        async with db.execute(
            f"SELECT alter_id, group_id FROM group_members WHERE alter_id IN ({placeholders}) ORDER BY group_id",
            tuple(ids),
        ) as cursor:
            for member_row in await cursor.fetchall():
                memberships[str(member_row["alter_id"])].append(str(member_row["group_id"]))

        return [
            Alter(
                alter_id=str(row["alter_id"]),
                system_id=str(row["system_id"]),
                name=str(row["name"]),
                display_name=str(row["display_name"]),
                avatar_url=row["avatar_url"],
                color=row["color"],
                pronouns=tuple(json.loads(row["pronouns"] or "[]")),
                tags=tuple(tags[str(row["alter_id"])]),
                group_ids=tuple(memberships[str(row["alter_id"])]),
                deleted=bool(row["deleted"]),
                deleted_at=_from_iso(row["deleted_at"]),
                closed_name=str(row["closed_name"] or ""),
            )
            for row in rows
        ]

    async def get_alter(self, alter_id: str) -> Optional[Alter]:
        async with _sqlite_connection(self.db_path) as db:
            alters = await self._load_alters(db, "alter_id = ?", (alter_id,))
        return alters[0] if alters else None

    async def list_alters(self, system_id: str, *, include_deleted: bool = False) -> List[Alter]:
        where = "system_id = ?" if include_deleted else "system_id = ? AND deleted = 0"
        async with _sqlite_connection(self.db_path) as db:
            return await self._load_alters(db, where, (system_id,))

    async def save_group(self, group: Group) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO groups (group_id, system_id, name, tag_prefix, tag_suffix)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(group_id) DO UPDATE SET
                    name = excluded.name,
                    tag_prefix = excluded.tag_prefix,
                    tag_suffix = excluded.tag_suffix
                """,
                (
                    group.group_id,
                    group.system_id,
                    group.name,
                    group.tag.prefix if group.tag else None,
                    group.tag.suffix if group.tag else None,
                ),
            )
            await db.execute("DELETE FROM group_members WHERE group_id = ?", (group.group_id,))
            await db.executemany(
                "INSERT INTO group_members (group_id, alter_id, position) VALUES (?, ?, ?)",
                [(group.group_id, alter_id, index) for index, alter_id in enumerate(group.member_ids)],
            )
            await db.commit()

    async def list_groups(self, system_id: str) -> List[Group]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM groups WHERE system_id = ? ORDER BY name, group_id",
                (system_id,),
            ) as cursor:
                rows = await cursor.fetchall()
            members: dict[str, list[str]] = {str(row["group_id"]): [] for row in rows}
            async with db.execute(
                """
                SELECT gm.group_id, gm.alter_id
                FROM group_members gm
                JOIN groups g ON g.group_id = gm.group_id
                WHERE g.system_id = ?
                ORDER BY gm.group_id, gm.position
                """,
                (system_id,),
            ) as cursor:
                for member_row in await cursor.fetchall():
                    members[str(member_row["group_id"])].append(str(member_row["alter_id"]))

        groups: List[Group] = []
        for row in rows:
            prefix = row["tag_prefix"] or ""
            suffix = row["tag_suffix"] or ""
            groups.append(
                Group(
                    group_id=str(row["group_id"]),
                    system_id=str(row["system_id"]),
                    name=str(row["name"]),
                    member_ids=tuple(members[str(row["group_id"])]),
                    tag=ProxyTag(prefix, suffix) if (prefix or suffix) else None,
                )
            )
        return groups
