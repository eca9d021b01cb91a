from __future__ import annotations

import asyncio
import sqlite3
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chameleon_bot.factory import build_store  # noqa: E402
from chameleon_bot.models import (  # noqa: E402
    Alter,
    Group,
    GuildConfig,
    ProxyMessageRecord,
    ProxyTag,
    SwitchRecord,
    System,
)
from chameleon_bot.proxy.errors import StorageFailure  # noqa: E402
from chameleon_bot.proxy.ownership import MessageOwnershipStore  # noqa: E402
from chameleon_bot.store import ProxyStore  # noqa: E402


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _record(dispatched: str, original: str, **overrides: object) -> ProxyMessageRecord:
    values: dict[str, object] = {
        "dispatched_message_id": dispatched,
        "original_message_id": original,
        "channel_id": "c1",
        "guild_id": "g1",
        "system_id": "s1",
        "alter_id": "rose",
        "author_id": "acc-1",
        "created_at": T0,
    }
    values.update(overrides)
    return ProxyMessageRecord(**values)  # type: ignore[arg-type]


async def _store(tmp_path: Path) -> ProxyStore:
    store = ProxyStore(tmp_path / "store.db")
    await store.init()
    await store.save_system(System(system_id="s1", name="Garden", tag="| G", autoproxy_mode="latch", created_at=T0))
    return store


def test_system_alter_group_roundtrip(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)
        await store.link_account("acc-1", "s1")
        await store.save_alter(
            Alter(
                alter_id="rose",
                system_id="s1",
                name="Rose",
                display_name="Rosie",
                pronouns=("she", "her"),
                tags=(ProxyTag("R:", ""), ProxyTag("[", "]")),
            )
        )
        await store.save_alter(Alter(alter_id="lily", system_id="s1", name="Lily", deleted=True))
        await store.save_group(
            Group(group_id="g", system_id="s1", name="Flowers", member_ids=("rose",), tag=ProxyTag("", "~"))
        )

        system = await store.get_system("s1")
        assert system is not None
        assert system.autoproxy_mode == "latch"
        assert system.created_at == T0
        assert await store.find_system_id_by_account("acc-1") == "s1"
        assert await store.list_system_accounts("s1") == ["acc-1"]

        active = await store.list_alters("s1")
        assert [alter.alter_id for alter in active] == ["rose"]
        assert active[0].tags == (ProxyTag("R:", ""), ProxyTag("[", "]"))
        assert active[0].pronouns == ("she", "her")
        assert active[0].group_ids == ("g",)
        assert len(await store.list_alters("s1", include_deleted=True)) == 2

        groups = await store.list_groups("s1")
        assert groups[0].member_ids == ("rose",)
        assert groups[0].tag == ProxyTag("", "~")

        await store.unlink_account("acc-1")
        assert await store.find_system_id_by_account("acc-1") is None

    asyncio.run(scenario())


def test_autoproxy_state_updates_only_given_fields(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)
        await store.update_autoproxy_state("s1", last_proxied_alter_id="rose")
        await store.update_autoproxy_state("s1", autoproxy_break=True)

        system = await store.get_system("s1")
        assert system is not None
        assert system.last_proxied_alter_id == "rose"
        assert system.autoproxy_break is True

    asyncio.run(scenario())


def test_cooldown_and_closed_name_roundtrip(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)
        await store.save_system(System(system_id="s2", name="Meadow", autoproxy_cooldown_seconds=90, created_at=T0))
        await store.save_alter(Alter(alter_id="iris", system_id="s2", name="Ìŕîś", closed_name=" Iris "))
        await store.update_autoproxy_state("s2", last_proxied_at=T0 + timedelta(minutes=5))

        system = await store.get_system("s2")
        assert system is not None
        assert system.autoproxy_cooldown_seconds == 90
        assert system.last_proxied_at == T0 + timedelta(minutes=5)
        alters = await store.list_alters("s2")
        assert alters[0].closed_name == "Iris"

    asyncio.run(scenario())


def test_guild_config_roundtrip(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)
        assert await store.get_guild_config("g1") is None
        await store.save_guild_config(
            GuildConfig(guild_id="g1", case_sensitive_tags=True, blocked_channel_ids=frozenset({"c9"}), log_channel_id="log")
        )
        config = await store.get_guild_config("g1")
        assert config is not None
        assert config.case_sensitive_tags is True
        assert config.blocked_channel_ids == frozenset({"c9"})
        assert config.log_channel_id == "log"

    asyncio.run(scenario())


def test_store_refuses_second_open_switch(tmp_path: Path) -> None:
    async def scenario() -> None:
        store = await _store(tmp_path)
        await store.apply_switch(
            SwitchRecord(switch_id="w1", system_id="s1", alter_ids=("a",), started_at=T0),
            close_switch_id=None,
            closed_at=None,
        )
        with pytest.raises(sqlite3.IntegrityError):
            await store.apply_switch(
                SwitchRecord(switch_id="w2", system_id="s1", alter_ids=("b",), started_at=T0),
                close_switch_id=None,
                closed_at=None,
            )
        with pytest.raises(RuntimeError):
            await store.apply_switch(
                SwitchRecord(switch_id="w3", system_id="s1", alter_ids=("b",), started_at=T0),
                close_switch_id="missing",
                closed_at=T0,
            )
        assert await store.count_open_switches("s1") == 1

    asyncio.run(scenario())


def test_ownership_records_lookup_both_ways(tmp_path: Path) -> None:
    async def scenario() -> None:
        ownership = MessageOwnershipStore(await _store(tmp_path))
        await ownership.put(_record("d1", "o1"))

        by_dispatched = await ownership.get_by_dispatched_id("d1")
        by_original = await ownership.get_by_original_id("o1")
        assert by_dispatched == by_original
        assert by_dispatched is not None and by_dispatched.alter_id == "rose"
        assert await ownership.get_by_dispatched_id("missing") is None
        latest = await ownership.latest_for_author("acc-1", "c1")
        assert latest is not None and latest.dispatched_message_id == "d1"

    asyncio.run(scenario())


def test_duplicate_ids_surface_as_storage_failure(tmp_path: Path) -> None:
    async def scenario() -> None:
        ownership = MessageOwnershipStore(await _store(tmp_path))
        await ownership.put(_record("d1", "o1"))
        with pytest.raises(StorageFailure):
            await ownership.put(_record("d1", "o2"))
        with pytest.raises(StorageFailure):
            await ownership.put(_record("d2", "o1"))

    asyncio.run(scenario())


def test_mark_deleted_is_idempotent_and_purge_removes_old_tombstones(tmp_path: Path) -> None:
    async def scenario() -> None:
        ownership = MessageOwnershipStore(await _store(tmp_path))
        await ownership.put(_record("d1", "o1"))
        await ownership.put(_record("d2", "o2"))
        await ownership.put(_record("d3", "o3"))

        assert await ownership.mark_deleted("d1", T0) is True
        assert await ownership.mark_deleted("d1", T0 + timedelta(days=1)) is False
        await ownership.mark_deleted("d2", T0 + timedelta(days=10))

        purged = await ownership.purge_older_than(T0 + timedelta(days=5))

        assert purged == 1
        assert await ownership.get_by_dispatched_id("d1") is None
        kept = await ownership.get_by_dispatched_id("d2")
        assert kept is not None and kept.deleted and kept.deleted_at == T0 + timedelta(days=10)
        live = await ownership.get_by_dispatched_id("d3")
        assert live is not None and not live.deleted

    asyncio.run(scenario())


def test_replace_dispatched_rekeys_record(tmp_path: Path) -> None:
    async def scenario() -> None:
        ownership = MessageOwnershipStore(await _store(tmp_path))
        await ownership.put(_record("d1", "o1"))

        assert await ownership.replace_dispatched("d1", "d9", "lily") is True
        await ownership.touch_edited("d9", T0)

        assert await ownership.get_by_dispatched_id("d1") is None
        moved = await ownership.get_by_original_id("o1")
        assert moved is not None
        assert moved.dispatched_message_id == "d9"
        assert moved.alter_id == "lily"
        assert moved.edited_at == T0

    asyncio.run(scenario())


def test_replace_dispatched_revives_a_tombstoned_record(tmp_path: Path) -> None:
    async def scenario() -> None:
        ownership = MessageOwnershipStore(await _store(tmp_path))
        await ownership.put(_record("d1", "o1"))
        assert await ownership.mark_deleted("d1", T0) is True

        assert await ownership.replace_dispatched("d1", "d2", "lily") is True

        moved = await ownership.get_by_dispatched_id("d2")
        assert moved is not None
        assert moved.deleted is False
        assert moved.deleted_at is None
        assert await ownership.purge_older_than(T0 + timedelta(days=1)) == 0

    asyncio.run(scenario())


def test_newer_schema_version_is_refused_unless_reset_allowed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "future.db"

    async def scenario() -> None:
        store = ProxyStore(db_path)
        await store.init()
        with sqlite3.connect(db_path) as conn:
            conn.execute(f"PRAGMA user_version = {ProxyStore.SCHEMA_VERSION + 1}")

        with pytest.raises(RuntimeError):
            await ProxyStore(db_path).init()

        monkeypatch.setenv("STORE_SQLITE_RESET_ON_SCHEMA_MISMATCH", "1")
        await ProxyStore(db_path).init()
        with sqlite3.connect(db_path) as conn:
            version = conn.execute("PRAGMA user_version").fetchone()[0]
        assert version == ProxyStore.SCHEMA_VERSION

    monkeypatch.delenv("STORE_SQLITE_RESET_ON_SCHEMA_MISMATCH", raising=False)
    asyncio.run(scenario())


def test_factory_selects_backend(tmp_path: Path) -> None:
    store = build_store("sqlite", tmp_path / "f.db")
    assert isinstance(store, ProxyStore)
    assert store.backend_name == "sqlite"
    with pytest.raises(ValueError):
        build_store("mysql", tmp_path / "f.db")
    with pytest.raises(ValueError):
        build_store("postgres", tmp_path / "f.db", "")


def test_version_one_database_gains_new_columns(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.db"
    with sqlite3.connect(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE systems (
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
                created_at TEXT NOT NULL
            );
            CREATE TABLE alters (
                alter_id TEXT PRIMARY KEY,
                system_id TEXT NOT NULL,
                name TEXT NOT NULL,
                display_name TEXT NOT NULL DEFAULT '',
                avatar_url TEXT,
                color TEXT,
                pronouns TEXT NOT NULL DEFAULT '[]',
                deleted INTEGER NOT NULL DEFAULT 0,
                deleted_at TEXT
            );
            INSERT INTO systems (system_id, name, created_at) VALUES ('s1', 'Garden', '2024-05-01T12:00:00+00:00');
            INSERT INTO alters (alter_id, system_id, name) VALUES ('rose', 's1', 'Rose');
            PRAGMA user_version = 1;
            """
        )

    async def scenario() -> None:
        store = ProxyStore(db_path)
        await store.init()

        system = await store.get_system("s1")
        assert system is not None
        assert system.autoproxy_cooldown_seconds == 0
        assert system.last_proxied_at is None
        alters = await store.list_alters("s1")
        assert [alter.alter_id for alter in alters] == ["rose"]
        assert alters[0].closed_name == ""

        await store.save_alter(Alter(alter_id="rose", system_id="s1", name="Rose", closed_name="Rose"))
        alters = await store.list_alters("s1")
        assert alters[0].closed_name == "Rose"

    asyncio.run(scenario())
    with sqlite3.connect(db_path) as conn:
        assert conn.execute("PRAGMA user_version").fetchone()[0] == ProxyStore.SCHEMA_VERSION
