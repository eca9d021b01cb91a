from __future__ import annotations

import asyncio
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chameleon_bot.models import Alter, GuildConfig, ProxyTag, System  # noqa: E402
from chameleon_bot.proxy.registry import SystemRegistry  # noqa: E402


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class _FakeStore:
    def __init__(self) -> None:
        self.links = {"acc-1": "s1", "acc-2": "s1"}
        self.systems = {"s1": System(system_id="s1", name="Garden", tag="| G")}
        self.alters = {"s1": [Alter(alter_id="rose", system_id="s1", name="Rose", tags=(ProxyTag("R:", ""),))]}
        self.guilds: dict[str, GuildConfig] = {}
        self.calls: dict[str, int] = {}
        self.gate: asyncio.Event | None = None

    def _count(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    async def find_system_id_by_account(self, account_id: str) -> str | None:
        self._count("find_system_id_by_account")
        if self.gate is not None:
            await self.gate.wait()
        return self.links.get(account_id)

    async def get_system(self, system_id: str) -> System | None:
        self._count("get_system")
        return self.systems.get(system_id)

    async def list_alters(self, system_id: str) -> list[Alter]:
        return list(self.alters.get(system_id, []))

    async def list_groups(self, system_id: str) -> list:
        return []

    async def list_system_accounts(self, system_id: str) -> list[str]:
        return [account for account, owner in self.links.items() if owner == system_id]

    async def get_guild_config(self, guild_id: str) -> GuildConfig | None:
        self._count("get_guild_config")
        return self.guilds.get(guild_id)


def test_resolves_linked_account_to_system_view() -> None:
    store = _FakeStore()
    registry = SystemRegistry(store)

    view = asyncio.run(registry.get_system_config("acc-1"))

    assert view is not None
    assert view.system_id == "s1"
    assert view.account_id == "acc-1"
    assert [candidate.alter_id for candidate in view.candidates] == ["rose"]
    assert set(view.account_ids) == {"acc-1", "acc-2"}


def test_unlinked_account_is_not_configured() -> None:
    registry = SystemRegistry(_FakeStore())

    assert asyncio.run(registry.get_system_config("stranger")) is None


def test_repeated_lookups_are_served_from_cache() -> None:
    store = _FakeStore()
    registry = SystemRegistry(store)

    async def scenario() -> None:
        await registry.get_system_config("acc-1")
        await registry.get_system_config("acc-1")
        await registry.get_system_config("acc-2")

    asyncio.run(scenario())

    assert store.calls["get_system"] == 1
    assert store.calls["find_system_id_by_account"] == 2


def test_invalidate_system_reloads_changes() -> None:
    store = _FakeStore()
    registry = SystemRegistry(store)

    async def scenario() -> None:
        first = await registry.get_system_config("acc-1")
        assert first is not None and first.system.name == "Garden"
        store.systems["s1"] = System(system_id="s1", name="Meadow")
        stale = await registry.get_system_config("acc-1")
        assert stale is not None and stale.system.name == "Garden"
        registry.invalidate_system("s1")
        fresh = await registry.get_system_config("acc-1")
        assert fresh is not None and fresh.system.name == "Meadow"

    asyncio.run(scenario())


def test_ttl_expiry_bounds_staleness() -> None:
    store = _FakeStore()
    clock = _FakeClock()
    registry = SystemRegistry(store, ttl_seconds=30, clock=clock)

    async def scenario() -> None:
        await registry.get_system_config("acc-1")
        clock.now += 31
        await registry.get_system_config("acc-1")

    asyncio.run(scenario())

    assert store.calls["get_system"] == 2


def test_unlinked_account_is_dropped_after_invalidation() -> None:
    store = _FakeStore()
    registry = SystemRegistry(store)

    async def scenario() -> None:
        assert await registry.get_system_config("acc-2") is not None
        del store.links["acc-2"]
        registry.invalidate_account("acc-2")
        assert await registry.get_system_config("acc-2") is None
        assert await registry.is_member("acc-1", "s1") is True
        assert await registry.is_member("acc-2", "s1") is False

    asyncio.run(scenario())


def test_load_racing_with_invalidation_does_not_repopulate_cache() -> None:
    store = _FakeStore()
    registry = SystemRegistry(store)

    async def scenario() -> None:
        store.gate = asyncio.Event()
        pending = asyncio.create_task(registry.system_id_for_account("acc-1"))
        await asyncio.sleep(0)
        store.links["acc-1"] = "s2"
        registry.clear()
        store.gate.set()
        assert await pending == "s1"
        store.gate = None
        assert await registry.system_id_for_account("acc-1") == "s2"

    asyncio.run(scenario())


def test_guild_config_falls_back_to_defaults() -> None:
    store = _FakeStore()
    store.guilds["g2"] = GuildConfig(guild_id="g2", proxying_enabled=False)
    registry = SystemRegistry(
        store,
        guild_defaults=lambda guild_id: GuildConfig(guild_id=guild_id, autoproxy_enabled=False),
    )

    async def scenario() -> None:
        default = await registry.get_guild_config("g1")
        assert default.autoproxy_enabled is False
        assert default.proxying_enabled is True
        stored = await registry.get_guild_config("g2")
        assert stored.proxying_enabled is False
        await registry.get_guild_config("g2")

    asyncio.run(scenario())

    assert store.calls["get_guild_config"] == 2
