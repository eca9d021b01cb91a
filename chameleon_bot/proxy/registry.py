from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from ..models import Alter, GuildConfig, Group, System
from .matcher import CandidateTag, MatchOptions, collect_candidates

logger = logging.getLogger("chameleon_bot")

V = TypeVar("V")


@dataclass(frozen=True, slots=True)
class SystemView:
    system: System
    alters: tuple[Alter, ...]
    groups: tuple[Group, ...]
    candidates: tuple[CandidateTag, ...]
    account_id: str = ""
    account_ids: tuple[str, ...] = ()

    @property
    def system_id(self) -> str:
        return self.system.system_id

    def alter(self, alter_id: str | None) -> Alter | None:
        if alter_id is None:
            return None
        for alter in self.alters:
            if alter.alter_id == alter_id:
                return alter
        return None

    def match_options(self, guild: GuildConfig) -> MatchOptions:
        return MatchOptions(
            case_sensitive=guild.case_sensitive_tags,
            trim_whitespace=guild.trim_whitespace_before_match,
            allow_empty_body=self.system.allow_empty_body,
        )


@dataclass(slots=True)
class _Entry(Generic[V]):
    value: V
    expires_at: float


@dataclass(slots=True)
class _TtlCache(Generic[V]):
    ttl_seconds: float
    clock: Callable[[], float]
    entries: dict[str, _Entry[V]] = field(default_factory=dict)
    generations: dict[str, int] = field(default_factory=dict)
    epoch: int = 0

    def get(self, key: str) -> tuple[bool, V | None]:
        entry = self.entries.get(key)
        if entry is None:
            return False, None
        if entry.expires_at <= self.clock():
            self.entries.pop(key, None)
            return False, None
        return True, entry.value

    def generation(self, key: str) -> tuple[int, int]:
        return self.epoch, self.generations.get(key, 0)

    def put(self, key: str, value: V, generation: tuple[int, int]) -> None:
        # A load that raced with an invalidation must not repopulate the cache.
        if self.generation(key) != generation:
            return
        self.entries[key] = _Entry(value=value, expires_at=self.clock() + self.ttl_seconds)

    def invalidate(self, key: str) -> None:
        self.entries.pop(key, None)
        self.generations[key] = self.generations.get(key, 0) + 1

    def clear(self) -> None:
        self.entries.clear()
        self.epoch += 1


class SystemRegistry:
    """Read-through cache over the store for system views and guild settings.

    Writes made by the management layer must be followed by the matching
    ``invalidate_*`` call; the TTL only bounds staleness when one is missed.
    """

    def __init__(
        self,
        store: Any,
        *,
        ttl_seconds: float = 60.0,
        guild_defaults: Callable[[str], GuildConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.ttl_seconds = float(ttl_seconds)
        self._guild_defaults = guild_defaults or (lambda guild_id: GuildConfig(guild_id=guild_id))
        self._accounts: _TtlCache[str | None] = _TtlCache(self.ttl_seconds, clock)
        self._systems: _TtlCache[SystemView | None] = _TtlCache(self.ttl_seconds, clock)
        self._guilds: _TtlCache[GuildConfig] = _TtlCache(self.ttl_seconds, clock)

    async def get_system_config(self, account_id: str) -> SystemView | None:
        system_id = await self.system_id_for_account(account_id)
        if system_id is None:
            return None
        view = await self.get_system_view(system_id)
        if view is None:
            return None
        if account_id not in view.account_ids:
            # Link changed after the system view was cached.
            self._systems.invalidate(system_id)
            view = await self.get_system_view(system_id)
            if view is None or account_id not in view.account_ids:
                return None
        return SystemView(
            system=view.system,
            alters=view.alters,
            groups=view.groups,
            candidates=view.candidates,
            account_id=account_id,
            account_ids=view.account_ids,
        )

    async def system_id_for_account(self, account_id: str) -> str | None:
        hit, cached = self._accounts.get(account_id)
        if hit:
            return cached
        generation = self._accounts.generation(account_id)
        system_id = await self.store.find_system_id_by_account(account_id)
        self._accounts.put(account_id, system_id, generation)
        return system_id

    async def get_system_view(self, system_id: str) -> SystemView | None:
        hit, cached = self._systems.get(system_id)
        if hit:
            return cached
        generation = self._systems.generation(system_id)
        view = await self._load_system_view(system_id)
        self._systems.put(system_id, view, generation)
        return view

    async def _load_system_view(self, system_id: str) -> SystemView | None:
        system = await self.store.get_system(system_id)
        if system is None:
            return None
        alters = tuple(await self.store.list_alters(system_id))
        groups = tuple(await self.store.list_groups(system_id))
        account_ids = tuple(await self.store.list_system_accounts(system_id))
        view = SystemView(
            system=system,
            alters=alters,
            groups=groups,
            candidates=collect_candidates(alters, groups),
            account_ids=account_ids,
        )
        logger.debug(
            "[registry.load] system=%s alters=%s groups=%s tags=%s",
            system_id,
            len(alters),
            len(groups),
            len(view.candidates),
        )
        return view

    async def is_member(self, account_id: str, system_id: str) -> bool:
        return await self.system_id_for_account(account_id) == system_id

    async def get_guild_config(self, guild_id: str) -> GuildConfig:
        hit, cached = self._guilds.get(guild_id)
        if hit and cached is not None:
            return cached
        generation = self._guilds.generation(guild_id)
        config = await self.store.get_guild_config(guild_id)
        if config is None:
            config = self._guild_defaults(guild_id)
        self._guilds.put(guild_id, config, generation)
        return config

    def invalidate_account(self, account_id: str) -> None:
        self._accounts.invalidate(account_id)

    def invalidate_system(self, system_id: str) -> None:
        self._systems.invalidate(system_id)

    def invalidate_guild(self, guild_id: str) -> None:
        self._guilds.invalidate(guild_id)

    def clear(self) -> None:
        self._accounts.clear()
        self._systems.clear()
        self._guilds.clear()
