from __future__ import annotations

from .storage.guilds import StoreGuildsMixin
from .storage.messages import StoreMessagesMixin
from .storage.schema import StoreSchemaMixin
from .storage.switches import StoreSwitchesMixin
from .storage.systems import StoreSystemsMixin
from .storage.utils import _sqlite_connection


class ProxyStore(
    StoreSchemaMixin,
    StoreSystemsMixin,
    StoreSwitchesMixin,
    StoreMessagesMixin,
    StoreGuildsMixin,
):
    """SQLite store for systems, alters, switch history, ownership records and guild settings."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("SELECT 1")
