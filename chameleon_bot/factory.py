from __future__ import annotations

from pathlib import Path
from typing import Any

from .store import ProxyStore


def build_store(backend: str, sqlite_path: Path, postgres_dsn: str = "") -> Any:
    backend = (backend or "sqlite").strip().lower()
    if backend == "sqlite":
        return ProxyStore(sqlite_path)
    if backend != "postgres":
        raise ValueError("STORE_BACKEND must be 'sqlite' or 'postgres'")

    if not postgres_dsn.strip():
        raise ValueError("STORE_POSTGRES_DSN is required when STORE_BACKEND=postgres")

    from .postgres_store import PostgresProxyStore

    return PostgresProxyStore(postgres_dsn)
