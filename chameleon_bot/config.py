from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .models import GuildConfig


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _clean_token(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("bot "):
        cleaned = cleaned[4:].strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


@dataclass(slots=True)
class Settings:
    discord_token: str
    discord_message_content_intent: bool
    webhook_name: str

    store_backend: str
    sqlite_path: Path
    postgres_dsn: str
    registry_cache_ttl_seconds: float

    default_proxying_enabled: bool
    default_case_sensitive_tags: bool
    default_trim_whitespace: bool
    default_autoproxy_enabled: bool

    max_proxy_content_chars: int
    channel_call_timeout_seconds: float
    channel_call_attempts: int
    channel_backoff_base_seconds: float
    channel_backoff_max_seconds: float
    channel_rate_capacity: int
    channel_rate_per_second: float

    message_retention_hours: int
    retention_sweep_minutes: int

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            discord_token=_clean_token(_env_lookup("DISCORD_TOKEN") or ""),
            discord_message_content_intent=_env_bool("DISCORD_MESSAGE_CONTENT_INTENT", True),
            webhook_name=_env_str("PROXY_WEBHOOK_NAME", "Chameleon Proxy"),
            store_backend=_env_str("STORE_BACKEND", "sqlite").lower(),
            sqlite_path=Path(_env_str("SQLITE_PATH", "data/chameleon_bot.db")),
            postgres_dsn=_env_str("STORE_POSTGRES_DSN", "", aliases=("DATABASE_URL",)),
            registry_cache_ttl_seconds=_env_float("REGISTRY_CACHE_TTL_SECONDS", 60.0),
            default_proxying_enabled=_env_bool("DEFAULT_PROXYING_ENABLED", True),
            default_case_sensitive_tags=_env_bool("DEFAULT_CASE_SENSITIVE_TAGS", False),
            default_trim_whitespace=_env_bool("DEFAULT_TRIM_WHITESPACE", True),
            default_autoproxy_enabled=_env_bool("DEFAULT_AUTOPROXY_ENABLED", True),
            max_proxy_content_chars=_env_int("MAX_PROXY_CONTENT_CHARS", 2000),
            channel_call_timeout_seconds=_env_float("CHANNEL_CALL_TIMEOUT_SECONDS", 10.0),
            channel_call_attempts=_env_int("CHANNEL_CALL_ATTEMPTS", 3),
            channel_backoff_base_seconds=_env_float("CHANNEL_BACKOFF_BASE_SECONDS", 0.5),
            channel_backoff_max_seconds=_env_float("CHANNEL_BACKOFF_MAX_SECONDS", 4.0),
            channel_rate_capacity=_env_int("CHANNEL_RATE_CAPACITY", 5),
            channel_rate_per_second=_env_float("CHANNEL_RATE_PER_SECOND", 1.0),
            message_retention_hours=_env_int("MESSAGE_RETENTION_HOURS", 24 * 30),
            retention_sweep_minutes=_env_int("RETENTION_SWEEP_MINUTES", 60),
        )

    def guild_defaults(self, guild_id: str) -> GuildConfig:
        return GuildConfig(
            guild_id=guild_id,
            proxying_enabled=self.default_proxying_enabled,
            case_sensitive_tags=self.default_case_sensitive_tags,
            trim_whitespace_before_match=self.default_trim_whitespace,
            autoproxy_enabled=self.default_autoproxy_enabled,
        )

    def validate(self) -> None:
        if not self.discord_token:
            raise ValueError("DISCORD_TOKEN is required")
        if self.discord_token == "put_your_discord_bot_token_here":
            raise ValueError("DISCORD_TOKEN is still placeholder")
        if not self.webhook_name.strip():
            raise ValueError("PROXY_WEBHOOK_NAME cannot be empty")

        if self.store_backend not in {"sqlite", "postgres"}:
            raise ValueError("STORE_BACKEND must be 'sqlite' or 'postgres'")
        if self.store_backend == "postgres" and not self.postgres_dsn:
            raise ValueError("STORE_POSTGRES_DSN is required when STORE_BACKEND=postgres")
        if self.registry_cache_ttl_seconds <= 0:
            raise ValueError("REGISTRY_CACHE_TTL_SECONDS must be > 0")

        if self.max_proxy_content_chars < 1:
            raise ValueError("MAX_PROXY_CONTENT_CHARS must be >= 1")
        if self.channel_call_timeout_seconds <= 0:
            raise ValueError("CHANNEL_CALL_TIMEOUT_SECONDS must be > 0")
        if self.channel_call_attempts < 1:
            raise ValueError("CHANNEL_CALL_ATTEMPTS must be >= 1")
        if self.channel_backoff_base_seconds < 0:
            raise ValueError("CHANNEL_BACKOFF_BASE_SECONDS must be >= 0")
        if self.channel_backoff_max_seconds < self.channel_backoff_base_seconds:
            raise ValueError("CHANNEL_BACKOFF_MAX_SECONDS must be >= CHANNEL_BACKOFF_BASE_SECONDS")
        if self.channel_rate_capacity < 1:
            raise ValueError("CHANNEL_RATE_CAPACITY must be >= 1")
        if self.channel_rate_per_second <= 0:
            raise ValueError("CHANNEL_RATE_PER_SECOND must be > 0")

        if self.message_retention_hours < 0:
            raise ValueError("MESSAGE_RETENTION_HOURS must be >= 0 (0 disables the sweep)")
        if self.retention_sweep_minutes < 1:
            raise ValueError("RETENTION_SWEEP_MINUTES must be >= 1")
