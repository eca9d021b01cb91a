from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


AUTOPROXY_MODES = frozenset({"off", "front", "latch"})
TEXT_PLACEHOLDER = "text"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: str, name: str) -> str:
    cleaned = str(value or "").strip()
    if not cleaned:
        raise ValueError(f"{name} is required")
    return cleaned


def _require_aware(value: datetime | None, name: str) -> None:
    if value is None:
        return
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be timezone aware")


def _unique_ids(values: tuple[str, ...] | list[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    result: list[str] = []
    for raw in values:
        value = str(raw).strip()
        if not value or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return tuple(result)


@dataclass(frozen=True, slots=True)
class ProxyTag:
    prefix: str = ""
    suffix: str = ""

    def __post_init__(self) -> None:
        if not self.prefix and not self.suffix:
            raise ValueError("proxy tag needs a prefix or a suffix")

    @property
    def weight(self) -> int:
        return len(self.prefix) + len(self.suffix)

    def wrap(self, body: str) -> str:
        return f"{self.prefix}{body}{self.suffix}"

    @classmethod
    def parse(cls, pattern: str) -> "ProxyTag":
        """Parse ``a:text`` style notation; a pattern without ``text`` is a prefix."""
        index = pattern.lower().find(TEXT_PLACEHOLDER)
        if index == -1:
            return cls(prefix=pattern)
        return cls(prefix=pattern[:index], suffix=pattern[index + len(TEXT_PLACEHOLDER) :])

    def render(self) -> str:
        return f"{self.prefix}{TEXT_PLACEHOLDER}{self.suffix}"


@dataclass(slots=True)
class System:
    system_id: str
    name: str = ""
    tag: str = ""
    created_at: datetime = field(default_factory=utcnow)
    autoproxy_mode: str = "off"
    proxy_layout: str = ""
    allow_empty_body: bool = False
    avatar_url: str | None = None
    color: str | None = None
    autoproxy_break: bool = False
    last_proxied_alter_id: str | None = None
    # Seconds of silence after which the system goes on break; 0 disables it.
    autoproxy_cooldown_seconds: int = 0
    last_proxied_at: datetime | None = None

    def __post_init__(self) -> None:
        self.system_id = _require_text(self.system_id, "system_id")
        self.autoproxy_mode = str(self.autoproxy_mode or "off").strip().lower()
        if self.autoproxy_mode not in AUTOPROXY_MODES:
            raise ValueError(f"autoproxy_mode must be one of {sorted(AUTOPROXY_MODES)}")
        self.autoproxy_cooldown_seconds = int(self.autoproxy_cooldown_seconds or 0)
        if self.autoproxy_cooldown_seconds < 0:
            raise ValueError("autoproxy_cooldown_seconds must be >= 0")
        _require_aware(self.created_at, "created_at")
        _require_aware(self.last_proxied_at, "last_proxied_at")


@dataclass(slots=True)
class Alter:
    alter_id: str
    system_id: str
    name: str
    display_name: str = ""
    avatar_url: str | None = None
    color: str | None = None
    pronouns: tuple[str, ...] = ()
    tags: tuple[ProxyTag, ...] = ()
    group_ids: tuple[str, ...] = ()
    deleted: bool = False
    deleted_at: datetime | None = None
    # Plain-character name shown where a guild disallows closed characters.
    closed_name: str = ""

    def __post_init__(self) -> None:
        self.alter_id = _require_text(self.alter_id, "alter_id")
        self.system_id = _require_text(self.system_id, "system_id")
        self.name = _require_text(self.name, "name")
        self.closed_name = str(self.closed_name or "").strip()
        self.pronouns = tuple(str(item).strip() for item in self.pronouns if str(item).strip())
        # Ordered set: first occurrence wins.
        self.tags = tuple(dict.fromkeys(self.tags))
        self.group_ids = _unique_ids(self.group_ids)
        _require_aware(self.deleted_at, "deleted_at")
        if self.deleted and self.deleted_at is None:
            self.deleted_at = utcnow()

    @property
    def label(self) -> str:
        return self.display_name.strip() or self.name

    @property
    def active(self) -> bool:
        return not self.deleted


@dataclass(slots=True)
class Group:
    group_id: str
    system_id: str
    name: str
    member_ids: tuple[str, ...] = ()
    tag: ProxyTag | None = None

    def __post_init__(self) -> None:
        self.group_id = _require_text(self.group_id, "group_id")
        self.system_id = _require_text(self.system_id, "system_id")
        self.name = _require_text(self.name, "name")
        self.member_ids = _unique_ids(self.member_ids)


@dataclass(slots=True)
class SwitchRecord:
    switch_id: str
    system_id: str
    alter_ids: tuple[str, ...]
    started_at: datetime
    ended_at: datetime | None = None
    triggered_by: str = ""

    def __post_init__(self) -> None:
        self.switch_id = _require_text(self.switch_id, "switch_id")
        self.system_id = _require_text(self.system_id, "system_id")
        self.alter_ids = _unique_ids(self.alter_ids)
        _require_aware(self.started_at, "started_at")
        _require_aware(self.ended_at, "ended_at")
        if self.ended_at is not None and self.ended_at < self.started_at:
            raise ValueError("ended_at precedes started_at")

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


@dataclass(slots=True)
class ProxyMessageRecord:
    dispatched_message_id: str
    original_message_id: str
    channel_id: str
    guild_id: str
    system_id: str
    alter_id: str
    author_id: str
    created_at: datetime = field(default_factory=utcnow)
    deleted: bool = False
    deleted_at: datetime | None = None
    edited_at: datetime | None = None

    def __post_init__(self) -> None:
        for name in (
            "dispatched_message_id",
            "original_message_id",
            "channel_id",
            "guild_id",
            "system_id",
            "alter_id",
            "author_id",
        ):
            setattr(self, name, _require_text(getattr(self, name), name))
        _require_aware(self.created_at, "created_at")
        _require_aware(self.deleted_at, "deleted_at")
        _require_aware(self.edited_at, "edited_at")


@dataclass(slots=True)
class AccountLink:
    account_id: str
    system_id: str

    def __post_init__(self) -> None:
        self.account_id = _require_text(self.account_id, "account_id")
        self.system_id = _require_text(self.system_id, "system_id")


@dataclass(slots=True)
class GuildConfig:
    guild_id: str
    proxying_enabled: bool = True
    case_sensitive_tags: bool = False
    trim_whitespace_before_match: bool = True
    autoproxy_enabled: bool = True
    log_channel_id: str | None = None
    blocked_channel_ids: frozenset[str] = frozenset()
    allow_closed_names: bool = True

    def __post_init__(self) -> None:
        self.guild_id = _require_text(self.guild_id, "guild_id")
        self.blocked_channel_ids = frozenset(str(item) for item in self.blocked_channel_ids)


@dataclass(frozen=True, slots=True)
class Attachment:
    url: str
    filename: str
    size: int = 0


@dataclass(frozen=True, slots=True)
class ReplyReference:
    """The message an incoming message replies to.

    Only ``message_id`` is guaranteed; the rest is filled in when the referenced
    message was available (resolved by the platform or fetched later).
    """

    message_id: str
    channel_id: str
    guild_id: str | None = None
    author_name: str = ""
    author_avatar_url: str | None = None
    content: str = ""
    has_attachments: bool = False
    has_embeds: bool = False
    has_stickers: bool = False
    image_url: str | None = None

    @property
    def resolved(self) -> bool:
        return bool(self.author_name)


@dataclass(slots=True)
class IncomingMessage:
    message_id: str
    channel_id: str
    guild_id: str | None
    author_id: str
    content: str
    attachments: tuple[Attachment, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    author_is_bot: bool = False
    webhook_id: str | None = None
    reply_to: ReplyReference | None = None

    def __post_init__(self) -> None:
        self.message_id = _require_text(self.message_id, "message_id")
        self.channel_id = _require_text(self.channel_id, "channel_id")
        self.author_id = _require_text(self.author_id, "author_id")
        self.content = self.content or ""
        self.attachments = tuple(self.attachments)
