from __future__ import annotations

import re

from ..models import Alter, System

MAX_PERSONA_NAME_CHARS = 80

_PLACEHOLDER_RE = re.compile(r"\{[\w-]+\}")


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def format_persona_name(
    alter: Alter,
    system: System,
    *,
    allow_closed_names: bool = True,
    limit: int = MAX_PERSONA_NAME_CHARS,
) -> str:
    if not allow_closed_names and alter.closed_name:
        name = alter.closed_name
    else:
        name = alter.label
    layout = system.proxy_layout.strip()
    if layout:
        rendered = layout
        for placeholder, value in (
            ("{name}", name),
            ("{sys-name}", system.name),
            ("{tag}", system.tag),
            ("{pronouns}", "/".join(alter.pronouns)),
        ):
            rendered = re.sub(re.escape(placeholder), lambda _m, v=value: v, rendered, flags=re.IGNORECASE)
        rendered = _collapse(_PLACEHOLDER_RE.sub("", rendered))
        display = rendered or name
    elif system.tag.strip():
        display = f"{name} {system.tag.strip()}"
    else:
        display = name

    display = _collapse(display)
    if len(display) > limit:
        display = display[:limit].rstrip()
    return display


def resolve_avatar(alter: Alter, system: System) -> str | None:
    return alter.avatar_url or system.avatar_url or None


def resolve_color(alter: Alter, system: System) -> str | None:
    return alter.color or system.color or None
