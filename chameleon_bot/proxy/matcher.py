from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable

from ..models import Alter, Group, ProxyTag


class MatchStatus(str, enum.Enum):
    MATCHED = "matched"
    NO_MATCH = "no_match"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True, slots=True)
class CandidateTag:
    alter_id: str
    prefix: str
    suffix: str

    @property
    def weight(self) -> int:
        return len(self.prefix) + len(self.suffix)

    @property
    def tag(self) -> ProxyTag:
        return ProxyTag(self.prefix, self.suffix)


@dataclass(frozen=True, slots=True)
class MatchOptions:
    case_sensitive: bool = False
    trim_whitespace: bool = True
    allow_empty_body: bool = False


@dataclass(frozen=True, slots=True)
class TagMatch:
    status: MatchStatus
    alter_id: str | None = None
    content: str = ""
    tag: CandidateTag | None = None
    contenders: tuple[str, ...] = ()

    @property
    def matched(self) -> bool:
        return self.status is MatchStatus.MATCHED


NO_MATCH = TagMatch(MatchStatus.NO_MATCH)


def collect_candidates(alters: Iterable[Alter], groups: Iterable[Group] = ()) -> tuple[CandidateTag, ...]:
    active = {alter.alter_id: alter for alter in alters if alter.active}
    seen: set[CandidateTag] = set()
    result: list[CandidateTag] = []

    def _add(candidate: CandidateTag) -> None:
        if candidate in seen:
            return
        seen.add(candidate)
        result.append(candidate)

    for alter in active.values():
        for tag in alter.tags:
            _add(CandidateTag(alter.alter_id, tag.prefix, tag.suffix))

    for group in groups:
        if group.tag is None:
            continue
        for member_id in group.member_ids:
            if member_id in active:
                _add(CandidateTag(member_id, group.tag.prefix, group.tag.suffix))
    return tuple(result)


def _same(left: str, right: str, case_sensitive: bool) -> bool:
    if case_sensitive:
        return left == right
    return left.casefold() == right.casefold()


def _strip_tag(text: str, candidate: CandidateTag, options: MatchOptions) -> str | None:
    prefix, suffix = candidate.prefix, candidate.suffix
    if not prefix and not suffix:
        return None
    if len(text) < len(prefix) + len(suffix):
        return None
    # Compare slices of the original text so the stripped body keeps the typed characters.
    if prefix and not _same(text[: len(prefix)], prefix, options.case_sensitive):
        return None
    if suffix and not _same(text[len(text) - len(suffix) :], suffix, options.case_sensitive):
        return None

    body = text[len(prefix) : len(text) - len(suffix)]
    if options.trim_whitespace:
        body = body.strip()
    if not body.strip() and not options.allow_empty_body:
        return None
    return body


def match_tags(
    text: str,
    candidates: Iterable[CandidateTag],
    options: MatchOptions | None = None,
) -> TagMatch:
    opts = options or MatchOptions()
    subject = text.strip() if opts.trim_whitespace else text
    if not subject and not opts.allow_empty_body:
        return NO_MATCH

    best_weight = -1
    best: list[tuple[CandidateTag, str]] = []
    for candidate in candidates:
        body = _strip_tag(subject, candidate, opts)
        if body is None:
            continue
        weight = candidate.weight
        if weight > best_weight:
            best_weight = weight
            best = [(candidate, body)]
        elif weight == best_weight:
            best.append((candidate, body))

    if not best:
        return NO_MATCH

    contenders = tuple(dict.fromkeys(candidate.alter_id for candidate, _ in best))
    if len(contenders) > 1:
        return TagMatch(MatchStatus.AMBIGUOUS, contenders=contenders)

    candidate, body = best[0]
    return TagMatch(
        MatchStatus.MATCHED,
        alter_id=candidate.alter_id,
        content=body,
        tag=candidate,
        contenders=contenders,
    )
