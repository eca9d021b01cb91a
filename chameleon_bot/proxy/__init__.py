from .channel import ChannelCallPolicy, ChannelGateway, call_with_retry
from .dispatcher import ActionResult, ActionStatus, Proxied, ProxyDispatcher, SkipReason, Skipped
from .errors import ChannelRejected, DispatchFailed, ProxyError, StorageFailure, SwitchConflict
from .matcher import MatchOptions, MatchStatus, TagMatch, match_tags
from .ownership import MessageOwnershipStore
from .ratelimit import ChannelRateLimiter
from .registry import SystemRegistry, SystemView
from .switches import SwitchResult, SwitchStatus, SwitchTracker

__all__ = [
    "ActionResult",
    "ActionStatus",
    "ChannelCallPolicy",
    "ChannelGateway",
    "ChannelRateLimiter",
    "ChannelRejected",
    "DispatchFailed",
    "MatchOptions",
    "MatchStatus",
    "MessageOwnershipStore",
    "Proxied",
    "ProxyDispatcher",
    "ProxyError",
    "SkipReason",
    "Skipped",
    "StorageFailure",
    "SwitchConflict",
    "SwitchResult",
    "SwitchStatus",
    "SwitchTracker",
    "SystemRegistry",
    "SystemView",
    "TagMatch",
    "call_with_retry",
    "match_tags",
]
