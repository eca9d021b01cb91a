from .guilds import StoreGuildsMixin
from .messages import StoreMessagesMixin
from .schema import StoreSchemaMixin
from .switches import StoreSwitchesMixin
from .systems import StoreSystemsMixin

__all__ = [
    "StoreSchemaMixin",
    "StoreSystemsMixin",
    "StoreSwitchesMixin",
    "StoreMessagesMixin",
    "StoreGuildsMixin",
]
