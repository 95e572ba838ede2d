"""Persistent state: the cycle store and the mindshare archive."""

from marketcycle.store.archive import (
    BaseMindshareArchive,
    InMemoryMindshareArchive,
    RedisMindshareArchive,
)
from marketcycle.store.cycle_store import (
    BaseCycleStore,
    InMemoryCycleStore,
    RedisCycleStore,
    StoreKeys,
    StoreTTLs,
    create_cycle_store,
)

__all__ = [
    "BaseCycleStore",
    "InMemoryCycleStore",
    "RedisCycleStore",
    "StoreKeys",
    "StoreTTLs",
    "create_cycle_store",
    "BaseMindshareArchive",
    "InMemoryMindshareArchive",
    "RedisMindshareArchive",
]
