"""
pagegrade/services/cache.py
Time-to-live key/value cache used by every fetcher.
"""
import time
from typing import Dict, Generic, Optional, Tuple, TypeVar

T = TypeVar("T")


class TtlCache(Generic[T]):
    """
    Expiry is checked lazily on get(): an expired entry is evicted and reported
    as absent. No background sweep and no size bound. Not thread-safe; two
    concurrent runs writing the same key simply leave the later value.
    """

    def __init__(self, default_ttl: float):
        self.default_ttl = default_ttl
        self._store: Dict[str, Tuple[T, float]] = {}

    def get(self, key: str) -> Optional[T]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= time.monotonic():
            del self._store[key]
            return None
        return value

    def set(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._store[key] = (value, time.monotonic() + ttl)

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)
