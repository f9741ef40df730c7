import asyncio
from typing import Dict, Hashable


class KeyedLock:
    """One asyncio.Lock per key: same-key callers queue, different keys run freely."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def __call__(self, key: Hashable) -> asyncio.Lock:
        return self._locks.setdefault(str(key), asyncio.Lock())
