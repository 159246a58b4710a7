"""Per-record asyncio locks so a duplicated invocation re-checks status after the first one finishes."""

import asyncio


class KeyedLocks:
    """
    One asyncio.Lock per key, created lazily.

        async with locks("loan:" + loan_id):
            ...
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock
