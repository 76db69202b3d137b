# /telepharma/services/contact_locks.py

import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class ContactLocks:
    """
    One asyncio.Lock per contact, created on demand and dropped once no task
    holds or waits for it. Webhook processing and the stale-session sweep both
    go through ``hold`` so they never interleave for the same contact.
    """

    def __init__(self):
        self._entries: Dict[str, _Entry] = {}

    @asynccontextmanager
    async def hold(self, phone_number: str):
        entry = self._entries.get(phone_number)
        if entry is None:
            entry = self._entries[phone_number] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(phone_number, None)

    def is_locked(self, phone_number: str) -> bool:
        entry = self._entries.get(phone_number)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)


# Globally accessible instance
contact_locks = ContactLocks()
