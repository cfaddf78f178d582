from __future__ import annotations

import asyncio
import threading
from typing import Dict, List

from luaspark.identity import normalize_identity
from luaspark.storage.credentials import CredentialStore
from luaspark.storage.models import ASSISTANT_ROLE, MEMORY_LIMIT, USER_ROLE, MemoryEntry


class ConversationMemory:
    """Sliding window of the most recent turns per identity.

    Entries live on the identity's record in the credential store; this class
    owns the window policy, context assembly and the per-identity locks that
    keep concurrent generate calls from interleaving their turns.
    """

    def __init__(self, store: CredentialStore, *, limit: int = MEMORY_LIMIT) -> None:
        self.store = store
        self.limit = limit
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_guard = threading.Lock()

    def append_user(self, identity: str, text: str) -> List[MemoryEntry]:
        return self.store.append_memory(identity, USER_ROLE, text, limit=self.limit)

    def append_assistant(self, identity: str, text: str) -> List[MemoryEntry]:
        return self.store.append_memory(identity, ASSISTANT_ROLE, text, limit=self.limit)

    def restore(self, identity: str, snapshot: List[MemoryEntry]) -> None:
        """Put back a window captured by ``history`` before a failed exchange."""
        self.store.replace_memory(identity, snapshot)

    def history(self, identity: str) -> List[MemoryEntry]:
        return self.store.memory(identity)

    def build_context(self, identity: str, system_prompt: str) -> List[dict]:
        """One synthesized system message followed by the stored turns, oldest first."""
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(entry.as_message() for entry in self.store.memory(identity))
        return messages

    def lock_for(self, identity: str) -> asyncio.Lock:
        normalized = normalize_identity(identity)
        with self._locks_guard:
            lock = self._locks.get(normalized)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[normalized] = lock
            return lock
