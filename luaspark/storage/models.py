from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

MEMORY_LIMIT = 10

USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
MEMORY_ROLES = frozenset({USER_ROLE, ASSISTANT_ROLE})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MemoryEntry:
    role: str
    content: str

    def as_message(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class IdentityRecord:
    identity: str
    secret_hash: Optional[str] = None
    secret_algo: Optional[str] = None
    entitled: bool = False
    memory: List[MemoryEntry] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def has_credential(self) -> bool:
        return bool(self.secret_hash)
