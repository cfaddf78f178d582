from __future__ import annotations

import secrets
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from luaspark.identity import normalize_identity
from luaspark.logging import get_logger

logger = get_logger(__name__)

# 32 random bytes -> 43 url-safe characters
TOKEN_BYTES = 32


@dataclass
class _SessionEntry:
    identity: str
    created_at: datetime
    expires_at: Optional[datetime] = None


class SessionRegistry:
    """Process-local mapping of opaque bearer tokens to identities.

    Tokens are never persisted, so a restart invalidates every session. When
    ``max_per_identity`` is positive, creating a session beyond the cap revokes
    the identity's oldest live tokens first.
    """

    def __init__(
        self,
        *,
        max_per_identity: int = 0,
        ttl_minutes: int = 0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.max_per_identity = max(0, max_per_identity)
        self.ttl = timedelta(minutes=ttl_minutes) if ttl_minutes > 0 else None
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._tokens: Dict[str, _SessionEntry] = {}
        # identity -> tokens in insertion order (oldest first)
        self._by_identity: Dict[str, "OrderedDict[str, None]"] = {}

    def create_session(self, identity: str) -> str:
        normalized = normalize_identity(identity)
        if not normalized:
            raise ValueError("identity is required to create a session")
        token = secrets.token_urlsafe(TOKEN_BYTES)
        now = self._clock()
        entry = _SessionEntry(
            identity=normalized,
            created_at=now,
            expires_at=now + self.ttl if self.ttl else None,
        )
        evicted: List[str] = []
        with self._lock:
            self._tokens[token] = entry
            owned = self._by_identity.setdefault(normalized, OrderedDict())
            owned[token] = None
            if self.max_per_identity:
                while len(owned) > self.max_per_identity:
                    oldest, _ = owned.popitem(last=False)
                    self._tokens.pop(oldest, None)
                    evicted.append(oldest)
        if evicted:
            logger.info(
                "session_evicted",
                identity=normalized,
                evicted=len(evicted),
                cap=self.max_per_identity,
            )
        return token

    def resolve(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        with self._lock:
            entry = self._tokens.get(token)
            if entry is None:
                return None
            if entry.expires_at is not None and entry.expires_at <= self._clock():
                self._drop_locked(token, entry.identity)
                logger.info("session_expired", identity=entry.identity)
                return None
            return entry.identity

    def revoke(self, token: Optional[str]) -> bool:
        if not token:
            return False
        with self._lock:
            entry = self._tokens.get(token)
            if entry is None:
                return False
            self._drop_locked(token, entry.identity)
            return True

    def revoke_all(self, identity: str) -> int:
        normalized = normalize_identity(identity)
        with self._lock:
            owned = self._by_identity.pop(normalized, None)
            if not owned:
                return 0
            for token in owned:
                self._tokens.pop(token, None)
            return len(owned)

    def count(self, identity: Optional[str] = None) -> int:
        with self._lock:
            if identity is None:
                return len(self._tokens)
            return len(self._by_identity.get(normalize_identity(identity), ()))

    def tokens_for(self, identity: str) -> List[str]:
        """Live tokens of ``identity``, oldest first."""
        with self._lock:
            return list(self._by_identity.get(normalize_identity(identity), ()))

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()
            self._by_identity.clear()

    def _drop_locked(self, token: str, identity: str) -> None:
        self._tokens.pop(token, None)
        owned = self._by_identity.get(identity)
        if owned is not None:
            owned.pop(token, None)
            if not owned:
                self._by_identity.pop(identity, None)
