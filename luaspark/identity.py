from __future__ import annotations

from typing import Optional


def normalize_identity(value: Optional[str]) -> str:
    """Canonical form of an identity: surrounding whitespace trimmed, lower-cased.

    Every entry point (signup, signin, webhook, admin marking, the bypass
    comparison and the session index) goes through this function so stored and
    incoming identities always compare equal.
    """
    if value is None:
        return ""
    return value.strip().lower()


def identities_match(left: Optional[str], right: Optional[str]) -> bool:
    """True when both identities are non-empty and normalize to the same key."""
    normalized_left = normalize_identity(left)
    return bool(normalized_left) and normalized_left == normalize_identity(right)
