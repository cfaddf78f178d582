from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from luaspark.identity import identities_match
from luaspark.service.errors import AuthenticationError, PaymentRequiredError
from luaspark.service.sessions import SessionRegistry
from luaspark.storage.credentials import CredentialStore
from luaspark.storage.models import IdentityRecord


class DenyReason(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    PAYMENT_REQUIRED = "payment_required"


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    identity: Optional[str] = None
    reason: Optional[DenyReason] = None
    bypass: bool = False

    def raise_for_denial(self) -> None:
        if self.allowed:
            return
        if self.reason is DenyReason.PAYMENT_REQUIRED:
            raise PaymentRequiredError("payment required")
        raise AuthenticationError("invalid or missing session token")


class AuthorizationGate:
    """Decides whether a bearer token may use the generate operation."""

    def __init__(self, sessions: SessionRegistry, store: CredentialStore) -> None:
        self.sessions = sessions
        self.store = store

    def resolve_record(self, token: Optional[str]) -> Optional[IdentityRecord]:
        identity = self.sessions.resolve(token)
        if identity is None:
            return None
        return self.store.get(identity)

    def authenticate(self, token: Optional[str]) -> IdentityRecord:
        """Session check only; used by endpoints that do not need entitlement."""
        record = self.resolve_record(token)
        if record is None:
            raise AuthenticationError("invalid or missing session token")
        return record

    def authorize(self, token: Optional[str], bypass_identity: Optional[str]) -> GateDecision:
        record = self.resolve_record(token)
        if record is None:
            return GateDecision(allowed=False, reason=DenyReason.UNAUTHENTICATED)
        if record.entitled:
            return GateDecision(allowed=True, identity=record.identity)
        if identities_match(record.identity, bypass_identity):
            return GateDecision(allowed=True, identity=record.identity, bypass=True)
        return GateDecision(
            allowed=False, identity=record.identity, reason=DenyReason.PAYMENT_REQUIRED
        )
