from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from luaspark.identity import normalize_identity
from luaspark.logging import get_logger
from luaspark.storage.errors import (
    ConstraintViolation,
    CredentialMismatch,
    InvalidRecordInput,
    RecordNotFound,
)
from luaspark.storage.models import (
    MEMORY_LIMIT,
    MEMORY_ROLES,
    IdentityRecord,
    MemoryEntry,
)

PASSWORD_ALGO = "argon2id"


class CredentialStore:
    """Identity records kept in memory and mirrored to a single JSON file.

    The file is rewritten wholesale on every save. Mutations that change
    credentials or entitlement flush synchronously; memory appends only mark
    the store dirty and are picked up by the next explicit ``persist`` or the
    periodic ``flush_if_dirty``.
    """

    def __init__(self, path: str | Path, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.logger = get_logger(__name__)
        self.path = Path(path)
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._records: Dict[str, IdentityRecord] = {}
        # RLock so persist() can run inside mutating sections
        self._data_lock = threading.RLock()
        self._dirty = False
        self.reload()

    # identities
    def register(self, identity: str, secret: str) -> IdentityRecord:
        normalized = normalize_identity(identity)
        if not normalized or not secret or not secret.strip():
            raise InvalidRecordInput(
                "identity and secret are required", {"fields": ["identity", "secret"]}
            )
        with self._data_lock:
            existing = self._records.get(normalized)
            if existing and existing.has_credential:
                raise ConstraintViolation("identity already exists", {"field": "identity"})
        digest = self._hasher.hash(secret)
        with self._data_lock:
            record = self._records.get(normalized)
            if record and record.has_credential:
                raise ConstraintViolation("identity already exists", {"field": "identity"})
            if record:
                # Created by a payment notification before signup; keep entitlement
                record.secret_hash = digest
                record.secret_algo = PASSWORD_ALGO
                self.logger.info("identity_claimed", identity=normalized, entitled=record.entitled)
            else:
                record = IdentityRecord(
                    identity=normalized, secret_hash=digest, secret_algo=PASSWORD_ALGO
                )
                self._records[normalized] = record
            self._dirty = True
            self.persist()
            return record

    def verify(self, identity: str, secret: str) -> IdentityRecord:
        normalized = normalize_identity(identity)
        with self._data_lock:
            record = self._records.get(normalized)
            if record is None:
                raise RecordNotFound("identity not found", {"identity": normalized})
            stored_hash, algo = record.secret_hash, record.secret_algo
        if not stored_hash or not secret:
            raise CredentialMismatch("invalid credentials")
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", identity=normalized, algo=algo)
            raise CredentialMismatch("invalid credentials")
        try:
            self._hasher.verify(stored_hash, secret)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", identity=normalized)
            raise CredentialMismatch("invalid credentials")
        if self._hasher.check_needs_rehash(stored_hash):
            with self._data_lock:
                record.secret_hash = self._hasher.hash(secret)
                self._dirty = True
                self.persist()
        return record

    def get(self, identity: str) -> Optional[IdentityRecord]:
        with self._data_lock:
            return self._records.get(normalize_identity(identity))

    def mark_entitled(self, identity: str) -> IdentityRecord:
        normalized = normalize_identity(identity)
        with self._data_lock:
            record = self._records.get(normalized)
            if record is None:
                raise RecordNotFound("identity not found", {"identity": normalized})
            if not record.entitled:
                record.entitled = True
                self._dirty = True
            self.persist()
            return record

    def ensure(self, identity: str) -> Tuple[IdentityRecord, bool]:
        """Return the record for ``identity``, creating a credential-less one if absent."""
        normalized = normalize_identity(identity)
        if not normalized:
            raise InvalidRecordInput("identity is required", {"fields": ["identity"]})
        with self._data_lock:
            record = self._records.get(normalized)
            if record is not None:
                return record, False
            record = IdentityRecord(identity=normalized)
            self._records[normalized] = record
            self._dirty = True
            self.persist()
            return record, True

    def count(self) -> int:
        with self._data_lock:
            return len(self._records)

    # conversation memory
    def append_memory(
        self, identity: str, role: str, content: str, *, limit: int = MEMORY_LIMIT
    ) -> List[MemoryEntry]:
        if role not in MEMORY_ROLES:
            raise ValueError(f"unsupported memory role: {role}")
        normalized = normalize_identity(identity)
        with self._data_lock:
            record = self._records.get(normalized)
            if record is None:
                raise RecordNotFound("identity not found", {"identity": normalized})
            record.memory.append(MemoryEntry(role=role, content=content))
            if len(record.memory) > limit:
                del record.memory[: len(record.memory) - limit]
            self._dirty = True
            return list(record.memory)

    def replace_memory(self, identity: str, entries: List[MemoryEntry]) -> None:
        """Overwrite the identity's memory with ``entries`` (used to roll back a turn)."""
        normalized = normalize_identity(identity)
        with self._data_lock:
            record = self._records.get(normalized)
            if record is None:
                raise RecordNotFound("identity not found", {"identity": normalized})
            record.memory = [MemoryEntry(role=e.role, content=e.content) for e in entries]
            self._dirty = True

    def memory(self, identity: str) -> List[MemoryEntry]:
        normalized = normalize_identity(identity)
        with self._data_lock:
            record = self._records.get(normalized)
            if record is None:
                raise RecordNotFound("identity not found", {"identity": normalized})
            return [MemoryEntry(role=m.role, content=m.content) for m in record.memory]

    # persistence
    @property
    def dirty(self) -> bool:
        return self._dirty

    def persist(self) -> bool:
        """Rewrite the backing file; failures are logged and reported as False."""
        with self._data_lock:
            state = {
                identity: self._serialize_record(record)
                for identity, record in self._records.items()
            }
            try:
                self._write_atomic(json.dumps(state, indent=2))
            except (OSError, TypeError, ValueError) as exc:
                self.logger.error(
                    "credential_store_flush_failed",
                    path=str(self.path),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return False
            self._dirty = False
            return True

    def flush_if_dirty(self) -> bool:
        with self._data_lock:
            if not self._dirty:
                return True
            return self.persist()

    def reload(self) -> None:
        """Load the backing file, recovering to an empty store when it is unusable."""
        with self._data_lock:
            self._records = {}
            self._dirty = False
            # Read directly instead of exists() to avoid a TOCTOU race
            try:
                raw = self.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                self.logger.info("credential_store_created", path=str(self.path))
                self.persist()
                return
            except OSError as exc:
                self.logger.error(
                    "credential_store_unreadable", path=str(self.path), error=str(exc)
                )
                return
            try:
                data = json.loads(raw) if raw.strip() else {}
                entries = self._iter_entries(data)
            except (ValueError, TypeError) as exc:
                self._quarantine_corrupt_file(exc)
                return

            migrated = False
            for key, entry in entries:
                try:
                    record, was_legacy = self._deserialize_record(key, entry)
                except (KeyError, TypeError, ValueError) as exc:
                    self.logger.warning(
                        "credential_store_record_skipped", key=str(key), error=str(exc)
                    )
                    continue
                if record.identity in self._records:
                    self.logger.warning(
                        "credential_store_duplicate_identity", identity=record.identity
                    )
                    continue
                self._records[record.identity] = record
                migrated = migrated or was_legacy

            self.logger.info(
                "credential_store_loaded", path=str(self.path), identities=len(self._records)
            )
            if migrated:
                # Rewrite immediately so cleartext secrets do not survive on disk
                self.logger.info("credential_store_legacy_migrated", path=str(self.path))
                self._dirty = True
                self.persist()

    def _iter_entries(self, data: Any) -> List[Tuple[Optional[str], dict]]:
        if isinstance(data, dict):
            return [(key, value) for key, value in data.items()]
        if isinstance(data, list):
            return [(None, value) for value in data]
        raise TypeError(f"unexpected top-level JSON type: {type(data).__name__}")

    def _quarantine_corrupt_file(self, exc: Exception) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        quarantine = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        try:
            self.path.replace(quarantine)
        except OSError as move_exc:
            quarantine = None
            self.logger.error(
                "credential_store_quarantine_failed", path=str(self.path), error=str(move_exc)
            )
        self.logger.error(
            "credential_store_corrupt",
            path=str(self.path),
            moved_to=str(quarantine) if quarantine else None,
            error=str(exc),
            message="starting with an empty credential store",
        )

    def _write_atomic(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    @staticmethod
    def _serialize_record(record: IdentityRecord) -> dict:
        return {
            "identity": record.identity,
            "secret_hash": record.secret_hash,
            "secret_algo": record.secret_algo,
            "entitled": record.entitled,
            "created_at": record.created_at.isoformat(),
            "memory": [entry.as_message() for entry in record.memory],
        }

    def _deserialize_record(self, key: Optional[str], data: dict) -> Tuple[IdentityRecord, bool]:
        if not isinstance(data, dict):
            raise TypeError("record must be an object")
        identity = normalize_identity(data.get("identity") or data.get("email") or key)
        if not identity:
            raise ValueError("record has no identity")

        legacy = False
        secret_hash = data.get("secret_hash")
        secret_algo = data.get("secret_algo")
        if not secret_hash and data.get("password"):
            # Legacy layout kept the password in cleartext
            secret_hash = self._hasher.hash(str(data["password"]))
            secret_algo = PASSWORD_ALGO
            legacy = True
        if "hasPaid" in data and "entitled" not in data:
            legacy = True
        if "token" in data:
            legacy = True

        memory: List[MemoryEntry] = []
        for item in data.get("memory") or []:
            if not isinstance(item, dict):
                continue
            role = item.get("role")
            content = item.get("content")
            if role in MEMORY_ROLES and isinstance(content, str):
                memory.append(MemoryEntry(role=role, content=content))
        memory = memory[-MEMORY_LIMIT:]

        created_raw = data.get("created_at")
        created_at = (
            datetime.fromisoformat(created_raw)
            if isinstance(created_raw, str)
            else datetime.now(timezone.utc)
        )
        record = IdentityRecord(
            identity=identity,
            secret_hash=secret_hash,
            secret_algo=secret_algo or (PASSWORD_ALGO if secret_hash else None),
            entitled=bool(data.get("entitled", data.get("hasPaid", False))),
            memory=memory,
            created_at=created_at,
        )
        return record, legacy
