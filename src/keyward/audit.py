"""
Audit trail for identity and wallet operations.

One JSONL line per event, each carrying an HMAC over its own payload and
the previous line's hash. The CLI and a running app may share one data
directory, so appends happen under a file lock and re-read the tail hash
first; otherwise two writers would fork the chain.

Signer material (private keys, handshake secrets) is redacted from
``details`` before anything reaches disk.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .config import DEFAULT_HOME
from .errors import AuditTamperedError
from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = DEFAULT_HOME / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = DEFAULT_HOME.parent / ".keyward-secrets" / "audit_hmac.key"

REDACTED = "[redacted]"
_SECRET_FIELDS = frozenset({"private_key", "client_private_key", "nsec", "secret", "privkey"})
_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    SESSION_RESTORED = "session_restored"
    SESSION_EXPIRED = "session_expired"
    SESSION_REVOKED = "session_revoked"
    SESSION_REJECTED = "session_rejected"
    HANDSHAKE_STARTED = "handshake_started"
    HANDSHAKE_COMPLETED = "handshake_completed"
    HANDSHAKE_FAILED = "handshake_failed"
    AUTH_REJECTED = "auth_rejected"
    TOKEN_SET_PUBLISHED = "token_set_published"
    TOKEN_SET_PUBLISH_FAILED = "token_set_publish_failed"
    TOMBSTONE_FAILED = "tombstone_failed"
    HISTORY_PUBLISHED = "history_published"
    HISTORY_FAILED = "history_failed"


# Spends that went live but left the relay record incomplete
DEGRADED_TYPES = frozenset({EventType.TOMBSTONE_FAILED.value, EventType.HISTORY_FAILED.value})
SESSION_END_TYPES = frozenset({
    EventType.LOGOUT.value,
    EventType.SESSION_EXPIRED.value,
    EventType.SESSION_REVOKED.value,
    EventType.SESSION_REJECTED.value,
})


def _scrub(details: Optional[dict]) -> Optional[dict]:
    if not details:
        return details
    clean: dict[str, Any] = {}
    for key, value in details.items():
        if key in _SECRET_FIELDS:
            clean[key] = REDACTED
        elif isinstance(value, dict):
            clean[key] = _scrub(value)
        else:
            clean[key] = value
    return clean


@dataclass
class AuditEvent:
    event_type: str
    timestamp: float
    identity: Optional[str] = None
    signing_method: Optional[str] = None
    mint_url: Optional[str] = None
    amount: Optional[int] = None
    event_id: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def payload(self) -> dict:
        """Fields covered by the HMAC (everything except the chain links)."""
        return {k: v for k, v in asdict(self).items() if v is not None and k not in _CHAIN_FIELDS}

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))

    @classmethod
    def from_dict(cls, raw: dict) -> "AuditEvent":
        return cls(**{k: v for k, v in raw.items() if k in cls.__dataclass_fields__})


class AuditTrail:
    """Tamper-evident append-only log of session and wallet transitions."""

    def __init__(self, path: Optional[Path] = None, key_path: Optional[Path] = None):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        self._lock_path = self.path.with_suffix(self.path.suffix + ".lock")

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)
        ensure_private_file(self._lock_path)

        self._hmac_key = self._load_or_create_key()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv("KEYWARD_AUDIT_HMAC_KEY")
        if env_key:
            return env_key.encode()
        if self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    @contextmanager
    def _locked(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    def _tail_hash(self) -> str:
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    last = json.loads(line).get("event_hash", "")
        return last

    def log(
        self,
        event_type: EventType,
        identity: Optional[str] = None,
        signing_method: Optional[str] = None,
        mint_url: Optional[str] = None,
        amount: Optional[int] = None,
        event_id: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type.value,
            timestamp=time.time(),
            identity=identity,
            signing_method=signing_method,
            mint_url=mint_url,
            amount=amount,
            event_id=event_id,
            success=success,
            reason=reason,
            details=_scrub(details),
        )
        with self._locked():
            prev_hash = self._tail_hash()
            event.prev_hash = prev_hash or None
            event.event_hash = self._hash(event.payload(), prev_hash)
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
        return event

    def _verified(self) -> Iterator[AuditEvent]:
        """Walk the file, checking every link; raises on the first bad line."""
        expected_prev = ""
        with open(self.path, "r") as f:
            for number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    event = AuditEvent.from_dict(json.loads(line))
                except (TypeError, ValueError) as e:
                    raise AuditTamperedError(number, f"unreadable entry ({e})") from e
                if (event.prev_hash or "") != expected_prev:
                    raise AuditTamperedError(number, "previous hash mismatch")
                actual = self._hash(event.payload(), expected_prev)
                if not hmac.compare_digest(actual, event.event_hash or ""):
                    raise AuditTamperedError(number, "event hash mismatch")
                expected_prev = actual
                yield event

    def verify(self) -> int:
        """Check the whole chain; returns the number of entries."""
        return sum(1 for _ in self._verified())

    def read_events(
        self,
        identity: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        # the whole chain is verified even when only the tail is returned
        events = [
            e for e in self._verified()
            if (not identity or e.identity == identity)
            and (not event_type or e.event_type == event_type.value)
        ]
        return events[-limit:]

    def summary(self, identity: Optional[str] = None) -> dict:
        events = self.read_events(identity=identity, limit=10000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1

        logins = [e for e in events if e.event_type == EventType.LOGIN.value]
        ends = [e for e in events if e.event_type in SESSION_END_TYPES]
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": sum(1 for e in events if not e.success),
            "degraded_spends": sum(1 for e in events if e.event_type in DEGRADED_TYPES),
            "last_login": logins[-1].timestamp if logins else None,
            "last_session_end": ends[-1].event_type if ends else None,
        }
