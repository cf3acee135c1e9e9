"""Identity/session model and file-backed session persistence."""

from __future__ import annotations

import fcntl
import json
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import SESSION_TTL_SECONDS
from .keys import normalize_public_key, npub_encode
from .signer import SigningMethod
from .storage import atomic_write_json, ensure_private_dir, ensure_private_file

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Public-key-anchored principal. Replaced wholesale on re-login."""

    public_key: str
    signing_method: SigningMethod

    @property
    def display_id(self) -> str:
        return npub_encode(self.public_key)

    @property
    def can_sign(self) -> bool:
        return self.signing_method != SigningMethod.READ_ONLY

    def to_dict(self) -> dict:
        return {
            "display_id": self.display_id,
            "public_key": self.public_key,
            "signing_method": self.signing_method.value,
        }


@dataclass
class Session:
    identity: Identity
    established_at: float = field(default_factory=time.time)
    ttl_seconds: int = SESSION_TTL_SECONDS

    @property
    def expires_at(self) -> float:
        return self.established_at + self.ttl_seconds

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self.established_at > self.ttl_seconds

    def to_dict(self) -> dict:
        return {
            **self.identity.to_dict(),
            "established_at": self.established_at,
            "ttl_seconds": self.ttl_seconds,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Session":
        identity = Identity(
            public_key=normalize_public_key(d["public_key"]),
            signing_method=SigningMethod(d["signing_method"]),
        )
        return cls(
            identity=identity,
            established_at=float(d["established_at"]),
            ttl_seconds=int(d.get("ttl_seconds", SESSION_TTL_SECONDS)),
        )


class SessionStore:
    """
    Persists at most one session.

    ``session.json`` holds the public record; ``session-secrets.json`` holds
    whatever a signer needs to come back after a restart (a raw key for
    LocalKey, the transport key and remote pubkey for RemoteSigner). Both are
    0600 inside a 0700 directory and written atomically under a file lock.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir
        ensure_private_dir(self.base_dir)
        self.session_path = self.base_dir / "session.json"
        self.secrets_path = self.base_dir / "session-secrets.json"
        self._lock_path = self.base_dir / ".lock"
        ensure_private_file(self._lock_path)

    @contextmanager
    def _lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def save(self, session: Session, secrets: Optional[dict] = None) -> None:
        with self._lock():
            if secrets:
                atomic_write_json(self.secrets_path, secrets)
            elif self.secrets_path.exists():
                self.secrets_path.unlink()
            atomic_write_json(self.session_path, session.to_dict())

    def load(self) -> Optional[Session]:
        """Read the stored session; a corrupt record is discarded."""
        with self._lock():
            if not self.session_path.exists():
                return None
            try:
                with open(self.session_path, encoding="utf-8") as f:
                    return Session.from_dict(json.load(f))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Discarding unreadable session record: %s", e)
                self._remove_files()
                return None

    def load_secrets(self) -> dict:
        with self._lock():
            if not self.secrets_path.exists():
                return {}
            try:
                with open(self.secrets_path, encoding="utf-8") as f:
                    raw = json.load(f)
            except ValueError:
                logger.warning("Session secrets file is unreadable")
                return {}
            return raw if isinstance(raw, dict) else {}

    def clear(self) -> None:
        with self._lock():
            self._remove_files()

    def _remove_files(self) -> None:
        for path in (self.session_path, self.secrets_path):
            if path.exists():
                path.unlink()

    def exists(self) -> bool:
        return self.session_path.exists()
