"""
Nostr event model, signing, and verification.

An event id is the sha256 of the compact JSON array
``[0, pubkey, created_at, kind, tags, content]``; the signature is a
BIP-340 Schnorr signature over that id by the x-only ``pubkey``.
"""

from __future__ import annotations

import hashlib
import json
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from coincurve import PrivateKey, PublicKeyXOnly

from .errors import VerificationFailedError
from .keys import public_key_hex


Tags = tuple[tuple[str, ...], ...]


def _freeze_tags(tags: Iterable[Iterable[Any]]) -> Tags:
    return tuple(tuple(str(v) for v in tag) for tag in tags)


@dataclass(frozen=True)
class UnsignedEvent:
    """Event template awaiting a signature."""

    kind: int
    content: str
    tags: Tags = ()
    created_at: int = field(default_factory=lambda: int(time.time()))

    def __post_init__(self):
        object.__setattr__(self, "tags", _freeze_tags(self.tags))

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "content": self.content,
            "tags": [list(t) for t in self.tags],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "UnsignedEvent":
        return cls(
            kind=int(d["kind"]),
            content=str(d.get("content", "")),
            tags=d.get("tags", []),
            created_at=int(d.get("created_at") or time.time()),
        )


@dataclass(frozen=True)
class SignedEvent:
    """An event with id, author, and signature. Never mutated once produced."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: Tags
    content: str
    sig: str

    def __post_init__(self):
        object.__setattr__(self, "tags", _freeze_tags(self.tags))

    def tag_values(self, name: str) -> list[str]:
        """Second element of every tag named ``name``."""
        return [t[1] for t in self.tags if len(t) >= 2 and t[0] == name]

    def first_tag(self, name: str) -> Optional[str]:
        values = self.tag_values(name)
        return values[0] if values else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(t) for t in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, d: dict) -> "SignedEvent":
        return cls(
            id=str(d["id"]),
            pubkey=str(d["pubkey"]),
            created_at=int(d["created_at"]),
            kind=int(d["kind"]),
            tags=d.get("tags", []),
            content=str(d.get("content", "")),
            sig=str(d["sig"]),
        )


def serialize_for_id(pubkey: str, created_at: int, kind: int, tags: Tags, content: str) -> bytes:
    payload = [0, pubkey, created_at, kind, [list(t) for t in tags], content]
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_event_id(pubkey: str, event: UnsignedEvent | SignedEvent) -> str:
    raw = serialize_for_id(pubkey, event.created_at, event.kind, event.tags, event.content)
    return hashlib.sha256(raw).hexdigest()


def sign_event_with_key(private_key: str, event: UnsignedEvent) -> SignedEvent:
    """Sign an event template with a raw hex private key."""
    pubkey = public_key_hex(private_key)
    event_id = compute_event_id(pubkey, event)
    sk = PrivateKey(bytes.fromhex(private_key))
    sig = sk.sign_schnorr(bytes.fromhex(event_id), secrets.token_bytes(32))
    return SignedEvent(
        id=event_id,
        pubkey=pubkey,
        created_at=event.created_at,
        kind=event.kind,
        tags=event.tags,
        content=event.content,
        sig=sig.hex(),
    )


def verify_event(event: SignedEvent) -> tuple[bool, str]:
    """Check id integrity and signature. Returns (valid, reason)."""
    expected_id = compute_event_id(event.pubkey, event)
    if expected_id != event.id:
        return False, "Event id does not match content"
    try:
        xonly = PublicKeyXOnly(bytes.fromhex(event.pubkey))
        ok = xonly.verify(bytes.fromhex(event.sig), bytes.fromhex(event.id))
    except ValueError as e:
        return False, f"Malformed key or signature: {e}"
    if not ok:
        return False, "Signature does not verify"
    return True, "Valid"


def require_valid_event(event: SignedEvent) -> SignedEvent:
    valid, reason = verify_event(event)
    if not valid:
        raise VerificationFailedError(f"Event {event.id[:12]} failed verification: {reason}")
    return event
