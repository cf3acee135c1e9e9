"""
Signer backends.

Every identity signs and encrypts through exactly one backend, chosen at
login and recorded as an explicit ``SigningMethod``:

    EXTENSION      a local signing capability bound to a fixed keypair
                   (consent prompts are the capability's business)
    REMOTE_SIGNER  a companion signer reached over relays (see ``remote``)
    LOCAL_KEY      a raw private key held in this process
    READ_ONLY      a known public key with no signing authority

Callers only see the four capability operations; raw key material never
leaves the backend.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional, Protocol

from . import nip44
from .errors import (
    CapabilityUnavailableError,
    DecryptionFailedError,
    PermissionDeniedError,
    SignerError,
    VerificationFailedError,
)
from .event import SignedEvent, UnsignedEvent, require_valid_event, sign_event_with_key
from .keys import normalize_public_key, public_key_hex

logger = logging.getLogger(__name__)


class SigningMethod(str, Enum):
    EXTENSION = "extension"
    REMOTE_SIGNER = "remote_signer"
    LOCAL_KEY = "local_key"
    READ_ONLY = "read_only"


class SignerBackend(ABC):
    """Capability interface shared by all signing methods."""

    method: SigningMethod

    @abstractmethod
    async def get_public_key(self) -> str:
        """Hex x-only public key of the identity this backend signs for."""

    @abstractmethod
    async def sign_event(self, event: UnsignedEvent) -> SignedEvent:
        """Produce a signed, verifiable event."""

    @abstractmethod
    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        """NIP-44 encrypt ``plaintext`` for ``peer_pubkey``."""

    @abstractmethod
    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        """NIP-44 decrypt a payload received from ``peer_pubkey``."""

    async def close(self) -> None:
        return None


class SigningCapability(Protocol):
    """An external signer already bound to a keypair (browser-extension style)."""

    async def get_public_key(self) -> str: ...

    async def sign_event(self, event: dict) -> dict: ...

    async def nip44_encrypt(self, pubkey: str, plaintext: str) -> str: ...

    async def nip44_decrypt(self, pubkey: str, ciphertext: str) -> str: ...


class ExtensionSigner(SignerBackend):
    """
    Delegates to a ``SigningCapability``.

    All calls are serialized so a session-validity check never overlaps an
    in-flight signature request, and the public key is cached after the
    first successful grant so later lookups do not prompt again.
    """

    method = SigningMethod.EXTENSION

    def __init__(self, capability: Optional[SigningCapability]):
        self._capability = capability
        self._lock = asyncio.Lock()
        self._pubkey: Optional[str] = None

    def _require(self, operation: str) -> SigningCapability:
        if self._capability is None:
            raise CapabilityUnavailableError(operation, "no signing extension detected")
        return self._capability

    async def _call(
        self,
        operation: str,
        fn_name: str,
        *args: Any,
        failure: type[SignerError] = SignerError,
    ) -> Any:
        capability = self._require(operation)
        fn = getattr(capability, fn_name, None)
        if fn is None:
            raise CapabilityUnavailableError(operation, f"extension does not support {fn_name}")
        try:
            return await fn(*args)
        except PermissionError as e:
            raise PermissionDeniedError(operation, str(e) or "request refused by extension") from e
        except NotImplementedError as e:
            raise CapabilityUnavailableError(operation, f"extension does not support {fn_name}") from e
        except Exception as e:
            raise failure(f"Extension {operation} failed: {type(e).__name__}: {e}") from e

    async def get_public_key(self) -> str:
        async with self._lock:
            if self._pubkey is None:
                raw = await self._call("get_public_key", "get_public_key")
                self._pubkey = normalize_public_key(str(raw))
            return self._pubkey

    async def validate(self, expected_pubkey: str) -> bool:
        """
        Light check that the extension still controls ``expected_pubkey``.

        Queries the public key only; never asks for a signature, which could
        raise a fresh permission prompt.
        """
        async with self._lock:
            try:
                raw = await self._call("get_public_key", "get_public_key")
                current = normalize_public_key(str(raw))
            except (SignerError, ValueError) as e:
                logger.info("Extension validation failed: %s", e)
                return False
            if current != expected_pubkey:
                logger.info("Extension public key changed; stored session no longer valid")
                return False
            self._pubkey = current
            return True

    async def sign_event(self, event: UnsignedEvent) -> SignedEvent:
        async with self._lock:
            raw = await self._call("sign_event", "sign_event", event.to_dict())
        try:
            signed = SignedEvent.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            raise VerificationFailedError(f"Extension returned a malformed event: {e}") from e
        require_valid_event(signed)
        if self._pubkey is not None and signed.pubkey != self._pubkey:
            raise VerificationFailedError("Extension signed with an unexpected key")
        return signed

    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        async with self._lock:
            return str(await self._call("encrypt", "nip44_encrypt", peer_pubkey, plaintext))

    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        async with self._lock:
            return str(
                await self._call(
                    "decrypt", "nip44_decrypt", peer_pubkey, ciphertext, failure=DecryptionFailedError
                )
            )


class LocalKeySigner(SignerBackend):
    """Signs with a raw private key held in memory. No external interaction."""

    method = SigningMethod.LOCAL_KEY

    def __init__(self, private_key: str):
        self._private_key = private_key
        self._pubkey = public_key_hex(private_key)

    async def get_public_key(self) -> str:
        return self._pubkey

    async def sign_event(self, event: UnsignedEvent) -> SignedEvent:
        return sign_event_with_key(self._private_key, event)

    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return nip44.encrypt_for(self._private_key, peer_pubkey, plaintext)

    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        try:
            return nip44.decrypt_from(self._private_key, peer_pubkey, ciphertext)
        except ValueError as e:
            raise DecryptionFailedError(f"decrypt failed: {e}") from e

    def __repr__(self) -> str:
        return f"LocalKeySigner(pubkey={self._pubkey[:12]}...)"


class ReadOnlySigner(SignerBackend):
    """Inspect-only identity: knows the public key, can do nothing else."""

    method = SigningMethod.READ_ONLY

    def __init__(self, pubkey: str):
        self._pubkey = normalize_public_key(pubkey)

    async def get_public_key(self) -> str:
        return self._pubkey

    async def sign_event(self, event: UnsignedEvent) -> SignedEvent:
        raise CapabilityUnavailableError("sign_event", "read-only identity")

    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        raise CapabilityUnavailableError("encrypt", "read-only identity")

    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        raise CapabilityUnavailableError("decrypt", "read-only identity")
