"""
secp256k1 key handling for Nostr identities.

Public keys are 32-byte x-only keys (BIP-340) carried as lowercase hex.
Human-readable forms are bech32 ``npub1...`` / ``nsec1...`` strings.
"""

from __future__ import annotations

import re
import secrets

from bech32 import bech32_decode, bech32_encode, convertbits
from coincurve import PrivateKey, PublicKey


_HEX64_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def generate_private_key() -> str:
    """Return a fresh private key as 64-char hex."""
    while True:
        candidate = secrets.token_bytes(32)
        try:
            PrivateKey(candidate)
        except ValueError:
            continue
        return candidate.hex()


def public_key_hex(private_key: str) -> str:
    """Derive the x-only public key (hex) for a hex private key."""
    sk = PrivateKey(bytes.fromhex(private_key))
    return sk.public_key.format(compressed=True)[1:].hex()


def lift_x(pubkey: str) -> PublicKey:
    """Full point for an x-only key, choosing the even-y root."""
    return PublicKey(b"\x02" + bytes.fromhex(pubkey))


def _bech32_encode_key(hrp: str, key_hex: str) -> str:
    data = convertbits(bytes.fromhex(key_hex), 8, 5, True)
    return bech32_encode(hrp, data)


def _bech32_decode_key(expected_hrp: str, value: str) -> str:
    hrp, data = bech32_decode(value.strip())
    if hrp != expected_hrp or data is None:
        raise ValueError(f"Invalid {expected_hrp} encoding")
    decoded = convertbits(data, 5, 8, False)
    if decoded is None or len(decoded) != 32:
        raise ValueError(f"Invalid {expected_hrp} payload length")
    return bytes(decoded).hex()


def npub_encode(pubkey: str) -> str:
    return _bech32_encode_key("npub", pubkey)


def npub_decode(npub: str) -> str:
    return _bech32_decode_key("npub", npub)


def nsec_encode(private_key: str) -> str:
    return _bech32_encode_key("nsec", private_key)


def nsec_decode(nsec: str) -> str:
    return _bech32_decode_key("nsec", nsec)


def normalize_public_key(value: str) -> str:
    """Accept an npub or 64-char hex public key and return lowercase hex."""
    candidate = value.strip()
    if candidate.startswith("npub1"):
        pubkey = npub_decode(candidate)
    elif _HEX64_RE.match(candidate):
        pubkey = candidate.lower()
    else:
        raise ValueError("Invalid public key format (expected npub1... or 64-char hex)")
    try:
        lift_x(pubkey)
    except ValueError as e:
        raise ValueError("Public key is not a valid secp256k1 point") from e
    return pubkey


def normalize_private_key(value: str) -> str:
    """Accept an nsec or 64-char hex private key and return lowercase hex."""
    candidate = value.strip()
    if candidate.startswith("nsec1"):
        key = nsec_decode(candidate)
    else:
        if candidate.startswith("0x"):
            candidate = candidate[2:]
        if not _HEX64_RE.match(candidate):
            raise ValueError("Private key must be nsec1... or a 32-byte hex string")
        key = candidate.lower()
    try:
        PrivateKey(bytes.fromhex(key))
    except ValueError as e:
        raise ValueError("Private key is out of range for secp256k1") from e
    return key
