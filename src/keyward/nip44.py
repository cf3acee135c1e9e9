"""
NIP-44 v2 payload encryption.

secp256k1 ECDH -> HKDF-SHA256 conversation key -> per-message
ChaCha20 key/nonce + HMAC-SHA256 key. Plaintext is length-prefixed and
padded to hide its exact size.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import math
import secrets
import struct
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from .keys import lift_x


VERSION = 2
_SALT = b"nip44-v2"
_MIN_PLAINTEXT = 1
_MAX_PLAINTEXT = 65535


def conversation_key(private_key: str, peer_pubkey: str) -> bytes:
    """Symmetric key shared by ``private_key`` and ``peer_pubkey``."""
    shared = lift_x(peer_pubkey).multiply(bytes.fromhex(private_key))
    shared_x = shared.format(compressed=True)[1:]
    return hmac.new(_SALT, shared_x, hashlib.sha256).digest()


def _message_keys(conv_key: bytes, nonce: bytes) -> tuple[bytes, bytes, bytes]:
    okm = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(conv_key)
    return okm[0:32], okm[32:44], okm[44:76]


def padded_length(unpadded_len: int) -> int:
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * (math.floor((unpadded_len - 1) / chunk) + 1)


def _pad(plaintext: str) -> bytes:
    raw = plaintext.encode("utf-8")
    if not _MIN_PLAINTEXT <= len(raw) <= _MAX_PLAINTEXT:
        raise ValueError(f"Plaintext length {len(raw)} outside 1..65535")
    return struct.pack(">H", len(raw)) + raw + b"\x00" * (padded_length(len(raw)) - len(raw))


def _unpad(padded: bytes) -> str:
    (length,) = struct.unpack(">H", padded[:2])
    raw = padded[2 : 2 + length]
    if length == 0 or len(raw) != length or len(padded) != 2 + padded_length(length):
        raise ValueError("Invalid padding")
    return raw.decode("utf-8")


def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
    # cryptography takes a 16-byte nonce: 32-bit LE counter || 96-bit nonce
    cipher = Cipher(algorithms.ChaCha20(key, b"\x00\x00\x00\x00" + nonce), mode=None)
    return cipher.encryptor().update(data)


def encrypt(plaintext: str, conv_key: bytes, nonce: Optional[bytes] = None) -> str:
    nonce = nonce or secrets.token_bytes(32)
    chacha_key, chacha_nonce, hmac_key = _message_keys(conv_key, nonce)
    ciphertext = _chacha20(chacha_key, chacha_nonce, _pad(plaintext))
    mac = hmac.new(hmac_key, nonce + ciphertext, hashlib.sha256).digest()
    return base64.b64encode(bytes([VERSION]) + nonce + ciphertext + mac).decode()


def decrypt(payload: str, conv_key: bytes) -> str:
    if not payload or payload.startswith("#"):
        raise ValueError("Unsupported encryption version")
    if not 132 <= len(payload) <= 87472:
        raise ValueError("Invalid payload size")
    try:
        data = base64.b64decode(payload, validate=True)
    except ValueError as e:
        raise ValueError("Invalid base64 payload") from e
    if data[0] != VERSION:
        raise ValueError(f"Unknown encryption version {data[0]}")

    nonce, ciphertext, mac = data[1:33], data[33:-32], data[-32:]
    chacha_key, chacha_nonce, hmac_key = _message_keys(conv_key, nonce)
    expected = hmac.new(hmac_key, nonce + ciphertext, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, mac):
        raise ValueError("Invalid MAC")
    return _unpad(_chacha20(chacha_key, chacha_nonce, ciphertext))


def encrypt_for(private_key: str, peer_pubkey: str, plaintext: str) -> str:
    return encrypt(plaintext, conversation_key(private_key, peer_pubkey))


def decrypt_from(private_key: str, peer_pubkey: str, payload: str) -> str:
    return decrypt(payload, conversation_key(private_key, peer_pubkey))
