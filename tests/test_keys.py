"""Tests for key encoding and normalization."""

import pytest

from keyward.keys import (
    generate_private_key,
    normalize_private_key,
    normalize_public_key,
    npub_decode,
    npub_encode,
    nsec_decode,
    nsec_encode,
    public_key_hex,
)


PUBKEY_HEX = "3bf0c63fcb93463407af97a5e5ee64fa883d107ef9e558472c4eb9aaaefa459d"
NPUB = "npub180cvv07tjdrrgpa0j7j7tmnyl2yr6yr7l8j4s3evf6u64th6gkwsyjh6w6"
PRIVKEY_HEX = "67dea2ed018072d675f5415ecfaed7d2597555e202d85b3d65ea4e58d2d92ffa"
NSEC = "nsec1vl029mgpspedva04g90vltkh6fvh240zqtv9k0t9af8935ke9laqsnlfe5"


class TestBech32:
    def test_npub_known_vector(self):
        assert npub_encode(PUBKEY_HEX) == NPUB
        assert npub_decode(NPUB) == PUBKEY_HEX

    def test_nsec_known_vector(self):
        assert nsec_encode(PRIVKEY_HEX) == NSEC
        assert nsec_decode(NSEC) == PRIVKEY_HEX

    def test_wrong_prefix_rejected(self):
        with pytest.raises(ValueError, match="Invalid npub"):
            npub_decode(NSEC)


class TestNormalize:
    def test_public_key_accepts_npub_and_hex(self):
        assert normalize_public_key(NPUB) == PUBKEY_HEX
        assert normalize_public_key(PUBKEY_HEX.upper()) == PUBKEY_HEX

    def test_public_key_rejects_garbage(self):
        with pytest.raises(ValueError, match="Invalid public key format"):
            normalize_public_key("not-a-key")

    def test_private_key_accepts_nsec_hex_and_0x(self):
        assert normalize_private_key(NSEC) == PRIVKEY_HEX
        assert normalize_private_key(PRIVKEY_HEX) == PRIVKEY_HEX
        assert normalize_private_key("0x" + PRIVKEY_HEX) == PRIVKEY_HEX

    def test_private_key_out_of_range(self):
        with pytest.raises(ValueError, match="out of range"):
            normalize_private_key("00" * 32)

    def test_generated_key_derives_valid_pubkey(self):
        key = generate_private_key()
        pubkey = public_key_hex(key)
        assert len(pubkey) == 64
        assert normalize_public_key(pubkey) == pubkey
