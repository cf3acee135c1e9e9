"""Tests for event ids, signing and verification."""

import dataclasses
import hashlib
import json

import pytest

from keyward.errors import VerificationFailedError
from keyward.event import (
    SignedEvent,
    UnsignedEvent,
    compute_event_id,
    require_valid_event,
    sign_event_with_key,
    verify_event,
)
from keyward.keys import generate_private_key, public_key_hex


def _signed(**kwargs) -> tuple[str, SignedEvent]:
    key = generate_private_key()
    template = UnsignedEvent(kind=kwargs.pop("kind", 1), content=kwargs.pop("content", "hello"), **kwargs)
    return key, sign_event_with_key(key, template)


class TestEventId:
    def test_id_is_hash_of_compact_serialization(self):
        key = generate_private_key()
        pubkey = public_key_hex(key)
        template = UnsignedEvent(kind=1, content="héllo", tags=[["t", "x"]], created_at=1700000000)
        expected = hashlib.sha256(
            json.dumps(
                [0, pubkey, 1700000000, 1, [["t", "x"]], "héllo"],
                separators=(",", ":"),
                ensure_ascii=False,
            ).encode()
        ).hexdigest()
        assert compute_event_id(pubkey, template) == expected

    def test_tags_are_frozen(self):
        template = UnsignedEvent(kind=1, content="", tags=[["p", "abc"]])
        assert template.tags == (("p", "abc"),)
        with pytest.raises(dataclasses.FrozenInstanceError):
            template.kind = 2  # type: ignore[misc]


class TestVerify:
    def test_signed_event_verifies(self):
        _, event = _signed(tags=[["u", "https://x"]])
        assert verify_event(event) == (True, "Valid")

    def test_altered_pubkey_fails(self):
        _, event = _signed()
        other = public_key_hex(generate_private_key())
        forged = dataclasses.replace(event, pubkey=other)
        valid, _ = verify_event(forged)
        assert not valid

    def test_altered_content_fails_id_check(self):
        _, event = _signed()
        valid, reason = verify_event(dataclasses.replace(event, content="tampered"))
        assert not valid
        assert "id does not match" in reason

    def test_bad_signature_detected(self):
        _, event = _signed()
        _, other = _signed()
        valid, reason = verify_event(dataclasses.replace(event, sig=other.sig))
        assert not valid
        assert reason == "Signature does not verify"

    def test_require_valid_event_raises(self):
        _, event = _signed()
        with pytest.raises(VerificationFailedError, match="failed verification"):
            require_valid_event(dataclasses.replace(event, content="x"))

    def test_dict_round_trip_keeps_validity(self):
        _, event = _signed(tags=[["e", "abc", "", "created"]])
        restored = SignedEvent.from_dict(json.loads(event.to_json()))
        assert restored == event
        assert verify_event(restored)[0]
