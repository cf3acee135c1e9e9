"""Tests for the signer backends."""

import asyncio

import pytest

from conftest import FakeExtension
from keyward.errors import (
    CapabilityUnavailableError,
    DecryptionFailedError,
    PermissionDeniedError,
    SignerError,
    VerificationFailedError,
)
from keyward.event import UnsignedEvent, sign_event_with_key, verify_event
from keyward.keys import generate_private_key, public_key_hex
from keyward.signer import ExtensionSigner, LocalKeySigner, ReadOnlySigner, SigningMethod


def _template(kind: int = 27235) -> UnsignedEvent:
    return UnsignedEvent(kind=kind, content="application/json", tags=[["u", "https://api.test/x"], ["method", "GET"]])


class TestLocalKeySigner:
    @pytest.mark.asyncio
    async def test_signs_verifiable_events(self):
        key = generate_private_key()
        signer = LocalKeySigner(key)
        event = await signer.sign_event(_template())
        assert event.pubkey == public_key_hex(key) == await signer.get_public_key()
        assert verify_event(event)[0]

    @pytest.mark.asyncio
    async def test_encrypt_decrypt_between_two_keys(self):
        alice, bob = LocalKeySigner(generate_private_key()), LocalKeySigner(generate_private_key())
        ciphertext = await alice.encrypt(await bob.get_public_key(), "hi bob")
        assert await bob.decrypt(await alice.get_public_key(), ciphertext) == "hi bob"

    @pytest.mark.asyncio
    async def test_wrong_peer_is_decryption_failure(self):
        alice, bob = LocalKeySigner(generate_private_key()), LocalKeySigner(generate_private_key())
        ciphertext = await alice.encrypt(public_key_hex(generate_private_key()), "not for bob")
        with pytest.raises(DecryptionFailedError, match="Invalid MAC"):
            await bob.decrypt(await alice.get_public_key(), ciphertext)

    def test_repr_hides_key(self):
        key = generate_private_key()
        assert key not in repr(LocalKeySigner(key))
        assert LocalKeySigner(key).method == SigningMethod.LOCAL_KEY


class TestReadOnlySigner:
    @pytest.mark.asyncio
    async def test_public_key_only(self):
        pubkey = public_key_hex(generate_private_key())
        signer = ReadOnlySigner(pubkey)
        assert await signer.get_public_key() == pubkey
        with pytest.raises(CapabilityUnavailableError, match="read-only"):
            await signer.sign_event(_template())
        with pytest.raises(CapabilityUnavailableError):
            await signer.encrypt(pubkey, "x")
        with pytest.raises(CapabilityUnavailableError):
            await signer.decrypt(pubkey, "x")


class TestExtensionSigner:
    @pytest.mark.asyncio
    async def test_public_key_cached_after_first_grant(self):
        extension = FakeExtension()
        signer = ExtensionSigner(extension)
        await signer.get_public_key()
        await signer.get_public_key()
        assert extension.calls.count("get_public_key") == 1

    @pytest.mark.asyncio
    async def test_sign_event_verified(self):
        extension = FakeExtension()
        signer = ExtensionSigner(extension)
        event = await signer.sign_event(_template())
        assert event.pubkey == extension.pubkey
        assert verify_event(event)[0]

    @pytest.mark.asyncio
    async def test_missing_extension_is_capability_unavailable(self):
        signer = ExtensionSigner(None)
        with pytest.raises(CapabilityUnavailableError, match="no signing extension"):
            await signer.get_public_key()

    @pytest.mark.asyncio
    async def test_refusal_is_permission_denied(self):
        signer = ExtensionSigner(FakeExtension(deny_signing=True))
        with pytest.raises(PermissionDeniedError, match="user rejected"):
            await signer.sign_event(_template())

    @pytest.mark.asyncio
    async def test_unsupported_operation(self):
        class SignOnly:
            async def get_public_key(self):
                return public_key_hex(generate_private_key())

        signer = ExtensionSigner(SignOnly())  # type: ignore[arg-type]
        with pytest.raises(CapabilityUnavailableError, match="nip44_encrypt"):
            await signer.encrypt("00" * 32, "x")

    @pytest.mark.asyncio
    async def test_unexpected_extension_error_is_signer_error(self):
        extension = FakeExtension()

        async def crash(event):
            raise RuntimeError("extension crashed")

        extension.sign_event = crash  # type: ignore[method-assign]
        signer = ExtensionSigner(extension)
        with pytest.raises(SignerError, match="RuntimeError: extension crashed"):
            await signer.sign_event(_template())
        assert await signer.validate(extension.pubkey)

    @pytest.mark.asyncio
    async def test_bad_payload_is_decryption_failure(self):
        extension = FakeExtension()
        signer = ExtensionSigner(extension)
        with pytest.raises(DecryptionFailedError, match="ValueError"):
            await signer.decrypt(public_key_hex(generate_private_key()), "AgAAAA==")

    @pytest.mark.asyncio
    async def test_forged_signature_rejected(self):
        extension = FakeExtension()
        other_key = generate_private_key()

        async def wrong_key_sign(event):
            return sign_event_with_key(other_key, UnsignedEvent.from_dict(event)).to_dict()

        extension.sign_event = wrong_key_sign  # type: ignore[method-assign]
        signer = ExtensionSigner(extension)
        await signer.get_public_key()
        with pytest.raises(VerificationFailedError, match="unexpected key"):
            await signer.sign_event(_template())

    @pytest.mark.asyncio
    async def test_validate_never_signs(self):
        extension = FakeExtension()
        signer = ExtensionSigner(extension)
        assert await signer.validate(extension.pubkey)
        assert not await signer.validate(public_key_hex(generate_private_key()))
        assert "sign_event" not in extension.calls

    @pytest.mark.asyncio
    async def test_validation_does_not_overlap_signing(self):
        active = 0
        overlap = False

        class SlowExtension(FakeExtension):
            async def _enter(self):
                nonlocal active, overlap
                active += 1
                overlap = overlap or active > 1
                await asyncio.sleep(0.02)
                active -= 1

            async def get_public_key(self):
                await self._enter()
                return await super().get_public_key()

            async def sign_event(self, event):
                await self._enter()
                return await super().sign_event(event)

        extension = SlowExtension()
        signer = ExtensionSigner(extension)
        await asyncio.gather(
            signer.sign_event(_template()),
            signer.validate(extension.pubkey),
            signer.sign_event(_template()),
        )
        assert not overlap
