"""Shared fakes: a signing extension, a companion remote signer, test relays."""

import asyncio
import json
import secrets
from typing import Optional

import pytest

from keyward import nip44
from keyward.errors import RelayError
from keyward.event import SignedEvent, UnsignedEvent, sign_event_with_key
from keyward.keys import generate_private_key, public_key_hex
from keyward.relay import Filter, InMemoryRelay
from keyward.remote import NIP46_KIND, parse_connection_uri
from keyward.session import SessionStore


class FakeExtension:
    """Signing capability bound to one key, counting every call."""

    def __init__(self, private_key: Optional[str] = None, deny_signing: bool = False):
        self.private_key = private_key or generate_private_key()
        self.pubkey = public_key_hex(self.private_key)
        self.deny_signing = deny_signing
        self.calls: list[str] = []

    async def get_public_key(self) -> str:
        self.calls.append("get_public_key")
        return self.pubkey

    async def sign_event(self, event: dict) -> dict:
        self.calls.append("sign_event")
        if self.deny_signing:
            raise PermissionError("user rejected")
        return sign_event_with_key(self.private_key, UnsignedEvent.from_dict(event)).to_dict()

    async def nip44_encrypt(self, pubkey: str, plaintext: str) -> str:
        self.calls.append("nip44_encrypt")
        return nip44.encrypt_for(self.private_key, pubkey, plaintext)

    async def nip44_decrypt(self, pubkey: str, ciphertext: str) -> str:
        self.calls.append("nip44_decrypt")
        return nip44.decrypt_from(self.private_key, pubkey, ciphertext)


class FakeRemoteSigner:
    """Companion signer app speaking kind-24133 over an in-memory relay."""

    def __init__(self, relay: InMemoryRelay, user_key: Optional[str] = None):
        self.relay = relay
        self.signer_key = generate_private_key()
        self.signer_pubkey = public_key_hex(self.signer_key)
        self.user_key = user_key or generate_private_key()
        self.user_pubkey = public_key_hex(self.user_key)
        self.bunker_secret = secrets.token_hex(8)
        self.requests: list[str] = []

    def bunker_uri(self) -> str:
        return f"bunker://{self.signer_pubkey}?relay=wss%3A%2F%2Frelay.test&secret={self.bunker_secret}"

    async def _reply(self, client_pubkey: str, payload: dict) -> None:
        content = nip44.encrypt_for(self.signer_key, client_pubkey, json.dumps(payload))
        template = UnsignedEvent(kind=NIP46_KIND, content=content, tags=[["p", client_pubkey]])
        await self.relay.publish(sign_event_with_key(self.signer_key, template))

    async def approve(self, connection_uri: str, secret: Optional[str] = None) -> None:
        request = parse_connection_uri(connection_uri)
        await self._reply(
            request.client_pubkey,
            {"id": secrets.token_hex(8), "result": secret or request.secret, "error": None},
        )

    async def serve(self) -> None:
        async for event in self.relay.subscribe([Filter(kinds=[NIP46_KIND], p_tags=[self.signer_pubkey])]):
            await self._handle(event)

    async def _handle(self, event: SignedEvent) -> None:
        message = json.loads(nip44.decrypt_from(self.signer_key, event.pubkey, event.content))
        method, params = message["method"], message["params"]
        self.requests.append(method)
        try:
            result, error = self._dispatch(method, params)
        except ValueError as e:
            result, error = "", f"{method} failed: {e}"
        await self._reply(event.pubkey, {"id": message["id"], "result": result, "error": error})

    def _dispatch(self, method: str, params: list) -> tuple[str, Optional[str]]:
        result, error = "", None
        if method == "connect":
            result = "ack" if params[1] == self.bunker_secret else ""
            error = None if result else "invalid secret"
        elif method == "get_public_key":
            result = self.user_pubkey
        elif method == "sign_event":
            template = UnsignedEvent.from_dict(json.loads(params[0]))
            result = sign_event_with_key(self.user_key, template).to_json()
        elif method == "nip44_encrypt":
            result = nip44.encrypt_for(self.user_key, params[0], params[1])
        elif method == "nip44_decrypt":
            result = nip44.decrypt_from(self.user_key, params[0], params[1])
        elif method == "ping":
            result = "pong"
        else:
            error = f"unsupported method {method}"
        return result, error


class FlakyRelay(InMemoryRelay):
    """In-memory relay that rejects publishes of selected kinds."""

    def __init__(self, fail_kinds: Optional[set[int]] = None, fail_with: type[Exception] = RelayError, **kwargs):
        super().__init__(**kwargs)
        self.fail_kinds = set(fail_kinds or ())
        self.fail_with = fail_with

    async def publish(self, event: SignedEvent) -> None:
        if event.kind in self.fail_kinds:
            raise self.fail_with(f"relay refused kind {event.kind}")
        await super().publish(event)


class TrackingRelay(InMemoryRelay):
    """In-memory relay that counts how often it was closed."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.close_calls = 0

    async def close(self) -> None:
        self.close_calls += 1
        await super().close()


async def wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "session")


@pytest.fixture
def extension():
    return FakeExtension()


@pytest.fixture
def relay():
    return InMemoryRelay()
