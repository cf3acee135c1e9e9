"""
Remote signer (NIP-46) binding and request relay.

Neither side exchanges private keys. The client generates an ephemeral
keypair used only for this transport, publishes a ``nostrconnect://``
request carrying that key, its relays, a random secret and the wanted
permissions, and waits for the companion signer to answer over a relay
with a kind-24133 message that proves it saw the secret.

The wait has three inputs:

    relay       authenticated kind-24133 responses (the only proof of success)
    nudge       advisory "user probably came back" signal; triggers a re-check
    bunker      a ``bunker://`` string pasted by the user after out-of-band
                approval; completed by a ``connect`` round-trip over the relay

Whichever succeeds first wins and the others are cancelled. The timeout
always fires eventually and nothing is bound on failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence
from urllib.parse import parse_qs, quote, urlparse

from . import nip44
from .errors import (
    DecryptionFailedError,
    HandshakeError,
    HandshakeTimeoutError,
    PermissionDeniedError,
    RemoteSignerError,
    VerificationFailedError,
)
from .event import SignedEvent, UnsignedEvent, require_valid_event, sign_event_with_key, verify_event
from .keys import generate_private_key, normalize_public_key, public_key_hex
from .relay import Filter, RelayClient
from .signer import SignerBackend, SigningMethod

logger = logging.getLogger(__name__)


NIP46_KIND = 24133
DEFAULT_PERMS = [
    "sign_event:27235",
    "sign_event:7375",
    "sign_event:7376",
    "sign_event:7374",
    "sign_event:17375",
    "sign_event:5",
    "nip44_encrypt",
    "nip44_decrypt",
    "get_public_key",
]
MOBILE_SIGNER_PREFIX = "nostrsigner:"


@dataclass
class ConnectionRequest:
    """Client-initiated connection offer, rendered as ``nostrconnect://``."""

    client_pubkey: str
    relays: list[str]
    secret: str
    perms: list[str] = field(default_factory=lambda: list(DEFAULT_PERMS))
    name: str = "keyward"
    url: str = ""

    def to_uri(self) -> str:
        parts = [f"relay={quote(r, safe='')}" for r in self.relays]
        parts.append(f"secret={self.secret}")
        parts.append(f"perms={quote(','.join(self.perms), safe='')}")
        parts.append(f"name={quote(self.name, safe='')}")
        if self.url:
            parts.append(f"url={quote(self.url, safe='')}")
        return f"nostrconnect://{self.client_pubkey}?" + "&".join(parts)

    def to_mobile_uri(self) -> str:
        """Hand-off form for a companion signer app on the same device."""
        return MOBILE_SIGNER_PREFIX + self.to_uri()


@dataclass
class BunkerPointer:
    """Signer-initiated connection string: ``bunker://<pubkey>?relay=..&secret=..``."""

    remote_pubkey: str
    relays: list[str]
    secret: Optional[str] = None

    def to_uri(self) -> str:
        parts = [f"relay={quote(r, safe='')}" for r in self.relays]
        if self.secret:
            parts.append(f"secret={self.secret}")
        return f"bunker://{self.remote_pubkey}?" + "&".join(parts)


def parse_connection_uri(uri: str) -> ConnectionRequest:
    parsed = urlparse(uri.strip())
    if parsed.scheme != "nostrconnect":
        raise ValueError("Not a nostrconnect:// URI")
    query = parse_qs(parsed.query)
    secret = (query.get("secret") or [""])[0]
    if not secret:
        raise ValueError("nostrconnect URI is missing its secret")
    perms_raw = (query.get("perms") or [""])[0]
    return ConnectionRequest(
        client_pubkey=normalize_public_key(parsed.netloc),
        relays=query.get("relay", []),
        secret=secret,
        perms=[p for p in perms_raw.split(",") if p],
        name=(query.get("name") or [""])[0],
        url=(query.get("url") or [""])[0],
    )


def parse_bunker_uri(uri: str) -> BunkerPointer:
    parsed = urlparse(uri.strip())
    if parsed.scheme != "bunker":
        raise ValueError("Not a bunker:// URI")
    query = parse_qs(parsed.query)
    relays = query.get("relay", [])
    if not relays:
        raise ValueError("bunker URI must name at least one relay")
    return BunkerPointer(
        remote_pubkey=normalize_public_key(parsed.netloc),
        relays=relays,
        secret=(query.get("secret") or [None])[0],
    )


def _open_message(client_private_key: str, event: SignedEvent) -> Optional[dict]:
    """Verify and decrypt a kind-24133 message addressed to the client key."""
    if event.kind != NIP46_KIND:
        return None
    valid, reason = verify_event(event)
    if not valid:
        logger.debug("Ignoring unverifiable signer message %s: %s", event.id[:12], reason)
        return None
    try:
        plaintext = nip44.decrypt_from(client_private_key, event.pubkey, event.content)
        message = json.loads(plaintext)
    except ValueError as e:
        logger.debug("Ignoring undecryptable signer message %s: %s", event.id[:12], e)
        return None
    return message if isinstance(message, dict) else None


def _seal_message(client_private_key: str, remote_pubkey: str, payload: dict) -> SignedEvent:
    content = nip44.encrypt_for(client_private_key, remote_pubkey, json.dumps(payload))
    template = UnsignedEvent(kind=NIP46_KIND, content=content, tags=[["p", remote_pubkey]])
    return sign_event_with_key(client_private_key, template)


class RemoteSignerChannel:
    """Request/response pipe between the client key and one remote signer."""

    def __init__(
        self,
        relay: RelayClient,
        client_private_key: str,
        remote_pubkey: str,
        request_timeout: float = 30.0,
        relay_urls: Optional[Sequence[str]] = None,
    ):
        self.relay = relay
        self.relay_urls = list(relay_urls or [])
        self.client_private_key = client_private_key
        self.client_pubkey = public_key_hex(client_private_key)
        self.remote_pubkey = remote_pubkey
        self.request_timeout = request_timeout
        self._pending: dict[str, asyncio.Future] = {}
        self._reader: Optional[asyncio.Task] = None
        self._started = asyncio.Event()

    async def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_responses())
            await self._started.wait()

    async def _read_responses(self) -> None:
        filters = [
            Filter(
                kinds=[NIP46_KIND],
                authors=[self.remote_pubkey],
                p_tags=[self.client_pubkey],
                since=int(time.time()) - 10,
            )
        ]
        stream = self.relay.subscribe(filters)
        self._started.set()
        async for event in stream:
            message = _open_message(self.client_private_key, event)
            if message is None:
                continue
            future = self._pending.get(str(message.get("id")))
            if future is None or future.done():
                continue
            if message.get("result") == "auth_url":
                logger.info("Remote signer requests approval at %s", message.get("error"))
                continue
            future.set_result(message)

    async def request(self, method: str, params: Sequence[str], timeout: Optional[float] = None) -> str:
        await self.start()
        request_id = secrets.token_hex(8)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            event = _seal_message(
                self.client_private_key,
                self.remote_pubkey,
                {"id": request_id, "method": method, "params": list(params)},
            )
            await self.relay.publish(event)
            try:
                response = await asyncio.wait_for(future, timeout or self.request_timeout)
            except asyncio.TimeoutError as e:
                raise RemoteSignerError(f"Remote signer did not answer {method} in time") from e
        finally:
            self._pending.pop(request_id, None)

        if response.get("error"):
            raise PermissionDeniedError(method, str(response["error"]))
        return str(response.get("result", ""))

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        for future in self._pending.values():
            future.cancel()
        self._pending.clear()


class RemoteSigner(SignerBackend):
    """Signer whose four operations are relayed to a bound remote party."""

    method = SigningMethod.REMOTE_SIGNER

    def __init__(self, channel: RemoteSignerChannel, user_pubkey: Optional[str] = None):
        self._channel = channel
        self._user_pubkey = user_pubkey

    @property
    def remote_pubkey(self) -> str:
        return self._channel.remote_pubkey

    def connection_record(self) -> dict:
        """Material needed to re-open this binding after a restart."""
        return {
            "client_private_key": self._channel.client_private_key,
            "remote_pubkey": self._channel.remote_pubkey,
            "user_pubkey": self._user_pubkey,
            "relays": list(self._channel.relay_urls),
        }

    @classmethod
    def from_record(cls, relay: RelayClient, record: dict, request_timeout: float = 30.0) -> "RemoteSigner":
        channel = RemoteSignerChannel(
            relay,
            client_private_key=str(record["client_private_key"]),
            remote_pubkey=str(record["remote_pubkey"]),
            request_timeout=request_timeout,
            relay_urls=record.get("relays"),
        )
        return cls(channel, user_pubkey=record.get("user_pubkey"))

    async def get_public_key(self) -> str:
        if self._user_pubkey is None:
            result = await self._channel.request("get_public_key", [])
            self._user_pubkey = normalize_public_key(result)
        return self._user_pubkey

    async def sign_event(self, event: UnsignedEvent) -> SignedEvent:
        expected = await self.get_public_key()
        result = await self._channel.request("sign_event", [json.dumps(event.to_dict())])
        try:
            signed = SignedEvent.from_dict(json.loads(result))
        except (KeyError, TypeError, ValueError) as e:
            raise VerificationFailedError(f"Remote signer returned a malformed event: {e}") from e
        require_valid_event(signed)
        if signed.pubkey != expected:
            raise VerificationFailedError("Remote signer used an unexpected key")
        return signed

    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return await self._channel.request("nip44_encrypt", [peer_pubkey, plaintext])

    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        # error replies carry no reason code; treat them as this payload failing
        try:
            return await self._channel.request("nip44_decrypt", [peer_pubkey, ciphertext])
        except PermissionDeniedError as e:
            raise DecryptionFailedError(str(e)) from e

    async def ping(self) -> bool:
        return await self._channel.request("ping", []) == "pong"

    async def close(self) -> None:
        await self._channel.close()


class RemoteSignerHandshake:
    """
    One attempt at binding a remote signer.

    Usage:
        handshake = RemoteSignerHandshake(relay, relays=["wss://relay.nsec.app"])
        show_qr(handshake.uri)                  # or hand off via handshake.mobile_uri
        signer = await handshake.wait()         # HandshakeTimeoutError on expiry

    From another task: ``handshake.nudge()`` when the app regains focus, or
    ``handshake.supply_bunker_uri(text)`` when the user pastes a bunker string.
    """

    def __init__(
        self,
        relay: RelayClient,
        relays: Sequence[str],
        app_name: str = "keyward",
        app_url: str = "",
        perms: Optional[Sequence[str]] = None,
        timeout: float = 45.0,
        mobile: bool = False,
        opener: Optional[Callable[[str], Any]] = None,
        relay_factory: Optional[Callable[[list[str]], RelayClient]] = None,
        request_timeout: float = 30.0,
    ):
        self.relay = relay
        self.timeout = timeout
        self.mobile = mobile
        self.request_timeout = request_timeout
        self._opener = opener
        self._relay_factory = relay_factory
        self._client_private_key = generate_private_key()
        self.request = ConnectionRequest(
            client_pubkey=public_key_hex(self._client_private_key),
            relays=list(relays),
            secret=secrets.token_hex(16),
            perms=list(perms or DEFAULT_PERMS),
            name=app_name,
            url=app_url,
        )
        self._nudged = asyncio.Event()
        self._bunker_inputs: asyncio.Queue = asyncio.Queue()

    @property
    def uri(self) -> str:
        return self.request.to_uri()

    @property
    def mobile_uri(self) -> str:
        return self.request.to_mobile_uri()

    def nudge(self) -> None:
        """Advisory signal that the user may have approved; only prompts a re-check."""
        self._nudged.set()

    def supply_bunker_uri(self, uri: str) -> None:
        self._bunker_inputs.put_nowait(uri)

    def _response_filter(self) -> Filter:
        return Filter(kinds=[NIP46_KIND], p_tags=[self.request.client_pubkey])

    def _proves_secret(self, event: SignedEvent) -> bool:
        message = _open_message(self._client_private_key, event)
        return message is not None and message.get("result") == self.request.secret

    async def _await_relay_response(self) -> tuple[str, RelayClient, list[str]]:
        async for event in self.relay.subscribe([self._response_filter()]):
            if self._proves_secret(event):
                return event.pubkey, self.relay, list(self.request.relays)
        raise HandshakeError("Relay subscription ended before the signer answered")

    async def _check_on_nudge(self) -> tuple[str, RelayClient, list[str]]:
        while True:
            await self._nudged.wait()
            self._nudged.clear()
            logger.debug("Handshake nudged; checking relay for a signer response")
            for event in await self.relay.fetch([self._response_filter()]):
                if self._proves_secret(event):
                    return event.pubkey, self.relay, list(self.request.relays)

    async def _await_bunker(self) -> tuple[str, RelayClient, list[str]]:
        while True:
            raw = await self._bunker_inputs.get()
            try:
                pointer = parse_bunker_uri(raw)
            except ValueError as e:
                logger.warning("Ignoring invalid bunker string: %s", e)
                continue
            relay, urls = self.relay, list(self.request.relays)
            if self._relay_factory is not None and set(pointer.relays) != set(urls):
                relay, urls = self._relay_factory(pointer.relays), list(pointer.relays)
            channel = RemoteSignerChannel(
                relay, self._client_private_key, pointer.remote_pubkey, self.request_timeout, urls
            )
            bound = False
            try:
                result = await channel.request(
                    "connect",
                    [pointer.remote_pubkey, pointer.secret or "", ",".join(self.request.perms)],
                )
                bound = result == "ack" or bool(pointer.secret and result == pointer.secret)
                if not bound:
                    logger.warning("Bunker connect returned unexpected result")
            except (RemoteSignerError, PermissionDeniedError) as e:
                logger.warning("Bunker connect failed: %s", e)
            finally:
                await channel.close()
                if not bound and relay is not self.relay:
                    await relay.close()
            if bound:
                return pointer.remote_pubkey, relay, urls

    def _present(self) -> None:
        target = self.mobile_uri if self.mobile else self.uri
        if self._opener is not None:
            self._opener(target)

    async def wait(self) -> RemoteSigner:
        """Block until the signer binds or the timeout elapses."""
        self._present()
        tasks = {
            asyncio.create_task(self._await_relay_response()),
            asyncio.create_task(self._check_on_nudge()),
            asyncio.create_task(self._await_bunker()),
        }
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        winner: Optional[tuple[str, RelayClient, list[str]]] = None
        try:
            while tasks and winner is None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, tasks = await asyncio.wait(
                    tasks, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task.cancelled():
                        continue
                    error = task.exception()
                    if error is not None:
                        logger.warning("Handshake listener failed: %s", error)
                        continue
                    if winner is None:
                        winner = task.result()
                        continue
                    extra = task.result()[1]
                    if extra is not self.relay and extra is not winner[1]:
                        await extra.close()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if winner is None or winner[1] is not self.relay:
                await self.relay.close()

        if winner is None:
            raise HandshakeTimeoutError(self.timeout)

        remote_pubkey, relay, urls = winner
        logger.info("Remote signer bound: %s via %s", remote_pubkey[:12], ", ".join(urls))
        channel = RemoteSignerChannel(
            relay, self._client_private_key, remote_pubkey, self.request_timeout, urls
        )
        return RemoteSigner(channel)
