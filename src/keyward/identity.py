"""
Identity manager: the one owner of the current session.

Construct one per process and pass it to whatever needs identity or
signing. Lifecycle:

    UNAUTHENTICATED -> AUTHENTICATING -> AUTHENTICATED -> EXPIRED | REVOKED -> UNAUTHENTICATED

``initialize()`` restores a persisted session (at most once), ``login()``
binds a signer and persists a new session, ``logout()`` and
``force_clear()`` end it. Observers registered with ``on_identity_change``
receive the new ``Identity`` (or ``None``) after every transition.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Optional

from .audit import AuditTrail, EventType
from .config import KeywardConfig
from .errors import (
    CapabilityUnavailableError,
    HandshakeError,
    SessionExpiredError,
    SessionNotFoundError,
)
from .keys import normalize_private_key, normalize_public_key, public_key_hex
from .relay import RelayClient, WebSocketRelayPool
from .remote import RemoteSigner, RemoteSignerHandshake
from .session import Identity, Session, SessionStore
from .signer import (
    ExtensionSigner,
    LocalKeySigner,
    ReadOnlySigner,
    SignerBackend,
    SigningCapability,
    SigningMethod,
)

logger = logging.getLogger(__name__)

IdentityObserver = Callable[[Optional[Identity]], Any]


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    REVOKED = "revoked"


class IdentityManager:
    """Owns session state, persistence, restoration and expiry."""

    def __init__(
        self,
        store: SessionStore,
        config: Optional[KeywardConfig] = None,
        extension: Optional[SigningCapability] = None,
        relay_factory: Optional[Callable[[list[str]], RelayClient]] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.store = store
        self.config = config or KeywardConfig()
        self.extension = extension
        self.relay_factory = relay_factory or (lambda urls: WebSocketRelayPool(urls))
        self.audit = audit

        self._state = AuthState.UNAUTHENTICATED
        self._session: Optional[Session] = None
        self._signer: Optional[SignerBackend] = None
        self._observers: list[IdentityObserver] = []
        self._lock = asyncio.Lock()
        self._initialized = False
        self._pending_closes: set[asyncio.Task] = set()
        self._pending_observers: set[asyncio.Future] = set()

    # -- read-only views ---------------------------------------------------

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def identity(self) -> Optional[Identity]:
        return self._session.identity if self._session else None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def signer(self) -> SignerBackend:
        """Active backend; raises if nobody is logged in."""
        if self._signer is None or self._state != AuthState.AUTHENTICATED:
            raise CapabilityUnavailableError("signer", "not logged in")
        return self._signer

    @property
    def is_authenticated(self) -> bool:
        return self._state == AuthState.AUTHENTICATED

    # -- lifecycle -----------------------------------------------------------

    async def initialize(self) -> Optional[Identity]:
        if self._initialized:
            return self.identity
        self._initialized = True
        return await self.restore_session()

    async def teardown(self) -> None:
        """Release the active signer without touching persisted state."""
        async with self._lock:
            await self._close_signer(self._signer)
            self._signer = None
            self._session = None
            self._state = AuthState.UNAUTHENTICATED
            self._initialized = False
        self._observers.clear()

    async def ensure_active(self) -> Session:
        """Return the live session, expiring it first if its TTL has elapsed."""
        if self._session is None or self._state != AuthState.AUTHENTICATED:
            raise SessionNotFoundError("Not logged in")
        if self._session.is_expired():
            await self._expire()
            raise SessionExpiredError("Session expired; log in again")
        return self._session

    async def restore_session(self) -> Optional[Identity]:
        async with self._lock:
            stored = self.store.load()
            if stored is None:
                self._state = AuthState.UNAUTHENTICATED
                return None

            if (
                self._state == AuthState.AUTHENTICATED
                and self._session is not None
                and self._session.to_dict() == stored.to_dict()
            ):
                return self._session.identity

            if stored.is_expired():
                logger.info("Stored session for %s expired; discarding", stored.identity.display_id)
                self.store.clear()
                self._log(EventType.SESSION_EXPIRED, stored.identity, success=False, reason="ttl elapsed")
                self._state = AuthState.UNAUTHENTICATED
                return None

            self._state = AuthState.AUTHENTICATING
            signer = await self._signer_for_stored(stored)
            if signer is None:
                self.store.clear()
                self._log(EventType.SESSION_REJECTED, stored.identity, success=False,
                          reason="signer no longer matches stored identity")
                self._state = AuthState.UNAUTHENTICATED
                return None

            previous = self._signer
            self._install(stored, signer)
            if previous is not signer:
                await self._close_signer(previous)
            self._log(EventType.SESSION_RESTORED, stored.identity)
            logger.info("Session restored for %s", stored.identity.display_id)

        self._notify(stored.identity)
        return stored.identity

    async def _signer_for_stored(self, stored: Session) -> Optional[SignerBackend]:
        method = stored.identity.signing_method
        pubkey = stored.identity.public_key

        if method == SigningMethod.EXTENSION:
            signer = ExtensionSigner(self.extension)
            return signer if await signer.validate(pubkey) else None

        if method == SigningMethod.READ_ONLY:
            return ReadOnlySigner(pubkey)

        secrets = self.store.load_secrets()
        if method == SigningMethod.LOCAL_KEY:
            private_key = secrets.get("private_key")
            if not private_key or public_key_hex(private_key) != pubkey:
                return None
            return LocalKeySigner(private_key)

        if method == SigningMethod.REMOTE_SIGNER:
            if not secrets.get("client_private_key") or not secrets.get("remote_pubkey"):
                return None
            if secrets.get("user_pubkey") not in (None, pubkey):
                return None
            relay = self.relay_factory(list(secrets.get("relays") or self.config.relays))
            return RemoteSigner.from_record(
                relay, {**secrets, "user_pubkey": pubkey}, self.config.request_timeout
            )

        return None

    def start_handshake(
        self,
        mobile: bool = False,
        opener: Optional[Callable[[str], Any]] = None,
        relays: Optional[list[str]] = None,
    ) -> RemoteSignerHandshake:
        """Prepare a remote-signer binding; pass it to ``login(REMOTE_SIGNER, handshake=...)``."""
        relays = relays or list(self.config.relays)
        return RemoteSignerHandshake(
            self.relay_factory(relays),
            relays=relays,
            app_name=self.config.app_name,
            app_url=self.config.app_url,
            timeout=self.config.handshake_timeout,
            mobile=mobile,
            opener=opener,
            relay_factory=self.relay_factory,
            request_timeout=self.config.request_timeout,
        )

    async def login(self, method: SigningMethod | str, **params: Any) -> Identity:
        """
        Bind a signer for ``method`` and persist a fresh session.

        Params by method:
            extension:      none (uses the capability given at construction)
            local_key:      private_key (nsec or hex)
            read_only:      public_key (npub or hex)
            remote_signer:  handshake (from ``start_handshake``), optional
        """
        method = SigningMethod(method)
        async with self._lock:
            previous_state = self._state
            self._state = AuthState.AUTHENTICATING
            signer: Optional[SignerBackend] = None
            try:
                signer, secrets = await self._bind(method, params)
                pubkey = normalize_public_key(await signer.get_public_key())
            except Exception:
                await self._close_signer(signer)
                self._state = (
                    previous_state if previous_state == AuthState.AUTHENTICATED
                    else AuthState.UNAUTHENTICATED
                )
                raise

            if method == SigningMethod.REMOTE_SIGNER:
                secrets["user_pubkey"] = pubkey
            session = Session(
                identity=Identity(public_key=pubkey, signing_method=method),
                ttl_seconds=self.config.session_ttl_seconds,
            )
            self.store.save(session, secrets)
            previous = self._signer
            self._install(session, signer)
            await self._close_signer(previous)
            self._log(EventType.LOGIN, session.identity)
            logger.info("Logged in as %s via %s", session.identity.display_id, method.value)

        self._notify(session.identity)
        return session.identity

    async def _bind(self, method: SigningMethod, params: dict) -> tuple[SignerBackend, dict]:
        if method == SigningMethod.EXTENSION:
            return ExtensionSigner(self.extension), {}

        if method == SigningMethod.LOCAL_KEY:
            private_key = normalize_private_key(str(params.get("private_key") or ""))
            return LocalKeySigner(private_key), {"private_key": private_key}

        if method == SigningMethod.READ_ONLY:
            return ReadOnlySigner(str(params.get("public_key") or "")), {}

        handshake: Optional[RemoteSignerHandshake] = params.get("handshake")
        if handshake is None:
            handshake = self.start_handshake(mobile=bool(params.get("mobile", False)))
        self._log(EventType.HANDSHAKE_STARTED, details={"relays": handshake.request.relays})
        try:
            signer = await handshake.wait()
        except HandshakeError as e:
            self._log(EventType.HANDSHAKE_FAILED, success=False, reason=str(e))
            raise
        record = signer.connection_record()
        self._log(EventType.HANDSHAKE_COMPLETED,
                  details={"remote_pubkey": signer.remote_pubkey, "relays": record["relays"]})
        return signer, record

    async def logout(self) -> None:
        await self._end(AuthState.UNAUTHENTICATED, EventType.LOGOUT, goodbye=True)

    async def force_clear(self, reason: str = "rejected by server") -> None:
        """Server-triggered invalidation: same as logout minus the signer goodbye."""
        await self._end(AuthState.REVOKED, EventType.SESSION_REVOKED, goodbye=False, reason=reason)

    async def _expire(self) -> None:
        await self._end(AuthState.EXPIRED, EventType.SESSION_EXPIRED, goodbye=False, reason="ttl elapsed")

    async def _end(
        self,
        terminal: AuthState,
        event_type: EventType,
        goodbye: bool,
        reason: Optional[str] = None,
    ) -> None:
        async with self._lock:
            identity = self.identity
            signer = self._signer
            self.store.clear()
            self._session = None
            self._signer = None
            if identity is not None:
                self._log(event_type, identity, success=terminal == AuthState.UNAUTHENTICATED,
                          reason=reason)
                logger.info("Session for %s ended (%s)", identity.display_id, terminal.value)
            if goodbye:
                await self._close_signer(signer)
            elif signer is not None:
                task = asyncio.get_running_loop().create_task(self._close_signer(signer))
                self._pending_closes.add(task)
                task.add_done_callback(self._pending_closes.discard)
            self._state = AuthState.UNAUTHENTICATED
        self._notify(None)

    # -- observers -----------------------------------------------------------

    def on_identity_change(self, callback: IdentityObserver) -> Callable[[], None]:
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def _notify(self, identity: Optional[Identity]) -> None:
        for callback in list(self._observers):
            try:
                result = callback(identity)
            except Exception as e:
                logger.warning("Identity observer %r failed: %s", callback, e)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending_observers.add(task)
                task.add_done_callback(self._observer_done)

    def _observer_done(self, task: asyncio.Future) -> None:
        self._pending_observers.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Identity observer failed: %s", error)

    # -- helpers ---------------------------------------------------------------

    def _install(self, session: Session, signer: SignerBackend) -> None:
        self._session = session
        self._signer = signer
        self._state = AuthState.AUTHENTICATED

    async def _close_signer(self, signer: Optional[SignerBackend]) -> None:
        if signer is None:
            return
        try:
            await signer.close()
        except Exception as e:
            logger.warning("Error closing %s signer: %s", signer.method.value, e)

    def _log(
        self,
        event_type: EventType,
        identity: Optional[Identity] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            identity=identity.display_id if identity else None,
            signing_method=identity.signing_method.value if identity else None,
            success=success,
            reason=reason,
            details=details,
        )
