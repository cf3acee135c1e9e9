"""
Per-request HTTP authentication (NIP-98).

Every authenticated request carries ``Authorization: Nostr <base64(event)>``
where the event is a fresh kind-27235 event tagged with the exact URL and
HTTP method and signed by the active signer. A 401 from the server while
authentication is enabled clears the session and sends the user back to
login, once, no matter how many requests failed at the same time.
"""

from __future__ import annotations

import base64
import inspect
import json
import logging
import time
from typing import Any, AsyncGenerator, Callable, Generator, Optional, Sequence

import httpx

from .audit import EventType
from .errors import ApiError, NetworkError, SessionExpiredError, VerificationFailedError
from .event import SignedEvent, UnsignedEvent, require_valid_event
from .identity import IdentityManager
from .keys import normalize_public_key
from .session import Session

logger = logging.getLogger(__name__)


HTTP_AUTH_KIND = 27235
AUTH_SCHEME = "Nostr"
MAX_EVENT_AGE_SECONDS = 300


def encode_auth_header(event: SignedEvent) -> str:
    payload = base64.b64encode(event.to_json().encode("utf-8")).decode("ascii")
    return f"{AUTH_SCHEME} {payload}"


def decode_auth_header(header: str) -> SignedEvent:
    scheme, _, payload = header.strip().partition(" ")
    if scheme != AUTH_SCHEME or not payload:
        raise ValueError("Authorization header is not a Nostr event")
    try:
        raw = json.loads(base64.b64decode(payload.strip(), validate=True))
        return SignedEvent.from_dict(raw)
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Malformed Nostr authorization payload: {e}") from e


def verify_auth_header(
    header: str,
    url: str,
    method: str,
    max_age: int = MAX_EVENT_AGE_SECONDS,
    allowed_pubkeys: Optional[Sequence[str]] = None,
    now: Optional[float] = None,
) -> SignedEvent:
    """
    Server-side check of a NIP-98 header.

    Raises VerificationFailedError on: wrong kind, stale event, bad
    signature, pubkey outside ``allowed_pubkeys`` (npub or hex), method
    mismatch, missing or mismatched ``u`` tag.
    """
    try:
        event = decode_auth_header(header)
    except ValueError as e:
        raise VerificationFailedError(str(e)) from e

    if event.kind != HTTP_AUTH_KIND:
        raise VerificationFailedError(f"Expected kind {HTTP_AUTH_KIND}, got {event.kind}")

    now = time.time() if now is None else now
    if abs(now - event.created_at) > max_age:
        raise VerificationFailedError("Authorization event is too old")

    require_valid_event(event)

    if allowed_pubkeys:
        allowed = {normalize_public_key(p) for p in allowed_pubkeys}
        if event.pubkey not in allowed:
            raise VerificationFailedError("Public key is not allowed")

    tagged_method = event.first_tag("method")
    if tagged_method is None or tagged_method.upper() != method.upper():
        raise VerificationFailedError(f"Method tag mismatch: expected {method}, got {tagged_method}")

    tagged_url = event.first_tag("u")
    if tagged_url is None:
        raise VerificationFailedError("Missing u tag")
    if tagged_url.rstrip("/") != url.rstrip("/"):
        raise VerificationFailedError("URL tag does not match request")

    return event


class RequestAuthenticator:
    """Builds auth envelopes and runs the deduplicated 401 recovery."""

    def __init__(
        self,
        manager: IdentityManager,
        enabled: bool = True,
        on_redirect: Optional[Callable[[str], Any]] = None,
        login_url: str = "/login",
    ):
        self.manager = manager
        self.enabled = enabled
        self.on_redirect = on_redirect
        self.login_url = login_url
        self.redirect_count = 0
        self._redirecting = False

    @staticmethod
    def build_auth_event(url: str, method: str, content_type: str = "application/json") -> UnsignedEvent:
        return UnsignedEvent(
            kind=HTTP_AUTH_KIND,
            content=content_type,
            tags=[["u", url], ["method", method.upper()]],
        )

    async def auth_header(
        self,
        url: str,
        method: str = "GET",
        content_type: str = "application/json",
    ) -> Optional[str]:
        """Header value for one request, or None when authentication is off."""
        if not self.enabled:
            return None
        try:
            await self.manager.ensure_active()
        except SessionExpiredError:
            await self.handle_unauthorized()
            raise
        event = await self.manager.signer.sign_event(self.build_auth_event(url, method, content_type))
        return encode_auth_header(event)

    async def handle_unauthorized(self, failed_session: Optional[Session] = None) -> bool:
        """
        Clear the session and redirect to login.

        Returns False without doing anything when a recovery is already
        running, or when ``failed_session`` has already been replaced.
        """
        if not self.enabled or self._redirecting:
            return False
        if failed_session is not None and failed_session is not self.manager.session:
            return False

        self._redirecting = True
        try:
            logger.info("Authentication rejected; clearing session and redirecting to %s", self.login_url)
            if self.manager.audit is not None:
                identity = self.manager.identity
                self.manager.audit.log(
                    EventType.AUTH_REJECTED,
                    identity=identity.display_id if identity else None,
                    success=False,
                    reason="401 from server",
                )
            await self.manager.force_clear()
            if self.on_redirect is not None:
                result = self.on_redirect(self.login_url)
                if inspect.isawaitable(result):
                    await result
            self.redirect_count += 1
            return True
        finally:
            self._redirecting = False


class NostrHttpAuth(httpx.Auth):
    """httpx auth hook: NIP-98 header per request, Bearer api key when auth is off."""

    def __init__(self, authenticator: RequestAuthenticator, api_key: Optional[str] = None):
        self.authenticator = authenticator
        self.api_key = api_key

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("NostrHttpAuth needs httpx.AsyncClient; signers are asynchronous")

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        session = self.authenticator.manager.session
        header = await self.authenticator.auth_header(
            str(request.url),
            request.method,
            request.headers.get("content-type", "application/json"),
        )
        if header is not None:
            request.headers["Authorization"] = header
        elif self.api_key and not self.authenticator.enabled:
            request.headers["Authorization"] = f"Bearer {self.api_key}"

        response = yield request

        if response.status_code == 401:
            await self.authenticator.handle_unauthorized(session)


class AuthenticatedClient:
    """Async JSON client for the backend API."""

    def __init__(
        self,
        authenticator: RequestAuthenticator,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            auth=NostrHttpAuth(authenticator, api_key),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise NetworkError(f"Unable to reach {self.base_url}: {e}") from e
        if response.status_code >= 400:
            raise ApiError(
                f"{method} {path} failed with {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        return response.json()

    async def get(self, path: str, params: Optional[dict] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, data: Optional[dict] = None) -> Any:
        return await self.request("POST", path, json=data or {})

    async def put(self, path: str, data: Optional[dict] = None) -> Any:
        return await self.request("PUT", path, json=data or {})

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def close(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "AuthenticatedClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
