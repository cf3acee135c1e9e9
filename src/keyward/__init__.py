"""
Keyward — Nostr identity, signing and wallet state.

One identity, one signer backend, chosen at login:
extension, remote signer, local key or read-only.
Every request is signed (NIP-98), every balance change is reconciled (NIP-60).
"""

__version__ = "0.1.0"

from .audit import AuditTrail, EventType
from .auth import AuthenticatedClient, NostrHttpAuth, RequestAuthenticator, verify_auth_header
from .config import KeywardConfig
from .event import SignedEvent, UnsignedEvent, sign_event_with_key, verify_event
from .identity import AuthState, IdentityManager
from .reconciler import ReconcileResult, SpendingReconciler
from .relay import Filter, InMemoryRelay, RelayClient, WebSocketRelayPool
from .remote import RemoteSigner, RemoteSignerHandshake
from .session import Identity, Session, SessionStore
from .signer import (
    ExtensionSigner,
    LocalKeySigner,
    ReadOnlySigner,
    SignerBackend,
    SigningMethod,
)
from .wallet_events import (
    DeleteTombstone,
    PaymentQuote,
    Proof,
    SpendingHistoryEntry,
    TokenSet,
    WalletConfig,
    WalletEventCodec,
    WalletState,
)

__all__ = [
    "AuditTrail", "EventType", "KeywardConfig",
    "SignedEvent", "UnsignedEvent", "sign_event_with_key", "verify_event",
    "SignerBackend", "SigningMethod", "ExtensionSigner", "LocalKeySigner", "ReadOnlySigner",
    "RemoteSigner", "RemoteSignerHandshake",
    "Identity", "Session", "SessionStore", "IdentityManager", "AuthState",
    "RequestAuthenticator", "NostrHttpAuth", "AuthenticatedClient", "verify_auth_header",
    "Filter", "RelayClient", "InMemoryRelay", "WebSocketRelayPool",
    "Proof", "TokenSet", "WalletConfig", "SpendingHistoryEntry", "PaymentQuote",
    "DeleteTombstone", "WalletState", "WalletEventCodec",
    "SpendingReconciler", "ReconcileResult",
]
