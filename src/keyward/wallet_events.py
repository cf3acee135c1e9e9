"""
NIP-60 wallet event codec.

Wallet state lives on relays as events authored by the user and encrypted
to the user's own key through the active signer:

    17375  wallet config   [["privkey", hex], ["mint", url], ...]
    7375   token set       {"mint", "proofs", "del"}
    7376   history         [["direction", ..], ["amount", ..], ["e", id, "", marker], ...]
    7374   payment quote   quote id, with public expiration and mint tags
    5      delete          ["k", "7375"] plus one ["e", id] per superseded token set

Reads skip anything that fails to decrypt or parse.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .errors import (
    DecryptionFailedError,
    NetworkError,
    SignerError,
    TokenSetPublishError,
)
from .event import SignedEvent, UnsignedEvent
from .relay import Filter, RelayClient
from .signer import SignerBackend

logger = logging.getLogger(__name__)


WALLET_CONFIG_KIND = 17375
TOKEN_SET_KIND = 7375
SPENDING_HISTORY_KIND = 7376
PAYMENT_QUOTE_KIND = 7374
DELETE_KIND = 5
DEFAULT_QUOTE_EXPIRY_SECONDS = 14 * 24 * 3600

WALLET_KINDS = [
    WALLET_CONFIG_KIND,
    TOKEN_SET_KIND,
    SPENDING_HISTORY_KIND,
    PAYMENT_QUOTE_KIND,
    DELETE_KIND,
]


@dataclass(frozen=True)
class Proof:
    """Opaque mint-issued value token. ``C`` is the mint's commitment."""

    id: str
    amount: int
    secret: str
    C: str

    def __post_init__(self):
        if not isinstance(self.amount, int) or isinstance(self.amount, bool) or self.amount <= 0:
            raise ValueError(f"Proof amount must be a positive integer, got {self.amount!r}")

    @property
    def key(self) -> str:
        return f"{self.secret}:{self.C}"

    def to_dict(self) -> dict:
        return {"id": self.id, "amount": self.amount, "secret": self.secret, "C": self.C}

    @classmethod
    def from_dict(cls, d: dict) -> "Proof":
        return cls(id=str(d["id"]), amount=int(d["amount"]), secret=str(d["secret"]), C=str(d["C"]))


def total(proofs: list[Proof]) -> int:
    return sum(p.amount for p in proofs)


@dataclass
class TokenSet:
    mint_url: str
    proofs: list[Proof]
    supersedes: list[str] = field(default_factory=list)
    event_id: Optional[str] = None
    created_at: Optional[int] = None

    @property
    def amount(self) -> int:
        return total(self.proofs)

    def content(self) -> dict:
        return {
            "mint": self.mint_url,
            "proofs": [p.to_dict() for p in self.proofs],
            "del": list(self.supersedes),
        }


@dataclass
class WalletConfig:
    privkey: str
    mints: list[str] = field(default_factory=list)
    event_id: Optional[str] = None

    def content(self) -> list[list[str]]:
        return [["privkey", self.privkey]] + [["mint", m] for m in self.mints]


@dataclass
class SpendingHistoryEntry:
    direction: str
    amount: int
    created: list[str] = field(default_factory=list)
    destroyed: list[str] = field(default_factory=list)
    redeemed: list[str] = field(default_factory=list)
    event_id: Optional[str] = None
    created_at: Optional[int] = None

    def __post_init__(self):
        if self.direction not in ("in", "out"):
            raise ValueError(f"direction must be 'in' or 'out', got {self.direction!r}")
        if self.amount <= 0:
            raise ValueError("History amount must be positive")

    def content(self) -> list[list[str]]:
        rows = [["direction", self.direction], ["amount", str(self.amount)]]
        rows += [["e", eid, "", "created"] for eid in self.created]
        rows += [["e", eid, "", "destroyed"] for eid in self.destroyed]
        return rows


@dataclass
class PaymentQuote:
    quote_id: str
    mint_url: str
    expiration: int
    event_id: Optional[str] = None

    @property
    def is_expired(self) -> bool:
        return time.time() > self.expiration


@dataclass
class DeleteTombstone:
    target_ids: list[str]
    target_kind: int = TOKEN_SET_KIND

    def tags(self) -> list[list[str]]:
        return [["k", str(self.target_kind)]] + [["e", eid] for eid in self.target_ids]


@dataclass
class WalletState:
    token_sets: list[TokenSet] = field(default_factory=list)
    config: Optional[WalletConfig] = None
    quotes: list[PaymentQuote] = field(default_factory=list)
    history: list[SpendingHistoryEntry] = field(default_factory=list)
    proof_to_event_id: dict[str, str] = field(default_factory=dict)

    @property
    def proofs(self) -> list[Proof]:
        return [p for ts in self.token_sets for p in ts.proofs]

    @property
    def balance(self) -> int:
        return total(self.proofs)

    @property
    def balance_by_mint(self) -> dict[str, int]:
        by_mint: dict[str, int] = {}
        for ts in self.token_sets:
            by_mint[ts.mint_url] = by_mint.get(ts.mint_url, 0) + ts.amount
        return by_mint

    def token_sets_for(self, mint_url: str) -> list[TokenSet]:
        return [ts for ts in self.token_sets if ts.mint_url == mint_url]

    def to_dict(self) -> dict:
        return {
            "balance": self.balance,
            "balance_by_mint": self.balance_by_mint,
            "token_sets": [
                {"event_id": ts.event_id, "mint": ts.mint_url, "amount": ts.amount, "proofs": len(ts.proofs)}
                for ts in self.token_sets
            ],
            "mints": self.config.mints if self.config else [],
            "pending_quotes": [q.quote_id for q in self.quotes if not q.is_expired],
            "history_entries": len(self.history),
        }


class WalletEventCodec:
    """Builds, publishes and reads back wallet events through one signer."""

    def __init__(self, signer: SignerBackend, relay: RelayClient):
        self.signer = signer
        self.relay = relay

    async def _seal(self, payload: Any) -> str:
        owner = await self.signer.get_public_key()
        return await self.signer.encrypt(owner, json.dumps(payload))

    async def _open(self, event: SignedEvent) -> Any:
        return json.loads(await self.signer.decrypt(event.pubkey, event.content))

    async def publish(self, template: UnsignedEvent) -> SignedEvent:
        signed = await self.signer.sign_event(template)
        await self.relay.publish(signed)
        logger.debug("Published kind %d event %s", signed.kind, signed.id[:12])
        return signed

    # -- builders ----------------------------------------------------------

    async def build_wallet_config(self, config: WalletConfig) -> UnsignedEvent:
        return UnsignedEvent(
            kind=WALLET_CONFIG_KIND,
            content=await self._seal(config.content()),
            tags=[["mint", m] for m in config.mints],
        )

    async def build_token_set(self, token_set: TokenSet) -> UnsignedEvent:
        return UnsignedEvent(kind=TOKEN_SET_KIND, content=await self._seal(token_set.content()))

    async def build_history(self, entry: SpendingHistoryEntry) -> UnsignedEvent:
        return UnsignedEvent(
            kind=SPENDING_HISTORY_KIND,
            content=await self._seal(entry.content()),
            tags=[["e", eid, "", "redeemed"] for eid in entry.redeemed],
        )

    async def build_quote(
        self,
        quote_id: str,
        mint_url: str,
        expiry_seconds: int = DEFAULT_QUOTE_EXPIRY_SECONDS,
    ) -> UnsignedEvent:
        expiration = int(time.time()) + expiry_seconds
        return UnsignedEvent(
            kind=PAYMENT_QUOTE_KIND,
            content=await self._seal(quote_id),
            tags=[["expiration", str(expiration)], ["mint", mint_url]],
        )

    @staticmethod
    def build_tombstone(tombstone: DeleteTombstone) -> UnsignedEvent:
        return UnsignedEvent(kind=DELETE_KIND, content="", tags=tombstone.tags())

    # -- publishers --------------------------------------------------------

    async def publish_wallet_config(self, config: WalletConfig) -> SignedEvent:
        return await self.publish(await self.build_wallet_config(config))

    async def publish_token_set(self, token_set: TokenSet) -> SignedEvent:
        try:
            signed = await self.publish(await self.build_token_set(token_set))
        except (NetworkError, SignerError) as e:
            raise TokenSetPublishError(f"Token set for {token_set.mint_url} not published: {e}") from e
        token_set.event_id = signed.id
        token_set.created_at = signed.created_at
        return signed

    async def publish_history(self, entry: SpendingHistoryEntry) -> SignedEvent:
        signed = await self.publish(await self.build_history(entry))
        entry.event_id = signed.id
        return signed

    async def publish_quote(
        self,
        quote_id: str,
        mint_url: str,
        expiry_seconds: int = DEFAULT_QUOTE_EXPIRY_SECONDS,
    ) -> SignedEvent:
        return await self.publish(await self.build_quote(quote_id, mint_url, expiry_seconds))

    async def publish_tombstone(self, target_ids: list[str]) -> SignedEvent:
        return await self.publish(self.build_tombstone(DeleteTombstone(target_ids=list(target_ids))))

    # -- decoders ----------------------------------------------------------

    async def decode_token_set(self, event: SignedEvent) -> TokenSet:
        data = await self._open(event)
        mint_url = data.get("mint")
        if not mint_url:
            raise ValueError("Token set has no mint")
        return TokenSet(
            mint_url=str(mint_url),
            proofs=[Proof.from_dict(p) for p in data.get("proofs", [])],
            supersedes=[str(x) for x in data.get("del", [])],
            event_id=event.id,
            created_at=event.created_at,
        )

    async def decode_wallet_config(self, event: SignedEvent) -> WalletConfig:
        rows = await self._open(event)
        privkey = next((r[1] for r in rows if r[0] == "privkey"), None)
        if not privkey:
            raise ValueError("Wallet config has no privkey")
        mints = list(dict.fromkeys(r[1] for r in rows if r[0] == "mint"))
        return WalletConfig(privkey=privkey, mints=mints, event_id=event.id)

    async def decode_history(self, event: SignedEvent) -> SpendingHistoryEntry:
        rows = await self._open(event)
        fields = {r[0]: r[1] for r in rows if r[0] in ("direction", "amount")}
        markers: dict[str, list[str]] = {"created": [], "destroyed": []}
        for row in rows:
            if row[0] == "e" and len(row) >= 4 and row[3] in markers:
                markers[row[3]].append(row[1])
        redeemed = [t[1] for t in event.tags if len(t) >= 4 and t[0] == "e" and t[3] == "redeemed"]
        return SpendingHistoryEntry(
            direction=fields["direction"],
            amount=int(fields["amount"]),
            created=markers["created"],
            destroyed=markers["destroyed"],
            redeemed=redeemed,
            event_id=event.id,
            created_at=event.created_at,
        )

    async def decode_quote(self, event: SignedEvent) -> PaymentQuote:
        quote_id = await self._open_text(event)
        expiration = event.first_tag("expiration")
        mint_url = event.first_tag("mint")
        if expiration is None or mint_url is None:
            raise ValueError("Quote event is missing expiration or mint")
        return PaymentQuote(quote_id=quote_id, mint_url=mint_url, expiration=int(expiration), event_id=event.id)

    async def _open_text(self, event: SignedEvent) -> str:
        plaintext = await self.signer.decrypt(event.pubkey, event.content)
        try:
            value = json.loads(plaintext)
        except ValueError:
            return plaintext
        return value if isinstance(value, str) else plaintext

    async def _decode_all(
        self,
        events: list[SignedEvent],
        decoder: Callable[[SignedEvent], Any],
    ) -> list[Any]:
        decoded = []
        for event in events:
            try:
                decoded.append(await decoder(event))
            except (DecryptionFailedError, KeyError, IndexError, TypeError, ValueError) as e:
                logger.debug("Skipping kind %d event %s: %s", event.kind, event.id[:12], e)
        return decoded

    # -- fetchers ----------------------------------------------------------

    async def fetch_events(self, kinds: list[int], pubkey: Optional[str] = None) -> list[SignedEvent]:
        author = pubkey or await self.signer.get_public_key()
        return await self.relay.fetch([Filter(authors=[author], kinds=kinds)])

    async def fetch_token_sets(self, pubkey: Optional[str] = None) -> list[TokenSet]:
        return await self._decode_all(await self.fetch_events([TOKEN_SET_KIND], pubkey), self.decode_token_set)

    async def fetch_wallet_config(self, pubkey: Optional[str] = None) -> Optional[WalletConfig]:
        events = await self.fetch_events([WALLET_CONFIG_KIND], pubkey)
        events.sort(key=lambda e: e.created_at, reverse=True)
        configs = await self._decode_all(events, self.decode_wallet_config)
        return configs[0] if configs else None

    async def fetch_history(self, pubkey: Optional[str] = None) -> list[SpendingHistoryEntry]:
        entries = await self._decode_all(
            await self.fetch_events([SPENDING_HISTORY_KIND], pubkey), self.decode_history
        )
        return sorted(entries, key=lambda e: e.created_at or 0, reverse=True)

    async def fetch_quotes(self, pubkey: Optional[str] = None) -> list[PaymentQuote]:
        return await self._decode_all(await self.fetch_events([PAYMENT_QUOTE_KIND], pubkey), self.decode_quote)

    async def fetch_wallet_state(self, pubkey: Optional[str] = None) -> WalletState:
        """
        Rebuild the live wallet from relay history.

        A token set is dead if a tombstone names it or any other set lists
        it in ``del``; the ``del`` chain alone is enough when relays ignore
        deletions. Live sets are walked newest first and a proof already
        counted in a newer set is not counted twice.
        """
        events = await self.fetch_events(WALLET_KINDS, pubkey)
        by_kind: dict[int, list[SignedEvent]] = {}
        for event in events:
            by_kind.setdefault(event.kind, []).append(event)

        dead: set[str] = set()
        for tombstone in by_kind.get(DELETE_KIND, []):
            kinds = tombstone.tag_values("k")
            if not kinds or str(TOKEN_SET_KIND) in kinds:
                dead.update(tombstone.tag_values("e"))

        token_events = sorted(by_kind.get(TOKEN_SET_KIND, []), key=lambda e: e.created_at, reverse=True)
        decoded: list[TokenSet] = await self._decode_all(token_events, self.decode_token_set)
        for token_set in decoded:
            dead.update(token_set.supersedes)

        state = WalletState()
        seen: set[str] = set()
        for token_set in decoded:
            if token_set.event_id in dead:
                continue
            fresh = [p for p in token_set.proofs if p.key not in seen]
            for proof in fresh:
                seen.add(proof.key)
                state.proof_to_event_id[proof.key] = token_set.event_id
            token_set.proofs = fresh
            state.token_sets.append(token_set)

        configs = sorted(by_kind.get(WALLET_CONFIG_KIND, []), key=lambda e: e.created_at, reverse=True)
        decoded_configs = await self._decode_all(configs, self.decode_wallet_config)
        state.config = decoded_configs[0] if decoded_configs else None
        state.quotes = await self._decode_all(by_kind.get(PAYMENT_QUOTE_KIND, []), self.decode_quote)
        state.history = await self._decode_all(by_kind.get(SPENDING_HISTORY_KIND, []), self.decode_history)
        state.history.sort(key=lambda e: e.created_at or 0, reverse=True)
        return state
