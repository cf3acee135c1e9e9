"""
Relay transport.

Keyward treats relays as a black box with three operations: publish an
event, fetch stored events matching filters, and subscribe to matching
events as they arrive. ``InMemoryRelay`` is a process-local relay used by
tests and the offline demo; ``WebSocketRelayPool`` speaks NIP-01 to real
relays.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Protocol, Sequence

import websockets
from websockets.exceptions import WebSocketException

from .errors import RelayError
from .event import SignedEvent, verify_event

logger = logging.getLogger(__name__)


@dataclass
class Filter:
    """Subset of NIP-01 filter fields used by Keyward."""

    ids: list[str] = field(default_factory=list)
    authors: list[str] = field(default_factory=list)
    kinds: list[int] = field(default_factory=list)
    p_tags: list[str] = field(default_factory=list)
    e_tags: list[str] = field(default_factory=list)
    since: Optional[int] = None
    limit: Optional[int] = None

    def matches(self, event: SignedEvent) -> bool:
        if self.ids and event.id not in self.ids:
            return False
        if self.authors and event.pubkey not in self.authors:
            return False
        if self.kinds and event.kind not in self.kinds:
            return False
        if self.p_tags and not set(event.tag_values("p")) & set(self.p_tags):
            return False
        if self.e_tags and not set(event.tag_values("e")) & set(self.e_tags):
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        return True

    def to_dict(self) -> dict:
        d: dict = {}
        if self.ids:
            d["ids"] = self.ids
        if self.authors:
            d["authors"] = self.authors
        if self.kinds:
            d["kinds"] = self.kinds
        if self.p_tags:
            d["#p"] = self.p_tags
        if self.e_tags:
            d["#e"] = self.e_tags
        if self.since is not None:
            d["since"] = self.since
        if self.limit is not None:
            d["limit"] = self.limit
        return d


class RelayClient(Protocol):
    async def publish(self, event: SignedEvent) -> None: ...

    async def fetch(self, filters: Sequence[Filter], timeout: float = 10.0) -> list[SignedEvent]: ...

    def subscribe(self, filters: Sequence[Filter]) -> AsyncIterator[SignedEvent]: ...

    async def close(self) -> None: ...


def _matches_any(filters: Sequence[Filter], event: SignedEvent) -> bool:
    return any(f.matches(event) for f in filters)


def _apply_limit(filters: Sequence[Filter], events: list[SignedEvent]) -> list[SignedEvent]:
    events.sort(key=lambda e: e.created_at, reverse=True)
    limits = [f.limit for f in filters if f.limit is not None]
    if limits and len(limits) == len(filters):
        return events[: max(limits)]
    return events


class InMemoryRelay:
    """Process-local relay. Deletions are stored but not honored unless asked."""

    def __init__(self, honor_deletions: bool = False):
        self.honor_deletions = honor_deletions
        self._events: dict[str, SignedEvent] = {}
        self._subscribers: list[tuple[Sequence[Filter], asyncio.Queue]] = []

    @property
    def events(self) -> list[SignedEvent]:
        return list(self._events.values())

    async def publish(self, event: SignedEvent) -> None:
        valid, reason = verify_event(event)
        if not valid:
            raise RelayError(f"invalid: {reason}")
        self._events[event.id] = event
        if self.honor_deletions and event.kind == 5:
            for target in event.tag_values("e"):
                stored = self._events.get(target)
                if stored is not None and stored.pubkey == event.pubkey:
                    del self._events[target]
        for filters, queue in list(self._subscribers):
            if _matches_any(filters, event):
                queue.put_nowait(event)

    async def fetch(self, filters: Sequence[Filter], timeout: float = 10.0) -> list[SignedEvent]:
        found = [e for e in self._events.values() if _matches_any(filters, e)]
        return _apply_limit(filters, found)

    async def subscribe(self, filters: Sequence[Filter]) -> AsyncIterator[SignedEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        entry = (filters, queue)
        self._subscribers.append(entry)
        try:
            for event in await self.fetch(filters):
                yield event
            while True:
                yield await queue.get()
        finally:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

    async def close(self) -> None:
        self._subscribers.clear()


class WebSocketRelayPool:
    """NIP-01 client over ``websockets``, fanning out to every configured relay."""

    def __init__(self, urls: Sequence[str], timeout: float = 10.0):
        if not urls:
            raise ValueError("At least one relay URL is required")
        self.urls = list(urls)
        self.timeout = timeout

    async def publish(self, event: SignedEvent) -> None:
        results = await asyncio.gather(
            *(self._publish_one(url, event) for url in self.urls),
            return_exceptions=True,
        )
        accepted = [r for r in results if r is True]
        if not accepted:
            errors = "; ".join(str(r) for r in results if r is not True)
            raise RelayError(f"No relay accepted event {event.id[:12]}: {errors}")
        logger.debug("Event %s accepted by %d/%d relays", event.id[:12], len(accepted), len(self.urls))

    async def _publish_one(self, url: str, event: SignedEvent) -> bool:
        try:
            async with websockets.connect(url, open_timeout=self.timeout) as ws:
                await ws.send(json.dumps(["EVENT", event.to_dict()]))
                while True:
                    raw = await asyncio.wait_for(ws.recv(), timeout=self.timeout)
                    msg = json.loads(raw)
                    if msg[0] == "OK" and msg[1] == event.id:
                        if not msg[2]:
                            raise RelayError(f"{url} rejected event: {msg[3] if len(msg) > 3 else ''}")
                        return True
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise RelayError(f"{url}: {type(e).__name__}: {e}") from e

    async def fetch(self, filters: Sequence[Filter], timeout: Optional[float] = None) -> list[SignedEvent]:
        results = await asyncio.gather(
            *(self._fetch_one(url, filters, timeout or self.timeout) for url in self.urls),
            return_exceptions=True,
        )
        merged: dict[str, SignedEvent] = {}
        failures = 0
        for result in results:
            if isinstance(result, BaseException):
                failures += 1
                logger.warning("Relay fetch failed: %s", result)
                continue
            for event in result:
                merged[event.id] = event
        if failures == len(self.urls):
            raise RelayError("All relays failed to answer fetch")
        return _apply_limit(filters, list(merged.values()))

    async def _fetch_one(self, url: str, filters: Sequence[Filter], timeout: float) -> list[SignedEvent]:
        sub_id = secrets.token_hex(8)
        events: list[SignedEvent] = []
        try:
            async with websockets.connect(url, open_timeout=timeout) as ws:
                await ws.send(json.dumps(["REQ", sub_id, *(f.to_dict() for f in filters)]))
                while True:
                    raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
                    msg = json.loads(raw)
                    if msg[0] == "EVENT" and msg[1] == sub_id:
                        event = _parse_relay_event(msg[2])
                        if event is not None and _matches_any(filters, event):
                            events.append(event)
                    elif msg[0] in ("EOSE", "CLOSED") and msg[1] == sub_id:
                        break
                await ws.send(json.dumps(["CLOSE", sub_id]))
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise RelayError(f"{url}: {type(e).__name__}: {e}") from e
        return events

    async def subscribe(self, filters: Sequence[Filter]) -> AsyncIterator[SignedEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        readers = [asyncio.create_task(self._read_into(url, filters, queue)) for url in self.urls]
        seen: set[str] = set()
        try:
            while True:
                event = await queue.get()
                if event.id in seen:
                    continue
                seen.add(event.id)
                yield event
        finally:
            for task in readers:
                task.cancel()
            await asyncio.gather(*readers, return_exceptions=True)

    async def _read_into(self, url: str, filters: Sequence[Filter], queue: asyncio.Queue) -> None:
        sub_id = secrets.token_hex(8)
        try:
            async with websockets.connect(url, open_timeout=self.timeout) as ws:
                await ws.send(json.dumps(["REQ", sub_id, *(f.to_dict() for f in filters)]))
                async for raw in ws:
                    msg = json.loads(raw)
                    if msg[0] == "EVENT" and msg[1] == sub_id:
                        event = _parse_relay_event(msg[2])
                        if event is not None and _matches_any(filters, event):
                            queue.put_nowait(event)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.warning("Subscription to %s ended: %s", url, e)

    async def close(self) -> None:
        return None


def _parse_relay_event(raw: dict) -> Optional[SignedEvent]:
    try:
        event = SignedEvent.from_dict(raw)
    except (KeyError, TypeError, ValueError):
        logger.debug("Dropping malformed relay event")
        return None
    valid, reason = verify_event(event)
    if not valid:
        logger.debug("Dropping relay event %s: %s", event.id[:12], reason)
        return None
    return event
