"""Tests for spend/receive reconciliation and its partial-failure handling."""

import asyncio

import pytest

from conftest import FlakyRelay
from keyward.audit import AuditTrail, EventType
from keyward.keys import generate_private_key, public_key_hex
from keyward.reconciler import SpendingReconciler
from keyward.signer import LocalKeySigner, ReadOnlySigner
from keyward.wallet_events import (
    DELETE_KIND,
    SPENDING_HISTORY_KIND,
    TOKEN_SET_KIND,
    Proof,
    TokenSet,
    WalletEventCodec,
)


MINT = "https://mint.test"


def proof(amount, tag=""):
    return Proof(id="00ad268c4d1f5826", amount=amount, secret=f"s-{amount}{tag}", C=f"c-{amount}{tag}")


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(tmp_path / "audit.jsonl", tmp_path / "keys" / "audit.key")


@pytest.fixture
def private_key():
    return generate_private_key()


def _setup(private_key, fail_kinds=None, audit=None):
    relay = FlakyRelay(fail_kinds)
    codec = WalletEventCodec(LocalKeySigner(private_key), relay)
    return relay, codec, SpendingReconciler(codec, audit)


async def _fund(codec, amounts):
    token_set = TokenSet(mint_url=MINT, proofs=[proof(a) for a in amounts])
    await codec.publish_token_set(token_set)
    return token_set


class TestSpending:
    @pytest.mark.asyncio
    async def test_spend_with_change(self, private_key, audit):
        relay, codec, reconciler = _setup(private_key, audit=audit)
        funded = await _fund(codec, [60, 40])

        result = await reconciler.process_spending(
            spent=funded.proofs,
            unspent=[],
            change=[proof(10)],
            mint_url=MINT,
            consumed_ids=[funded.event_id],
        )

        assert result.success
        assert not result.degraded
        assert result.amount == 100
        assert result.direction == "out"

        state = await codec.fetch_wallet_state()
        assert [p.amount for p in state.proofs] == [10]
        assert state.balance == 10

        tombstone = next(e for e in relay.events if e.id == result.tombstone_id)
        assert tombstone.kind == DELETE_KIND
        assert tombstone.tag_values("e") == [funded.event_id]

        history = state.history[0]
        assert history.direction == "out"
        assert history.amount == 100
        assert history.created == [result.token_set_id]
        assert history.destroyed == [funded.event_id]

        types = [e.event_type for e in audit.read_events()]
        assert types == ["token_set_published", "history_published"]

    @pytest.mark.asyncio
    async def test_token_set_failure_is_fatal(self, private_key, audit):
        relay, codec, reconciler = _setup(private_key, audit=audit)
        funded = await _fund(codec, [60, 40])
        relay.fail_kinds = {TOKEN_SET_KIND}

        result = await reconciler.process_spending(funded.proofs, [], [proof(10)], MINT, [funded.event_id])

        assert not result.success
        assert "Token set publish failed" in result.reason
        assert result.tombstone_id is None
        assert result.history_id is None
        assert not any(e.kind in (DELETE_KIND, SPENDING_HISTORY_KIND) for e in relay.events)
        assert (await codec.fetch_wallet_state()).balance == 100
        failed = audit.read_events(event_type=EventType.TOKEN_SET_PUBLISH_FAILED)
        assert len(failed) == 1

    @pytest.mark.asyncio
    async def test_tombstone_failure_is_degraded_but_correct(self, private_key, audit):
        relay, codec, reconciler = _setup(private_key, fail_kinds={DELETE_KIND}, audit=audit)
        funded = await _fund(codec, [60, 40])

        result = await reconciler.process_spending(funded.proofs, [], [proof(10)], MINT, [funded.event_id])

        assert result.success
        assert result.degraded
        assert result.tombstone_id is None
        assert result.history_id is not None
        assert (await codec.fetch_wallet_state()).balance == 10
        assert len(audit.read_events(event_type=EventType.TOMBSTONE_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_history_failure_is_degraded(self, private_key, audit):
        relay, codec, reconciler = _setup(private_key, fail_kinds={SPENDING_HISTORY_KIND}, audit=audit)
        funded = await _fund(codec, [60, 40])

        result = await reconciler.process_spending(funded.proofs, [], [proof(10)], MINT, [funded.event_id])

        assert result.success
        assert result.degraded
        assert result.history_id is None
        assert any("history" in w for w in result.warnings)
        assert result.to_dict()["degraded"] is True
        assert (await codec.fetch_wallet_state()).balance == 10

    @pytest.mark.asyncio
    async def test_unexpected_tombstone_error_is_non_fatal(self, private_key, audit):
        relay, codec, reconciler = _setup(private_key, audit=audit)
        funded = await _fund(codec, [60, 40])
        relay.fail_kinds = {DELETE_KIND}
        relay.fail_with = asyncio.TimeoutError

        result = await reconciler.process_spending(funded.proofs, [], [proof(10)], MINT, [funded.event_id])

        assert result.success
        assert result.degraded
        assert result.history_id is not None
        assert (await codec.fetch_wallet_state()).balance == 10
        assert len(audit.read_events(event_type=EventType.TOMBSTONE_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_unexpected_history_error_is_non_fatal(self, private_key):
        relay, codec, reconciler = _setup(private_key)
        funded = await _fund(codec, [60, 40])
        relay.fail_kinds = {SPENDING_HISTORY_KIND}
        relay.fail_with = OSError

        result = await reconciler.process_spending(funded.proofs, [], [proof(10)], MINT, [funded.event_id])

        assert result.success
        assert result.tombstone_id is not None
        assert any("relay refused kind 7376" in w for w in result.warnings)
        assert (await codec.fetch_wallet_state()).balance == 10

    @pytest.mark.asyncio
    async def test_nothing_spent(self, private_key):
        relay, codec, reconciler = _setup(private_key)
        result = await reconciler.process_spending([], [], [], MINT, [])
        assert not result.success
        assert relay.events == []

    @pytest.mark.asyncio
    async def test_spend_from_state_keeps_unspent(self, private_key):
        relay, codec, reconciler = _setup(private_key)
        await _fund(codec, [8, 4, 2])
        state = await codec.fetch_wallet_state()

        spent = [p for p in state.proofs if p.amount == 8]
        result = await reconciler.spend_from_state(state, spent, [proof(3, "change")], MINT)

        assert result.success
        assert result.amount == 8
        after = await codec.fetch_wallet_state()
        assert sorted(p.amount for p in after.proofs) == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_spend_from_state_rejects_unknown_proofs(self, private_key):
        relay, codec, reconciler = _setup(private_key)
        await _fund(codec, [8])
        state = await codec.fetch_wallet_state()
        published = len(relay.events)

        result = await reconciler.spend_from_state(state, [proof(5)], [], MINT)
        assert not result.success
        assert "not in the live wallet state" in result.reason
        assert len(relay.events) == published

    @pytest.mark.asyncio
    async def test_read_only_cannot_spend(self, private_key):
        relay = FlakyRelay()
        signer = ReadOnlySigner(public_key_hex(private_key))
        reconciler = SpendingReconciler(WalletEventCodec(signer, relay))

        result = await reconciler.process_spending([proof(5)], [], [], MINT, [])
        assert not result.success
        assert "read-only" in result.reason


class TestReceiving:
    @pytest.mark.asyncio
    async def test_receive_publishes_set_and_history(self, private_key, audit):
        relay, codec, reconciler = _setup(private_key, audit=audit)

        result = await reconciler.process_receiving([proof(60), proof(40)], MINT)

        assert result.success
        assert result.direction == "in"
        assert result.tombstone_id is None
        state = await codec.fetch_wallet_state()
        assert state.balance == 100
        assert state.history[0].direction == "in"
        assert state.history[0].created == [result.token_set_id]

    @pytest.mark.asyncio
    async def test_receive_then_spend(self, private_key):
        relay, codec, reconciler = _setup(private_key)
        received = [proof(60), proof(40)]
        await reconciler.process_receiving(received, MINT)
        state = await codec.fetch_wallet_state()

        result = await reconciler.spend_from_state(state, received, [proof(10)], MINT)

        assert result.success
        state = await codec.fetch_wallet_state()
        assert state.balance == 10
        assert sorted(e.direction for e in state.history) == ["in", "out"]
