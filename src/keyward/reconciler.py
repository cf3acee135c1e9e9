"""
Spending reconciliation.

Each balance change publishes up to three events in sequence:

1. New token set for the mint (fatal on failure, nothing else is published)
2. Delete tombstone for the consumed token sets (warning on failure)
3. Spending history entry (warning + degraded flag on failure)

There is no rollback: once step 1 succeeds the new set is the live state,
and the ``del`` list inside it supersedes the consumed sets even when the
tombstone never reaches a relay.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .audit import AuditTrail, EventType
from .errors import KeywardError
from .wallet_events import (
    Proof,
    SpendingHistoryEntry,
    TokenSet,
    WalletEventCodec,
    WalletState,
    total,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of one spend or receive."""

    success: bool
    direction: str
    amount: int = 0
    mint_url: Optional[str] = None
    token_set_id: Optional[str] = None
    tombstone_id: Optional[str] = None
    history_id: Optional[str] = None
    reason: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        """True when the wallet state is correct but the audit trail is incomplete."""
        return self.success and bool(self.warnings)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "direction": self.direction,
            "amount": self.amount,
            "mint_url": self.mint_url,
            "token_set_id": self.token_set_id,
            "tombstone_id": self.tombstone_id,
            "history_id": self.history_id,
            "reason": self.reason,
            "warnings": list(self.warnings),
            "degraded": self.degraded,
        }


class SpendingReconciler:
    """Publishes the event triple for spends and receives."""

    def __init__(self, codec: WalletEventCodec, audit: Optional[AuditTrail] = None):
        self.codec = codec
        self.audit = audit

    async def process_spending(
        self,
        spent: list[Proof],
        unspent: list[Proof],
        change: list[Proof],
        mint_url: str,
        consumed_ids: list[str],
    ) -> ReconcileResult:
        spent_amount = total(spent)
        result = ReconcileResult(success=False, direction="out", amount=spent_amount, mint_url=mint_url)
        if spent_amount <= 0:
            result.reason = "Nothing was spent"
            return result

        token_set = TokenSet(mint_url=mint_url, proofs=list(unspent) + list(change), supersedes=list(consumed_ids))
        if not await self._publish_token_set(token_set, result):
            return result

        if consumed_ids:
            try:
                tombstone = await self.codec.publish_tombstone(consumed_ids)
                result.tombstone_id = tombstone.id
            except Exception as e:
                # the new set is already live; anything past this point is non-fatal
                logger.warning(
                    "Tombstone for %d token sets not published: %s", len(consumed_ids), e, exc_info=True
                )
                result.warnings.append(f"Superseded token sets not deleted: {e}")
                self._log(EventType.TOMBSTONE_FAILED, result, success=False, reason=str(e))

        entry = SpendingHistoryEntry(
            direction="out",
            amount=spent_amount,
            created=[token_set.event_id] if token_set.event_id else [],
            destroyed=list(consumed_ids),
        )
        await self._publish_history(entry, result)
        result.success = True
        return result

    async def spend_from_state(
        self,
        state: WalletState,
        spent: list[Proof],
        change: list[Proof],
        mint_url: str,
    ) -> ReconcileResult:
        """Consume every live set at ``mint_url`` that holds a spent proof."""
        spent_keys = {p.key for p in spent}
        consumed = [ts for ts in state.token_sets_for(mint_url) if any(p.key in spent_keys for p in ts.proofs)]
        held = {p.key for ts in consumed for p in ts.proofs}
        if not spent_keys <= held:
            return ReconcileResult(
                success=False,
                direction="out",
                amount=total(spent),
                mint_url=mint_url,
                reason="Spent proofs are not in the live wallet state",
            )
        unspent = [p for ts in consumed for p in ts.proofs if p.key not in spent_keys]
        consumed_ids = [ts.event_id for ts in consumed if ts.event_id]
        return await self.process_spending(spent, unspent, change, mint_url, consumed_ids)

    async def process_receiving(self, received: list[Proof], mint_url: str) -> ReconcileResult:
        amount = total(received)
        result = ReconcileResult(success=False, direction="in", amount=amount, mint_url=mint_url)
        if amount <= 0:
            result.reason = "Nothing was received"
            return result

        token_set = TokenSet(mint_url=mint_url, proofs=list(received))
        if not await self._publish_token_set(token_set, result):
            return result

        entry = SpendingHistoryEntry(
            direction="in",
            amount=amount,
            created=[token_set.event_id] if token_set.event_id else [],
        )
        await self._publish_history(entry, result)
        result.success = True
        return result

    async def _publish_token_set(self, token_set: TokenSet, result: ReconcileResult) -> bool:
        try:
            event = await self.codec.publish_token_set(token_set)
        except KeywardError as e:
            logger.error("Token set for %s not published; aborting: %s", token_set.mint_url, e)
            result.reason = f"Token set publish failed: {e}"
            self._log(EventType.TOKEN_SET_PUBLISH_FAILED, result, success=False, reason=str(e))
            return False
        result.token_set_id = event.id
        self._log(EventType.TOKEN_SET_PUBLISHED, result, event_id=event.id)
        return True

    async def _publish_history(self, entry: SpendingHistoryEntry, result: ReconcileResult) -> None:
        try:
            event = await self.codec.publish_history(entry)
        except Exception as e:
            warning = f"Spending history not recorded: {e}"
            logger.warning("%s", warning, exc_info=True)
            result.warnings.append(warning)
            self._log(EventType.HISTORY_FAILED, result, success=False, reason=str(e))
            return
        result.history_id = event.id
        self._log(EventType.HISTORY_PUBLISHED, result, event_id=event.id)

    def _log(
        self,
        event_type: EventType,
        result: ReconcileResult,
        success: bool = True,
        reason: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            mint_url=result.mint_url,
            amount=result.amount,
            event_id=event_id,
            success=success,
            reason=reason,
            details={"direction": result.direction},
        )
