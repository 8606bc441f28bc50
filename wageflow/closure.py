"""
closure.py - Closure negotiator.

Settlement protocol, whoever starts it:

    quote -> authorize -> submit -> verify -> finalize
                 |                     |
                 +-> Pending request   +-> rollback to Active (validated failure)
                     (sponsor approves     or left Closing (inconclusive)
                      or rejects)

The quote is computed inside the transaction that moves the channel to
Closing, so it always reflects the balance at that instant. The ledger is
called outside any transaction; the Closing state plus the channel's
submission token keep other writers off the balance meanwhile.

Verification is a conjunction: the settlement transaction validated with a
success result AND the channel entry is gone from the ledger.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional

from wageflow.channels import channel_status
from wageflow.config import EngineConfig
from wageflow.errors import (
    ChannelAlreadyClosed,
    ChannelAlreadyClosing,
    ChannelNotExpired,
    ChannelNotFound,
    ClosureRequestAlreadyPending,
    ClosureRequestNotFound,
    ClosureRequestNotPending,
    InvariantViolation,
    LedgerUnavailable,
    NotAuthorized,
    SettlementRejected,
)
from wageflow.state_machine import (
    ChannelState,
    DirectAuthority,
    RequestStatus,
    RequiresApproval,
    Role,
    ensure_transition,
    party_role,
    resolve_authority,
)

if TYPE_CHECKING:
    from wageflow.ledger_gateway import LedgerGateway
    from wageflow.storage import StorageManager
    from wageflow.tracker import WorkSessionTracker

logger = logging.getLogger("closure")

OPEN_REQUEST_STATUSES = (RequestStatus.PENDING.value, RequestStatus.APPROVED.value)

# Verification verdicts
VERIFIED = "verified"
FAILED = "failed"
INCONCLUSIVE = "inconclusive"


@dataclass(frozen=True)
class SettlementQuote:
    """Fields of the closing claim. ``payout`` is None when the balance field must be omitted."""

    channel_id: str
    ledger_channel_id: str
    payout: Optional[float]
    signer: Role

    @classmethod
    def for_balance(cls, channel: dict, balance: float, signer: Role) -> "SettlementQuote":
        return cls(
            channel_id=channel["channel_id"],
            ledger_channel_id=channel["ledger_channel_id"],
            payout=balance if balance > 0 else None,
            signer=signer,
        )

    def to_dict(self) -> dict:
        d = {
            "channel_id": self.channel_id,
            "ledger_channel_id": self.ledger_channel_id,
            "signer": self.signer.value,
        }
        if self.payout is not None:
            d["payout"] = self.payout
        return d


@dataclass
class ClosureOutcome:
    status: str  # closed | closing | pending_approval
    channel: dict
    quote: Optional[SettlementQuote] = None
    request: Optional[dict] = None
    tx_ref: Optional[str] = None
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        d = {"status": self.status, "channel": self.channel}
        if self.quote is not None:
            d["quote"] = self.quote.to_dict()
        if self.request is not None:
            d["request"] = self.request
        if self.tx_ref is not None:
            d["tx_ref"] = self.tx_ref
        if self.notes:
            d["notes"] = self.notes
        return d


class ClosureNegotiator:
    """Drives channels from Active to Closed through the ledger."""

    def __init__(
        self,
        storage: "StorageManager",
        gateway: "LedgerGateway",
        tracker: "WorkSessionTracker",
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._storage = storage
        self._gateway = gateway
        self._tracker = tracker
        self._config = config or EngineConfig()
        self._clock = clock

    async def _get_channel(self, channel_id: str) -> dict:
        channel = await self._storage.channels.get(channel_id)
        if channel is None:
            raise ChannelNotFound(f"Channel '{channel_id}' not found")
        return channel

    async def _get_request(self, request_id: str) -> dict:
        req = await self._storage.closure_requests.get(request_id)
        if req is None:
            raise ClosureRequestNotFound(f"Closure request '{request_id}' not found")
        return req

    async def _begin_closing(self, channel_id: str, signer: Role, now: float) -> tuple:
        """Move Active -> Closing and quote the balance. Caller holds the transaction."""
        channel = await self._get_channel(channel_id)
        ensure_transition(channel["state"], ChannelState.CLOSING)
        quote = SettlementQuote.for_balance(channel, channel["off_ledger_balance"], signer)
        token = uuid.uuid4().hex
        moved = await self._storage.channels.begin_closing(
            channel_id, token, now, now + self._config.closing_expiry_sec,
        )
        if not moved:
            raise ChannelAlreadyClosing("Channel closure is already in progress")
        return quote, token

    # -------------------------------------------------------------------
    # Request / approve / reject / cancel
    # -------------------------------------------------------------------

    async def request_closure(self, channel_id: str, requester_id: str, message: str = "") -> ClosureOutcome:
        """Close directly when the requester can sign, otherwise file a Pending request.

        Sessions still open on the channel are completed first, so the
        authority check and the quote both see their earnings.
        """
        async with self._storage.transaction():
            now = self._clock()
            channel = await self._get_channel(channel_id)
            role = party_role(channel, requester_id)
            ensure_transition(channel["state"], ChannelState.CLOSING)
            await self._tracker.complete_open_sessions_for_channel(channel_id, now)
            channel = await self._get_channel(channel_id)

            authority = resolve_authority(role, channel["off_ledger_balance"])
            if isinstance(authority, RequiresApproval):
                if await self._storage.closure_requests.get_pending(channel_id) is not None:
                    raise ClosureRequestAlreadyPending(
                        "A closure request is already pending for this channel",
                        details={"channel_id": channel_id},
                    )
                req = await self._storage.closure_requests.create(
                    uuid.uuid4().hex, channel_id, requester_id, role.value,
                    channel["off_ledger_balance"], now, message,
                )
                quote, token = None, None
            else:
                req = None
                quote, token = await self._begin_closing(channel_id, authority.signer, now)

        if req is not None:
            logger.info("Closure request %s filed by %s on %s (snapshot=%.6f)",
                        req["request_id"], requester_id, channel_id, req["requested_payout"])
            return ClosureOutcome(
                status="pending_approval", channel=channel_status(channel), request=req,
            )
        logger.info("Channel %s closing by %s (%s)", channel_id, requester_id, role.value)
        return await self._settle(quote, token)

    async def approve_closure(self, request_id: str, approver_id: str) -> ClosureOutcome:
        """Sponsor approves a Pending request; the payout is re-quoted against the current balance."""
        async with self._storage.transaction():
            now = self._clock()
            req = await self._get_request(request_id)
            channel = await self._get_channel(req["channel_id"])
            if party_role(channel, approver_id) != Role.SPONSOR:
                raise NotAuthorized("Only the sponsor can approve a closure request")
            if req["status"] != RequestStatus.PENDING.value:
                raise ClosureRequestNotPending("Closure request is not pending", details={"status": req["status"]})
            approved = await self._storage.closure_requests.transition(
                request_id, (RequestStatus.PENDING.value,), RequestStatus.APPROVED.value, now,
            )
            if not approved:
                raise ClosureRequestNotPending("Closure request is no longer pending")
            await self._tracker.complete_open_sessions_for_channel(channel["channel_id"], now)
            quote, token = await self._begin_closing(channel["channel_id"], Role.SPONSOR, now)

        logger.info("Closure request %s approved by %s (quoted=%s, snapshot=%.6f)",
                    request_id, approver_id,
                    "omitted" if quote.payout is None else f"{quote.payout:.6f}",
                    req["requested_payout"])
        outcome = await self._settle(quote, token)
        outcome.request = await self._storage.closure_requests.get(request_id)
        return outcome

    async def reject_closure(self, request_id: str, sponsor_id: str, reason: str = "") -> dict:
        async with self._storage.transaction():
            req = await self._get_request(request_id)
            channel = await self._get_channel(req["channel_id"])
            if party_role(channel, sponsor_id) != Role.SPONSOR:
                raise NotAuthorized("Only the sponsor can reject a closure request")
            rejected = await self._storage.closure_requests.transition(
                request_id, (RequestStatus.PENDING.value,), RequestStatus.REJECTED.value,
                self._clock(), rejection_reason=reason,
            )
            if not rejected:
                raise ClosureRequestNotPending("Closure request is not pending")
        logger.info("Closure request %s rejected by %s", request_id, sponsor_id)
        return await self._storage.closure_requests.get(request_id)

    async def cancel_closure_request(self, request_id: str, requester_id: str) -> dict:
        async with self._storage.transaction():
            req = await self._get_request(request_id)
            if req["requester_id"] != requester_id:
                raise NotAuthorized("Only the requester can cancel a closure request")
            cancelled = await self._storage.closure_requests.transition(
                request_id, (RequestStatus.PENDING.value,), RequestStatus.CANCELLED.value, self._clock(),
            )
            if not cancelled:
                raise ClosureRequestNotPending("Closure request is not pending")
        logger.info("Closure request %s cancelled by %s", request_id, requester_id)
        return await self._storage.closure_requests.get(request_id)

    async def list_pending_for_sponsor(self, sponsor_id: str) -> List[dict]:
        return await self._storage.closure_requests.list_pending_for_sponsor(sponsor_id)

    async def list_for_requester(self, requester_id: str) -> List[dict]:
        return await self._storage.closure_requests.list_for_requester(requester_id)

    # -------------------------------------------------------------------
    # Expired finalization
    # -------------------------------------------------------------------

    async def finalize_expired_closure(self, channel_id: str, finalizer_id: str) -> ClosureOutcome:
        """Either party settles an expired channel at the balance the ledger reports.

        The ledger figure may be lower than the off-ledger accrual; workers
        should claim before expiry rather than rely on this path.
        """
        async with self._storage.transaction():
            now = self._clock()
            channel = await self._get_channel(channel_id)
            role = party_role(channel, finalizer_id)
            if channel["state"] == ChannelState.CLOSED.value:
                raise ChannelAlreadyClosed("Channel is already closed")
            if channel["state"] != ChannelState.CLOSING.value:
                raise ChannelNotExpired("Channel is not closing", details={"state": channel["state"]})
            flagged = False
            if not channel["expired"]:
                if channel["expires_at"] is None or now <= channel["expires_at"]:
                    raise ChannelNotExpired(
                        "Channel has not reached its expiry deadline",
                        details={"expires_at": channel["expires_at"]},
                    )
                flagged = await self._storage.channels.mark_expired(channel_id, now)
        if flagged:
            logger.info("Channel %s expired (flagged on finalize)", channel_id)

        authority = resolve_authority(role, channel["off_ledger_balance"], expired=True)
        if not isinstance(authority, DirectAuthority):
            raise InvariantViolation(
                "Expired channel requires approval to settle",
                details={"channel_id": channel_id, "role": role.value},
            )

        info = await self._gateway.query_channel(channel["ledger_channel_id"])
        if not info.exists:
            return await self._finalize_absent_entry(channel, finalizer_id)

        token = await self._claim_submission(channel)
        if token is None:
            raise ChannelAlreadyClosing("A settlement submission is already in progress")

        quote = SettlementQuote.for_balance(channel, info.on_ledger_balance, authority.signer)
        if info.on_ledger_balance + self._config.discrepancy_epsilon < channel["off_ledger_balance"]:
            logger.warning("Expired channel %s settles at ledger balance %.6f below accrued %.6f",
                           channel_id, info.on_ledger_balance, channel["off_ledger_balance"])
        logger.info("Channel %s expired finalization by %s (%s)", channel_id, finalizer_id, role.value)
        return await self._settle(quote, token)

    async def _claim_submission(self, channel: dict) -> Optional[str]:
        """Take the submission slot of a Closing channel, reclaiming one left stale.

        Returns the new token, or None while another submitter holds a fresh slot.
        """
        token = uuid.uuid4().hex
        async with self._storage.transaction():
            now = self._clock()
            claimed = await self._storage.channels.claim_submission(
                channel["channel_id"], token, now, stale_before=now - self._config.submission_stale_sec,
            )
        if not claimed:
            return None
        if channel["submission_token"]:
            logger.warning("Channel %s: stale submission slot (claimed at %s) taken over",
                           channel["channel_id"], channel["submission_claimed_at"])
        return token

    async def _finalize_absent_entry(self, channel: dict, finalizer_id: str) -> ClosureOutcome:
        """The ledger entry is already gone: close the record, auditing unknown closures."""
        tx_ref = channel["settlement_tx_ref"]
        ours = False
        if tx_ref:
            status = await self._gateway.query_transaction_status(tx_ref)
            ours = status.validated and status.success
        closed = await self._finalize(channel["channel_id"], tx_ref if ours else None)
        outcome = ClosureOutcome(status="closed", channel=channel_status(closed), tx_ref=tx_ref if ours else None)
        if not ours:
            async with self._storage.transaction():
                await self._storage.discrepancies.record(
                    channel["channel_id"], "external_closure",
                    channel["off_ledger_balance"], channel["on_ledger_balance"],
                    detail=f"ledger entry removed outside this engine; finalized by {finalizer_id}",
                    now=self._clock(),
                )
            logger.warning("Channel %s closed externally; accrued %.6f recorded as discrepancy",
                           channel["channel_id"], channel["off_ledger_balance"])
            outcome.notes.append("external_closure")
        return outcome

    # -------------------------------------------------------------------
    # Submit / verify / finalize / rollback
    # -------------------------------------------------------------------

    async def _settle(self, quote: SettlementQuote, token: str) -> ClosureOutcome:
        """Submit and verify while holding the submission slot.

        Finalize and rollback clear the slot themselves. Every other exit,
        including cancellation, hands it back so reconciliation or expired
        finalization can take over.
        """
        channel_id = quote.channel_id
        try:
            return await self._submit_and_verify(quote)
        finally:
            async with self._storage.transaction():
                released = await self._storage.channels.release_submission(channel_id, token, self._clock())
            if released:
                logger.debug("Submission slot for %s released", channel_id)

    async def _submit_and_verify(self, quote: SettlementQuote) -> ClosureOutcome:
        channel_id = quote.channel_id
        try:
            tx_ref = await self._gateway.submit_settlement(quote.ledger_channel_id, quote.payout, quote.signer)
        except SettlementRejected as e:
            await self._rollback(channel_id, f"submission rejected: {e.message}")
            raise
        except LedgerUnavailable as e:
            # Outcome unknown: never resubmit blindly. Reconciliation or expiry resolves it.
            logger.warning("Settlement submission for %s has unknown outcome: %s", channel_id, e)
            raise LedgerUnavailable(
                "Settlement submitted with unknown outcome; channel left closing",
                details={"channel_id": channel_id},
            ) from e

        async with self._storage.transaction():
            await self._storage.channels.record_settlement_ref(channel_id, tx_ref, self._clock())
        logger.info("Settlement submitted for %s: tx=%s..%s payout=%s",
                    channel_id, tx_ref[:8], tx_ref[-4:],
                    "omitted" if quote.payout is None else f"{quote.payout:.6f}")

        verdict, result = await self._verify(channel_id, quote.ledger_channel_id, tx_ref)
        if verdict == VERIFIED:
            closed = await self._finalize(channel_id, tx_ref)
            return ClosureOutcome(status="closed", channel=channel_status(closed), quote=quote, tx_ref=tx_ref)
        if verdict == FAILED:
            await self._rollback(channel_id, f"settlement failed validation: {result}")
            raise SettlementRejected(
                "Settlement failed ledger validation; channel reverted to active",
                details={"channel_id": channel_id, "tx_ref": tx_ref, "result": result},
            )

        logger.warning("Settlement for %s not yet verified; left closing for reconciliation", channel_id)
        channel = await self._get_channel(channel_id)
        return ClosureOutcome(status="closing", channel=channel_status(channel), quote=quote, tx_ref=tx_ref)

    async def _verify(self, channel_id: str, ledger_channel_id: str, tx_ref: str) -> tuple:
        """Poll within the configured budget. Returns (verdict, ledger result)."""
        result = ""
        for attempt in range(1, self._config.verify_attempts + 1):
            verdict, result = await self.check_settlement(channel_id, ledger_channel_id, tx_ref)
            if verdict != INCONCLUSIVE:
                return verdict, result
            if attempt < self._config.verify_attempts:
                await asyncio.sleep(self._config.verify_interval_sec)
        return INCONCLUSIVE, result

    async def check_settlement(self, channel_id: str, ledger_channel_id: str, tx_ref: str) -> tuple:
        """One verification check: validated success AND entry absent."""
        async with self._storage.transaction():
            await self._storage.channels.record_validation_attempt(channel_id)
        try:
            status = await self._gateway.query_transaction_status(tx_ref)
            if not status.validated:
                return INCONCLUSIVE, status.result
            if not status.success:
                return FAILED, status.result
            info = await self._gateway.query_channel(ledger_channel_id)
        except LedgerUnavailable as e:
            logger.debug("Verification check for %s failed: %s", channel_id, e)
            return INCONCLUSIVE, ""
        if info.exists:
            logger.debug("Settlement %s validated but channel entry still present", tx_ref[:8])
            return INCONCLUSIVE, status.result
        return VERIFIED, status.result

    async def _finalize(self, channel_id: str, tx_ref: Optional[str]) -> dict:
        async with self._storage.transaction():
            now = self._clock()
            settled = await self._storage.payout_writer().settle(channel_id, tx_ref, now)
            if settled:
                await self._storage.closure_requests.transition_for_channel(
                    channel_id, (RequestStatus.APPROVED.value,), RequestStatus.COMPLETED.value,
                    now, settlement_tx_ref=tx_ref,
                )
                await self._storage.closure_requests.transition_for_channel(
                    channel_id, (RequestStatus.PENDING.value,), RequestStatus.CANCELLED.value, now,
                )
        channel = await self._get_channel(channel_id)
        if settled:
            logger.info("Channel %s closed (tx=%s)", channel_id, tx_ref or "-")
        return channel

    async def _rollback(self, channel_id: str, reason: str):
        async with self._storage.transaction():
            now = self._clock()
            rolled_back = await self._storage.channels.rollback_to_active(channel_id, now)
            if rolled_back:
                await self._storage.closure_requests.transition_for_channel(
                    channel_id, OPEN_REQUEST_STATUSES, RequestStatus.CANCELLED.value, now,
                )
        if rolled_back:
            logger.warning("Channel %s rolled back to active: %s", channel_id, reason)

    # -------------------------------------------------------------------
    # Asynchronous resolution (driven by reconciliation)
    # -------------------------------------------------------------------

    async def resolve_pending_settlement(self, channel: dict) -> str:
        """Judge a Closing channel left inconclusive. Returns the verdict applied.

        Runs under the submission slot; a channel whose slot is freshly held
        by a running submitter is left alone.
        """
        if channel["state"] != ChannelState.CLOSING.value:
            return INCONCLUSIVE
        token = await self._claim_submission(channel)
        if token is None:
            return INCONCLUSIVE
        channel_id = channel["channel_id"]
        try:
            channel = await self._get_channel(channel_id)
            tx_ref = channel["settlement_tx_ref"]
            if tx_ref:
                verdict, result = await self.check_settlement(channel_id, channel["ledger_channel_id"], tx_ref)
                if verdict == VERIFIED:
                    await self._finalize(channel_id, tx_ref)
                elif verdict == FAILED:
                    await self._rollback(channel_id, f"settlement failed validation: {result}")
                return verdict

            # Submission outcome was never heard: only an absent entry settles it
            info = await self._gateway.query_channel(channel["ledger_channel_id"])
            if info.exists:
                return INCONCLUSIVE
            await self._finalize(channel_id, None)
            return VERIFIED
        finally:
            async with self._storage.transaction():
                await self._storage.channels.release_submission(channel_id, token, self._clock())
