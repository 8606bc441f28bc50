"""
reconciler.py - Reconciliation scheduler.

Each pass, for every channel the ledger still holds (Active, Closing):
 - mirror the ledger's reported balance into on_ledger_balance (only)
 - record a discrepancy when |on - off| > epsilon, never correcting off
 - record entry_missing when an Active channel is absent from the ledger
 - flag Closing channels past expires_at as expired
 - resolve Closing channels whose settlement was left inconclusive

Then: a final mirror pass over channels closed since their last sync, and
discarding Drafts whose ledger confirmation never arrived.

The scheduler holds only the LedgerMirrorWriter; it has no path to the
off-ledger balance.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Callable, Optional

from wageflow.config import EngineConfig
from wageflow.errors import LedgerUnavailable, WageflowError
from wageflow.state_machine import ChannelState

if TYPE_CHECKING:
    from wageflow.closure import ClosureNegotiator
    from wageflow.ledger_gateway import LedgerGateway
    from wageflow.storage import StorageManager

logger = logging.getLogger("reconciler")


@dataclass
class ReconcileReport:
    checked: int = 0
    mirrored: int = 0
    discrepancies: int = 0
    expired: int = 0
    finalized: int = 0
    rolled_back: int = 0
    drafts_discarded: int = 0
    closed_synced: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class ReconciliationScheduler:
    """Periodic ledger audit."""

    def __init__(
        self,
        storage: "StorageManager",
        gateway: "LedgerGateway",
        negotiator: "ClosureNegotiator",
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._storage = storage
        self._gateway = gateway
        self._negotiator = negotiator
        self._config = config or EngineConfig()
        self._clock = clock
        self._mirror = storage.mirror_writer()
        self.last_report: Optional[ReconcileReport] = None

    async def run_once(self, now: Optional[float] = None) -> ReconcileReport:
        now = now if now is not None else self._clock()
        report = ReconcileReport()

        for channel in await self._storage.channels.list_unsettled():
            report.checked += 1
            try:
                await self._reconcile_channel(channel, now, report)
            except LedgerUnavailable as e:
                report.errors += 1
                logger.warning("Reconcile skipped %s: %s", channel["channel_id"], e)

        for channel in await self._storage.channels.list_closed_unsynced():
            try:
                info = await self._gateway.query_channel(channel["ledger_channel_id"])
            except LedgerUnavailable as e:
                report.errors += 1
                logger.warning("Final sync skipped %s: %s", channel["channel_id"], e)
                continue
            async with self._storage.transaction():
                await self._mirror.record(channel["channel_id"], info.on_ledger_balance, now)
            report.closed_synced += 1

        await self._discard_stale_drafts(now, report)

        self.last_report = report
        logger.info(
            "Reconcile pass: checked=%d mirrored=%d discrepancies=%d expired=%d "
            "finalized=%d rolled_back=%d drafts_discarded=%d errors=%d",
            report.checked, report.mirrored, report.discrepancies, report.expired,
            report.finalized, report.rolled_back, report.drafts_discarded, report.errors,
        )
        return report

    async def _reconcile_channel(self, channel: dict, now: float, report: ReconcileReport):
        channel_id = channel["channel_id"]
        info = await self._gateway.query_channel(channel["ledger_channel_id"])

        if info.exists:
            async with self._storage.transaction():
                await self._mirror.record(channel_id, info.on_ledger_balance, now)
            report.mirrored += 1
            off = channel["off_ledger_balance"]
            if abs(info.on_ledger_balance - off) > self._config.discrepancy_epsilon:
                if await self._record_discrepancy(
                    channel_id, "balance_mismatch", off, info.on_ledger_balance, now,
                    f"ledger reports {info.on_ledger_balance:.6f}, accrued {off:.6f}",
                ):
                    report.discrepancies += 1
        elif channel["state"] == ChannelState.ACTIVE.value:
            if await self._record_discrepancy(
                channel_id, "entry_missing", channel["off_ledger_balance"],
                channel["on_ledger_balance"], now, "active channel not found on ledger",
            ):
                report.discrepancies += 1

        if channel["state"] != ChannelState.CLOSING.value:
            return

        if not channel["expired"] and channel["expires_at"] is not None and now > channel["expires_at"]:
            async with self._storage.transaction():
                flagged = await self._storage.channels.mark_expired(channel_id, now)
            if flagged:
                report.expired += 1
                logger.info("Channel %s flagged expired (deadline %.0f)", channel_id, channel["expires_at"])

        try:
            verdict = await self._negotiator.resolve_pending_settlement(channel)
        except WageflowError as e:
            report.errors += 1
            logger.warning("Could not resolve settlement for %s: %s", channel_id, e)
            return
        if verdict == "verified":
            report.finalized += 1
        elif verdict == "failed":
            report.rolled_back += 1

    async def _record_discrepancy(
        self, channel_id: str, kind: str, off: float, on: float, now: float, detail: str,
    ) -> bool:
        """Append an audit record unless the latest one for the channel says the same."""
        latest = await self._storage.discrepancies.latest_for_channel(channel_id)
        if latest is not None and latest["kind"] == kind \
                and latest["off_ledger_balance"] == off and latest["on_ledger_balance"] == on:
            return False
        async with self._storage.transaction():
            await self._storage.discrepancies.record(channel_id, kind, off, on, detail, now)
        logger.warning("Discrepancy on %s (%s): %s", channel_id, kind, detail)
        return True

    async def _discard_stale_drafts(self, now: float, report: ReconcileReport):
        cutoff = now - self._config.draft_confirm_timeout_sec
        for draft in await self._storage.channels.list_stale_drafts(cutoff):
            async with self._storage.transaction():
                discarded = await self._storage.channels.discard_draft(draft["channel_id"])
            if discarded:
                report.drafts_discarded += 1
                logger.info("Draft channel %s discarded: confirmation timed out", draft["channel_id"])

    async def run_forever(self):
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Reconcile loop error")
            await asyncio.sleep(self._config.reconcile_interval_sec)
