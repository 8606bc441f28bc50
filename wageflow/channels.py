"""
channels.py - Channel creation, ledger confirmation and read models.

A channel starts as a Draft when the sponsor asks for escrow funding and
becomes Active only once the ledger reports the channel entry with at least
the funded amount. A Draft that cannot be confirmed is discarded; the
sponsor creates a new one.
"""

import logging
import time
import uuid
from typing import TYPE_CHECKING, Callable, List, Optional

from wageflow.config import EngineConfig, round_amount
from wageflow.errors import (
    ChannelNotConfirmed,
    ChannelNotFound,
    InvalidInput,
    LedgerUnavailable,
    NotAuthorized,
)
from wageflow.state_machine import ChannelState, Role, ensure_transition

if TYPE_CHECKING:
    from wageflow.ledger_gateway import LedgerGateway
    from wageflow.storage import StorageManager

logger = logging.getLogger("channels")

# Fields exposed by GetChannelStatus
_STATUS_FIELDS = (
    "channel_id", "ledger_channel_id", "sponsor_id", "worker_id", "state", "expired",
    "off_ledger_balance", "on_ledger_balance", "escrow_funded_amount", "remaining_escrow",
    "hourly_rate", "hours_accumulated", "max_daily_hours", "created_at", "activated_at",
    "closing_initiated_at", "expires_at", "closed_at", "settlement_tx_ref", "last_ledger_sync",
)


def channel_status(channel: dict) -> dict:
    return {k: channel[k] for k in _STATUS_FIELDS}


class ChannelService:
    """Creates and confirms channels; serves channel, session and audit listings."""

    def __init__(
        self,
        storage: "StorageManager",
        gateway: "LedgerGateway",
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._storage = storage
        self._gateway = gateway
        self._config = config or EngineConfig()
        self._clock = clock

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def create_channel(
        self,
        sponsor_id: str,
        worker_id: str,
        hourly_rate: float,
        escrow_amount: float,
        ledger_channel_id: Optional[str] = None,
        max_daily_hours: Optional[float] = None,
    ) -> dict:
        if not sponsor_id or not worker_id:
            raise InvalidInput("sponsor_id and worker_id are required")
        if sponsor_id == worker_id:
            raise InvalidInput("Sponsor and worker must be different parties")
        if hourly_rate <= 0:
            raise InvalidInput("hourly_rate must be positive", details={"hourly_rate": hourly_rate})
        if escrow_amount <= 0:
            raise InvalidInput("escrow_amount must be positive", details={"escrow_amount": escrow_amount})
        if max_daily_hours is None:
            max_daily_hours = self._config.default_max_daily_hours
        if not 0 < max_daily_hours <= 24:
            raise InvalidInput("max_daily_hours must be in (0, 24]",
                               details={"max_daily_hours": max_daily_hours})

        worker = await self._storage.actors.get(worker_id)
        if worker is not None and worker["role"] != Role.WORKER.value:
            raise InvalidInput(f"Actor '{worker_id}' is not a worker")

        channel_id = uuid.uuid4().hex
        now = self._clock()
        async with self._storage.transaction():
            await self._storage.channels.create_draft(
                channel_id, sponsor_id, worker_id,
                round_amount(hourly_rate), round_amount(escrow_amount), max_daily_hours, now,
            )
        logger.info("Channel drafted: %s sponsor=%s worker=%s rate=%.6f escrow=%.6f",
                    channel_id, sponsor_id, worker_id, hourly_rate, escrow_amount)

        if ledger_channel_id:
            return await self.confirm_channel(channel_id, ledger_channel_id, sponsor_id)
        return await self._storage.channels.get(channel_id)

    async def confirm_channel(
        self, channel_id: str, ledger_channel_id: str, actor_id: Optional[str] = None,
    ) -> dict:
        """Draft -> Active once the ledger reports the funded channel entry."""
        channel = await self.get_channel(channel_id)
        if actor_id is not None and actor_id != channel["sponsor_id"]:
            raise NotAuthorized("Only the sponsor can confirm channel funding")
        ensure_transition(channel["state"], ChannelState.ACTIVE)
        if not ledger_channel_id:
            raise InvalidInput("ledger_channel_id is required")
        existing = await self._storage.channels.get_by_ledger_id(ledger_channel_id)
        if existing is not None:
            raise InvalidInput("Ledger channel is already bound to another channel",
                               details={"ledger_channel_id": ledger_channel_id})

        reason = ""
        try:
            info = await self._gateway.query_channel(ledger_channel_id)
        except LedgerUnavailable as e:
            reason = f"ledger unavailable: {e.message}"
        else:
            if not info.exists:
                reason = "channel entry not found on ledger"
            elif info.escrow_amount is None:
                reason = "ledger did not report the channel escrow"
            elif info.escrow_amount + self._config.discrepancy_epsilon < channel["escrow_funded_amount"]:
                reason = f"ledger escrow {info.escrow_amount:.6f} below funded amount"

        async with self._storage.transaction():
            if reason:
                await self._storage.channels.discard_draft(channel_id)
            else:
                activated = await self._storage.channels.activate(
                    channel_id, ledger_channel_id, self._clock(),
                )
                if not activated:
                    reason = "channel is no longer a draft"

        if reason:
            logger.warning("Channel %s not confirmed (%s); draft discarded", channel_id, reason)
            raise ChannelNotConfirmed(
                "Channel could not be confirmed on the ledger",
                details={"channel_id": channel_id, "reason": reason},
            )
        logger.info("Channel active: %s ledger=%s..%s", channel_id,
                    ledger_channel_id[:8], ledger_channel_id[-4:])
        return await self._storage.channels.get(channel_id)

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    async def get_channel(self, channel_id: str) -> dict:
        channel = await self._storage.channels.get(channel_id)
        if channel is None:
            raise ChannelNotFound(f"Channel '{channel_id}' not found")
        return channel

    async def get_channel_status(self, channel_id: str) -> dict:
        return channel_status(await self.get_channel(channel_id))

    async def list_channels(
        self, party_id: Optional[str] = None, state: Optional[str] = None,
        limit: int = 50, offset: int = 0,
    ) -> List[dict]:
        if state is not None:
            try:
                state = ChannelState(state).value
            except ValueError:
                raise InvalidInput(f"Unknown channel state '{state}'")
        channels = await self._storage.channels.list_all(
            state=state, party_id=party_id, limit=limit, offset=offset,
        )
        return [channel_status(c) for c in channels]

    async def list_sessions(self, channel_id: str, limit: int = 50, offset: int = 0) -> List[dict]:
        await self.get_channel(channel_id)
        return await self._storage.sessions.list_for_channel(channel_id, limit=limit, offset=offset)

    async def list_closure_requests(self, channel_id: str) -> List[dict]:
        await self.get_channel(channel_id)
        return await self._storage.closure_requests.list_for_channel(channel_id)

    async def list_discrepancies(self, channel_id: Optional[str] = None, limit: int = 100) -> List[dict]:
        return await self._storage.discrepancies.list_all(channel_id=channel_id, limit=limit)
