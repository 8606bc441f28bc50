"""
state_machine.py - Channel lifecycle rules.

    DRAFT -> ACTIVE -> CLOSING -> CLOSED
                  ^        |
                  +--------+  (settlement failed validation: rollback)

Expired is a flag on CLOSING, not a state of its own: an expired channel is
still closing, but either party may finalize it.

Transitions are persisted with compare-and-swap updates in ChannelRepo;
this module only decides what is legal and who may sign.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Set, Union

from wageflow.errors import (
    ChannelAlreadyClosed,
    ChannelAlreadyClosing,
    ChannelNotActive,
    InvalidTransition,
    NotAuthorized,
)


class ChannelState(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class Role(str, Enum):
    SPONSOR = "sponsor"
    WORKER = "worker"
    ADMIN = "admin"


class SessionStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Draft has no way back: a failed confirmation discards the record
LEGAL_TRANSITIONS: Dict[ChannelState, Set[ChannelState]] = {
    ChannelState.DRAFT: {ChannelState.ACTIVE},
    ChannelState.ACTIVE: {ChannelState.CLOSING},
    ChannelState.CLOSING: {ChannelState.CLOSED, ChannelState.ACTIVE},
    ChannelState.CLOSED: set(),
}


def ensure_transition(current: str, target: ChannelState):
    """Raise the typed conflict for an illegal transition from ``current``."""
    state = ChannelState(current)
    if target in LEGAL_TRANSITIONS[state]:
        return
    if state == ChannelState.CLOSED:
        raise ChannelAlreadyClosed("Channel is already closed")
    if target == ChannelState.CLOSING and state == ChannelState.CLOSING:
        raise ChannelAlreadyClosing("Channel closure is already in progress")
    if target == ChannelState.CLOSING and state == ChannelState.DRAFT:
        raise ChannelNotActive("Channel has not been confirmed on the ledger")
    raise InvalidTransition(
        f"Cannot transition from {state.value} to {target.value}",
        details={"from": state.value, "to": target.value},
    )


# ---------------------------------------------------------------------------
# Settlement authority
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DirectAuthority:
    """The requester can sign the settlement transaction itself."""

    signer: Role
    expired: bool = False


@dataclass(frozen=True)
class RequiresApproval:
    """The sponsor must approve and sign on the requester's behalf."""

    approver: Role = Role.SPONSOR


Authority = Union[DirectAuthority, RequiresApproval]


def resolve_authority(role: Role, off_ledger_balance: float, expired: bool = False) -> Authority:
    """Decide who signs a closure attempt.

    Only the funding party can sign a claim that moves escrow, so a worker
    closing with accrued pay needs sponsor approval. A worker with nothing
    accrued moves no funds and may close directly. After expiry either
    party may submit the final transaction.
    """
    if role == Role.SPONSOR:
        return DirectAuthority(signer=Role.SPONSOR, expired=expired)
    if role != Role.WORKER:
        raise ValueError(f"Role {role!r} takes no part in channel settlement")
    if expired or off_ledger_balance <= 0:
        return DirectAuthority(signer=Role.WORKER, expired=expired)
    return RequiresApproval()


def party_role(channel: dict, actor_id: str) -> Role:
    """Return the actor's role on this channel, or raise if not a party."""
    if actor_id == channel["sponsor_id"]:
        return Role.SPONSOR
    if actor_id == channel["worker_id"]:
        return Role.WORKER
    raise NotAuthorized(
        "Actor is not a party to this channel",
        details={"channel_id": channel["channel_id"], "actor_id": actor_id},
    )
