"""
test_state_machine.py - Channel lifecycle rules

Validates:
 - Legal transitions Draft -> Active -> Closing -> Closed, Closing -> Active
 - Illegal transitions raise the typed conflict
 - Settlement authority: sponsor always signs, worker only with nothing
   accrued or after expiry
"""

import pytest

from wageflow.errors import (
    ChannelAlreadyClosed,
    ChannelAlreadyClosing,
    ChannelNotActive,
    ErrorKind,
    InvalidTransition,
    NotAuthorized,
)
from wageflow.state_machine import (
    LEGAL_TRANSITIONS,
    ChannelState,
    DirectAuthority,
    RequiresApproval,
    Role,
    ensure_transition,
    party_role,
    resolve_authority,
)


class TestTransitions:

    @pytest.mark.parametrize("current,target", [
        ("draft", ChannelState.ACTIVE),
        ("active", ChannelState.CLOSING),
        ("closing", ChannelState.CLOSED),
        ("closing", ChannelState.ACTIVE),
    ])
    def test_legal(self, current, target):
        """Every edge of the lifecycle graph is accepted."""
        ensure_transition(current, target)

    def test_closed_is_terminal(self):
        """Nothing leaves Closed."""
        assert LEGAL_TRANSITIONS[ChannelState.CLOSED] == set()
        for target in ChannelState:
            with pytest.raises(ChannelAlreadyClosed):
                ensure_transition("closed", target)

    def test_second_closure_attempt(self):
        """Closing twice reports the closure already in progress."""
        with pytest.raises(ChannelAlreadyClosing):
            ensure_transition("closing", ChannelState.CLOSING)

    def test_draft_cannot_close(self):
        """An unconfirmed channel cannot be closed."""
        with pytest.raises(ChannelNotActive):
            ensure_transition("draft", ChannelState.CLOSING)

    def test_draft_cannot_skip_to_closed(self):
        """Generic illegal transitions carry both states in the details."""
        with pytest.raises(InvalidTransition) as exc:
            ensure_transition("draft", ChannelState.CLOSED)
        assert exc.value.details == {"from": "draft", "to": "closed"}
        assert exc.value.kind == ErrorKind.CONFLICT

    def test_active_cannot_reactivate(self):
        """Active -> Active is not a transition."""
        with pytest.raises(InvalidTransition):
            ensure_transition("active", ChannelState.ACTIVE)


class TestAuthority:

    def test_sponsor_signs_directly(self):
        """The funding party always signs."""
        assert resolve_authority(Role.SPONSOR, 15.0) == DirectAuthority(signer=Role.SPONSOR)

    def test_worker_with_balance_needs_approval(self):
        """Accrued pay moves escrow, so the sponsor must approve."""
        authority = resolve_authority(Role.WORKER, 15.0)
        assert isinstance(authority, RequiresApproval)
        assert authority.approver == Role.SPONSOR

    def test_worker_with_nothing_accrued_signs(self):
        """A claim with no payout moves no funds."""
        assert resolve_authority(Role.WORKER, 0.0) == DirectAuthority(signer=Role.WORKER)

    def test_worker_after_expiry_signs(self):
        """After expiry the worker may submit the final claim."""
        authority = resolve_authority(Role.WORKER, 15.0, expired=True)
        assert authority == DirectAuthority(signer=Role.WORKER, expired=True)

    def test_admin_takes_no_part(self):
        """Admins are not channel parties."""
        with pytest.raises(ValueError):
            resolve_authority(Role.ADMIN, 0.0)


class TestPartyRole:
    CHANNEL = {"channel_id": "c1", "sponsor_id": "acme", "worker_id": "alice"}

    def test_parties(self):
        """Sponsor and worker ids map to their roles."""
        assert party_role(self.CHANNEL, "acme") == Role.SPONSOR
        assert party_role(self.CHANNEL, "alice") == Role.WORKER

    def test_outsider(self):
        """Anyone else gets a 403."""
        with pytest.raises(NotAuthorized) as exc:
            party_role(self.CHANNEL, "mallory")
        assert exc.value.status_code == 403
