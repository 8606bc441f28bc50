"""
ledger_simulator.py - Offline payment-channel ledger.

Simulates the external ledger for fully offline runs and tests:
 - GET  /ledger/channels/{id}        -> channel entry (404 once removed)
 - POST /ledger/channels             -> fund a new channel (sponsor wallet side)
 - POST /ledger/settlements          -> submit a closing claim
 - GET  /ledger/transactions/{ref}   -> validation status of a submitted claim
 - GET  /ledger/stats                -> counters

Claim validation mirrors the real channel-claim primitive:
 - A claim that moves escrow beyond the already-claimed balance needs the
   funding party's (sponsor's) signature
 - An explicit zero balance is rejected; omit the field instead
 - Balance may not exceed the funded amount
 - A successful close removes the channel entry and returns the rest of
   the escrow to the sponsor

Validation and entry removal are reported by different queries and can lag
each other; fault knobs let tests hold either one back, fail the next
claim, or make the ledger unreachable.

Usage (standalone):
    python -m wageflow.ledger_simulator --port 8545

Usage (integrated into the payroll server):
    from wageflow.ledger_simulator import LedgerSimulator
    ledger = LedgerSimulator()
    ledger.register_routes(fastapi_app)
"""

import argparse
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from wageflow import __version__
from wageflow.errors import LedgerUnavailable, SettlementRejected
from wageflow.ledger_gateway import ChannelInfo, LedgerGateway, TransactionStatus
from wageflow.state_machine import Role

logger = logging.getLogger("ledger")

TX_SUCCESS = "tesSUCCESS"
TX_NO_ENTRY = "tecNO_ENTRY"
TX_BAD_SIGNATURE = "temBAD_SIGNATURE"
TX_BAD_AMOUNT = "temBAD_AMOUNT"

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass
class LedgerChannel:
    channel_id: str
    account: str        # funding party (sponsor)
    destination: str    # payee (worker)
    amount: float
    balance: float = 0.0  # amount already claimed by the destination
    created_at: float = field(default_factory=time.time)
    closed: bool = False
    removal_lag: int = 0  # channel queries left before a closed entry disappears

    def to_dict(self) -> dict:
        return {
            "channel_id": self.channel_id,
            "account": self.account,
            "destination": self.destination,
            "amount": self.amount,
            "balance": self.balance,
            "created_at": self.created_at,
        }


@dataclass
class LedgerTransaction:
    tx_ref: str
    channel_id: str
    payout: Optional[float]
    signer: str
    submitted_at: float = field(default_factory=time.time)
    validated: bool = False
    result: str = "pending"
    forced_result: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "tx_ref": self.tx_ref,
            "channel_id": self.channel_id,
            "payout": self.payout,
            "signer": self.signer,
            "validated": self.validated,
            "success": self.validated and self.result == TX_SUCCESS,
            "result": self.result,
        }


# ---------------------------------------------------------------------------
# Ledger Simulator
# ---------------------------------------------------------------------------


class LedgerSimulator(LedgerGateway):
    """In-memory payment-channel ledger, usable directly as a LedgerGateway."""

    def __init__(self):
        self._channels: Dict[str, LedgerChannel] = {}
        self._transactions: Dict[str, LedgerTransaction] = {}
        self._returned_escrow: Dict[str, float] = {}

        # Fault injection
        self.unavailable = False
        self.hold_validation = False
        self.entry_removal_lag = 0
        self._fail_next: Optional[str] = None
        self._ambiguous_next_submit = False

        logger.info("Ledger simulator initialized")

    # -------------------------------------------------------------------
    # Fault knobs
    # -------------------------------------------------------------------

    def fail_next_settlement(self, result: str = "tecUNFUNDED_PAYMENT"):
        """The next submitted claim is accepted but fails validation with ``result``."""
        self._fail_next = result

    def drop_next_submit_response(self):
        """The next claim is applied but the caller never hears back."""
        self._ambiguous_next_submit = True

    def _check_available(self):
        if self.unavailable:
            raise LedgerUnavailable("Ledger simulator is unavailable")

    # -------------------------------------------------------------------
    # Wallet side
    # -------------------------------------------------------------------

    def fund_channel(self, sponsor: str, worker: str, amount: float) -> str:
        if amount <= 0:
            raise ValueError("Channel amount must be positive")
        channel_id = secrets.token_hex(32).upper()
        self._channels[channel_id] = LedgerChannel(
            channel_id=channel_id, account=sponsor, destination=worker, amount=amount,
        )
        logger.info("Channel funded: %s..%s sponsor=%s worker=%s amount=%.6f",
                    channel_id[:8], channel_id[-4:], sponsor, worker, amount)
        return channel_id

    def set_claimed_balance(self, channel_id: str, balance: float):
        """Record an off-band claim so the ledger reports a non-zero balance."""
        self._channels[channel_id].balance = balance

    def remove_channel(self, channel_id: str):
        """Drop an entry as if it were closed by a transaction this engine never saw."""
        self._channels.pop(channel_id, None)

    def get_transaction(self, tx_ref: str) -> Optional[LedgerTransaction]:
        return self._transactions.get(tx_ref)

    def returned_escrow(self, sponsor: str) -> float:
        return self._returned_escrow.get(sponsor, 0.0)

    # -------------------------------------------------------------------
    # LedgerGateway
    # -------------------------------------------------------------------

    async def query_channel(self, channel_id: str) -> ChannelInfo:
        self._check_available()
        if not self.hold_validation:
            # Claims still pending for this channel land in the next closed ledger
            for tx in list(self._transactions.values()):
                if tx.channel_id == channel_id and not tx.validated:
                    self._apply(tx)
        channel = self._channels.get(channel_id)
        if channel is None:
            return ChannelInfo(exists=False)
        if channel.closed:
            if channel.removal_lag <= 0:
                del self._channels[channel_id]
                return ChannelInfo(exists=False)
            channel.removal_lag -= 1
        return ChannelInfo(exists=True, on_ledger_balance=channel.balance, escrow_amount=channel.amount)

    async def submit_settlement(self, channel_id: str, payout: Optional[float], signer: Role) -> str:
        self._check_available()
        signer = Role(signer).value
        channel = self._channels.get(channel_id)

        if payout is not None:
            if payout == 0:
                raise SettlementRejected(
                    "Explicit zero balance is not allowed on a closing claim",
                    details={"result": TX_BAD_AMOUNT},
                )
            if channel is not None and payout > channel.amount:
                raise SettlementRejected(
                    "Claim balance exceeds channel amount",
                    details={"result": TX_BAD_AMOUNT},
                )
            if channel is not None and payout > channel.balance and signer != Role.SPONSOR.value:
                raise SettlementRejected(
                    "Claim moving escrow must be signed by the funding party",
                    details={"result": TX_BAD_SIGNATURE},
                )

        tx_ref = secrets.token_hex(32).upper()
        tx = LedgerTransaction(tx_ref=tx_ref, channel_id=channel_id, payout=payout, signer=signer)
        if self._fail_next:
            tx.forced_result, self._fail_next = self._fail_next, None
        self._transactions[tx_ref] = tx
        logger.info("Settlement submitted: tx=%s..%s channel=%s..%s payout=%s signer=%s",
                    tx_ref[:8], tx_ref[-4:], channel_id[:8], channel_id[-4:],
                    "omitted" if payout is None else f"{payout:.6f}", signer)

        if self._ambiguous_next_submit:
            self._ambiguous_next_submit = False
            raise LedgerUnavailable("Submission response lost", details={"channel_id": channel_id})
        return tx_ref

    async def query_transaction_status(self, tx_ref: str) -> TransactionStatus:
        self._check_available()
        tx = self._transactions.get(tx_ref)
        if tx is None:
            return TransactionStatus(validated=False, success=False, result="txnNotFound")
        if not tx.validated and not self.hold_validation:
            self._apply(tx)
        return TransactionStatus(
            validated=tx.validated, success=tx.validated and tx.result == TX_SUCCESS, result=tx.result,
        )

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    def _apply(self, tx: LedgerTransaction):
        tx.validated = True
        channel = self._channels.get(tx.channel_id)
        if tx.forced_result:
            tx.result = tx.forced_result
        elif channel is None or channel.closed:
            tx.result = TX_NO_ENTRY
        else:
            if tx.payout is not None:
                channel.balance = tx.payout
            channel.closed = True
            channel.removal_lag = self.entry_removal_lag
            remainder = channel.amount - channel.balance
            self._returned_escrow[channel.account] = self._returned_escrow.get(channel.account, 0.0) + remainder
            tx.result = TX_SUCCESS
        logger.info("Settlement validated: tx=%s..%s result=%s", tx.tx_ref[:8], tx.tx_ref[-4:], tx.result)

    def get_stats(self) -> dict:
        validated = [t for t in self._transactions.values() if t.validated]
        return {
            "open_channels": sum(1 for c in self._channels.values() if not c.closed),
            "transactions": len(self._transactions),
            "validated": len(validated),
            "succeeded": sum(1 for t in validated if t.result == TX_SUCCESS),
        }

    # -------------------------------------------------------------------
    # FastAPI route registration
    # -------------------------------------------------------------------

    def register_routes(self, app):
        """Register ledger endpoints on an existing FastAPI app."""

        def _unavailable(e: LedgerUnavailable):
            return JSONResponse(status_code=503, content={"status": "error", "message": e.message})

        @app.get("/ledger/channels/{channel_id}")
        async def get_channel(channel_id: str):
            try:
                info = await self.query_channel(channel_id)
            except LedgerUnavailable as e:
                return _unavailable(e)
            if not info.exists:
                return JSONResponse(status_code=404, content={"status": "error", "message": "entryNotFound"})
            return self._channels[channel_id].to_dict()

        @app.post("/ledger/channels")
        async def fund_channel(payload: dict):
            try:
                self._check_available()
                channel_id = self.fund_channel(
                    payload.get("sponsor", ""), payload.get("worker", ""), float(payload.get("amount", 0)),
                )
            except LedgerUnavailable as e:
                return _unavailable(e)
            except (TypeError, ValueError) as e:
                return JSONResponse(status_code=400, content={"status": "error", "message": str(e)})
            return {"channel_id": channel_id}

        @app.post("/ledger/settlements")
        async def submit_settlement(payload: dict):
            payout = payload.get("balance")
            try:
                tx_ref = await self.submit_settlement(
                    payload.get("channel_id", ""),
                    float(payout) if payout is not None else None,
                    payload.get("signer", ""),
                )
            except LedgerUnavailable as e:
                return _unavailable(e)
            except SettlementRejected as e:
                return JSONResponse(
                    status_code=400,
                    content={"status": "error", "message": e.message, "result": e.details.get("result", "")},
                )
            except ValueError as e:
                return JSONResponse(status_code=400, content={"status": "error", "message": str(e)})
            return {"tx_ref": tx_ref}

        @app.get("/ledger/transactions/{tx_ref}")
        async def get_transaction(tx_ref: str):
            try:
                status = await self.query_transaction_status(tx_ref)
            except LedgerUnavailable as e:
                return _unavailable(e)
            if status.result == "txnNotFound":
                return JSONResponse(status_code=404, content={"status": "error", "message": "txnNotFound"})
            return {"tx_ref": tx_ref, "validated": status.validated, "success": status.success,
                    "result": status.result}

        @app.get("/ledger/stats")
        async def ledger_stats():
            return self.get_stats()

        logger.info("Ledger simulator routes registered on FastAPI app")


# ---------------------------------------------------------------------------
# Standalone mode
# ---------------------------------------------------------------------------

def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )

    parser = argparse.ArgumentParser(description="Payment Channel Ledger Simulator (standalone)")
    parser.add_argument("--port", type=int, default=8545, help="HTTP port (default: 8545)")
    parser.add_argument("--entry-removal-lag", type=int, default=0,
                        help="Channel queries a closed entry stays visible (default: 0)")
    args = parser.parse_args()

    app = FastAPI(title="Payment Channel Ledger Simulator", version=__version__)
    ledger = LedgerSimulator()
    ledger.entry_removal_lag = args.entry_removal_lag
    ledger.register_routes(app)

    @app.get("/")
    async def root():
        stats = ledger.get_stats()
        stats["service"] = "Payment Channel Ledger Simulator"
        stats["port"] = args.port
        return stats

    logger.info("=" * 50)
    logger.info("  Payment Channel Ledger Simulator")
    logger.info("  Port: %d", args.port)
    logger.info("=" * 50)

    uvicorn.run(app, host="0.0.0.0", port=args.port, log_level="info")


if __name__ == "__main__":
    main()
