"""
Balance writers.

A channel carries two balances with one writer each:

    off_ledger_balance  accrual (clock-out credits) and payout (zeroed on close)
    on_ledger_balance   ledger mirror (reconciliation only)

Each writer declares the balance columns it owns and refuses any update
touching another balance column. A refusal is a programmer error and
raises InvariantViolation instead of being corrected.
"""

import time
from typing import Dict, FrozenSet, Optional, Tuple

import aiosqlite

from wageflow.config import round_amount
from wageflow.errors import InvariantViolation

BALANCE_COLUMNS = frozenset({"off_ledger_balance", "on_ledger_balance", "hours_accumulated"})


class Increment:
    """Assignment value meaning `column = column + amount`."""

    def __init__(self, amount: float):
        self.amount = amount


class _BalanceWriter:
    owned_columns: FrozenSet[str] = frozenset()

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    def _check_columns(self, assignments: Dict[str, object]):
        foreign = (set(assignments) & BALANCE_COLUMNS) - self.owned_columns
        if foreign:
            raise InvariantViolation(
                f"{type(self).__name__} may not write {', '.join(sorted(foreign))}",
                details={"owned": sorted(self.owned_columns)},
            )

    async def _assign(
        self, channel_id: str, assignments: Dict[str, object],
        where: str = "", params: Tuple = (),
    ) -> int:
        """UPDATE one channel row; returns rowcount. Must run inside a transaction."""
        self._check_columns(assignments)
        clauses, values = [], []
        for column, value in assignments.items():
            if isinstance(value, Increment):
                clauses.append(f"{column} = {column} + ?")
                values.append(value.amount)
            else:
                clauses.append(f"{column} = ?")
                values.append(value)
        query = f"UPDATE channels SET {', '.join(clauses)} WHERE channel_id = ?"
        values.append(channel_id)
        if where:
            query += f" AND {where}"
            values.extend(params)
        cursor = await self._db.execute(query, tuple(values))
        return cursor.rowcount


class AccrualWriter(_BalanceWriter):
    """Credits completed session earnings. Owned by the work session tracker."""

    owned_columns = frozenset({"off_ledger_balance", "hours_accumulated"})

    async def credit(self, channel_id: str, earnings: float, hours: float) -> float:
        """Add earnings (clamped to remaining escrow); returns the amount credited."""
        if earnings < 0 or hours < 0:
            raise InvariantViolation(
                "Accrual credit must be non-negative",
                details={"channel_id": channel_id, "earnings": earnings, "hours": hours},
            )
        async with self._db.execute(
            "SELECT off_ledger_balance, escrow_funded_amount FROM channels "
            "WHERE channel_id = ? AND state = 'active'",
            (channel_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise InvariantViolation(
                "Accrual attempted on a channel that is not active",
                details={"channel_id": channel_id},
            )
        balance, escrow = row
        credited = round_amount(min(earnings, max(escrow - balance, 0.0)))
        new_balance = round_amount(balance + credited)
        if new_balance > escrow:
            raise InvariantViolation(
                "Accrual would exceed escrow",
                details={"channel_id": channel_id, "balance": new_balance, "escrow": escrow},
            )
        await self._assign(
            channel_id,
            {
                "off_ledger_balance": new_balance,
                "hours_accumulated": Increment(hours),
                "updated_at": time.time(),
            },
            where="state = 'active'",
        )
        return credited


class PayoutWriter(_BalanceWriter):
    """Zeroes the accrued balance once the ledger has paid it out. Owned by closure."""

    owned_columns = frozenset({"off_ledger_balance"})

    async def settle(self, channel_id: str, tx_ref: Optional[str], closed_at: float) -> bool:
        """CLOSING -> CLOSED with the payout delivered. Returns False if not closing."""
        changed = await self._assign(
            channel_id,
            {
                "off_ledger_balance": 0.0,
                "state": "closed",
                "closed_at": closed_at,
                "settlement_tx_ref": tx_ref,
                "submission_token": None,
                "submission_claimed_at": None,
                "updated_at": closed_at,
            },
            where="state = 'closing'",
        )
        return changed == 1


class LedgerMirrorWriter(_BalanceWriter):
    """Mirrors the ledger's reported channel balance. Owned by reconciliation."""

    owned_columns = frozenset({"on_ledger_balance"})

    async def record(self, channel_id: str, on_ledger_balance: float, synced_at: float) -> bool:
        changed = await self._assign(
            channel_id,
            {
                "on_ledger_balance": round_amount(on_ledger_balance),
                "last_ledger_sync": synced_at,
            },
        )
        return changed == 1
