"""
Wageflow - Hourly Wage Payment Channels

Escrow-backed payment channel engine for hourly work: clock-in/clock-out
accrual, channel lifecycle, closure negotiation with the external ledger,
and periodic reconciliation. Includes SQLite storage, REST API and an
offline ledger simulator.
"""

__version__ = "0.3.0"

__all__ = [
    "auth",
    "channels",
    "closure",
    "config",
    "errors",
    "ledger_gateway",
    "ledger_simulator",
    "reconciler",
    "server",
    "state_machine",
    "storage",
    "tracker",
]
