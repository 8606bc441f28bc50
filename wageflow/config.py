"""
config.py - Engine configuration.

All timing knobs of the channel engine in one place. Defaults suit a
single-node deployment; the server entry point overrides them from CLI flags.
"""

import argparse
from dataclasses import dataclass, fields

HOUR_SEC = 3600
DAY_SEC = 86400

# Amounts are stored at ledger drop precision (1 unit = 1_000_000 drops)
AMOUNT_DECIMALS = 6


def round_amount(value: float) -> float:
    return round(value, AMOUNT_DECIMALS)


@dataclass
class EngineConfig:
    clock_in_retry_window_sec: float = 10.0
    max_session_sec: float = 8.0 * HOUR_SEC
    default_max_daily_hours: float = 8.0
    closing_expiry_sec: float = float(HOUR_SEC)
    verify_attempts: int = 5
    verify_interval_sec: float = 1.0
    read_retry_attempts: int = 3
    read_retry_base_delay: float = 0.25
    reconcile_interval_sec: float = 60.0
    sweep_interval_sec: float = 30.0
    draft_confirm_timeout_sec: float = 600.0
    submission_stale_sec: float = 300.0
    discrepancy_epsilon: float = 1e-6

    def __post_init__(self):
        if self.max_session_sec <= 0:
            raise ValueError("max_session_sec must be positive")
        if not 0 < self.default_max_daily_hours <= 24:
            raise ValueError("default_max_daily_hours must be in (0, 24]")
        if self.verify_attempts < 1 or self.read_retry_attempts < 1:
            raise ValueError("retry budgets must allow at least one attempt")
        if self.submission_stale_sec <= self.verify_attempts * self.verify_interval_sec:
            raise ValueError("submission_stale_sec must exceed the verification budget")

    @staticmethod
    def add_arguments(parser: argparse.ArgumentParser):
        """Register one --flag per config field (e.g. --closing-expiry-sec)."""
        defaults = EngineConfig()
        for f in fields(EngineConfig):
            flag = "--" + f.name.replace("_", "-")
            parser.add_argument(
                flag, type=type(getattr(defaults, f.name)), default=None,
                help=f"(default: {getattr(defaults, f.name)})",
            )

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "EngineConfig":
        overrides = {}
        for f in fields(cls):
            value = getattr(args, f.name, None)
            if value is not None:
                overrides[f.name] = value
        return cls(**overrides)
