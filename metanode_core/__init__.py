"""
MetaNode Stake - a reward-accrual stake ledger.

Key features:
- Weighted staking pools with a lazily settled reward accumulator
- Delayed withdrawals through a per-user unlock queue
- Best-effort reward payout from a finite treasury
- Role-gated administration and pause switches
- REST API, SQLite snapshots and structured logging
"""

__version__ = "1.0.0"
__all__ = [
    "precision",
    "rewards",
    "pools",
    "heights",
    "access",
    "transfers",
    "events",
    "staking",
    "invariants",
    "config",
    "storage",
    "api",
    "service",
]
