"""
SQLite-based persistence for stake ledger state.

Stores campaign parameters, pause flags, pools, user records, withdrawal
queues, role grants and (for the in-memory gateway) asset balances so a
service can recover after restart.  Amounts can exceed SQLite's 64-bit
INTEGER range and are stored as decimal TEXT.

Usage:
    store = StateStore("data/metanode.db")
    store.snapshot_ledger(ledger)
    ...
    store.restore_ledger(fresh_ledger)
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any

from metanode_core.heights import ClockHeightSource, HeightSource
from metanode_core.pools import Pool, UserInfo, WithdrawalRequest

logger = logging.getLogger("metanode_storage")


class StateStore:
    """Thin SQLite wrapper for persisting ledger state."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/metanode.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False,
                                     isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS params (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS pools (
                pid                  INTEGER PRIMARY KEY,
                asset                TEXT NOT NULL,
                weight               TEXT NOT NULL,
                last_settled_height  TEXT NOT NULL,
                acc_reward_per_share TEXT NOT NULL,
                total_staked         TEXT NOT NULL,
                min_deposit          TEXT NOT NULL,
                unstake_lock_heights TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS users (
                pid                 INTEGER NOT NULL,
                address             TEXT NOT NULL,
                stake_amount        TEXT NOT NULL,
                settlement_baseline TEXT NOT NULL,
                accrued_reward      TEXT NOT NULL,
                PRIMARY KEY (pid, address)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS withdrawal_requests (
                pid           INTEGER NOT NULL,
                address       TEXT NOT NULL,
                position      INTEGER NOT NULL,
                amount        TEXT NOT NULL,
                unlock_height TEXT NOT NULL,
                PRIMARY KEY (pid, address, position)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS roles (
                role    TEXT NOT NULL,
                account TEXT NOT NULL,
                PRIMARY KEY (role, account)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                asset  TEXT NOT NULL,
                holder TEXT NOT NULL,
                amount TEXT NOT NULL,
                PRIMARY KEY (asset, holder)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION})."
            )

    # ── reads ────────────────────────────────────────────────────

    def load_params(self) -> dict[str, str]:
        rows = self._conn.execute("SELECT key, value FROM params").fetchall()
        return {r["key"]: r["value"] for r in rows}

    def load_pools(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM pools ORDER BY pid").fetchall()
        return [dict(r) for r in rows]

    def load_users(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM users").fetchall()
        return [dict(r) for r in rows]

    def load_requests(self) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT * FROM withdrawal_requests ORDER BY pid, address, position"
        ).fetchall()
        return [dict(r) for r in rows]

    def is_empty(self) -> bool:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM pools").fetchone()
        return row["n"] == 0 and not self.load_params()

    # ── bulk helpers ─────────────────────────────────────────────

    def snapshot_ledger(self, ledger: Any) -> None:
        """Persist the full current state of a StakeLedger in one transaction."""
        c = self._conn
        with ledger._lock:
            try:
                c.execute("BEGIN IMMEDIATE")
                for table in ("params", "pools", "users", "withdrawal_requests",
                              "roles", "balances"):
                    c.execute(f"DELETE FROM {table}")

                params = {
                    "start_height": ledger.campaign.start_height,
                    "end_height": ledger.campaign.end_height,
                    "reward_per_height": ledger.campaign.reward_per_height,
                    "reward_token": ledger.reward_token,
                    "total_pool_weight": ledger.registry.total_pool_weight,
                    "paused": int(ledger.paused),
                    "withdraw_paused": int(ledger.withdraw_paused),
                    "claim_paused": int(ledger.claim_paused),
                    "height": ledger.heights.current_height(),
                }
                if isinstance(ledger.heights, ClockHeightSource):
                    params["genesis_time"] = repr(ledger.heights.genesis_time)
                c.executemany(
                    "INSERT INTO params (key, value) VALUES (?, ?)",
                    [(k, str(v)) for k, v in params.items()],
                )

                for pool in ledger.registry.pools:
                    c.execute(
                        """INSERT INTO pools
                           (pid, asset, weight, last_settled_height,
                            acc_reward_per_share, total_staked, min_deposit,
                            unstake_lock_heights)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                        (pool.pid, pool.asset, str(pool.weight),
                         str(pool.last_settled_height),
                         str(pool.acc_reward_per_share), str(pool.total_staked),
                         str(pool.min_deposit), str(pool.unstake_lock_heights)),
                    )

                for (pid, address), user in ledger.registry.users.items():
                    c.execute(
                        """INSERT INTO users
                           (pid, address, stake_amount, settlement_baseline,
                            accrued_reward)
                           VALUES (?, ?, ?, ?, ?)""",
                        (pid, address, str(user.stake_amount),
                         str(user.settlement_baseline), str(user.accrued_reward)),
                    )
                    c.executemany(
                        """INSERT INTO withdrawal_requests
                           (pid, address, position, amount, unlock_height)
                           VALUES (?, ?, ?, ?, ?)""",
                        [(pid, address, i, str(r.amount), str(r.unlock_height))
                         for i, r in enumerate(user.requests)],
                    )

                if hasattr(ledger.access, "_members"):
                    c.executemany(
                        "INSERT INTO roles (role, account) VALUES (?, ?)",
                        [(role, acct)
                         for role, accts in ledger.access._members.items()
                         for acct in accts],
                    )

                if hasattr(ledger.gateway, "balances"):
                    c.executemany(
                        "INSERT INTO balances (asset, holder, amount) VALUES (?, ?, ?)",
                        [(asset, holder, str(amount))
                         for asset, book in ledger.gateway.balances.items()
                         for holder, amount in book.items()],
                    )

                c.execute("COMMIT")
            except Exception:
                c.execute("ROLLBACK")
                raise
        logger.debug(
            f"Snapshot saved: {len(ledger.registry.pools)} pools, "
            f"{len(ledger.registry.users)} users"
        )

    def restore_ledger(self, ledger: Any) -> None:
        """Load persisted state into a freshly-constructed StakeLedger."""
        params = self.load_params()
        with ledger._lock:
            if params:
                ledger.campaign.start_height = int(params["start_height"])
                ledger.campaign.end_height = int(params["end_height"])
                ledger.campaign.reward_per_height = int(params["reward_per_height"])
                ledger.reward_token = params["reward_token"]
                ledger.paused = params["paused"] == "1"
                ledger.withdraw_paused = params["withdraw_paused"] == "1"
                ledger.claim_paused = params["claim_paused"] == "1"
                self._restore_height(ledger.heights, params)

            registry = ledger.registry
            registry.pools = [
                Pool(
                    pid=row["pid"],
                    asset=row["asset"],
                    weight=int(row["weight"]),
                    last_settled_height=int(row["last_settled_height"]),
                    acc_reward_per_share=int(row["acc_reward_per_share"]),
                    total_staked=int(row["total_staked"]),
                    min_deposit=int(row["min_deposit"]),
                    unstake_lock_heights=int(row["unstake_lock_heights"]),
                )
                for row in self.load_pools()
            ]
            registry.total_pool_weight = int(params.get("total_pool_weight", "0"))

            registry.users = {}
            for row in self.load_users():
                registry.users[(row["pid"], row["address"])] = UserInfo(
                    stake_amount=int(row["stake_amount"]),
                    settlement_baseline=int(row["settlement_baseline"]),
                    accrued_reward=int(row["accrued_reward"]),
                )
            for row in self.load_requests():
                registry.user(row["pid"], row["address"]).requests.append(
                    WithdrawalRequest(amount=int(row["amount"]),
                                      unlock_height=int(row["unlock_height"]))
                )

            roles = self._conn.execute("SELECT role, account FROM roles").fetchall()
            if roles and hasattr(ledger.access, "_members"):
                members: dict[str, set[str]] = {}
                for r in roles:
                    members.setdefault(r["role"], set()).add(r["account"])
                ledger.access._members = members

            if hasattr(ledger.gateway, "balances"):
                rows = self._conn.execute(
                    "SELECT asset, holder, amount FROM balances"
                ).fetchall()
                if rows:
                    ledger.gateway.balances = {}
                    for r in rows:
                        ledger.gateway.balances.setdefault(r["asset"], {})[
                            r["holder"]] = int(r["amount"])
        logger.info(
            f"Restored {len(registry.pools)} pools and {len(registry.users)} users"
        )

    @staticmethod
    def _restore_height(heights: HeightSource, params: dict[str, str]) -> None:
        """Continue the saved height line instead of restarting at zero."""
        if isinstance(heights, ClockHeightSource) and "genesis_time" in params:
            saved = float(params["genesis_time"])
            if saved != heights.genesis_time:
                logger.info(f"Clock genesis restored to {saved}")
                heights.genesis_time = saved
        if "height" in params:
            heights.resume_from(int(params["height"]))

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
