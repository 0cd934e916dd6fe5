#!/usr/bin/env python3
"""
MetaNode stake ledger runner. Starts the ledger service with:
  - state restore / snapshot via SQLite
  - default pools from config on first start
  - the REST API
  - an interactive CLI (optional)

Usage:
    python run_ledger.py --config metanode.toml --port 8090

Environment variables (alternative to flags):
    METANODE_HOST, METANODE_PORT, METANODE_DB_PATH, METANODE_LOG_LEVEL
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from metanode_core.api import APIServer  # noqa: E402
from metanode_core.config import MetaNodeConfig, load_config  # noqa: E402
from metanode_core.errors import StakeError  # noqa: E402
from metanode_core.heights import ManualHeightSource  # noqa: E402
from metanode_core.logging_config import setup_logging  # noqa: E402
from metanode_core.service import bootstrap_pools, build_ledger  # noqa: E402
from metanode_core.storage import StateStore  # noqa: E402

logger = logging.getLogger("metanode")


# ===================================================================
#  Ledger service
# ===================================================================

class LedgerService:
    """Ledger + persistence + API in one runnable unit."""

    def __init__(self, config: MetaNodeConfig):
        self.config = config
        self.ledger = build_ledger(config)
        self.store: StateStore | None = None
        self._api: APIServer | None = None
        self._bg_tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        cfg = self.config
        if cfg.storage.enabled:
            self.store = StateStore(cfg.storage.path)
            if not self.store.is_empty():
                logger.info("Restoring ledger state from database...")
                self.store.restore_ledger(self.ledger)

        bootstrap_pools(self.ledger, cfg)

        if self.store is not None and cfg.storage.snapshot_interval_seconds > 0:
            self._bg_tasks.append(asyncio.create_task(self._snapshot_loop()))

        if cfg.api.enabled:
            self._api = APIServer(self.ledger, host=cfg.api.host, port=cfg.api.port,
                                  api_config=cfg.api)
            await self._api.start()

        logger.info(
            f"Ledger started | height={self.ledger.heights.current_height()} "
            f"| pools={self.ledger.pool_count()}"
        )

    async def stop(self) -> None:
        for task in self._bg_tasks:
            task.cancel()
        if self._api is not None:
            await self._api.stop()
        if self.store is not None:
            logger.info("Saving ledger state to database...")
            self.store.snapshot_ledger(self.ledger)
            self.store.close()
            self.store = None

    async def _snapshot_loop(self) -> None:
        interval = self.config.storage.snapshot_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                self.store.snapshot_ledger(self.ledger)
            except Exception:
                logger.exception("Periodic snapshot failed")

    def fund_local(self, asset: str, address: str, amount: int) -> None:
        """Credit *address* with *amount* of *asset* (local testing helper)."""
        self.ledger.gateway.mint(asset, address, amount)
        logger.info(f"Funded {address} with {amount} {asset}")


# ===================================================================
#  Interactive CLI
# ===================================================================

async def interactive_cli(service: LedgerService, account: str):
    """Simple async CLI acting as *account*."""
    loop = asyncio.get_event_loop()
    ledger = service.ledger

    def print_help():
        print("""
  status                    - Ledger summary
  pools                     - List pools
  me <pid>                  - Your record in a pool
  deposit <pid> <amount>    - Stake a token (pid 0 stakes native)
  unstake <pid> <amount>    - Request a withdrawal
  withdraw <pid>            - Collect unlocked withdrawals
  claim <pid>               - Claim pending reward
  fund <asset> <addr> <n>   - Credit an address (test)
  advance [n]               - Advance a manual height source
  as <account>              - Switch the acting account
  help                      - Show this help
  quit                      - Shutdown
""")

    print_help()

    while True:
        try:
            line = await loop.run_in_executor(None, lambda: input(f"\n[{account}] > "))
            parts = line.strip().split()
            if not parts:
                continue
            cmd = parts[0].lower()

            if cmd == "help":
                print_help()
            elif cmd == "status":
                print(json.dumps(ledger.summary(), indent=2, default=str))
            elif cmd == "pools":
                for pid in range(ledger.pool_count()):
                    print(json.dumps(ledger.pool_info(pid), default=str))
            elif cmd == "me" and len(parts) == 2:
                print(json.dumps(ledger.user_info(int(parts[1]), account), indent=2,
                                 default=str))
            elif cmd == "deposit" and len(parts) == 3:
                pid, amount = int(parts[1]), int(parts[2])
                if pid == 0:
                    ledger.deposit_native(account, amount)
                else:
                    ledger.deposit(account, pid, amount)
                print(f"  staked {amount} in pool {pid}")
            elif cmd == "unstake" and len(parts) == 3:
                req = ledger.unstake(account, int(parts[1]), int(parts[2]))
                if req:
                    print(f"  unlocks at height {req.unlock_height}")
            elif cmd == "withdraw" and len(parts) == 2:
                print(f"  withdrew {ledger.withdraw(account, int(parts[1]))}")
            elif cmd == "claim" and len(parts) == 2:
                print(f"  paid {ledger.claim(account, int(parts[1]))}")
            elif cmd == "fund" and len(parts) == 4:
                service.fund_local(parts[1], parts[2], int(parts[3]))
            elif cmd == "advance":
                if not isinstance(ledger.heights, ManualHeightSource):
                    print("  height source is not manual")
                    continue
                n = int(parts[1]) if len(parts) > 1 else 1
                print(f"  height {ledger.heights.advance(n)}")
            elif cmd == "as" and len(parts) == 2:
                account = parts[1]
            elif cmd in ("quit", "exit", "q"):
                print("Shutting down...")
                await service.stop()
                break
            else:
                print(f"  Unknown command: {line.strip()}. Type 'help'.")

        except (EOFError, KeyboardInterrupt):
            print("\nShutting down...")
            await service.stop()
            break
        except (StakeError, ValueError) as e:
            print(f"  Error: {e}")


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args():
    p = argparse.ArgumentParser(description="MetaNode Stake Ledger")
    p.add_argument("--config", default=None, help="Path to metanode.toml config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument("--db", default=None, help="SQLite path (enables persistence)")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    p.add_argument("--account", default=None,
                   help="Acting account for the interactive CLI (default: admin)")
    p.add_argument("--no-cli", action="store_true",
                   help="Run without interactive CLI")
    return p.parse_args()


async def main():
    args = parse_args()
    cfg = load_config(args.config)

    # CLI flags override config
    if args.host:
        cfg.api.host = args.host
    if args.port:
        cfg.api.port = args.port
    if args.db:
        cfg.storage.path = args.db
        cfg.storage.enabled = True
    if args.log_level:
        cfg.logging.level = args.log_level.upper()

    setup_logging(level=cfg.logging.level, fmt=cfg.logging.format,
                  log_file=cfg.logging.file)

    service = LedgerService(cfg)
    await service.start()

    if cfg.campaign.treasury_funding == 0:
        logger.warning(
            "Reward treasury is unfunded; claims will pay nothing until "
            f"{cfg.campaign.reward_token} is credited to custody."
        )

    if args.no_cli:
        try:
            while True:
                await asyncio.sleep(1)
        except (KeyboardInterrupt, asyncio.CancelledError):
            await service.stop()
    else:
        await interactive_cli(service, args.account or cfg.admin.initial_admin)


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
