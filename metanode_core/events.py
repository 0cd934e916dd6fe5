"""
Append-only event records emitted by ledger operations.

Each mutating operation appends one ``StakeEvent`` carrying its operands
and resulting totals.  Records are write-once; the ledger never reads them
back.  Consumers (the API's ``/events`` feed, an external indexer) poll
``since()`` with the last sequence number they saw.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger("metanode_events")

# Event names
ADD_POOL = "AddPool"
UPDATE_POOL_INFO = "UpdatePoolInfo"
SET_POOL_WEIGHT = "SetPoolWeight"
UPDATE_POOL = "UpdatePool"
SET_REWARD_TOKEN = "SetRewardToken"
SET_START_HEIGHT = "SetStartHeight"
SET_END_HEIGHT = "SetEndHeight"
SET_REWARD_PER_HEIGHT = "SetRewardPerHeight"
PAUSE = "Pause"
UNPAUSE = "Unpause"
PAUSE_WITHDRAW = "PauseWithdraw"
UNPAUSE_WITHDRAW = "UnpauseWithdraw"
PAUSE_CLAIM = "PauseClaim"
UNPAUSE_CLAIM = "UnpauseClaim"
DEPOSIT = "Deposit"
REQUEST_UNSTAKE = "RequestUnstake"
WITHDRAW = "Withdraw"
CLAIM = "Claim"


@dataclass(frozen=True)
class StakeEvent:
    seq: int
    name: str
    height: int
    fields: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "name": self.name,
            "height": self.height,
            "fields": dict(self.fields),
            "timestamp": self.timestamp,
        }


class EventLog:
    """Ordered, append-only log of ``StakeEvent`` records."""

    def __init__(self, max_records: int = 100_000) -> None:
        self._records: list[StakeEvent] = []
        self._next_seq = 1
        self._max_records = max_records
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def emit(self, name: str, height: int, **fields: Any) -> StakeEvent:
        with self._lock:
            event = StakeEvent(seq=self._next_seq, name=name, height=height,
                               fields=fields)
            self._next_seq += 1
            self._records.append(event)
            # Oldest records roll off; seq numbers stay unique.
            if self._max_records > 0 and len(self._records) > self._max_records:
                dropped = len(self._records) - self._max_records
                del self._records[:dropped]
                logger.debug(f"Event log full; dropped {dropped} oldest record(s)")
        return event

    def records(self, name: str | None = None) -> list[StakeEvent]:
        with self._lock:
            if name is None:
                return list(self._records)
            return [e for e in self._records if e.name == name]

    def since(self, seq: int, limit: int = 200) -> list[StakeEvent]:
        """Records with ``seq > seq``, oldest first, at most *limit*."""
        with self._lock:
            out = [e for e in self._records if e.seq > seq]
        return out[:limit]

    @property
    def last_seq(self) -> int:
        return self._next_seq - 1
