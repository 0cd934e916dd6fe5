"""
Reward emission schedule for the stake ledger.

A campaign emits ``reward_per_height`` reward-token units for every height
in ``[start_height, end_height)``.  The multiplier of a height interval is
the total emission inside it once clipped to the campaign window:

    multiplier(a, b) = (min(b, end) - max(a, start)) × reward_per_height

Each pool then receives ``multiplier × weight / total_pool_weight`` of
that emission when it is settled.
"""

from __future__ import annotations

from dataclasses import dataclass

from metanode_core.errors import RangeError, ValidationError
from metanode_core.precision import checked_mul, require_amount


@dataclass
class CampaignWindow:
    """Active emission window and per-height rate."""
    start_height: int = 0
    end_height: int = 0
    reward_per_height: int = 1

    def __post_init__(self) -> None:
        self.validate(self.start_height, self.end_height, self.reward_per_height)

    @staticmethod
    def validate(start_height: int, end_height: int, reward_per_height: int) -> None:
        require_amount(start_height, "start_height")
        require_amount(end_height, "end_height")
        require_amount(reward_per_height, "reward_per_height")
        if start_height > end_height:
            raise ValidationError("invalid parameters: start_height after end_height")
        if reward_per_height <= 0:
            raise ValidationError("invalid parameters: reward_per_height must be positive")

    def multiplier(self, from_height: int, to_height: int) -> int:
        """
        Total emission over ``[from_height, to_height)`` inside the window.

        Raises ``RangeError`` for an inverted interval, before or after
        clipping, and ``ArithmeticOverflow`` if the product does not fit.
        """
        if from_height > to_height:
            raise RangeError("invalid height interval")
        from_height = max(from_height, self.start_height)
        to_height = min(to_height, self.end_height)
        if from_height > to_height:
            raise RangeError("end height must be greater than start height")
        return checked_mul(to_height - from_height, self.reward_per_height,
                           "multiplier")

    def interval_reward(self, from_height: int, to_height: int) -> int:
        """Like ``multiplier`` but an interval outside the window earns 0."""
        if max(from_height, self.start_height) >= min(to_height, self.end_height):
            return 0
        return self.multiplier(from_height, to_height)

    def is_active(self, height: int) -> bool:
        return self.start_height <= height < self.end_height

    def to_dict(self) -> dict:
        return {
            "start_height": self.start_height,
            "end_height": self.end_height,
            "reward_per_height": self.reward_per_height,
        }
