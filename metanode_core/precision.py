"""
Fixed-point precision and checked integer arithmetic for the stake ledger.

All amounts are unsigned integers bounded by ``MAX_UINT`` (2**256 - 1), the
range of the asset balances the ledger mirrors.  Reward-per-share values are
scaled by ``SCALE`` so that fractional rewards survive integer division:

    acc_reward_per_share += reward * SCALE // total_staked
    entitlement           = stake * acc_reward_per_share // SCALE

Every helper raises ``ArithmeticOverflow`` instead of wrapping or going
negative, so a bad operand aborts the enclosing operation.
"""

from __future__ import annotations

from metanode_core.errors import ArithmeticOverflow, ValidationError

# Reward-per-share scaling factor.
SCALE: int = 10 ** 18

# Largest representable amount.
MAX_UINT: int = 2 ** 256 - 1


def checked_add(a: int, b: int, what: str = "add") -> int:
    result = a + b
    if result > MAX_UINT:
        raise ArithmeticOverflow(f"{what} overflow")
    return result


def checked_sub(a: int, b: int, what: str = "sub") -> int:
    if b > a:
        raise ArithmeticOverflow(f"{what} underflow")
    return a - b


def checked_mul(a: int, b: int, what: str = "mul") -> int:
    result = a * b
    if result > MAX_UINT:
        raise ArithmeticOverflow(f"{what} overflow")
    return result


def checked_div(a: int, b: int, what: str = "div") -> int:
    if b == 0:
        raise ArithmeticOverflow(f"{what} by zero")
    return a // b


def mul_div(a: int, b: int, d: int, what: str = "mul_div") -> int:
    """``a * b // d`` with the intermediate product checked."""
    return checked_div(checked_mul(a, b, what), d, what)


def require_amount(value: object, name: str = "amount") -> int:
    """Return *value* as a uint, rejecting bools, floats and out-of-range ints.

    >>> require_amount(5)
    5
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    if value < 0 or value > MAX_UINT:
        raise ValidationError(f"{name} out of range")
    return value
