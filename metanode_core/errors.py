"""
Exception taxonomy for the stake ledger.

Every error aborts the operation that raised it with no state change.
The builtin bases let callers that only know ``ValueError`` /
``PermissionError`` / ``OverflowError`` keep working.
"""

from __future__ import annotations


class StakeError(Exception):
    """Base class for all ledger errors."""


class ValidationError(StakeError, ValueError):
    """Invalid pool index, amount, or policy value."""


class RangeError(ValidationError):
    """Height interval is empty or inverted."""


class AuthorizationError(StakeError, PermissionError):
    """Caller lacks the capability required by an operation."""


class ArithmeticOverflow(StakeError, OverflowError):
    """A checked arithmetic step could not be represented."""


class TransferFailureError(StakeError):
    """A strict transfer could not be completed."""


class PausedError(StakeError):
    """The operation is blocked by a pause flag."""
