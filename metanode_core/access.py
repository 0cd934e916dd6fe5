"""
Role-based authorization gate.

Three roles exist: ``DEFAULT_ADMIN_ROLE`` administers
role grants, ``ADMIN_ROLE`` gates pool and campaign administration, and
``UPGRADE_ROLE`` gates software upgrades (held by operators; the ledger
itself never checks it).  The account that bootstraps the ledger receives
all three.
"""

from __future__ import annotations

import logging

from metanode_core.errors import AuthorizationError

logger = logging.getLogger("metanode_access")

DEFAULT_ADMIN_ROLE: str = "DEFAULT_ADMIN_ROLE"
ADMIN_ROLE: str = "admin_role"
UPGRADE_ROLE: str = "upgrade_role"

ALL_ROLES: tuple[str, ...] = (DEFAULT_ADMIN_ROLE, ADMIN_ROLE, UPGRADE_ROLE)


class AccessControl:
    """In-memory role table exposing ``has_capability(caller, role)``."""

    def __init__(self, initial_admin: str | None = None) -> None:
        self._members: dict[str, set[str]] = {role: set() for role in ALL_ROLES}
        if initial_admin:
            for role in ALL_ROLES:
                self._members[role].add(initial_admin)

    def has_capability(self, caller: str, role: str) -> bool:
        return caller in self._members.get(role, ())

    def require(self, caller: str, role: str) -> None:
        if not self.has_capability(caller, role):
            raise AuthorizationError(f"{caller} is missing role {role}")

    def grant(self, caller: str, role: str, account: str) -> None:
        self.require(caller, DEFAULT_ADMIN_ROLE)
        self._members.setdefault(role, set()).add(account)
        logger.info(f"Role {role} granted to {account} by {caller}")

    def revoke(self, caller: str, role: str, account: str) -> None:
        self.require(caller, DEFAULT_ADMIN_ROLE)
        self._members.get(role, set()).discard(account)
        logger.info(f"Role {role} revoked from {account} by {caller}")

    def members(self, role: str) -> list[str]:
        return sorted(self._members.get(role, ()))
