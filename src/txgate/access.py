"""
Role-based access control for firewall administration.

A single admin role gates every mutating call on the registry and on
policies. The owner may always grant and revoke roles; so may any current
admin.

Usage:
    access = AccessControl(owner=deployer)
    access.grant_role(deployer, POLICY_ADMIN_ROLE, admin)
    access.require_role(admin, POLICY_ADMIN_ROLE, "set_consumer_allowlist")
"""

import logging
import threading

from txgate.errors import AuthorizationError
from txgate.schema import normalize_address

logger = logging.getLogger(__name__)

POLICY_ADMIN_ROLE = "POLICY_ADMIN_ROLE"


class AccessControl:
    """
    Address -> roles mapping with owner bootstrap.

    Attributes:
        owner: Address that holds every role implicitly
    """

    def __init__(self, owner: str, admins: list[str] | None = None) -> None:
        self.owner = normalize_address(owner)
        self._roles: dict[str, set[str]] = {}
        self._lock = threading.Lock()
        for admin in admins or []:
            self._roles.setdefault(POLICY_ADMIN_ROLE, set()).add(normalize_address(admin))

    def has_role(self, account: str, role: str = POLICY_ADMIN_ROLE) -> bool:
        """Whether `account` holds `role`. The owner holds every role."""
        account = normalize_address(account)
        if account == self.owner:
            return True
        with self._lock:
            return account in self._roles.get(role, set())

    def require_role(
        self,
        caller: str,
        role: str = POLICY_ADMIN_ROLE,
        operation: str = "",
    ) -> None:
        """
        Raise unless `caller` holds `role`.

        Raises:
            AuthorizationError: If the role is missing
        """
        if not self.has_role(caller, role):
            logger.warning("Denied %s to %s: missing %s", operation or "call", caller, role)
            raise AuthorizationError(caller=caller, role=role, operation=operation)

    def grant_role(self, caller: str, role: str, account: str) -> None:
        """Grant `role` to `account`. Caller must be the owner or an admin."""
        self.require_role(caller, POLICY_ADMIN_ROLE, "grant_role")
        with self._lock:
            self._roles.setdefault(role, set()).add(normalize_address(account))
        logger.info("Granted %s to %s", role, account)

    def revoke_role(self, caller: str, role: str, account: str) -> None:
        """Revoke `role` from `account`. Revoking an absent role is a no-op."""
        self.require_role(caller, POLICY_ADMIN_ROLE, "revoke_role")
        with self._lock:
            self._roles.get(role, set()).discard(normalize_address(account))
        logger.info("Revoked %s from %s", role, account)

    def members(self, role: str = POLICY_ADMIN_ROLE) -> list[str]:
        """Explicit holders of `role`, sorted. The owner is not listed."""
        with self._lock:
            return sorted(self._roles.get(role, set()))
