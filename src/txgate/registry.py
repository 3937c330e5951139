"""
Firewall registry for txgate.

The registry maps each consumer (a protected target) to the ordered set of
policies that gate calls to it.

Design:
    - Explicit keyed store, no module-level global state
    - Every mutator requires the admin role
    - Attach/detach over many consumers is all-or-nothing: every consumer is
      validated before anything is written
    - Readers take snapshots under the same lock as writers, so evaluation
      never observes a half-applied mutation

Usage:
    registry = FirewallRegistry(access)
    registry.register_policy(admin, allowlist)
    registry.set_policy_status(admin, allowlist, True)
    registry.add_global_policy_for_consumers(admin, [vault, pool], allowlist)
    registry.get_active_global_policies(vault)  # [allowlist.address]
"""

import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass

from txgate.access import POLICY_ADMIN_ROLE, AccessControl
from txgate.errors import (
    ConfigurationError,
    PolicyNotAttachedError,
    PolicyNotEnabledError,
    UnknownPolicyError,
)
from txgate.policy.base import Policy
from txgate.schema import normalize_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActivePolicy:
    """A policy attached to a consumer, with its status at snapshot time."""

    policy: Policy
    enabled: bool


class FirewallRegistry:
    """
    Registry of policies and of consumer -> active policy lists.

    Attributes:
        access: Access control gating every mutator
    """

    def __init__(self, access: AccessControl) -> None:
        """Initialize an empty registry."""
        self.access = access
        self._lock = threading.RLock()
        self._policies: dict[str, Policy] = {}
        self._enabled: dict[str, bool] = {}
        self._consumers: dict[str, tuple[str, ...]] = {}

    # =========================================================================
    # Policy Registration
    # =========================================================================

    def register_policy(self, caller: str, policy: Policy) -> None:
        """
        Make a policy known to the registry. Registration does not enable it.

        Raises:
            AuthorizationError: If caller lacks the admin role
            ConfigurationError: If another policy already uses the address
        """
        self.access.require_role(caller, POLICY_ADMIN_ROLE, "register_policy")
        with self._lock:
            existing = self._policies.get(policy.address)
            if existing is policy:
                return
            if existing is not None:
                raise ConfigurationError(
                    message=f"Address {policy.address} already registered to {existing!r}",
                    policy=policy.address,
                )
            self._policies[policy.address] = policy
            self._enabled.setdefault(policy.address, False)
        logger.info("Registered %r", policy)

    def get_policy(self, policy: Policy | str) -> Policy:
        """
        Look up a registered policy by instance or address.

        Raises:
            UnknownPolicyError: If it is not registered
        """
        address = policy.address if isinstance(policy, Policy) else normalize_address(policy)
        with self._lock:
            found = self._policies.get(address)
        if found is None:
            raise UnknownPolicyError(policy=address)
        return found

    def set_policy_status(self, caller: str, policy: Policy | str, enabled: bool) -> None:
        """
        Approve or unapprove a policy for attachment.

        Disabling a policy that is still attached makes evaluation for
        those consumers fail closed.

        Raises:
            AuthorizationError: If caller lacks the admin role
            UnknownPolicyError: If the policy is not registered
        """
        self.access.require_role(caller, POLICY_ADMIN_ROLE, "set_policy_status")
        found = self.get_policy(policy)
        with self._lock:
            self._enabled[found.address] = bool(enabled)
        logger.info("Policy %s %s", found.address, "enabled" if enabled else "disabled")

    def is_policy_enabled(self, policy: Policy | str) -> bool:
        address = policy.address if isinstance(policy, Policy) else normalize_address(policy)
        with self._lock:
            return self._enabled.get(address, False)

    # =========================================================================
    # Consumer Attachment
    # =========================================================================

    def add_global_policy_for_consumers(
        self,
        caller: str,
        consumers: list[str],
        policy: Policy | str,
    ) -> None:
        """
        Attach a policy to every listed consumer, atomically.

        Consumers that already have the policy keep their position.

        Raises:
            AuthorizationError: If caller lacks the admin role
            UnknownPolicyError: If the policy is not registered
            PolicyNotEnabledError: If the policy is not enabled
            ValueError: If any consumer address is malformed
        """
        self.access.require_role(caller, POLICY_ADMIN_ROLE, "add_global_policy_for_consumers")
        found = self.get_policy(policy)
        targets = [normalize_address(c) for c in consumers]

        with self._lock:
            if not self._enabled.get(found.address, False):
                raise PolicyNotEnabledError(policy=found.address)
            updated = dict(self._consumers)
            for consumer in targets:
                current = updated.get(consumer, ())
                if found.address not in current:
                    updated[consumer] = current + (found.address,)
            self._consumers = updated

        logger.info("Attached %s to %d consumer(s)", found.address, len(set(targets)))

    def remove_global_policy_for_consumers(
        self,
        caller: str,
        consumers: list[str],
        policy: Policy | str,
    ) -> None:
        """
        Detach a policy from every listed consumer, atomically.

        Raises:
            AuthorizationError: If caller lacks the admin role
            PolicyNotAttachedError: If any listed consumer does not have the
                policy attached; nothing is detached in that case
            ValueError: If any consumer address is malformed
        """
        self.access.require_role(caller, POLICY_ADMIN_ROLE, "remove_global_policy_for_consumers")
        address = policy.address if isinstance(policy, Policy) else normalize_address(policy)
        targets = [normalize_address(c) for c in consumers]

        with self._lock:
            for consumer in targets:
                if address not in self._consumers.get(consumer, ()):
                    raise PolicyNotAttachedError(policy=address, consumer=consumer)
            updated = dict(self._consumers)
            for consumer in targets:
                remaining = tuple(p for p in updated[consumer] if p != address)
                if remaining:
                    updated[consumer] = remaining
                else:
                    del updated[consumer]
            self._consumers = updated

        logger.info("Detached %s from %d consumer(s)", address, len(set(targets)))

    def get_active_global_policies(self, consumer: str) -> list[str]:
        """Ordered policy addresses attached to `consumer` (empty if none)."""
        consumer = normalize_address(consumer)
        with self._lock:
            return list(self._consumers.get(consumer, ()))

    def snapshot(self, consumer: str) -> tuple[ActivePolicy, ...]:
        """
        Policies attached to `consumer` with their enabled status, captured
        in one critical section.
        """
        consumer = normalize_address(consumer)
        with self._lock:
            return tuple(
                ActivePolicy(policy=self._policies[address], enabled=self._enabled.get(address, False))
                for address in self._consumers.get(consumer, ())
            )

    def consumers(self) -> list[str]:
        """Consumers with at least one attached policy, sorted."""
        with self._lock:
            return sorted(self._consumers)

    def __len__(self) -> int:
        """Return the number of registered policies."""
        with self._lock:
            return len(self._policies)

    def __iter__(self) -> Iterator[Policy]:
        """Iterate over registered policies."""
        with self._lock:
            return iter(list(self._policies.values()))

    def __contains__(self, policy: object) -> bool:
        """Check registration using the 'in' operator."""
        if isinstance(policy, Policy):
            address = policy.address
        elif isinstance(policy, str):
            address = policy.lower()
        else:
            return False
        with self._lock:
            return address in self._policies

    def __repr__(self) -> str:
        """String representation of the registry."""
        with self._lock:
            return f"<FirewallRegistry: {len(self._policies)} policies, {len(self._consumers)} consumers>"
