"""
Allowlist policy: a per-consumer set of senders permitted to call it.

Deny-by-default: an address that was never set for a consumer is denied.
"""

import logging

from txgate.access import AccessControl
from txgate.policy.base import Policy, PolicyContext
from txgate.schema import PolicyKind, PolicyVerdict, TransactionRequest, normalize_address

logger = logging.getLogger(__name__)


class AllowlistPolicy(Policy):
    """
    Approve a request iff its sender is allowlisted for the consumer.

    Example:
        policy = AllowlistPolicy(address, access)
        policy.set_consumer_allowlist(admin, vault, [alice, bob], True)
        policy.consumer_allowlist(vault, alice)  # True
    """

    def __init__(self, address: str, access: AccessControl) -> None:
        super().__init__(address, access)
        self._allowlists: dict[str, dict[str, bool]] = {}

    @property
    def kind(self) -> PolicyKind:
        return PolicyKind.ALLOWLIST

    def set_consumer_allowlist(
        self,
        caller: str,
        consumer: str,
        addresses: list[str],
        value: bool,
    ) -> None:
        """
        Set every listed address to `value` for `consumer`.

        All addresses are validated before anything is written, so a bad
        address leaves the allowlist untouched. Duplicates collapse and
        repeating the call is idempotent.

        Raises:
            AuthorizationError: If caller lacks the admin role
            ValueError: If any address is malformed
        """
        self._require_admin(caller, "set_consumer_allowlist")
        consumer = normalize_address(consumer)
        normalized = [normalize_address(a) for a in addresses]

        with self._lock:
            # copy-on-write so readers never see a half-applied update
            updated = dict(self._allowlists.get(consumer, {}))
            for address in normalized:
                updated[address] = bool(value)
            self._allowlists[consumer] = updated

        logger.info(
            "Allowlist %s: set %d address(es) to %s for consumer %s",
            self.address,
            len(set(normalized)),
            value,
            consumer,
        )

    def consumer_allowlist(self, consumer: str, address: str) -> bool:
        """Stored flag for (consumer, address), False when absent."""
        consumer = normalize_address(consumer)
        address = normalize_address(address)
        with self._lock:
            return self._allowlists.get(consumer, {}).get(address, False)

    def allowed_addresses(self, consumer: str) -> list[str]:
        """Addresses currently set to True for `consumer`, sorted."""
        consumer = normalize_address(consumer)
        with self._lock:
            entries = self._allowlists.get(consumer, {})
            return sorted(a for a, allowed in entries.items() if allowed)

    def evaluate(self, request: TransactionRequest, context: PolicyContext) -> bool:
        return self.consumer_allowlist(context.consumer, request.sender)

    def explain(self, request: TransactionRequest, context: PolicyContext) -> PolicyVerdict:
        approved = self.evaluate(request, context)
        if approved:
            reason = f"{request.sender} is allowlisted for {context.consumer}"
        else:
            reason = f"{request.sender} is not allowlisted for {context.consumer}"
        return PolicyVerdict(policy=self.address, kind=self.kind, approved=approved, reason=reason)
