"""
Base classes for firewall policies.

This module defines the core abstractions for policies in txgate:
- Policy: Abstract base class every policy variant implements
- PolicyContext: Evaluation context passed to policies

Design Principles:
    - A policy exposes one capability: evaluate(request, context) -> bool
    - Evaluation is a pure read; only admin mutators change state
    - Mutators are gated by the shared AccessControl admin role
    - Side effects of an approval happen in commit(), after the overall
      verdict is known, never inside evaluate()
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from txgate.access import POLICY_ADMIN_ROLE, AccessControl
from txgate.schema import PolicyKind, PolicyVerdict, TransactionRequest, normalize_address


@dataclass(frozen=True)
class PolicyContext:
    """
    Context passed to policies during evaluation.

    Attributes:
        consumer: The protected target the request is addressed to
        dry_run: When True, commit() must not be called
        metadata: Additional context-specific metadata
    """

    consumer: str
    dry_run: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_request(cls, request: TransactionRequest, dry_run: bool = False) -> "PolicyContext":
        """Context for a request addressed to its own `to` consumer."""
        return cls(consumer=request.to, dry_run=dry_run)


class Policy(ABC):
    """
    Abstract base class for all firewall policies.

    Subclasses must implement:
    - kind property: the policy variant
    - evaluate(): the verdict for a request

    Attributes:
        address: Unique address identifying this policy
        access: Access control shared with the registry
    """

    def __init__(self, address: str, access: AccessControl) -> None:
        self.address = normalize_address(address)
        self.access = access
        self._lock = threading.RLock()

    @property
    @abstractmethod
    def kind(self) -> PolicyKind:
        """The variant of this policy."""
        ...

    @abstractmethod
    def evaluate(self, request: TransactionRequest, context: PolicyContext) -> bool:
        """
        Render a verdict for a pending call.

        Args:
            request: The proposed call
            context: Consumer and evaluation flags

        Returns:
            True to approve, False to deny
        """
        ...

    def explain(self, request: TransactionRequest, context: PolicyContext) -> PolicyVerdict:
        """
        Verdict with a human-readable reason.

        Override to give a more specific reason than approve/deny.
        """
        approved = self.evaluate(request, context)
        return PolicyVerdict(
            policy=self.address,
            kind=self.kind,
            approved=approved,
            reason="approved" if approved else "denied",
        )

    def commit(self, request: TransactionRequest, context: PolicyContext) -> None:
        """
        Apply side effects of an approved request.

        Called once per distinct policy after the overall verdict is approve.
        The default does nothing.
        """

    def commit_targets(self) -> list["Policy"]:
        """Policies whose commit() runs when this policy takes part in an approval."""
        return [self]

    def _require_admin(self, caller: str, operation: str) -> None:
        self.access.require_role(caller, POLICY_ADMIN_ROLE, operation)

    def __repr__(self) -> str:
        """String representation of the policy."""
        return f"<{self.__class__.__name__}: {self.address}>"
