"""
Combined policy: a boolean truth table over sub-policy verdicts.

The verdicts of the configured sub-policies, taken in order, form a vector.
The request is approved iff that vector equals one of the accepted rows.

    AND over n policies:  accepted_rows = [[True] * n]
    OR over n policies:   every row with at least one True
    anything else:        list the rows you accept

Configuration is replaced as a whole; readers always see either the old
table or the new one.
"""

import itertools
import logging

from txgate.access import AccessControl
from txgate.errors import CombinationArityError, ConfigurationError
from txgate.policy.base import Policy, PolicyContext
from txgate.schema import PolicyKind, PolicyVerdict, TransactionRequest

logger = logging.getLogger(__name__)


def all_of(n: int) -> list[list[bool]]:
    """Accepted rows for AND over n sub-policies."""
    return [[True] * n]


def any_of(n: int) -> list[list[bool]]:
    """Accepted rows for OR over n sub-policies."""
    return [list(row) for row in itertools.product([True, False], repeat=n) if any(row)]


class CombinedPolicy(Policy):
    """
    N-ary boolean combinator over other policies.

    Example:
        combined = CombinedPolicy(address, access)
        combined.set_allowed_combinations(admin, [approved_calls, allowlist], [[True, True]])
    """

    def __init__(self, address: str, access: AccessControl) -> None:
        super().__init__(address, access)
        self._sub_policies: tuple[Policy, ...] = ()
        self._accepted_rows: frozenset[tuple[bool, ...]] = frozenset()

    @property
    def kind(self) -> PolicyKind:
        return PolicyKind.COMBINED

    @property
    def sub_policies(self) -> tuple[Policy, ...]:
        with self._lock:
            return self._sub_policies

    @property
    def accepted_rows(self) -> frozenset[tuple[bool, ...]]:
        with self._lock:
            return self._accepted_rows

    def set_allowed_combinations(
        self,
        caller: str,
        sub_policies: list[Policy],
        accepted_rows: list[list[bool]],
    ) -> None:
        """
        Replace the sub-policy list and the accepted rows.

        Raises:
            AuthorizationError: If caller lacks the admin role
            ConfigurationError: Empty sub-policy list, non-boolean entries,
                or a sub-policy graph that leads back to this policy
            CombinationArityError: A row's length differs from the number
                of sub-policies
        """
        self._require_admin(caller, "set_allowed_combinations")

        if not sub_policies:
            raise ConfigurationError(
                message="Combined policy needs at least one sub-policy",
                policy=self.address,
            )

        for sub in sub_policies:
            if self._reaches_self(sub):
                raise ConfigurationError(
                    message=f"Sub-policy {sub.address} leads back to combined policy {self.address}",
                    policy=self.address,
                )

        expected = len(sub_policies)
        rows: set[tuple[bool, ...]] = set()
        for index, row in enumerate(accepted_rows):
            if len(row) != expected:
                raise CombinationArityError(
                    policy=self.address,
                    row_index=index,
                    expected=expected,
                    actual=len(row),
                )
            if not all(isinstance(v, bool) for v in row):
                raise ConfigurationError(
                    message=f"Accepted row {index} must contain only booleans",
                    policy=self.address,
                )
            rows.add(tuple(row))

        with self._lock:
            self._sub_policies = tuple(sub_policies)
            self._accepted_rows = frozenset(rows)

        logger.info(
            "Combined %s: %d sub-policies, %d accepted row(s)",
            self.address,
            expected,
            len(rows),
        )

    def _reaches_self(self, policy: Policy) -> bool:
        stack = [policy]
        seen: set[str] = set()
        while stack:
            current = stack.pop()
            if current is self or current.address == self.address:
                return True
            if current.address in seen:
                continue
            seen.add(current.address)
            if isinstance(current, CombinedPolicy):
                stack.extend(current.sub_policies)
        return False

    def _snapshot(self) -> tuple[tuple[Policy, ...], frozenset[tuple[bool, ...]]]:
        with self._lock:
            return self._sub_policies, self._accepted_rows

    def verdict_vector(self, request: TransactionRequest, context: PolicyContext) -> tuple[bool, ...]:
        """Sub-policy verdicts in configured order."""
        sub_policies, _ = self._snapshot()
        return tuple(bool(sub.evaluate(request, context)) for sub in sub_policies)

    def evaluate(self, request: TransactionRequest, context: PolicyContext) -> bool:
        sub_policies, rows = self._snapshot()
        if not sub_policies:
            return False
        vector = tuple(bool(sub.evaluate(request, context)) for sub in sub_policies)
        return vector in rows

    def explain(self, request: TransactionRequest, context: PolicyContext) -> PolicyVerdict:
        sub_policies, rows = self._snapshot()
        if not sub_policies:
            return PolicyVerdict(
                policy=self.address,
                kind=self.kind,
                approved=False,
                reason="no combination configured",
            )
        vector = tuple(bool(sub.evaluate(request, context)) for sub in sub_policies)
        approved = vector in rows
        shown = "[" + ", ".join("true" if v else "false" for v in vector) + "]"
        reason = f"verdicts {shown} {'match' if approved else 'match no'} accepted row"
        return PolicyVerdict(policy=self.address, kind=self.kind, approved=approved, reason=reason)

    def commit_targets(self) -> list[Policy]:
        """Every non-combined policy reachable from here, each once, in order."""
        sub_policies, _ = self._snapshot()
        targets: list[Policy] = []
        seen: set[str] = set()
        for sub in sub_policies:
            for target in sub.commit_targets():
                if target.address not in seen:
                    seen.add(target.address)
                    targets.append(target)
        return targets

    def commit(self, request: TransactionRequest, context: PolicyContext) -> None:
        for target in self.commit_targets():
            target.commit(request, context)
