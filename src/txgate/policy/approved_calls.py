"""
ApprovedCalls policy: pre-approved, single-use calls per sender.

An admin approves the exact calls (target, calldata, value) a sender may
make. A request passes iff its call hash is approved for its sender. The
approval is consumed when the overall decision approves the request.

With a store, every use is written through to it, and
`apply_recorded_consumption()` subtracts earlier uses after the approvals
have been seeded again from configuration.
"""

import hashlib
import json
import logging
from collections.abc import Iterable

from txgate.access import AccessControl
from txgate.policy.base import Policy, PolicyContext
from txgate.schema import (
    CallSpec,
    PolicyKind,
    PolicyVerdict,
    TransactionRequest,
    normalize_address,
)
from txgate.store import SubmissionStore

logger = logging.getLogger(__name__)


def call_hash(to: str, data: str, value: int) -> str:
    """SHA256 over the canonical JSON form of a call."""
    payload = {"to": normalize_address(to), "data": data.lower(), "value": int(value)}
    content = json.dumps(payload, sort_keys=True).encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def request_call_hash(request: TransactionRequest) -> str:
    return call_hash(request.to, request.data, request.value)


class ApprovedCallsPolicy(Policy):
    """
    Approve a request iff the exact call was pre-approved for its sender.

    Example:
        policy = ApprovedCallsPolicy(address, access)
        policy.approve_calls(admin, alice, [CallSpec(to=vault, data="0xd0e30db0")])
    """

    def __init__(
        self,
        address: str,
        access: AccessControl,
        store: SubmissionStore | None = None,
    ) -> None:
        super().__init__(address, access)
        self.store = store
        self._approved: dict[str, dict[str, int]] = {}

    @property
    def kind(self) -> PolicyKind:
        return PolicyKind.APPROVED_CALLS

    def approve_calls(self, caller: str, sender: str, calls: Iterable[CallSpec]) -> list[str]:
        """
        Approve each call once for `sender`.

        Approving the same call twice allows it twice.

        Returns:
            The call hashes that were approved, in input order
        """
        self._require_admin(caller, "approve_calls")
        sender = normalize_address(sender)
        hashes = [call_hash(c.to, c.data, c.value) for c in calls]
        with self._lock:
            pending = dict(self._approved.get(sender, {}))
            for h in hashes:
                pending[h] = pending.get(h, 0) + 1
            self._approved[sender] = pending
        logger.info("ApprovedCalls %s: approved %d call(s) for %s", self.address, len(hashes), sender)
        return hashes

    def revoke_calls(self, caller: str, sender: str) -> None:
        """Drop every pending approval for `sender`."""
        self._require_admin(caller, "revoke_calls")
        sender = normalize_address(sender)
        with self._lock:
            self._approved.pop(sender, None)

    def apply_recorded_consumption(self) -> int:
        """
        Subtract the uses recorded in the store from the pending approvals.

        Returns:
            Number of uses subtracted
        """
        if self.store is None:
            return 0
        used = self.store.consumed_approvals(self.address)
        spent = 0
        with self._lock:
            for (sender, h), count in used.items():
                pending = dict(self._approved.get(sender, {}))
                left = pending.get(h, 0)
                if left <= 0:
                    continue
                take = min(left, count)
                if left == take:
                    del pending[h]
                else:
                    pending[h] = left - take
                self._approved[sender] = pending
                spent += take
        if spent:
            logger.info("ApprovedCalls %s: %d approval(s) already used", self.address, spent)
        return spent

    def remaining(self, sender: str, to: str, data: str = "0x", value: int = 0) -> int:
        """How many more times the call may pass for `sender`."""
        sender = normalize_address(sender)
        with self._lock:
            return self._approved.get(sender, {}).get(call_hash(to, data, value), 0)

    def evaluate(self, request: TransactionRequest, context: PolicyContext) -> bool:
        with self._lock:
            pending = self._approved.get(request.sender, {})
            return pending.get(request_call_hash(request), 0) > 0

    def explain(self, request: TransactionRequest, context: PolicyContext) -> PolicyVerdict:
        approved = self.evaluate(request, context)
        reason = "call is pre-approved" if approved else "call was not pre-approved for sender"
        return PolicyVerdict(policy=self.address, kind=self.kind, approved=approved, reason=reason)

    def commit(self, request: TransactionRequest, context: PolicyContext) -> None:
        if context.dry_run:
            return
        h = request_call_hash(request)
        with self._lock:
            pending = dict(self._approved.get(request.sender, {}))
            count = pending.get(h, 0)
            if count <= 0:
                return
            if count == 1:
                del pending[h]
            else:
                pending[h] = count - 1
            self._approved[request.sender] = pending
        if self.store is not None:
            self.store.record_consumption(self.address, request.sender, h)
        logger.debug("ApprovedCalls %s: consumed %s for %s", self.address, h[:8], request.sender)
