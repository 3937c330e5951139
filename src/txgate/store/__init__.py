"""
Storage module for txgate.

SQLite-backed audit trail for every request that passes through the
gateway: what was proposed, every lifecycle transition, the broadcast hash
and the final receipt.

Tables:
    - submissions: One row per request (call fields, state, reason)
    - transitions: Every state change, in order
    - receipts: Broadcast hash and final outcome per request
    - consumed_approvals: Uses of single-use approvals, so a restart does
      not hand them out again

The receipts table doubles as the executor's idempotency record, so a
request that was already broadcast is never sent again, even from another
process.
"""

from txgate.store.db import SubmissionStore, compute_hash

__all__ = [
    "SubmissionStore",
    "compute_hash",
]
