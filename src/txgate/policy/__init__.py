"""
Policy module for txgate.

A policy is a unit of logic producing an approve/deny verdict for a pending
call. Every variant implements the same capability, evaluate(request,
context) -> bool, so the registry and the combined policy treat them
uniformly.

Variants:
    - AllowlistPolicy: per-consumer sender allowlist, deny-by-default
    - CombinedPolicy: truth table over other policies' verdicts
    - ApprovedCallsPolicy: single-use pre-approved calls per sender
"""

from txgate.policy.allowlist import AllowlistPolicy
from txgate.policy.approved_calls import ApprovedCallsPolicy, call_hash
from txgate.policy.base import Policy, PolicyContext
from txgate.policy.combined import CombinedPolicy, all_of, any_of

__all__ = [
    "AllowlistPolicy",
    "ApprovedCallsPolicy",
    "CombinedPolicy",
    "Policy",
    "PolicyContext",
    "all_of",
    "any_of",
    "call_hash",
]
