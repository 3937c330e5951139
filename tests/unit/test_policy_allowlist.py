"""
Unit tests for AllowlistPolicy.

Tests cover:
- Deny-by-default
- Idempotent, all-or-nothing writes
- Per-consumer scoping
- Admin gating
"""

import pytest

from txgate.errors import AuthorizationError
from txgate.policy import AllowlistPolicy, PolicyContext
from txgate.schema import PolicyKind, TransactionRequest


def _request(sender: str, to: str) -> TransactionRequest:
    return TransactionRequest(sender=sender, to=to)


class TestAllowlistEvaluation:
    """Tests for AllowlistPolicy.evaluate."""

    def test_kind(self, allowlist: AllowlistPolicy) -> None:
        assert allowlist.kind == PolicyKind.ALLOWLIST

    def test_deny_by_default(self, allowlist: AllowlistPolicy, addr) -> None:
        """An address never written is denied."""
        request = _request(addr.alice, addr.vault)
        assert allowlist.evaluate(request, PolicyContext.for_request(request)) is False
        assert allowlist.consumer_allowlist(addr.vault, addr.alice) is False

    def test_allowlisted_sender_approved(self, allowlist: AllowlistPolicy, addr) -> None:
        allowlist.set_consumer_allowlist(addr.admin, addr.vault, [addr.alice], True)
        request = _request(addr.alice, addr.vault)
        assert allowlist.evaluate(request, PolicyContext.for_request(request)) is True

    def test_other_sender_denied(self, allowlist: AllowlistPolicy, addr) -> None:
        allowlist.set_consumer_allowlist(addr.admin, addr.vault, [addr.alice], True)
        request = _request(addr.mallory, addr.vault)
        assert allowlist.evaluate(request, PolicyContext.for_request(request)) is False

    def test_scoped_per_consumer(self, allowlist: AllowlistPolicy, addr) -> None:
        """Being allowlisted for one consumer says nothing about another."""
        allowlist.set_consumer_allowlist(addr.admin, addr.vault, [addr.alice], True)
        request = _request(addr.alice, addr.pool)
        assert allowlist.evaluate(request, PolicyContext.for_request(request)) is False

    def test_explain(self, allowlist: AllowlistPolicy, addr) -> None:
        request = _request(addr.mallory, addr.vault)
        verdict = allowlist.explain(request, PolicyContext.for_request(request))
        assert verdict.approved is False
        assert verdict.policy == addr.allowlist_policy
        assert "not allowlisted" in verdict.reason


class TestAllowlistWrites:
    """Tests for AllowlistPolicy.set_consumer_allowlist."""

    def test_idempotent(self, allowlist: AllowlistPolicy, addr) -> None:
        """Writing the same entry twice equals writing it once."""
        allowlist.set_consumer_allowlist(addr.admin, addr.vault, [addr.alice], True)
        allowlist.set_consumer_allowlist(addr.admin, addr.vault, [addr.alice], True)
        assert allowlist.allowed_addresses(addr.vault) == [addr.alice]

    def test_duplicates_collapse(self, allowlist: AllowlistPolicy, addr) -> None:
        allowlist.set_consumer_allowlist(addr.admin, addr.vault, [addr.alice, addr.alice, addr.bob], True)
        assert allowlist.allowed_addresses(addr.vault) == sorted([addr.alice, addr.bob])

    def test_remove(self, allowlist: AllowlistPolicy, addr) -> None:
        allowlist.set_consumer_allowlist(addr.admin, addr.vault, [addr.alice, addr.bob], True)
        allowlist.set_consumer_allowlist(addr.admin, addr.vault, [addr.alice], False)
        assert allowlist.consumer_allowlist(addr.vault, addr.alice) is False
        assert allowlist.allowed_addresses(addr.vault) == [addr.bob]

    def test_bad_address_leaves_allowlist_untouched(self, allowlist: AllowlistPolicy, addr) -> None:
        with pytest.raises(ValueError):
            allowlist.set_consumer_allowlist(addr.admin, addr.vault, [addr.alice, "0xnope"], True)
        assert allowlist.allowed_addresses(addr.vault) == []

    def test_empty_list_is_noop(self, allowlist: AllowlistPolicy, addr) -> None:
        allowlist.set_consumer_allowlist(addr.admin, addr.vault, [], True)
        assert allowlist.allowed_addresses(addr.vault) == []

    def test_requires_admin(self, allowlist: AllowlistPolicy, addr) -> None:
        with pytest.raises(AuthorizationError):
            allowlist.set_consumer_allowlist(addr.mallory, addr.vault, [addr.mallory], True)
        assert allowlist.consumer_allowlist(addr.vault, addr.mallory) is False
