"""
Unit tests for role-based access control.
"""

import pytest

from txgate.access import POLICY_ADMIN_ROLE, AccessControl
from txgate.errors import AuthorizationError


class TestAccessControl:
    """Tests for AccessControl."""

    def test_owner_holds_every_role(self, access: AccessControl, addr) -> None:
        assert access.has_role(addr.admin, POLICY_ADMIN_ROLE)
        assert access.has_role(addr.admin, "ANY_OTHER_ROLE")

    def test_owner_not_listed_as_member(self, access: AccessControl) -> None:
        assert access.members() == []

    def test_stranger_has_no_role(self, access: AccessControl, addr) -> None:
        assert not access.has_role(addr.mallory)

    def test_initial_admins(self, addr) -> None:
        access = AccessControl(owner=addr.admin, admins=[addr.alice])
        assert access.has_role(addr.alice)
        assert access.members() == [addr.alice]

    def test_grant_and_revoke(self, access: AccessControl, addr) -> None:
        access.grant_role(addr.admin, POLICY_ADMIN_ROLE, addr.alice)
        assert access.has_role(addr.alice)

        access.revoke_role(addr.admin, POLICY_ADMIN_ROLE, addr.alice)
        assert not access.has_role(addr.alice)

    def test_admin_can_grant(self, access: AccessControl, addr) -> None:
        access.grant_role(addr.admin, POLICY_ADMIN_ROLE, addr.alice)
        access.grant_role(addr.alice, POLICY_ADMIN_ROLE, addr.bob)
        assert access.has_role(addr.bob)

    def test_stranger_cannot_grant(self, access: AccessControl, addr) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            access.grant_role(addr.mallory, POLICY_ADMIN_ROLE, addr.mallory)
        assert exc_info.value.operation == "grant_role"
        assert not access.has_role(addr.mallory)

    def test_revoke_absent_is_noop(self, access: AccessControl, addr) -> None:
        access.revoke_role(addr.admin, POLICY_ADMIN_ROLE, addr.bob)
        assert not access.has_role(addr.bob)

    def test_addresses_case_insensitive(self, access: AccessControl, addr) -> None:
        access.grant_role(addr.admin, POLICY_ADMIN_ROLE, "0x" + addr.alice[2:].upper())
        assert access.has_role(addr.alice)

    def test_require_role(self, access: AccessControl, addr) -> None:
        access.require_role(addr.admin, POLICY_ADMIN_ROLE, "noop")
        with pytest.raises(AuthorizationError) as exc_info:
            access.require_role(addr.bob, POLICY_ADMIN_ROLE, "set_policy_status")
        assert exc_info.value.caller == addr.bob
        assert exc_info.value.role == POLICY_ADMIN_ROLE
