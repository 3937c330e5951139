"""
Security tests for fail-closed evaluation.

Anything short of an explicit approval from every active policy must deny:
no policies, disabled policies, evaluator errors, unreachable endpoints and
malformed endpoint answers.
"""

from unittest.mock import MagicMock, patch

import httpx

from txgate.access import AccessControl
from txgate.client import PolicyDecisionClient
from txgate.endpoint import HttpDecisionEndpoint, LocalDecisionEndpoint
from txgate.executor import TransactionExecutor
from txgate.gateway import Gateway
from txgate.policy import AllowlistPolicy, CombinedPolicy, Policy, PolicyContext
from txgate.registry import FirewallRegistry
from txgate.schema import PolicyKind, RequestState, RetryConfig, TransactionRequest

URL = "http://localhost:8545/firewall"


class BrokenPolicy(Policy):
    @property
    def kind(self) -> PolicyKind:
        return PolicyKind.OTHER

    def evaluate(self, request: TransactionRequest, context: PolicyContext) -> bool:
        raise KeyError("consumer")


def _attach(registry: FirewallRegistry, admin: str, consumer: str, *policies: Policy) -> None:
    for policy in policies:
        registry.register_policy(admin, policy)
        registry.set_policy_status(admin, policy, True)
        registry.add_global_policy_for_consumers(admin, [consumer], policy)


class TestLocalFailClosed:
    """Local evaluation denies whenever approval is not unanimous."""

    def test_unguarded_consumer(self, registry, addr) -> None:
        result = LocalDecisionEndpoint(registry).decide(TransactionRequest(sender=addr.admin, to=addr.pool))
        assert result.approved is False

    def test_one_denial_is_enough(self, registry, access: AccessControl, addr) -> None:
        open_door = AllowlistPolicy(addr.allowlist_policy, access)
        open_door.set_consumer_allowlist(addr.admin, addr.vault, [addr.mallory], True)
        closed_door = AllowlistPolicy(addr.second_allowlist_policy, access)
        _attach(registry, addr.admin, addr.vault, open_door, closed_door)

        result = LocalDecisionEndpoint(registry).decide(TransactionRequest(sender=addr.mallory, to=addr.vault))

        assert result.approved is False
        assert [v.approved for v in result.verdicts] == [True, False]

    def test_disabled_policy(self, guarded_vault, allowlist, addr) -> None:
        guarded_vault.set_policy_status(addr.admin, allowlist, False)
        result = LocalDecisionEndpoint(guarded_vault).decide(TransactionRequest(sender=addr.alice, to=addr.vault))
        assert result.approved is False

    def test_evaluator_exception(self, guarded_vault, access: AccessControl, addr) -> None:
        _attach(guarded_vault, addr.admin, addr.vault, BrokenPolicy(addr.combined_policy, access))
        result = LocalDecisionEndpoint(guarded_vault).decide(TransactionRequest(sender=addr.alice, to=addr.vault))
        assert result.approved is False

    def test_combined_sub_policy_exception(self, registry, access: AccessControl, addr) -> None:
        combined = CombinedPolicy(addr.combined_policy, access)
        combined.set_allowed_combinations(addr.admin, [BrokenPolicy(addr.allowlist_policy, access)], [[True], [False]])
        _attach(registry, addr.admin, addr.vault, combined)

        result = LocalDecisionEndpoint(registry).decide(TransactionRequest(sender=addr.alice, to=addr.vault))

        assert result.approved is False


class TestRemoteFailClosed:
    """Unreachable or confused endpoints never let a call through."""

    def _gateway(self, network) -> Gateway:
        client = PolicyDecisionClient(
            HttpDecisionEndpoint(URL),
            retry=RetryConfig(max_retries=0),
            sleep=MagicMock(),
        )
        return Gateway(client, TransactionExecutor(network))

    @patch.object(httpx.Client, "post")
    def test_unreachable(self, mock_post, network, addr) -> None:
        mock_post.side_effect = httpx.ConnectError("Connection refused")
        result = self._gateway(network).submit(TransactionRequest(sender=addr.alice, to=addr.token))
        assert result.state == RequestState.REJECTED
        assert network.sent == []

    @patch.object(httpx.Client, "post")
    def test_approved_as_string(self, mock_post, network, addr) -> None:
        """Only a JSON boolean true approves."""
        mock_post.return_value = MagicMock(status_code=200, json=lambda: {"result": {"approved": "true"}})
        result = self._gateway(network).submit(TransactionRequest(sender=addr.alice, to=addr.token))
        assert result.state == RequestState.REJECTED
        assert network.sent == []

    @patch.object(httpx.Client, "post")
    def test_non_object_body(self, mock_post, network, addr) -> None:
        mock_post.return_value = MagicMock(status_code=200, json=lambda: ["approved"])
        result = self._gateway(network).submit(TransactionRequest(sender=addr.alice, to=addr.token))
        assert result.state == RequestState.REJECTED
        assert network.sent == []

    @patch.object(httpx.Client, "post")
    def test_server_error(self, mock_post, network, addr) -> None:
        mock_post.return_value = MagicMock(status_code=500, text="Internal Server Error")
        result = self._gateway(network).submit(TransactionRequest(sender=addr.alice, to=addr.token))
        assert result.state == RequestState.REJECTED
        assert network.sent == []
