"""
Unit tests for building components from configuration.
"""

from unittest.mock import patch

import pytest

from txgate import config as config_module
from txgate.config import build_endpoint, build_gateway, build_network, build_registry, policy_names
from txgate.endpoint import HttpDecisionEndpoint, LocalDecisionEndpoint, StaticDecisionEndpoint
from txgate.errors import ConfigurationError, PolicyNotEnabledError, UnknownPolicyError
from txgate.network import InMemoryNetwork, JsonRpcNetwork
from txgate.policy import AllowlistPolicy, ApprovedCallsPolicy, CombinedPolicy
from txgate.schema import GatewayConfig, RequestState, TransactionRequest, load_config_from_string
from txgate.store import SubmissionStore


@pytest.fixture
def config(sample_config_yaml: str) -> GatewayConfig:
    return load_config_from_string(sample_config_yaml)


class TestBuildRegistry:
    """Tests for build_registry."""

    def test_policies_registered_and_enabled(self, config: GatewayConfig, addr) -> None:
        registry = build_registry(config)
        assert len(registry) == 4
        assert isinstance(registry.get_policy(addr.allowlist_policy), AllowlistPolicy)
        assert isinstance(registry.get_policy(addr.approved_calls_policy), ApprovedCallsPolicy)
        assert isinstance(registry.get_policy(addr.combined_policy), CombinedPolicy)
        assert all(registry.is_policy_enabled(p) for p in registry)

    def test_consumers_attached_in_order(self, config: GatewayConfig, addr) -> None:
        registry = build_registry(config)
        assert registry.get_active_global_policies(addr.vault) == [addr.combined_policy]
        assert registry.get_active_global_policies(addr.token) == [addr.second_allowlist_policy]

    def test_admin_owns_registry(self, config: GatewayConfig, addr) -> None:
        registry = build_registry(config)
        assert registry.access.owner == addr.admin

    def test_allowlist_entries_loaded(self, config: GatewayConfig, addr) -> None:
        policy = build_registry(config).get_policy(addr.second_allowlist_policy)
        assert policy.allowed_addresses(addr.token) == sorted([addr.alice, addr.bob])

    def test_combined_sub_policies_shared(self, config: GatewayConfig, addr) -> None:
        """A sub-policy named twice is one instance."""
        registry = build_registry(config)
        combined = registry.get_policy(addr.combined_policy)
        assert combined.sub_policies[0] is registry.get_policy(addr.allowlist_policy)
        assert combined.sub_policies[1] is registry.get_policy(addr.approved_calls_policy)

    def test_unknown_policy_name(self, addr) -> None:
        config = load_config_from_string(
            f"""
firewall:
  admin: "{addr.admin}"
  consumers:
    "{addr.vault}": [missing]
"""
        )
        with pytest.raises(UnknownPolicyError):
            build_registry(config)

    def test_disabled_policy_cannot_be_attached(self, addr) -> None:
        config = load_config_from_string(
            f"""
firewall:
  admin: "{addr.admin}"
  policies:
    paused_list:
      kind: allowlist
      address: "{addr.allowlist_policy}"
      enabled: false
  consumers:
    "{addr.vault}": [paused_list]
"""
        )
        with pytest.raises(PolicyNotEnabledError):
            build_registry(config)

    def test_combination_cycle(self, addr) -> None:
        config = load_config_from_string(
            f"""
firewall:
  admin: "{addr.admin}"
  policies:
    a:
      kind: combined
      address: "{addr.combined_policy}"
      combination:
        sub_policies: [b]
        accepted_rows: [[true]]
    b:
      kind: combined
      address: "{addr.allowlist_policy}"
      combination:
        sub_policies: [a]
        accepted_rows: [[true]]
"""
        )
        with pytest.raises(ConfigurationError) as exc_info:
            build_registry(config)
        assert "cycle" in exc_info.value.message

    def test_combined_without_combination(self, addr) -> None:
        config = load_config_from_string(
            f"""
firewall:
  admin: "{addr.admin}"
  policies:
    c:
      kind: combined
      address: "{addr.combined_policy}"
"""
        )
        with pytest.raises(ConfigurationError):
            build_registry(config)

    def test_policy_names(self, config: GatewayConfig, addr) -> None:
        names = policy_names(config)
        assert names[addr.combined_policy] == "allowlisted_or_approved"

    def test_spent_approvals_not_reseeded(self, config: GatewayConfig, addr, temp_dir) -> None:
        store = SubmissionStore(temp_dir / "txgate.db")
        try:
            first = build_registry(config, store=store)
            deposits = first.get_policy(addr.approved_calls_policy)
            request = TransactionRequest(sender=addr.bob, to=addr.vault, data="0xd0e30db0")
            assert LocalDecisionEndpoint(first).decide(request).approved is True

            again = build_registry(config, store=store).get_policy(addr.approved_calls_policy)
            assert deposits.remaining(addr.bob, addr.vault, "0xd0e30db0") == 0
            assert again.remaining(addr.bob, addr.vault, "0xd0e30db0") == 0
        finally:
            store.close()

    def test_without_store_approvals_reseeded(self, config: GatewayConfig, addr) -> None:
        request = TransactionRequest(sender=addr.bob, to=addr.vault, data="0xd0e30db0")
        assert LocalDecisionEndpoint(build_registry(config)).decide(request).approved is True
        again = build_registry(config).get_policy(addr.approved_calls_policy)
        assert again.remaining(addr.bob, addr.vault, "0xd0e30db0") == 1


class TestBuildEndpoint:
    """Tests for build_endpoint."""

    def test_default_is_local(self, config: GatewayConfig) -> None:
        endpoint = build_endpoint(config)
        assert isinstance(endpoint, LocalDecisionEndpoint)
        assert endpoint.name == "local"

    def test_static(self, config: GatewayConfig) -> None:
        endpoint = build_endpoint(config, "reject")
        assert isinstance(endpoint, StaticDecisionEndpoint)
        assert endpoint.approve is False
        assert endpoint.reason == "Firewall rejected transaction: drain blocked"

    def test_http(self, config: GatewayConfig) -> None:
        endpoint = build_endpoint(config, "remote")
        assert isinstance(endpoint, HttpDecisionEndpoint)
        assert endpoint.url == "http://localhost:8545/firewall"

    def test_unknown_name(self, config: GatewayConfig) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            build_endpoint(config, "nope")
        assert "accept" in exc_info.value.suggestion

    def test_http_without_url(self) -> None:
        config = load_config_from_string("endpoints:\n  remote:\n    kind: http\n")
        with pytest.raises(ConfigurationError):
            build_endpoint(config, "remote")

    def test_local_uses_given_registry(self, config: GatewayConfig, guarded_vault) -> None:
        endpoint = build_endpoint(config, "local", registry=guarded_vault)
        assert endpoint.registry is guarded_vault


class TestBuildNetwork:
    """Tests for build_network."""

    @patch.object(config_module.logger, "warning")
    def test_in_memory_fallback_warns(self, mock_warning) -> None:
        network = build_network(GatewayConfig())
        assert isinstance(network, InMemoryNetwork)
        assert "in-memory" in mock_warning.call_args.args[0]

    def test_json_rpc(self) -> None:
        config = load_config_from_string("network:\n  rpc_url: http://localhost:8545\n")
        network = build_network(config)
        assert isinstance(network, JsonRpcNetwork)
        assert network.rpc_url == "http://localhost:8545"


class TestBuildGateway:
    """Tests for build_gateway."""

    def test_wires_configured_parts(self, config: GatewayConfig, network) -> None:
        gateway = build_gateway(config, "accept", network=network)
        assert gateway.client.endpoint.name == "accept"
        assert gateway.client.retry.max_retries == 2
        assert gateway.executor.network is network
        assert gateway.executor.is_expected("0x" + "00" * 20, "Pausable: paused")

    def test_local_gateway_enforces_config(self, config: GatewayConfig, network, addr) -> None:
        gateway = build_gateway(config, network=network)
        result = gateway.submit(TransactionRequest(sender=addr.mallory, to=addr.token))
        assert result.approval.approved is False
        assert network.sent == []

    def test_approval_not_replayed_across_gateways(self, config: GatewayConfig, network, addr, temp_dir) -> None:
        store = SubmissionStore(temp_dir / "txgate.db")
        try:
            deposit = {"sender": addr.bob, "to": addr.vault, "data": "0xd0e30db0"}
            first = build_gateway(config, store=store, network=network)
            assert first.submit(TransactionRequest(**deposit)).state == RequestState.CONFIRMED

            second = build_gateway(config, store=store, network=network)
            result = second.submit(TransactionRequest(**deposit))
            assert result.state == RequestState.REJECTED
            assert len(network.sent) == 1
        finally:
            store.close()
