"""
Wiring txgate components from a GatewayConfig.

Usage:
    config = load_config("txgate.yaml")
    gateway = build_gateway(config, endpoint_name="local", store=store)
"""

import logging

from txgate.access import AccessControl
from txgate.client import PolicyDecisionClient
from txgate.endpoint import (
    DecisionEndpoint,
    HttpDecisionEndpoint,
    LocalDecisionEndpoint,
    StaticDecisionEndpoint,
)
from txgate.errors import ConfigurationError, UnknownPolicyError
from txgate.executor import ExpectedRevert, TransactionExecutor
from txgate.gateway import Gateway
from txgate.network import InMemoryNetwork, JsonRpcNetwork, Network
from txgate.policy import AllowlistPolicy, ApprovedCallsPolicy, CombinedPolicy, Policy
from txgate.registry import FirewallRegistry
from txgate.schema import EndpointKind, GatewayConfig, PolicyKind
from txgate.store import SubmissionStore

logger = logging.getLogger(__name__)


def build_registry(config: GatewayConfig, store: SubmissionStore | None = None) -> FirewallRegistry:
    """
    Materialise the `firewall` section as a FirewallRegistry.

    Policies are created, registered, enabled as declared, and attached to
    consumers in the listed order. With a store, single-use approvals
    already spent in earlier runs are not handed out again.

    Raises:
        UnknownPolicyError: A name refers to an undeclared policy
        ConfigurationError: The declarations are inconsistent
    """
    firewall = config.firewall
    admin = firewall.admin
    registry = FirewallRegistry(AccessControl(owner=admin))
    built: dict[str, Policy] = {}

    def build(name: str, path: tuple[str, ...] = ()) -> Policy:
        if name in built:
            return built[name]
        if name in path:
            raise ConfigurationError(message=f"Combined policies form a cycle: {' -> '.join(path + (name,))}")
        declared = firewall.policies.get(name)
        if declared is None:
            raise UnknownPolicyError(policy=name, message=f"Unknown policy name: {name}")

        policy: Policy
        if declared.kind == PolicyKind.ALLOWLIST:
            policy = AllowlistPolicy(declared.address, registry.access)
            for consumer, addresses in declared.allowlist.items():
                policy.set_consumer_allowlist(admin, consumer, addresses, True)
        elif declared.kind == PolicyKind.APPROVED_CALLS:
            policy = ApprovedCallsPolicy(declared.address, registry.access, store=store)
            for sender, calls in declared.approved_calls.items():
                policy.approve_calls(admin, sender, calls)
            policy.apply_recorded_consumption()
        elif declared.kind == PolicyKind.COMBINED:
            if declared.combination is None:
                raise ConfigurationError(
                    message=f"Combined policy {name} has no combination",
                    policy=declared.address,
                )
            policy = CombinedPolicy(declared.address, registry.access)
            subs = [build(sub, path + (name,)) for sub in declared.combination.sub_policies]
            policy.set_allowed_combinations(admin, subs, declared.combination.accepted_rows)
        else:
            raise ConfigurationError(
                message=f"Policy {name} has kind {declared.kind.value}, which cannot be declared in config",
                policy=declared.address,
            )

        registry.register_policy(admin, policy)
        registry.set_policy_status(admin, policy, declared.enabled)
        built[name] = policy
        return policy

    for name in firewall.policies:
        build(name)

    for consumer, names in firewall.consumers.items():
        for name in names:
            registry.add_global_policy_for_consumers(admin, [consumer], build(name))

    logger.info("Built firewall: %d policies, %d consumers", len(registry), len(registry.consumers()))
    return registry


def policy_names(config: GatewayConfig) -> dict[str, str]:
    """Map each declared policy address to its name."""
    return {declared.address: name for name, declared in config.firewall.policies.items()}


def build_endpoint(
    config: GatewayConfig,
    name: str | None = None,
    registry: FirewallRegistry | None = None,
    store: SubmissionStore | None = None,
) -> DecisionEndpoint:
    """
    Build a configured decision endpoint.

    Args:
        config: Gateway configuration
        name: Endpoint name; defaults to config.default_endpoint
        registry: Registry for local endpoints; built from config if omitted
        store: Store recording spent single-use approvals

    Raises:
        ConfigurationError: Unknown endpoint name or missing URL
    """
    name = name or config.default_endpoint
    declared = config.endpoints.get(name)
    if declared is None:
        known = ", ".join(sorted(config.endpoints)) or "none"
        raise ConfigurationError(
            message=f"Unknown endpoint: {name}",
            suggestion=f"Configured endpoints: {known}",
        )

    if declared.kind == EndpointKind.LOCAL:
        registry = registry or build_registry(config, store=store)
        return LocalDecisionEndpoint(registry, reason=declared.reason, name=name)
    if declared.kind == EndpointKind.STATIC:
        return StaticDecisionEndpoint(approve=declared.approve, reason=declared.reason, name=name)
    if not declared.url:
        raise ConfigurationError(message=f"Endpoint {name} needs a url")
    return HttpDecisionEndpoint(
        declared.url,
        policy_address=declared.policy_address,
        timeout_seconds=declared.timeout_seconds,
        name=name,
    )


def build_network(config: GatewayConfig) -> Network:
    """JSON-RPC network if rpc_url is set, otherwise an in-memory chain."""
    if config.network.rpc_url:
        return JsonRpcNetwork(
            config.network.rpc_url,
            poll_interval_seconds=config.network.poll_interval_seconds,
            timeout_seconds=config.network.timeout_seconds,
        )
    logger.warning("No rpc_url configured, transactions go to an in-memory chain")
    return InMemoryNetwork()


def build_gateway(
    config: GatewayConfig,
    endpoint_name: str | None = None,
    store: SubmissionStore | None = None,
    network: Network | None = None,
    registry: FirewallRegistry | None = None,
) -> Gateway:
    """Wire endpoint, client, network, executor and store into a Gateway."""
    endpoint = build_endpoint(config, endpoint_name, registry=registry, store=store)
    client = PolicyDecisionClient(endpoint, retry=config.retry)
    executor = TransactionExecutor(
        network or build_network(config),
        expected_reverts=[ExpectedRevert.from_config(e) for e in config.expected_reverts],
        store=store,
        confirmations=config.network.confirmations,
    )
    return Gateway(client, executor, store=store)
