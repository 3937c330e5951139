"""
Pytest configuration and fixtures for txgate tests.

This module provides shared fixtures used across unit, integration,
and security tests: well-known addresses, an admin-owned registry, and an
in-memory chain with a toy ERC-20 token.
"""

import tempfile
from collections.abc import Generator
from pathlib import Path
from types import SimpleNamespace

import pytest

from txgate.access import AccessControl
from txgate.network import ContractRevert, InMemoryNetwork
from txgate.policy import AllowlistPolicy
from txgate.registry import FirewallRegistry
from txgate.schema import ApprovedTransaction

APPROVE_SELECTOR = "0x095ea7b3"
TRANSFER_SELECTOR = "0xa9059cbb"
TRANSFER_FROM_SELECTOR = "0x23b872dd"


def _address(n: int) -> str:
    return "0x" + format(n, "040x")


ADDRESSES = SimpleNamespace(
    admin=_address(0xAD),
    alice=_address(0xA1),
    bob=_address(0xB0),
    mallory=_address(0xBAD),
    vault=_address(0x7A01),
    pool=_address(0x7A02),
    token=_address(0x70CE),
    allowlist_policy=_address(0x9001),
    second_allowlist_policy=_address(0x9002),
    combined_policy=_address(0x9003),
    approved_calls_policy=_address(0x9004),
)


def encode_call(selector: str, *args: str | int) -> str:
    """ABI-encode static address/uint256 arguments after a selector."""
    words = []
    for arg in args:
        if isinstance(arg, str):
            words.append(arg.lower().removeprefix("0x").rjust(64, "0"))
        else:
            words.append(format(arg, "064x"))
    return selector + "".join(words)


class ToyToken:
    """
    Minimal ERC-20 contract handler for InMemoryNetwork.

    Supports approve, transfer and transferFrom. Setting `paused` makes
    every call revert with "Pausable: paused".
    """

    def __init__(self, balances: dict[str, int] | None = None) -> None:
        self.balances = {k.lower(): v for k, v in (balances or {}).items()}
        self.allowances: dict[tuple[str, str], int] = {}
        self.paused = False

    def __call__(self, tx: ApprovedTransaction) -> None:
        if self.paused:
            raise ContractRevert("Pausable: paused")
        selector, body = tx.data[:10], tx.data[10:]
        words = [body[i:i + 64] for i in range(0, len(body), 64)]

        if selector == APPROVE_SELECTOR:
            self.allowances[(tx.sender, _word_address(words[0]))] = int(words[1], 16)
        elif selector == TRANSFER_SELECTOR:
            self._move(tx.sender, _word_address(words[0]), int(words[1], 16))
        elif selector == TRANSFER_FROM_SELECTOR:
            owner, to, amount = _word_address(words[0]), _word_address(words[1]), int(words[2], 16)
            allowed = self.allowances.get((owner, tx.sender), 0)
            if allowed < amount:
                raise ContractRevert("ERC20: insufficient allowance")
            self._move(owner, to, amount)
            self.allowances[(owner, tx.sender)] = allowed - amount
        else:
            raise ContractRevert(f"unknown selector {selector}")

    def _move(self, source: str, to: str, amount: int) -> None:
        if self.balances.get(source, 0) < amount:
            raise ContractRevert("ERC20: transfer amount exceeds balance")
        self.balances[source] -= amount
        self.balances[to] = self.balances.get(to, 0) + amount

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get((owner.lower(), spender.lower()), 0)


def _word_address(word: str) -> str:
    return "0x" + word[-40:]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def addr() -> SimpleNamespace:
    """Well-known test addresses."""
    return ADDRESSES


@pytest.fixture
def access(addr: SimpleNamespace) -> AccessControl:
    """Access control owned by the admin address."""
    return AccessControl(owner=addr.admin)


@pytest.fixture
def registry(access: AccessControl) -> FirewallRegistry:
    """Empty registry gated by the admin."""
    return FirewallRegistry(access)


@pytest.fixture
def allowlist(addr: SimpleNamespace, access: AccessControl) -> AllowlistPolicy:
    """Empty allowlist policy."""
    return AllowlistPolicy(addr.allowlist_policy, access)


@pytest.fixture
def guarded_vault(
    addr: SimpleNamespace,
    registry: FirewallRegistry,
    allowlist: AllowlistPolicy,
) -> FirewallRegistry:
    """Registry where the vault is guarded by an allowlist admitting alice."""
    allowlist.set_consumer_allowlist(addr.admin, addr.vault, [addr.alice], True)
    registry.register_policy(addr.admin, allowlist)
    registry.set_policy_status(addr.admin, allowlist, True)
    registry.add_global_policy_for_consumers(addr.admin, [addr.vault], allowlist)
    return registry


@pytest.fixture
def token(addr: SimpleNamespace) -> ToyToken:
    """Toy token where alice holds 1000."""
    return ToyToken({addr.alice: 1000})


@pytest.fixture
def network(addr: SimpleNamespace, token: ToyToken) -> InMemoryNetwork:
    """In-memory chain with the toy token deployed."""
    chain = InMemoryNetwork()
    chain.register_contract(addr.token, token)
    return chain


@pytest.fixture
def sample_config_yaml(addr: SimpleNamespace) -> str:
    """Gateway configuration with local, static and http endpoints."""
    return f"""
default_endpoint: local
endpoints:
  local:
    kind: local
  accept:
    kind: static
    approve: true
  reject:
    kind: static
    approve: false
    reason: "Firewall rejected transaction: drain blocked"
  remote:
    kind: http
    url: http://localhost:8545/firewall
retry:
  max_retries: 2
  retry_delay_seconds: 0.0
expected_reverts:
  - pattern: "Pausable: paused"
firewall:
  admin: "{addr.admin}"
  policies:
    vault_allowlist:
      kind: allowlist
      address: "{addr.allowlist_policy}"
      allowlist:
        "{addr.vault}": ["{addr.alice}"]
    token_allowlist:
      kind: allowlist
      address: "{addr.second_allowlist_policy}"
      allowlist:
        "{addr.token}": ["{addr.alice}", "{addr.bob}"]
    deposits:
      kind: approved_calls
      address: "{addr.approved_calls_policy}"
      approved_calls:
        "{addr.bob}":
          - to: "{addr.vault}"
            data: "0xd0e30db0"
    allowlisted_or_approved:
      kind: combined
      address: "{addr.combined_policy}"
      combination:
        sub_policies: [vault_allowlist, deposits]
        accepted_rows:
          - [true, true]
          - [true, false]
          - [false, true]
  consumers:
    "{addr.vault}": [allowlisted_or_approved]
    "{addr.token}": [token_allowlist]
"""


@pytest.fixture
def config_file(temp_dir: Path, sample_config_yaml: str) -> Path:
    """Gateway configuration written to disk."""
    path = temp_dir / "txgate.yaml"
    path.write_text(sample_config_yaml)
    return path


@pytest.fixture
def calls() -> SimpleNamespace:
    """Calldata builders for the toy token."""
    return SimpleNamespace(
        approve=lambda spender, amount: encode_call(APPROVE_SELECTOR, spender, amount),
        transfer=lambda to, amount: encode_call(TRANSFER_SELECTOR, to, amount),
        transfer_from=lambda owner, to, amount: encode_call(TRANSFER_FROM_SELECTOR, owner, to, amount),
    )
