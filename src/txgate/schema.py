"""
Schema definitions for txgate.

This module defines the Pydantic models used throughout txgate:
- TransactionRequest: A proposed call awaiting approval
- ApprovalResult/ApprovedTransaction: What the decision endpoint answers
- PolicyVerdict: One policy's verdict on a request
- ExecutionReceipt: What the network did with an approved transaction
- SubmissionRecord/TransitionRecord: Audit trail rows
- GatewayConfig and friends: YAML configuration

Design Decisions:
    - Addresses are normalised to lower-case 0x-prefixed hex on the way in
    - Runtime records are immutable (frozen=True)
    - The `from` field is exposed as `sender` in Python and `from` on the wire
"""

import re
import uuid
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from txgate.errors import DEFAULT_REJECTION_REASON, ConfigLoadError

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
HEX_DATA_RE = re.compile(r"^0x([0-9a-fA-F]{2})*$")

ZERO_ADDRESS = "0x" + "0" * 40


def normalize_address(value: str) -> str:
    """
    Validate and normalise an address.

    Args:
        value: Address string, any hex case

    Returns:
        Lower-case 0x-prefixed address

    Raises:
        ValueError: If the value is not a 20-byte hex address
    """
    if not isinstance(value, str) or not ADDRESS_RE.match(value.strip()):
        msg = f"Invalid address: {value!r}"
        raise ValueError(msg)
    return value.strip().lower()


def parse_quantity(value: Any) -> int:
    """Parse an integer quantity given as int, decimal string, or 0x-hex string."""
    if isinstance(value, bool):
        msg = "Quantity cannot be a boolean"
        raise ValueError(msg)
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            msg = "Quantity cannot be empty"
            raise ValueError(msg)
        result = int(text, 16) if text.lower().startswith("0x") else int(text, 10)
    else:
        msg = f"Invalid quantity: {value!r}"
        raise ValueError(msg)
    if result < 0:
        msg = f"Quantity cannot be negative: {value!r}"
        raise ValueError(msg)
    return result


def new_request_id() -> str:
    """Generate a request identifier."""
    return uuid.uuid4().hex


# =============================================================================
# Enums
# =============================================================================


class PolicyKind(str, Enum):
    """The variant of a policy."""

    ALLOWLIST = "allowlist"
    COMBINED = "combined"
    APPROVED_CALLS = "approved_calls"
    OTHER = "other"


class RequestState(str, Enum):
    """
    Lifecycle state of a submission.

    composed -> awaiting_approval -> {rejected | approved}
    approved -> submitted -> {reverted | confirmed}
    composed | approved -> cancelled
    """

    COMPOSED = "composed"
    AWAITING_APPROVAL = "awaiting_approval"
    REJECTED = "rejected"
    APPROVED = "approved"
    SUBMITTED = "submitted"
    REVERTED = "reverted"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        """Whether no transition leaves this state."""
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    RequestState.REJECTED,
    RequestState.REVERTED,
    RequestState.CONFIRMED,
    RequestState.CANCELLED,
})

ALLOWED_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.COMPOSED: frozenset({RequestState.AWAITING_APPROVAL, RequestState.CANCELLED}),
    RequestState.AWAITING_APPROVAL: frozenset({RequestState.REJECTED, RequestState.APPROVED}),
    RequestState.APPROVED: frozenset({RequestState.SUBMITTED, RequestState.CANCELLED}),
    RequestState.SUBMITTED: frozenset({RequestState.REVERTED, RequestState.CONFIRMED}),
}


class ReceiptStatus(str, Enum):
    """Network outcome of a broadcast transaction."""

    CONFIRMED = "confirmed"
    REVERTED = "reverted"


class EndpointKind(str, Enum):
    """Kinds of decision endpoint that can be configured."""

    LOCAL = "local"
    STATIC = "static"
    HTTP = "http"


# =============================================================================
# Runtime Models
# =============================================================================


class TransactionRequest(BaseModel):
    """
    A proposed call awaiting approval.

    Immutable once built. The same request_id across retries keys
    idempotent execution.

    Attributes:
        sender: Address the call is sent from (`from` on the wire)
        to: Target address (the consumer)
        data: Hex-encoded calldata
        value: Native value in wei
        request_id: Idempotency key
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    sender: str = Field(..., alias="from", description="Address the call is sent from")
    to: str = Field(..., description="Target address")
    data: str = Field(default="0x", description="Hex-encoded calldata")
    value: int = Field(default=0, description="Native value in wei", ge=0)
    request_id: str = Field(default_factory=new_request_id, min_length=1)

    @field_validator("sender", "to")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("data")
    @classmethod
    def validate_data(cls, v: str) -> str:
        """Calldata must be 0x-prefixed whole bytes."""
        if not HEX_DATA_RE.match(v):
            msg = f"Invalid calldata: {v[:20]!r}"
            raise ValueError(msg)
        return v.lower()

    @field_validator("value", mode="before")
    @classmethod
    def validate_value(cls, v: Any) -> int:
        return parse_quantity(v)

    @property
    def selector(self) -> str:
        """The 4-byte function selector, or empty for plain transfers."""
        return self.data[:10] if len(self.data) >= 10 else ""

    def call_fields(self) -> dict[str, Any]:
        """Wire form of the call: {from, to, data, value}."""
        return {
            "from": self.sender,
            "to": self.to,
            "data": self.data,
            "value": str(self.value),
        }


class ApprovedTransaction(BaseModel):
    """
    A ready-to-broadcast transaction returned by a decision endpoint.

    Attributes:
        sender: Signer address
        to: Target address
        data: Calldata, possibly extended with an attestation by the endpoint
        value: Native value in wei
        gas: Optional gas limit
        attestation: Any extra signed fields returned by the endpoint
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    sender: str = Field(..., alias="from")
    to: str
    data: str = "0x"
    value: int = Field(default=0, ge=0)
    gas: int | None = Field(default=None, gt=0)
    attestation: dict[str, Any] = Field(default_factory=dict)

    @field_validator("sender", "to")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("value", mode="before")
    @classmethod
    def validate_value(cls, v: Any) -> int:
        return parse_quantity(v)

    @field_validator("gas", mode="before")
    @classmethod
    def validate_gas(cls, v: Any) -> int | None:
        return None if v is None else parse_quantity(v)

    @classmethod
    def from_request(cls, request: TransactionRequest, **attestation: Any) -> "ApprovedTransaction":
        """Build the payload for an approved request."""
        return cls(
            sender=request.sender,
            to=request.to,
            data=request.data,
            value=request.value,
            attestation=attestation,
        )

    def to_rpc(self) -> dict[str, Any]:
        """Transaction object in JSON-RPC form."""
        tx: dict[str, Any] = {
            "from": self.sender,
            "to": self.to,
            "data": self.data,
            "value": hex(self.value),
        }
        if self.gas is not None:
            tx["gas"] = hex(self.gas)
        return tx


class PolicyVerdict(BaseModel):
    """
    One policy's verdict on a request.

    Attributes:
        policy: Address of the policy
        kind: Variant of the policy
        approved: The verdict
        reason: Why
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    policy: str
    kind: PolicyKind
    approved: bool
    reason: str = ""


class ApprovalResult(BaseModel):
    """
    Answer of a decision endpoint for one request.

    Attributes:
        approved: Whether the call may be broadcast
        transaction: The ready-to-broadcast payload (when approved)
        reason: Rejection reason (when rejected), verbatim from the endpoint
        endpoint: Name of the endpoint that decided
        verdicts: Per-policy verdicts, when the endpoint reports them
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    approved: bool
    transaction: ApprovedTransaction | None = None
    reason: str | None = None
    endpoint: str = ""
    verdicts: tuple[PolicyVerdict, ...] = ()

    @classmethod
    def approve(
        cls,
        transaction: ApprovedTransaction,
        endpoint: str = "",
        verdicts: tuple[PolicyVerdict, ...] = (),
    ) -> "ApprovalResult":
        """Create an approval."""
        return cls(approved=True, transaction=transaction, endpoint=endpoint, verdicts=verdicts)

    @classmethod
    def reject(
        cls,
        reason: str = DEFAULT_REJECTION_REASON,
        endpoint: str = "",
        verdicts: tuple[PolicyVerdict, ...] = (),
    ) -> "ApprovalResult":
        """Create a rejection."""
        return cls(approved=False, reason=reason, endpoint=endpoint, verdicts=verdicts)


class ExecutionReceipt(BaseModel):
    """
    Outcome of broadcasting an approved transaction.

    Attributes:
        request_id: Request the transaction belongs to
        tx_hash: Transaction hash
        status: confirmed or reverted
        block_number: Block the transaction was mined in
        revert_reason: Decoded revert reason (reverted only)
        expected_revert: Whether the revert matched a declared expectation
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    request_id: str
    tx_hash: str
    status: ReceiptStatus
    block_number: int | None = None
    revert_reason: str | None = None
    expected_revert: bool = False
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def confirmed(self) -> bool:
        return self.status == ReceiptStatus.CONFIRMED


class SubmissionRecord(BaseModel):
    """
    Audit row for one request.

    Attributes:
        request_id: Request identifier
        created_at: When the request was composed
        updated_at: Time of the last transition
        sender/to/data/value: The proposed call
        endpoint: Decision endpoint that answered, if any
        state: Current lifecycle state
        reason: Rejection, revert or cancellation detail
        request_hash: SHA256 of the proposed call
        tx_hash: Broadcast transaction hash, if any
        receipt: Final receipt, if mined
    """

    model_config = ConfigDict(frozen=True)

    request_id: str
    created_at: datetime
    updated_at: datetime
    sender: str
    to: str
    data: str
    value: int
    endpoint: str | None = None
    state: RequestState
    reason: str | None = None
    request_hash: str
    tx_hash: str | None = None
    receipt: ExecutionReceipt | None = None


class TransitionRecord(BaseModel):
    """One recorded state transition."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    from_state: RequestState | None
    to_state: RequestState
    at: datetime
    detail: str | None = None


# =============================================================================
# Configuration Models
# =============================================================================


class RetryConfig(BaseModel):
    """
    Bounded exponential backoff for decision endpoint calls.

    Attributes:
        max_retries: Retries after the first attempt
        retry_delay_seconds: Delay before the first retry
        backoff_factor: Multiplier applied to the delay after each retry
        max_delay_seconds: Upper bound on any single delay
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay_seconds: float = Field(default=0.5, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: float = Field(default=8.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-indexed)."""
        return min(self.retry_delay_seconds * (self.backoff_factor ** attempt), self.max_delay_seconds)


class EndpointConfig(BaseModel):
    """
    A configured decision endpoint.

    Attributes:
        kind: local (evaluate the configured firewall), static, or http
        url: JSON-RPC URL (http only)
        policy_address: Policy address forwarded to remote endpoints
        approve: Fixed verdict (static only)
        reason: Rejection reason reported on denial
        timeout_seconds: Request timeout (http only)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: EndpointKind = EndpointKind.LOCAL
    url: str | None = None
    policy_address: str | None = None
    approve: bool = False
    reason: str = DEFAULT_REJECTION_REASON
    timeout_seconds: float = Field(default=30.0, gt=0, le=300)

    @field_validator("policy_address")
    @classmethod
    def validate_policy_address(cls, v: str | None) -> str | None:
        return None if v is None else normalize_address(v)


class NetworkConfig(BaseModel):
    """JSON-RPC network settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rpc_url: str | None = None
    confirmations: int = Field(default=1, ge=1)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    timeout_seconds: float = Field(default=120.0, gt=0)


class ExpectedRevertConfig(BaseModel):
    """
    A revert the caller declares as a known outcome.

    Attributes:
        pattern: Substring (or regex when regex=True) of the revert reason
        regex: Treat pattern as a regular expression
        target: Only match reverts from this target address
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    pattern: str = Field(..., min_length=1)
    regex: bool = False
    target: str | None = None

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str | None) -> str | None:
        return None if v is None else normalize_address(v)


class CallSpec(BaseModel):
    """A call pre-approved for the ApprovedCalls policy."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    to: str
    data: str = "0x"
    value: int = 0

    @field_validator("to")
    @classmethod
    def validate_to(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("value", mode="before")
    @classmethod
    def validate_value(cls, v: Any) -> int:
        return parse_quantity(v)


class CombinationConfig(BaseModel):
    """Truth table over named sub-policies."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    sub_policies: list[str] = Field(..., min_length=1)
    accepted_rows: list[list[bool]] = Field(default_factory=list)


class PolicyConfig(BaseModel):
    """
    A policy declared in the firewall section.

    Attributes:
        kind: Policy variant
        address: Policy address
        enabled: Whether the policy is approved for attachment
        allowlist: consumer -> allowed sender addresses (allowlist only)
        approved_calls: sender -> pre-approved calls (approved_calls only)
        combination: truth table (combined only)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: PolicyKind
    address: str
    enabled: bool = True
    allowlist: dict[str, list[str]] = Field(default_factory=dict)
    approved_calls: dict[str, list[CallSpec]] = Field(default_factory=dict)
    combination: CombinationConfig | None = None

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return normalize_address(v)


class FirewallConfig(BaseModel):
    """
    Declarative seed for the firewall registry.

    Attributes:
        admin: Address holding the admin role
        policies: policy name -> declaration
        consumers: consumer address -> ordered policy names
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    admin: str = ZERO_ADDRESS
    policies: dict[str, PolicyConfig] = Field(default_factory=dict)
    consumers: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("admin")
    @classmethod
    def validate_admin(cls, v: str) -> str:
        return normalize_address(v)


class GatewayConfig(BaseModel):
    """
    Complete txgate configuration.

    Attributes:
        endpoints: endpoint name -> configuration
        default_endpoint: name used when none is given
        network: JSON-RPC network settings
        retry: backoff settings for decision endpoint calls
        expected_reverts: reverts to classify as expected
        firewall: local firewall registry seed
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    endpoints: dict[str, EndpointConfig] = Field(
        default_factory=lambda: {"local": EndpointConfig(kind=EndpointKind.LOCAL)}
    )
    default_endpoint: str = "local"
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    expected_reverts: list[ExpectedRevertConfig] = Field(default_factory=list)
    firewall: FirewallConfig = Field(default_factory=FirewallConfig)


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def load_config(path: Path | str) -> GatewayConfig:
    """
    Load a gateway configuration from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated GatewayConfig

    Raises:
        ConfigLoadError: If the file is missing, unparsable, or invalid
    """
    path = Path(path)
    try:
        content = path.read_text()
    except OSError as e:
        raise ConfigLoadError(path=str(path), underlying_error=str(e)) from e
    return _parse_config(content, str(path))


def load_config_from_string(content: str) -> GatewayConfig:
    """Load a gateway configuration from a YAML string."""
    return _parse_config(content, "<string>")


def _parse_config(content: str, source: str) -> GatewayConfig:
    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        raise ConfigLoadError(path=source, underlying_error=str(e)) from e
    try:
        return GatewayConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigLoadError(path=source, underlying_error=str(e)) from e
