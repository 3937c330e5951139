"""
Exception hierarchy for txgate.

All txgate exceptions inherit from TxGateError, allowing callers to catch
all txgate-specific exceptions with a single except clause.

Exception Categories:
    - AuthorizationError: Caller lacks the admin role (fatal)
    - ConfigurationError: Malformed firewall configuration (fatal)
    - PolicyRejection: Decision endpoint denied the call (halts the pipeline)
    - TransportError: Decision endpoint unreachable (retryable)
    - ExecutionRevert: Transaction reached the network and reverted
    - NonceConflict: Concurrent submissions from one signer (serialise, retry)
    - LifecycleError: Illegal request state transition
    - StorageError: Audit database operation failed

Design Principles:
    - All errors have error codes for programmatic handling
    - All errors carry a retryable flag so retry loops never guess
    - All errors include context (consumer, policy, request) where applicable
    - Errors are designed to be both human-readable and machine-parseable
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Access errors: 1xxx
ERROR_AUTHORIZATION = 1001

# Configuration errors: 2xxx
ERROR_CONFIGURATION = 2001
ERROR_POLICY_NOT_ATTACHED = 2002
ERROR_POLICY_NOT_ENABLED = 2003
ERROR_COMBINATION_ARITY = 2004
ERROR_UNKNOWN_POLICY = 2005
ERROR_CONFIG_LOAD = 2006

# Decision errors: 3xxx
ERROR_POLICY_REJECTED = 3001

# Transport errors: 4xxx
ERROR_TRANSPORT = 4001
ERROR_ENDPOINT_TIMEOUT = 4002
ERROR_ENDPOINT_RESPONSE = 4003

# Execution errors: 5xxx
ERROR_EXECUTION_REVERTED = 5001
ERROR_NONCE_CONFLICT = 5002

# Lifecycle errors: 6xxx
ERROR_LIFECYCLE = 6001

# Storage errors: 7xxx
ERROR_STORAGE_CONNECTION = 7001
ERROR_STORAGE_WRITE = 7002
ERROR_STORAGE_READ = 7003

# Stable, pattern-matchable reason returned for policy denials.
DEFAULT_REJECTION_REASON = "Firewall rejected transaction"


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class TxGateError(Exception):
    """
    Base exception for all txgate errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
        retryable: Whether repeating the same call may succeed
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "retryable": self.retryable,
            "context": self.context,
        }


# =============================================================================
# Access Errors
# =============================================================================


@dataclass
class AuthorizationError(TxGateError):
    """
    Raised when a mutating call is made without the admin role.

    Never retried: the caller's role will not change between attempts.

    Attributes:
        caller: Address that attempted the call
        role: Role that was required
        operation: Name of the rejected operation
    """

    caller: str = ""
    role: str = ""
    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"{self.caller or 'caller'} lacks {self.role} for {self.operation}"
        if self.code == 0:
            self.code = ERROR_AUTHORIZATION
        if not self.suggestion:
            self.suggestion = f"Grant {self.role} to {self.caller} first"
        self.retryable = False
        self.context.update({
            "caller": self.caller,
            "role": self.role,
            "operation": self.operation,
        })


# =============================================================================
# Configuration Errors
# =============================================================================


@dataclass
class ConfigurationError(TxGateError):
    """
    Raised when firewall configuration is malformed or inconsistent.

    Attributes:
        policy: Address of the policy involved (if any)
    """

    policy: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if self.code == 0:
            self.code = ERROR_CONFIGURATION
        self.retryable = False
        self.context["policy"] = self.policy


@dataclass
class PolicyNotAttachedError(ConfigurationError):
    """Raised when detaching a policy that is not attached to a consumer."""

    consumer: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Policy {self.policy} is not attached to consumer {self.consumer}"
        if self.code == 0:
            self.code = ERROR_POLICY_NOT_ATTACHED
        if not self.suggestion:
            self.suggestion = "Check get_active_global_policies() before detaching"
        super().__post_init__()
        self.context["consumer"] = self.consumer


@dataclass
class PolicyNotEnabledError(ConfigurationError):
    """Raised when attaching a policy that has not been enabled."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Policy {self.policy} is not enabled"
        if self.code == 0:
            self.code = ERROR_POLICY_NOT_ENABLED
        if not self.suggestion:
            self.suggestion = "Call set_policy_status(policy, True) before attaching"
        super().__post_init__()


@dataclass
class CombinationArityError(ConfigurationError):
    """Raised when an accepted row does not match the number of sub-policies."""

    row_index: int = 0
    expected: int = 0
    actual: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Accepted row {self.row_index} has {self.actual} entries, "
                f"expected {self.expected}"
            )
        if self.code == 0:
            self.code = ERROR_COMBINATION_ARITY
        super().__post_init__()
        self.context.update({
            "row_index": self.row_index,
            "expected": self.expected,
            "actual": self.actual,
        })


@dataclass
class UnknownPolicyError(ConfigurationError):
    """Raised when a policy address or name is not registered."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Unknown policy: {self.policy}"
        if self.code == 0:
            self.code = ERROR_UNKNOWN_POLICY
        if not self.suggestion:
            self.suggestion = "Register the policy with the firewall registry first"
        super().__post_init__()


@dataclass
class ConfigLoadError(ConfigurationError):
    """Raised when a gateway configuration file cannot be loaded."""

    path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to load config {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CONFIG_LOAD
        super().__post_init__()
        self.context.update({
            "path": self.path,
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Decision Errors
# =============================================================================


@dataclass
class PolicyRejection(TxGateError):
    """
    Raised when the decision endpoint denies a call.

    This is the expected outcome of a working firewall. The reason is the
    endpoint's string, verbatim, so callers can pattern-match on it.

    Attributes:
        reason: Rejection reason as returned by the endpoint
        endpoint: Name of the endpoint that rejected
        request_id: ID of the rejected request
    """

    reason: str = DEFAULT_REJECTION_REASON
    endpoint: str = ""
    request_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = self.reason
        if self.code == 0:
            self.code = ERROR_POLICY_REJECTED
        self.retryable = False
        self.context.update({
            "reason": self.reason,
            "endpoint": self.endpoint,
            "request_id": self.request_id,
        })


# =============================================================================
# Transport Errors
# =============================================================================


@dataclass
class TransportError(TxGateError):
    """
    Raised when the decision endpoint cannot be reached.

    Attributes:
        endpoint: Name of the endpoint
        url: URL that was called (if any)
        underlying_error: Error from the transport layer
    """

    endpoint: str = ""
    url: str = ""
    underlying_error: str = ""
    retryable: bool = True

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Decision endpoint {self.endpoint} unreachable: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_TRANSPORT
        if not self.suggestion:
            self.suggestion = "Check that the endpoint URL is correct and the service is up"
        self.context.update({
            "endpoint": self.endpoint,
            "url": self.url,
            "underlying_error": self.underlying_error,
        })


@dataclass
class EndpointTimeoutError(TransportError):
    """Raised when the decision endpoint does not answer in time."""

    timeout_seconds: float = 0.0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Decision endpoint {self.endpoint} timed out after {self.timeout_seconds}s"
        if self.code == 0:
            self.code = ERROR_ENDPOINT_TIMEOUT
        super().__post_init__()
        self.context["timeout_seconds"] = self.timeout_seconds


@dataclass
class EndpointResponseError(TransportError):
    """Raised when the decision endpoint answers with an unusable response."""

    status_code: int | None = None
    retryable: bool = False

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Bad response from decision endpoint {self.endpoint}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_ENDPOINT_RESPONSE
        if self.status_code is not None and self.status_code >= 500:
            self.retryable = True
        super().__post_init__()
        self.context["status_code"] = self.status_code


# =============================================================================
# Execution Errors
# =============================================================================


@dataclass
class ExecutionRevert(TxGateError):
    """
    Raised when a broadcast transaction reverted on the network.

    Attributes:
        tx_hash: Hash of the reverted transaction
        revert_reason: Decoded revert reason (may be empty)
        request_id: ID of the request that produced the transaction
    """

    tx_hash: str = ""
    revert_reason: str = ""
    request_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            reason = self.revert_reason or "no reason given"
            self.message = f"Transaction {self.tx_hash} reverted: {reason}"
        if self.code == 0:
            self.code = ERROR_EXECUTION_REVERTED
        self.retryable = False
        self.context.update({
            "tx_hash": self.tx_hash,
            "revert_reason": self.revert_reason,
            "request_id": self.request_id,
        })


@dataclass
class NonceConflict(TxGateError):
    """Raised when a signer already has a transaction in flight."""

    signer: str = ""
    underlying_error: str = ""
    retryable: bool = True

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            detail = f": {self.underlying_error}" if self.underlying_error else ""
            self.message = f"Signer {self.signer} has a transaction in flight{detail}"
        if self.code == 0:
            self.code = ERROR_NONCE_CONFLICT
        if not self.suggestion:
            self.suggestion = "Serialise submissions per signer and retry"
        self.context.update({
            "signer": self.signer,
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Lifecycle Errors
# =============================================================================


@dataclass
class LifecycleError(TxGateError):
    """Raised on an illegal request state transition."""

    request_id: str = ""
    from_state: str = ""
    to_state: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Request {self.request_id} cannot move from "
                f"{self.from_state} to {self.to_state}"
            )
        if self.code == 0:
            self.code = ERROR_LIFECYCLE
        self.retryable = False
        self.context.update({
            "request_id": self.request_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
        })


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(TxGateError):
    """
    Base class for audit database errors.

    Attributes:
        operation: The operation that failed (e.g., "insert", "query")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["operation"] = self.operation


@dataclass
class StorageConnectionError(StorageError):
    """Raised when database connection fails."""

    db_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to connect to database: {self.db_path}"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION
        if not self.suggestion:
            self.suggestion = "Check that the database path is valid and writable"
        super().__post_init__()
        self.context["db_path"] = self.db_path


@dataclass
class StorageWriteError(StorageError):
    """Raised when a write operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StorageError):
    """Raised when a read operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database read failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error
