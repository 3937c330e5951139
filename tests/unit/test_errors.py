"""
Unit tests for error hierarchy.

Tests cover:
- Base TxGateError behavior
- Default messages, codes and retryability per category
- Error serialization
"""

import pytest

from txgate.errors import (
    DEFAULT_REJECTION_REASON,
    ERROR_AUTHORIZATION,
    ERROR_COMBINATION_ARITY,
    ERROR_CONFIGURATION,
    ERROR_ENDPOINT_RESPONSE,
    ERROR_ENDPOINT_TIMEOUT,
    ERROR_LIFECYCLE,
    ERROR_NONCE_CONFLICT,
    ERROR_POLICY_NOT_ATTACHED,
    ERROR_POLICY_REJECTED,
    ERROR_STORAGE_CONNECTION,
    AuthorizationError,
    CombinationArityError,
    ConfigLoadError,
    ConfigurationError,
    EndpointResponseError,
    EndpointTimeoutError,
    ExecutionRevert,
    LifecycleError,
    NonceConflict,
    PolicyNotAttachedError,
    PolicyNotEnabledError,
    PolicyRejection,
    StorageConnectionError,
    StorageError,
    StorageWriteError,
    TransportError,
    TxGateError,
    UnknownPolicyError,
)


class TestTxGateError:
    """Tests for base TxGateError."""

    def test_basic_error(self) -> None:
        """Create a basic error with message."""
        err = TxGateError(message="Something went wrong", code=9999)
        assert err.message == "Something went wrong"
        assert err.code == 9999
        assert err.suggestion is None
        assert err.context == {}
        assert err.retryable is False

    def test_str_format(self) -> None:
        """String format includes code and message."""
        err = TxGateError(message="Test error", code=1234)
        assert str(err) == "[E1234] Test error"

    def test_str_includes_suggestion(self) -> None:
        err = TxGateError(message="Failed", code=1, suggestion="Try again")
        assert "Suggestion: Try again" in str(err)

    def test_repr_format(self) -> None:
        """Repr includes class name and details."""
        err = TxGateError(message="Test", code=1)
        assert "TxGateError" in repr(err)
        assert "Test" in repr(err)

    def test_is_exception(self) -> None:
        """Errors can be raised and caught as exceptions."""
        with pytest.raises(TxGateError):
            raise TxGateError(message="boom", code=1)

    def test_to_dict(self) -> None:
        """Serialization captures type, code and context."""
        err = PolicyNotAttachedError(policy="0xabc", consumer="0xdef")
        data = err.to_dict()
        assert data["error_type"] == "PolicyNotAttachedError"
        assert data["code"] == ERROR_POLICY_NOT_ATTACHED
        assert data["retryable"] is False
        assert data["context"]["consumer"] == "0xdef"
        assert data["context"]["policy"] == "0xabc"


class TestAuthorizationError:
    """Tests for AuthorizationError."""

    def test_defaults(self) -> None:
        err = AuthorizationError(caller="0xbad", role="POLICY_ADMIN_ROLE", operation="set_policy_status")
        assert err.code == ERROR_AUTHORIZATION
        assert "0xbad" in err.message
        assert "set_policy_status" in err.message
        assert err.context["role"] == "POLICY_ADMIN_ROLE"


class TestConfigurationErrors:
    """Tests for the configuration error family."""

    def test_base_code(self) -> None:
        err = ConfigurationError(message="bad", policy="0xabc")
        assert err.code == ERROR_CONFIGURATION
        assert err.context["policy"] == "0xabc"

    def test_not_attached_is_configuration_error(self) -> None:
        err = PolicyNotAttachedError(policy="0xabc", consumer="0xdef")
        assert isinstance(err, ConfigurationError)
        assert "not attached" in err.message

    def test_not_enabled(self) -> None:
        err = PolicyNotEnabledError(policy="0xabc")
        assert isinstance(err, ConfigurationError)
        assert "not enabled" in err.message
        assert err.suggestion is not None

    def test_arity(self) -> None:
        err = CombinationArityError(policy="0xabc", row_index=1, expected=2, actual=3)
        assert err.code == ERROR_COMBINATION_ARITY
        assert err.context["expected"] == 2
        assert err.context["actual"] == 3

    def test_unknown_policy(self) -> None:
        err = UnknownPolicyError(policy="0xabc")
        assert "0xabc" in err.message

    def test_config_load(self) -> None:
        err = ConfigLoadError(path="txgate.yaml", underlying_error="bad yaml")
        assert "txgate.yaml" in err.message
        assert "bad yaml" in err.message


class TestPolicyRejection:
    """Tests for PolicyRejection."""

    def test_message_is_reason_verbatim(self) -> None:
        err = PolicyRejection(reason="Firewall rejected transaction: nope", endpoint="local")
        assert err.message == "Firewall rejected transaction: nope"
        assert err.reason == "Firewall rejected transaction: nope"
        assert err.code == ERROR_POLICY_REJECTED

    def test_default_reason(self) -> None:
        err = PolicyRejection()
        assert err.reason == DEFAULT_REJECTION_REASON
        assert err.message == DEFAULT_REJECTION_REASON

    def test_never_retryable(self) -> None:
        assert PolicyRejection(retryable=True).retryable is False


class TestTransportErrors:
    """Tests for transport errors and their retryability."""

    def test_transport_error_retryable(self) -> None:
        err = TransportError(endpoint="http", url="http://x", underlying_error="refused")
        assert err.retryable is True
        assert "refused" in err.message

    def test_timeout(self) -> None:
        err = EndpointTimeoutError(endpoint="http", timeout_seconds=5.0)
        assert err.code == ERROR_ENDPOINT_TIMEOUT
        assert err.retryable is True
        assert "5.0" in err.message

    def test_response_error_4xx_not_retryable(self) -> None:
        err = EndpointResponseError(endpoint="http", status_code=400, underlying_error="bad request")
        assert err.code == ERROR_ENDPOINT_RESPONSE
        assert err.retryable is False

    def test_response_error_5xx_retryable(self) -> None:
        err = EndpointResponseError(endpoint="http", status_code=503, underlying_error="unavailable")
        assert err.retryable is True

    def test_response_error_is_transport_error(self) -> None:
        assert isinstance(EndpointResponseError(endpoint="http"), TransportError)


class TestExecutionErrors:
    """Tests for execution and lifecycle errors."""

    def test_revert(self) -> None:
        err = ExecutionRevert(tx_hash="0x01", revert_reason="ERC20: insufficient allowance")
        assert "0x01" in err.message
        assert "insufficient allowance" in err.message
        assert err.retryable is False

    def test_revert_without_reason(self) -> None:
        err = ExecutionRevert(tx_hash="0x01")
        assert "no reason given" in err.message

    def test_nonce_conflict_retryable(self) -> None:
        err = NonceConflict(signer="0xa1")
        assert err.code == ERROR_NONCE_CONFLICT
        assert err.retryable is True

    def test_lifecycle(self) -> None:
        err = LifecycleError(request_id="r1", from_state="rejected", to_state="approved")
        assert err.code == ERROR_LIFECYCLE
        assert "rejected" in err.message
        assert "approved" in err.message


class TestStorageErrors:
    """Tests for storage errors."""

    def test_connection_error(self) -> None:
        err = StorageConnectionError(db_path="/nope/txgate.db", operation="connect")
        assert err.code == ERROR_STORAGE_CONNECTION
        assert isinstance(err, StorageError)
        assert err.context["db_path"] == "/nope/txgate.db"

    def test_write_error(self) -> None:
        err = StorageWriteError(operation="insert", underlying_error="disk full")
        assert "disk full" in err.message
        assert err.context["operation"] == "insert"
