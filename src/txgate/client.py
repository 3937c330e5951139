"""
Policy Decision Client.

Transport adapter between a caller and a decision endpoint. Given
{from, to, data, value} it asks the endpoint for approval and returns
either a ready-to-broadcast transaction or the rejection reason.

The client performs no policy logic itself.

Usage:
    client = PolicyDecisionClient(HttpDecisionEndpoint(url))
    approved_tx = client.approve(TransactionRequest(sender=..., to=..., data=...))

Error handling:
    - TransportError (retryable): retried with bounded exponential backoff
    - PolicyRejection: raised by approve(), never retried, reason verbatim
    - Anything else propagates unchanged
"""

import logging
import time
from collections.abc import Callable
from typing import Any

from txgate.endpoint import DecisionEndpoint
from txgate.errors import DEFAULT_REJECTION_REASON, PolicyRejection, TransportError
from txgate.schema import ApprovalResult, ApprovedTransaction, RetryConfig, TransactionRequest

logger = logging.getLogger(__name__)


class PolicyDecisionClient:
    """
    Ask a decision endpoint to approve proposed calls.

    Attributes:
        endpoint: The injected decision endpoint
        retry: Backoff settings for transport failures
    """

    def __init__(
        self,
        endpoint: DecisionEndpoint,
        retry: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the client.

        Args:
            endpoint: Decision endpoint to consult
            retry: Backoff settings; defaults to RetryConfig()
            sleep: Delay function, replaceable in tests
        """
        self.endpoint = endpoint
        self.retry = retry or RetryConfig()
        self._sleep = sleep

    def close(self) -> None:
        self.endpoint.close()

    def __enter__(self) -> "PolicyDecisionClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def request_approval(self, request: TransactionRequest) -> ApprovalResult:
        """
        Ask the endpoint to approve `request`.

        Returns:
            ApprovalResult; a rejection is a normal return value

        Raises:
            TransportError: When the endpoint stays unreachable after every
                retry, or fails in a way that retrying cannot fix
        """
        last_error: TransportError | None = None

        for attempt in range(self.retry.max_retries + 1):
            try:
                result = self.endpoint.decide(request)
            except TransportError as e:
                if not e.retryable:
                    raise
                last_error = e
                if attempt < self.retry.max_retries:
                    delay = self.retry.delay_for(attempt)
                    logger.warning(
                        "Endpoint %s unavailable (attempt %d/%d), retrying in %.2fs: %s",
                        self.endpoint.name,
                        attempt + 1,
                        self.retry.max_retries + 1,
                        delay,
                        e.message,
                    )
                    self._sleep(delay)
                continue

            if result.approved:
                logger.info("Request %s approved by %s", request.request_id, result.endpoint or self.endpoint.name)
            else:
                logger.warning(
                    "Request %s rejected by %s: %s",
                    request.request_id,
                    result.endpoint or self.endpoint.name,
                    result.reason,
                )
            return result

        # All retries exhausted
        if last_error:
            raise last_error
        raise TransportError(endpoint=self.endpoint.name, underlying_error="no attempt made")

    def approve(self, request: TransactionRequest) -> ApprovedTransaction:
        """
        Return the ready-to-broadcast transaction for `request`.

        Raises:
            PolicyRejection: If the endpoint rejects, carrying its reason
            TransportError: As for request_approval()
        """
        result = self.request_approval(request)
        if not result.approved or result.transaction is None:
            raise PolicyRejection(
                reason=result.reason or DEFAULT_REJECTION_REASON,
                endpoint=result.endpoint or self.endpoint.name,
                request_id=request.request_id,
            )
        return result.transaction
