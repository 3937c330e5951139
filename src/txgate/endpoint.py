"""
Decision endpoints for txgate.

A decision endpoint answers one question: may this call be broadcast? The
Policy Decision Client talks to exactly one endpoint, injected at
construction, so pipelines can be pointed at a real firewall, at a remote
service, or at a stub that always approves or always denies.

Endpoints:
    - LocalDecisionEndpoint: evaluates the consumer's active policies from a
      FirewallRegistry in-process
    - StaticDecisionEndpoint: fixed verdict, for exercising both pipeline
      paths independently of policy state
    - HttpDecisionEndpoint: JSON-RPC over HTTP to a remote decision service

Error contract:
    A policy denial is an ApprovalResult with approved=False, never an
    exception. Transport failures raise TransportError subclasses.
"""

import itertools
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import ValidationError

from txgate.errors import (
    DEFAULT_REJECTION_REASON,
    EndpointResponseError,
    EndpointTimeoutError,
    TransportError,
)
from txgate.policy.base import PolicyContext
from txgate.registry import FirewallRegistry
from txgate.schema import (
    ApprovalResult,
    ApprovedTransaction,
    PolicyVerdict,
    TransactionRequest,
)

logger = logging.getLogger(__name__)

RPC_METHOD_APPROVE = "firewall_approve"


class DecisionEndpoint(ABC):
    """
    Abstract base class for decision endpoints.

    Subclasses must implement:
    - name property
    - decide(): approval or rejection for one request
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier used in results, logs and the audit trail."""
        ...

    @abstractmethod
    def decide(self, request: TransactionRequest) -> ApprovalResult:
        """
        Decide on a request.

        Returns:
            ApprovalResult, approved or rejected

        Raises:
            TransportError: If the endpoint cannot be reached
        """
        ...

    def check_connection(self) -> tuple[bool, str]:
        """Report whether the endpoint is usable."""
        return True, f"{self.name} is in-process"

    def close(self) -> None:
        """Release resources held by the endpoint."""

    def __enter__(self) -> "DecisionEndpoint":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.name}>"


class StaticDecisionEndpoint(DecisionEndpoint):
    """
    Endpoint with a fixed verdict.

    Example:
        accept = StaticDecisionEndpoint(approve=True, name="accept")
        reject = StaticDecisionEndpoint(approve=False, name="reject")
    """

    def __init__(
        self,
        approve: bool,
        reason: str = DEFAULT_REJECTION_REASON,
        name: str | None = None,
    ) -> None:
        self.approve = approve
        self.reason = reason
        self._name = name or ("always-approve" if approve else "always-deny")

    @property
    def name(self) -> str:
        return self._name

    def decide(self, request: TransactionRequest) -> ApprovalResult:
        if self.approve:
            return ApprovalResult.approve(
                ApprovedTransaction.from_request(request, endpoint=self.name),
                endpoint=self.name,
            )
        return ApprovalResult.reject(self.reason, endpoint=self.name)


class LocalDecisionEndpoint(DecisionEndpoint):
    """
    Evaluate the consumer's active policies in-process.

    The consumer is the request's target. The request is approved iff the
    consumer has at least one active policy and every active policy
    approves. Disabled policies, evaluator errors and commit errors deny.

    Decisions are serialised so single-use approvals cannot be spent twice
    by concurrent requests. On approval each distinct policy commits once,
    even when it is reached through several combined policies.
    """

    def __init__(
        self,
        registry: FirewallRegistry,
        reason: str = DEFAULT_REJECTION_REASON,
        name: str = "local",
    ) -> None:
        self.registry = registry
        self.reason = reason
        self._name = name
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    def decide(self, request: TransactionRequest) -> ApprovalResult:
        with self._lock:
            return self._decide(request, dry_run=False)

    def evaluate(self, request: TransactionRequest) -> ApprovalResult:
        """Dry-run decision: same verdicts, no approvals consumed."""
        with self._lock:
            return self._decide(request, dry_run=True)

    def _decide(self, request: TransactionRequest, dry_run: bool) -> ApprovalResult:
        context = PolicyContext.for_request(request, dry_run=dry_run)
        active = self.registry.snapshot(context.consumer)

        if not active:
            logger.warning("No active policies for consumer %s, denying", context.consumer)
            return ApprovalResult.reject(
                f"{self.reason}: no active policies for {context.consumer}",
                endpoint=self.name,
            )

        verdicts: list[PolicyVerdict] = []
        for entry in active:
            policy = entry.policy
            if not entry.enabled:
                verdicts.append(
                    PolicyVerdict(
                        policy=policy.address,
                        kind=policy.kind,
                        approved=False,
                        reason="policy is disabled",
                    )
                )
                continue
            try:
                verdicts.append(policy.explain(request, context))
            except Exception as e:
                logger.exception("Policy %s failed while evaluating %s", policy.address, request.request_id)
                verdicts.append(
                    PolicyVerdict(
                        policy=policy.address,
                        kind=policy.kind,
                        approved=False,
                        reason=f"evaluation error: {e}",
                    )
                )

        denied = [v for v in verdicts if not v.approved]
        if denied:
            detail = "; ".join(f"{v.policy}: {v.reason}" for v in denied)
            logger.warning("Request %s denied: %s", request.request_id, detail)
            return ApprovalResult.reject(
                f"{self.reason}: {detail}",
                endpoint=self.name,
                verdicts=tuple(verdicts),
            )

        if not dry_run:
            committed: set[str] = set()
            for entry in active:
                for target in entry.policy.commit_targets():
                    if target.address in committed:
                        continue
                    committed.add(target.address)
                    try:
                        target.commit(request, context)
                    except Exception as e:
                        logger.exception("Policy %s failed to commit %s", target.address, request.request_id)
                        return ApprovalResult.reject(
                            f"{self.reason}: {target.address}: commit failed: {e}",
                            endpoint=self.name,
                            verdicts=tuple(verdicts),
                        )

        return ApprovalResult.approve(
            ApprovedTransaction.from_request(
                request,
                endpoint=self.name,
                policies=[entry.policy.address for entry in active],
            ),
            endpoint=self.name,
            verdicts=tuple(verdicts),
        )


class HttpDecisionEndpoint(DecisionEndpoint):
    """
    JSON-RPC client for a remote decision service.

    Request:
        {"jsonrpc": "2.0", "method": "firewall_approve", "id": n,
         "params": [{"from", "to", "data", "value", "policyAddress"?}]}

    Response result:
        {"approved": bool, "transaction"?: {...}, "rejectionReason"?: str}
    """

    def __init__(
        self,
        url: str,
        policy_address: str | None = None,
        timeout_seconds: float = 30.0,
        name: str = "http",
    ) -> None:
        self.url = url
        self.policy_address = policy_address
        self.timeout_seconds = timeout_seconds
        self._name = name
        self._client: httpx.Client | None = None
        self._ids = itertools.count(1)

    @property
    def name(self) -> str:
        return self._name

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout_seconds)
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def _build_payload(self, request: TransactionRequest) -> dict[str, Any]:
        params = request.call_fields()
        if self.policy_address:
            params["policyAddress"] = self.policy_address
        return {
            "jsonrpc": "2.0",
            "method": RPC_METHOD_APPROVE,
            "params": [params],
            "id": next(self._ids),
        }

    def decide(self, request: TransactionRequest) -> ApprovalResult:
        client = self._get_client()
        payload = self._build_payload(request)

        try:
            response = client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise EndpointTimeoutError(
                endpoint=self.name,
                url=self.url,
                timeout_seconds=self.timeout_seconds,
                underlying_error=str(e),
            ) from e
        except httpx.RequestError as e:
            raise TransportError(
                endpoint=self.name,
                url=self.url,
                underlying_error=f"{type(e).__name__}: {e}",
            ) from e

        if response.status_code != 200:
            raise EndpointResponseError(
                endpoint=self.name,
                url=self.url,
                status_code=response.status_code,
                underlying_error=f"HTTP {response.status_code}: {response.text[:200]}",
            )

        try:
            body = response.json()
        except json.JSONDecodeError as e:
            raise EndpointResponseError(
                endpoint=self.name,
                url=self.url,
                status_code=response.status_code,
                underlying_error=f"Invalid JSON: {e}",
            ) from e

        return self._parse_result(body, request)

    def _parse_result(self, body: Any, request: TransactionRequest) -> ApprovalResult:
        if not isinstance(body, dict):
            raise EndpointResponseError(
                endpoint=self.name,
                url=self.url,
                underlying_error="Response is not a JSON object",
            )

        if body.get("error"):
            error = body["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise EndpointResponseError(
                endpoint=self.name,
                url=self.url,
                underlying_error=f"RPC error: {message}",
            )

        result = body.get("result")
        if not isinstance(result, dict) or not isinstance(result.get("approved"), bool):
            raise EndpointResponseError(
                endpoint=self.name,
                url=self.url,
                underlying_error=f"Missing 'approved' in result: {str(body)[:200]}",
            )

        if not result["approved"]:
            reason = result.get("rejectionReason") or DEFAULT_REJECTION_REASON
            return ApprovalResult.reject(str(reason), endpoint=self.name)

        return ApprovalResult.approve(self._parse_transaction(result.get("transaction"), request), endpoint=self.name)

    def _parse_transaction(self, raw: Any, request: TransactionRequest) -> ApprovedTransaction:
        if raw is None:
            return ApprovedTransaction.from_request(request, endpoint=self.name)
        if not isinstance(raw, dict):
            raise EndpointResponseError(
                endpoint=self.name,
                url=self.url,
                underlying_error="Approved transaction is not an object",
            )

        known = {"from", "to", "data", "value", "gas"}
        fields = {k: v for k, v in raw.items() if k in known}
        fields.setdefault("from", request.sender)
        fields.setdefault("to", request.to)
        fields.setdefault("data", request.data)
        fields.setdefault("value", request.value)
        attestation = {k: v for k, v in raw.items() if k not in known}

        try:
            return ApprovedTransaction.model_validate({**fields, "attestation": attestation})
        except ValidationError as e:
            raise EndpointResponseError(
                endpoint=self.name,
                url=self.url,
                underlying_error=f"Invalid approved transaction: {e.error_count()} error(s)",
            ) from e

    def check_connection(self) -> tuple[bool, str]:
        try:
            response = self._get_client().get(self.url)
        except httpx.RequestError as e:
            return False, f"Cannot reach {self.url}: {e}"
        return True, f"{self.url} answered HTTP {response.status_code}"
