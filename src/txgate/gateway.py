"""
Gateway pipeline for txgate.

The gateway composes the Policy Decision Client and the Transaction
Executor into one pipeline. Approval always happens before execution: a
request the endpoint rejects never reaches the network.

Lifecycle:
    composed -> awaiting_approval -> {rejected | approved}
    approved -> submitted -> {reverted | confirmed}
    composed | approved -> cancelled

Usage:
    gateway = Gateway(client, executor, store)
    result = gateway.submit(TransactionRequest(sender=..., to=..., data=...))
    if result.state == RequestState.REJECTED:
        print(result.error)  # the endpoint's reason, verbatim

Step-wise use (approve now, execute or cancel later):
    request_id = gateway.compose(request)
    gateway.approve(request_id)
    gateway.execute(request_id)  # or gateway.cancel(request_id)

A request left in the submitted state by a network failure is finished
with gateway.resume(request_id), which waits for the recorded broadcast
instead of sending again.

With a store, requests in a terminal state are dropped from memory and
read back from the store.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any

from txgate.client import PolicyDecisionClient
from txgate.errors import (
    DEFAULT_REJECTION_REASON,
    ExecutionRevert,
    LifecycleError,
    PolicyRejection,
    TransportError,
    TxGateError,
)
from txgate.executor import TransactionExecutor
from txgate.schema import (
    ALLOWED_TRANSITIONS,
    ApprovalResult,
    ApprovedTransaction,
    ExecutionReceipt,
    ReceiptStatus,
    RequestState,
    TransactionRequest,
)
from txgate.store import SubmissionStore

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    """
    Outcome of one pass through the pipeline.

    Attributes:
        request_id: The request
        state: Final lifecycle state reached
        approval: The endpoint's answer, if one was obtained
        receipt: Execution receipt, if the transaction was mined
        error: PolicyRejection, ExecutionRevert or transport failure
    """

    request_id: str
    state: RequestState
    approval: ApprovalResult | None = None
    receipt: ExecutionReceipt | None = None
    error: TxGateError | None = None

    @property
    def ok(self) -> bool:
        """Confirmed, or reverted in a way the caller declared expected."""
        if self.state == RequestState.CONFIRMED:
            return True
        return (
            self.state == RequestState.REVERTED
            and self.receipt is not None
            and self.receipt.expected_revert
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "state": self.state.value,
            "ok": self.ok,
            "endpoint": self.approval.endpoint if self.approval else None,
            "reason": self.approval.reason if self.approval and not self.approval.approved else None,
            "receipt": self.receipt.model_dump(mode="json") if self.receipt else None,
            "error": self.error.to_dict() if self.error else None,
        }


class Gateway:
    """
    Approval-then-execution pipeline with an explicit request lifecycle.

    Attributes:
        client: Policy Decision Client
        executor: Transaction Executor
        store: Optional audit store receiving every transition
    """

    def __init__(
        self,
        client: PolicyDecisionClient,
        executor: TransactionExecutor,
        store: SubmissionStore | None = None,
    ) -> None:
        self.client = client
        self.executor = executor
        self.store = store
        self._lock = threading.RLock()
        self._states: dict[str, RequestState] = {}
        self._requests: dict[str, TransactionRequest] = {}
        self._approved: dict[str, ApprovedTransaction] = {}

    def close(self) -> None:
        self.client.close()
        self.executor.network.close()

    def __enter__(self) -> "Gateway":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def state(self, request_id: str) -> RequestState | None:
        """Current state of a request, or None if unknown."""
        with self._lock:
            current = self._states.get(request_id)
        if current is None and self.store is not None:
            record = self.store.get_submission(request_id)
            current = record.state if record else None
        return current

    def in_flight(self) -> list[str]:
        """Request ids held in memory that have not reached a terminal state."""
        with self._lock:
            return [request_id for request_id, state in self._states.items() if not state.terminal]

    def _forget(self, request_id: str) -> None:
        # without a store the in-memory state is the only record of the id
        with self._lock:
            if self.store is not None:
                self._states.pop(request_id, None)
            self._requests.pop(request_id, None)
            self._approved.pop(request_id, None)

    def _request(self, request_id: str) -> TransactionRequest:
        with self._lock:
            request = self._requests.get(request_id)
        if request is not None:
            return request
        record = self.store.get_submission(request_id) if self.store is not None else None
        if record is None:
            raise LifecycleError(
                request_id=request_id,
                from_state="unknown",
                to_state=RequestState.AWAITING_APPROVAL.value,
                message=f"Request {request_id} is not known to this gateway",
            )
        request = TransactionRequest(
            sender=record.sender,
            to=record.to,
            data=record.data,
            value=record.value,
            request_id=record.request_id,
        )
        with self._lock:
            self._requests[request_id] = request
        return request

    def _transition(
        self,
        request_id: str,
        to_state: RequestState,
        detail: str | None = None,
        endpoint: str | None = None,
    ) -> None:
        with self._lock:
            current = self.state(request_id)
            if current is None or to_state not in ALLOWED_TRANSITIONS.get(current, frozenset()):
                raise LifecycleError(
                    request_id=request_id,
                    from_state=current.value if current else "unknown",
                    to_state=to_state.value,
                )
            self._states[request_id] = to_state
            if self.store is not None:
                self.store.record_transition(request_id, current, to_state, detail=detail, endpoint=endpoint)
            if to_state.terminal:
                self._forget(request_id)
        logger.debug("Request %s: %s -> %s", request_id, current.value, to_state.value)

    def compose(self, request: TransactionRequest) -> str:
        """
        Register a request in the composed state.

        Raises:
            LifecycleError: If the request_id has been used before
        """
        with self._lock:
            known = self.state(request.request_id)
            if known is not None:
                raise LifecycleError(
                    request_id=request.request_id,
                    from_state=known.value,
                    to_state=RequestState.COMPOSED.value,
                    message=f"Request {request.request_id} was already submitted (state: {known.value})",
                )
            self._states[request.request_id] = RequestState.COMPOSED
            self._requests[request.request_id] = request
            if self.store is not None:
                self.store.record_submission(request)
        return request.request_id

    def approve(self, request_id: str) -> ApprovalResult:
        """
        Ask the decision endpoint about a composed request.

        A rejection is returned, and leaves the request in the rejected
        state. A transport failure, or any other error while deciding, also
        ends in the rejected state, since nothing unapproved may proceed,
        and is re-raised.

        Raises:
            LifecycleError: If the request is not composed
            TransportError: If the endpoint stays unreachable
        """
        self._transition(request_id, RequestState.AWAITING_APPROVAL)
        request = self._request(request_id)

        try:
            result = self.client.request_approval(request)
        except TransportError as e:
            self._transition(request_id, RequestState.REJECTED, detail=e.message, endpoint=e.endpoint or None)
            raise
        except Exception as e:
            self._transition(request_id, RequestState.REJECTED, detail=f"{type(e).__name__}: {e}")
            raise

        if result.approved and result.transaction is not None:
            with self._lock:
                self._approved[request_id] = result.transaction
            self._transition(request_id, RequestState.APPROVED, endpoint=result.endpoint)
        else:
            self._transition(
                request_id,
                RequestState.REJECTED,
                detail=result.reason or DEFAULT_REJECTION_REASON,
                endpoint=result.endpoint,
            )
        return result

    def execute(self, request_id: str, blocking: bool = True) -> ExecutionReceipt:
        """
        Broadcast an approved request and wait for its receipt.

        The request enters the submitted state at broadcast. If the signer
        is busy and blocking=False, NonceConflict is raised and the request
        stays approved.

        Raises:
            LifecycleError: If the request is not approved
            NonceConflict: As for TransactionExecutor.execute()
            TransportError: If the network fails
        """
        current = self.state(request_id)
        with self._lock:
            tx = self._approved.get(request_id)
        if current != RequestState.APPROVED or tx is None:
            raise LifecycleError(
                request_id=request_id,
                from_state=current.value if current else "unknown",
                to_state=RequestState.SUBMITTED.value,
            )

        def mark_submitted(tx_hash: str) -> None:
            self._transition(request_id, RequestState.SUBMITTED, detail=tx_hash)

        receipt = self.executor.execute(
            tx,
            request_id,
            blocking=blocking,
            raise_on_revert=False,
            on_broadcast=mark_submitted,
        )

        # Recovered from an earlier broadcast: on_broadcast was not called
        if self.state(request_id) == RequestState.APPROVED:
            mark_submitted(receipt.tx_hash)

        self._finish(request_id, receipt)
        return receipt

    def resume(self, request_id: str) -> ExecutionReceipt:
        """
        Finish a request that was broadcast but never reported a receipt.

        Waits for the recorded broadcast; the transaction is not sent
        again. Works across processes when the gateway has a store.

        Raises:
            LifecycleError: If the request is not in the submitted state, or
                no broadcast was recorded for it
            TransportError: If the network fails again
        """
        current = self.state(request_id)
        tx_hash = self.executor.broadcast_hash(request_id)
        if current != RequestState.SUBMITTED or tx_hash is None:
            raise LifecycleError(
                request_id=request_id,
                from_state=current.value if current else "unknown",
                to_state=RequestState.CONFIRMED.value,
                message=(
                    f"Request {request_id} cannot be resumed"
                    f" (state: {current.value if current else 'unknown'}, broadcast: {tx_hash or 'none'})"
                ),
            )

        with self._lock:
            tx = self._approved.get(request_id)
        if tx is None:
            tx = ApprovedTransaction.from_request(self._request(request_id), resumed=True)

        logger.info("Resuming request %s, awaiting %s", request_id, tx_hash)
        receipt = self.executor.execute(tx, request_id, raise_on_revert=False)
        self._finish(request_id, receipt)
        return receipt

    def _finish(self, request_id: str, receipt: ExecutionReceipt) -> None:
        if receipt.status == ReceiptStatus.CONFIRMED:
            self._transition(request_id, RequestState.CONFIRMED)
        else:
            self._transition(request_id, RequestState.REVERTED, detail=receipt.revert_reason or "")

    def cancel(self, request_id: str, reason: str = "cancelled by caller") -> None:
        """
        Abandon a request that has not been broadcast.

        Raises:
            LifecycleError: If the request is not composed or approved
        """
        self._transition(request_id, RequestState.CANCELLED, detail=reason)
        logger.info("Request %s cancelled: %s", request_id, reason)

    # =========================================================================
    # Pipeline
    # =========================================================================

    def submit(self, request: TransactionRequest, raise_on_reject: bool = False) -> SubmissionResult:
        """
        Run a request through approval and, if approved, execution.

        Args:
            request: The proposed call
            raise_on_reject: Raise PolicyRejection instead of returning a
                rejected result

        Returns:
            SubmissionResult; rejections and reverts are reported in it

        Raises:
            PolicyRejection: If rejected and raise_on_reject is True
            LifecycleError: If the request_id has been used before
            NonceConflict: If the network reports a nonce conflict
        """
        request_id = self.compose(request)

        try:
            approval = self.approve(request_id)
        except TransportError as e:
            return SubmissionResult(request_id=request_id, state=RequestState.REJECTED, error=e)

        if not approval.approved:
            rejection = PolicyRejection(
                reason=approval.reason or DEFAULT_REJECTION_REASON,
                endpoint=approval.endpoint,
                request_id=request_id,
            )
            if raise_on_reject:
                raise rejection
            return SubmissionResult(
                request_id=request_id,
                state=RequestState.REJECTED,
                approval=approval,
                error=rejection,
            )

        try:
            receipt = self.execute(request_id)
        except TransportError as e:
            return SubmissionResult(
                request_id=request_id,
                state=self.state(request_id) or RequestState.APPROVED,
                approval=approval,
                error=e,
            )

        error = None
        if receipt.status == ReceiptStatus.REVERTED and not receipt.expected_revert:
            error = ExecutionRevert(
                tx_hash=receipt.tx_hash,
                revert_reason=receipt.revert_reason or "",
                request_id=request_id,
            )
        return SubmissionResult(
            request_id=request_id,
            state=self.state(request_id) or RequestState.SUBMITTED,
            approval=approval,
            receipt=receipt,
            error=error,
        )
