"""
Transaction Executor for txgate.

Broadcasts an approved transaction, waits for confirmation and reports the
outcome. The executor is the last stage of the pipeline and only ever sees
transactions that a decision endpoint has approved.

Guarantees:
    - At most one in-flight transaction per signer
    - A request_id that was already broadcast is never broadcast again
    - Reverts matching a declared ExpectedRevert are reported, not raised
"""

import logging
import re
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from txgate.errors import ExecutionRevert, NonceConflict
from txgate.network import Network
from txgate.schema import (
    ApprovedTransaction,
    ExecutionReceipt,
    ExpectedRevertConfig,
    ReceiptStatus,
    normalize_address,
)
from txgate.store import SubmissionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpectedRevert:
    """
    A revert declared in advance as a known outcome.

    Attributes:
        pattern: Substring of the revert reason, or a regex if regex=True
        regex: Match pattern with re.search instead of substring
        target: Only match transactions sent to this address
    """

    pattern: str
    regex: bool = False
    target: str | None = None
    _compiled: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.target is not None:
            object.__setattr__(self, "target", normalize_address(self.target))
        if self.regex:
            object.__setattr__(self, "_compiled", re.compile(self.pattern))

    @classmethod
    def from_config(cls, config: ExpectedRevertConfig) -> "ExpectedRevert":
        return cls(pattern=config.pattern, regex=config.regex, target=config.target)

    def matches(self, target: str, reason: str) -> bool:
        if self.target is not None and self.target != target:
            return False
        if self._compiled is not None:
            return self._compiled.search(reason) is not None
        return self.pattern in reason


class TransactionExecutor:
    """
    Broadcast approved transactions through a Network.

    Attributes:
        network: Where transactions are sent
        expected_reverts: Reverts reported as expected outcomes
        store: Optional audit store; also used for cross-process idempotency
        confirmations: Confirmations to wait for before reporting

    With a store, broadcasts and receipts are kept there only; without one
    they are kept in memory for the life of the executor.
    """

    def __init__(
        self,
        network: Network,
        expected_reverts: Iterable[ExpectedRevert] = (),
        store: SubmissionStore | None = None,
        confirmations: int = 1,
    ) -> None:
        self.network = network
        self.expected_reverts = list(expected_reverts)
        self.store = store
        self.confirmations = confirmations
        self._signer_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._broadcasts: dict[str, str] = {}
        self._receipts: dict[str, ExecutionReceipt] = {}

    def _signer_lock(self, signer: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._signer_locks.get(signer)
            if lock is None:
                lock = self._signer_locks[signer] = threading.Lock()
            return lock

    def is_expected(self, target: str, reason: str) -> bool:
        """Whether a revert of `target` with `reason` was declared expected."""
        return any(expected.matches(target, reason) for expected in self.expected_reverts)

    def execute(
        self,
        tx: ApprovedTransaction,
        request_id: str,
        blocking: bool = True,
        raise_on_revert: bool = True,
        on_broadcast: Callable[[str], None] | None = None,
    ) -> ExecutionReceipt:
        """
        Broadcast `tx` and wait for its receipt.

        Args:
            tx: Approved transaction
            request_id: Idempotency key; a key seen before returns the
                recorded receipt without broadcasting
            blocking: Wait for the signer's in-flight transaction to finish;
                when False, raise NonceConflict instead
            raise_on_revert: Raise ExecutionRevert for unexpected reverts
            on_broadcast: Called with the transaction hash right after
                broadcast

        Returns:
            ExecutionReceipt

        Raises:
            NonceConflict: The signer is busy (blocking=False) or the
                network reported a nonce error
            ExecutionRevert: The transaction reverted unexpectedly
            TransportError: The network failed
        """
        receipt = self._recorded_receipt(request_id)
        if receipt is None:
            lock = self._signer_lock(tx.sender)
            if not lock.acquire(blocking=blocking):
                raise NonceConflict(signer=tx.sender, underlying_error=f"request {request_id} not sent")
            try:
                receipt = self._recorded_receipt(request_id) or self._broadcast_and_wait(
                    tx, request_id, on_broadcast
                )
            finally:
                lock.release()
        else:
            logger.info("Request %s already executed as %s, not resending", request_id, receipt.tx_hash)

        if receipt.status == ReceiptStatus.REVERTED and not receipt.expected_revert and raise_on_revert:
            raise ExecutionRevert(
                tx_hash=receipt.tx_hash,
                revert_reason=receipt.revert_reason or "",
                request_id=request_id,
            )
        return receipt

    def broadcast_hash(self, request_id: str) -> str | None:
        """Hash `request_id` was broadcast as, or None if it never was."""
        return self._recorded_broadcast(request_id)

    def _recorded_receipt(self, request_id: str) -> ExecutionReceipt | None:
        receipt = self._receipts.get(request_id)
        if receipt is None and self.store is not None:
            receipt = self.store.find_receipt(request_id)
        return receipt

    def _recorded_broadcast(self, request_id: str) -> str | None:
        tx_hash = self._broadcasts.get(request_id)
        if tx_hash is None and self.store is not None:
            tx_hash = self.store.find_broadcast(request_id)
        return tx_hash

    def _broadcast_and_wait(
        self,
        tx: ApprovedTransaction,
        request_id: str,
        on_broadcast: Callable[[str], None] | None,
    ) -> ExecutionReceipt:
        tx_hash = self._recorded_broadcast(request_id)
        if tx_hash is not None:
            logger.info("Request %s already broadcast as %s, awaiting receipt", request_id, tx_hash)
        else:
            tx_hash = self.network.send_transaction(tx)
            if self.store is not None:
                self.store.record_broadcast(request_id, tx_hash)
            else:
                self._broadcasts[request_id] = tx_hash
            logger.info("Request %s broadcast as %s", request_id, tx_hash)
            if on_broadcast is not None:
                on_broadcast(tx_hash)

        mined = self.network.wait_for_receipt(tx_hash, self.confirmations)

        if mined.success:
            receipt = ExecutionReceipt(
                request_id=request_id,
                tx_hash=tx_hash,
                status=ReceiptStatus.CONFIRMED,
                block_number=mined.block_number,
            )
            logger.info("Transaction %s confirmed in block %s", tx_hash, mined.block_number)
        else:
            expected = self.is_expected(tx.to, mined.revert_reason)
            receipt = ExecutionReceipt(
                request_id=request_id,
                tx_hash=tx_hash,
                status=ReceiptStatus.REVERTED,
                block_number=mined.block_number,
                revert_reason=mined.revert_reason,
                expected_revert=expected,
            )
            if expected:
                logger.info("Transaction %s reverted as expected: %s", tx_hash, mined.revert_reason)
            else:
                logger.error("Transaction %s reverted: %s", tx_hash, mined.revert_reason or "no reason given")

        if self.store is not None:
            self.store.record_receipt(receipt)
        else:
            self._receipts[request_id] = receipt
            self._broadcasts.pop(request_id, None)
        return receipt
