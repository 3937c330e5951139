"""
Network adapters for txgate.

The network is an opaque executor: it accepts an approved transaction,
mines it, and reports whether execution succeeded or reverted. Nothing in
txgate interprets contract code.

Adapters:
    - JsonRpcNetwork: node-managed signer over JSON-RPC
      (eth_sendTransaction, eth_getTransactionReceipt, eth_call replay for
      the revert reason)
    - InMemoryNetwork: deterministic in-process chain with pluggable
      contract handlers, used by tests and dry runs
"""

import hashlib
import itertools
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from txgate.errors import NonceConflict, TransportError
from txgate.schema import ApprovedTransaction, normalize_address

logger = logging.getLogger(__name__)

# Error(string) selector
ERROR_STRING_SELECTOR = "0x08c379a0"

NONCE_ERROR_MARKERS = (
    "nonce too low",
    "nonce too high",
    "replacement transaction underpriced",
    "already known",
    "known transaction",
)


def decode_revert_reason(data: str | None) -> str:
    """
    Decode ABI-encoded Error(string) revert data.

    Returns the raw hex when the data is not an Error(string) payload,
    and an empty string when there is no data.
    """
    if not data or data == "0x":
        return ""
    if not data.startswith(ERROR_STRING_SELECTOR):
        return data
    try:
        body = bytes.fromhex(data[len(ERROR_STRING_SELECTOR):])
        offset = int.from_bytes(body[0:32], "big")
        length = int.from_bytes(body[offset:offset + 32], "big")
        return body[offset + 32:offset + 32 + length].decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return data


def is_nonce_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in NONCE_ERROR_MARKERS)


def network_error(url: str, detail: str) -> TransportError:
    """TransportError for a failed network call. Never retried, since a broadcast may have landed."""
    return TransportError(
        message=f"Network call to {url} failed: {detail}",
        endpoint="network",
        url=url,
        underlying_error=detail,
        retryable=False,
    )


@dataclass(frozen=True)
class NetworkReceipt:
    """
    What the network reports for a mined transaction.

    Attributes:
        tx_hash: Transaction hash
        success: False if execution reverted
        block_number: Block the transaction was mined in
        revert_reason: Decoded revert reason, if any
    """

    tx_hash: str
    success: bool
    block_number: int | None = None
    revert_reason: str = ""


class Network(ABC):
    """Abstract executor for approved transactions."""

    @abstractmethod
    def send_transaction(self, tx: ApprovedTransaction) -> str:
        """
        Broadcast `tx`.

        Returns:
            The transaction hash

        Raises:
            NonceConflict: The signer's nonce is taken
            TransportError: The network could not be reached
        """
        ...

    @abstractmethod
    def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> NetworkReceipt:
        """Block until `tx_hash` has `confirmations` confirmations."""
        ...

    def check_connection(self) -> tuple[bool, str]:
        return True, "in-process network"

    def close(self) -> None:
        """Release resources."""


# =============================================================================
# JSON-RPC
# =============================================================================


class JsonRpcNetwork(Network):
    """
    Network reached through a node's JSON-RPC interface.

    The node holds the signer's key (eth_sendTransaction).
    """

    def __init__(
        self,
        rpc_url: str,
        poll_interval_seconds: float = 1.0,
        timeout_seconds: float = 120.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rpc_url = rpc_url
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._client: httpx.Client | None = None
        self._ids = itertools.count(1)

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=30.0)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _rpc(self, method: str, params: list[Any]) -> Any:
        """Make one JSON-RPC call and return `result`, or raise on `error`."""
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": next(self._ids)}
        try:
            response = self._get_client().post(self.rpc_url, json=payload)
        except httpx.RequestError as e:
            raise network_error(self.rpc_url, f"{method}: {e}") from e

        if response.status_code != 200:
            raise network_error(self.rpc_url, f"{method}: HTTP {response.status_code}")

        try:
            body = response.json()
        except json.JSONDecodeError as e:
            raise network_error(self.rpc_url, f"{method}: invalid JSON: {e}") from e

        if isinstance(body, dict) and body.get("error"):
            raise JsonRpcError.from_payload(method, body["error"])
        return body.get("result") if isinstance(body, dict) else None

    def send_transaction(self, tx: ApprovedTransaction) -> str:
        try:
            return self._rpc("eth_sendTransaction", [tx.to_rpc()])
        except JsonRpcError as e:
            if is_nonce_error(e.message):
                raise NonceConflict(signer=tx.sender, underlying_error=e.message) from e
            raise network_error(self.rpc_url, f"eth_sendTransaction rejected: {e.message}") from e

    def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> NetworkReceipt:
        deadline = time.monotonic() + self.timeout_seconds
        while True:
            receipt = self._rpc("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                block_number = int(receipt["blockNumber"], 16)
                if confirmations <= 1 or self._confirmations(block_number) >= confirmations:
                    break
            if time.monotonic() >= deadline:
                raise network_error(self.rpc_url, f"no receipt for {tx_hash} after {self.timeout_seconds}s")
            self._sleep(self.poll_interval_seconds)

        success = int(receipt.get("status", "0x1"), 16) == 1
        reason = "" if success else self._revert_reason(tx_hash, block_number)
        return NetworkReceipt(tx_hash=tx_hash, success=success, block_number=block_number, revert_reason=reason)

    def _confirmations(self, block_number: int) -> int:
        head = int(self._rpc("eth_blockNumber", []), 16)
        return head - block_number + 1

    def _revert_reason(self, tx_hash: str, block_number: int) -> str:
        """Replay the transaction with eth_call to recover the revert reason."""
        tx = self._rpc("eth_getTransactionByHash", [tx_hash])
        if not tx:
            return ""
        call = {k: tx[k] for k in ("from", "to", "input", "value", "gas") if tx.get(k) is not None}
        if "input" in call:
            call["data"] = call.pop("input")
        try:
            self._rpc("eth_call", [call, hex(block_number)])
        except JsonRpcError as e:
            return decode_revert_reason(e.data) or e.message
        return ""

    def check_connection(self) -> tuple[bool, str]:
        try:
            chain_id = int(self._rpc("eth_chainId", []), 16)
        except (TransportError, JsonRpcError, TypeError, ValueError) as e:
            return False, f"Cannot query {self.rpc_url}: {e}"
        return True, f"Connected to chain {chain_id}"


class JsonRpcError(Exception):
    """An `error` object returned by a JSON-RPC node."""

    def __init__(self, method: str, message: str, code: int | None = None, data: str | None = None) -> None:
        super().__init__(f"{method}: {message}")
        self.method = method
        self.message = message
        self.code = code
        self.data = data

    @classmethod
    def from_payload(cls, method: str, error: Any) -> "JsonRpcError":
        if not isinstance(error, dict):
            return cls(method, str(error))
        data = error.get("data")
        if isinstance(data, dict):
            data = data.get("data")
        return cls(method, str(error.get("message", "")), error.get("code"), data if isinstance(data, str) else None)


# =============================================================================
# In-memory
# =============================================================================


class ContractRevert(Exception):
    """Raised by an in-memory contract handler to revert the call."""

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason)
        self.reason = reason


ContractHandler = Callable[[ApprovedTransaction], None]


class InMemoryNetwork(Network):
    """
    Deterministic in-process chain.

    Each transaction is mined into its own block as soon as it is sent.
    Contracts are plain callables registered per address; raising
    ContractRevert reverts the call. Calls to addresses without a handler
    succeed (plain transfers).

    Attributes:
        sent: Every transaction broadcast, in order
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._contracts: dict[str, ContractHandler] = {}
        self._receipts: dict[str, NetworkReceipt] = {}
        self._nonces: dict[str, int] = {}
        self._block = 0
        self.sent: list[ApprovedTransaction] = []

    def register_contract(self, address: str, handler: ContractHandler) -> None:
        self._contracts[normalize_address(address)] = handler

    def send_transaction(self, tx: ApprovedTransaction) -> str:
        with self._lock:
            nonce = self._nonces.get(tx.sender, 0)
            self._nonces[tx.sender] = nonce + 1
            self._block += 1
            block = self._block
            tx_hash = "0x" + hashlib.sha256(
                f"{tx.sender}:{nonce}:{tx.to}:{tx.data}:{tx.value}".encode()
            ).hexdigest()
            self.sent.append(tx)

        handler = self._contracts.get(tx.to)
        try:
            if handler is not None:
                handler(tx)
            receipt = NetworkReceipt(tx_hash=tx_hash, success=True, block_number=block)
        except ContractRevert as e:
            receipt = NetworkReceipt(tx_hash=tx_hash, success=False, block_number=block, revert_reason=e.reason)

        with self._lock:
            self._receipts[tx_hash] = receipt
        logger.debug("Mined %s in block %d (success=%s)", tx_hash, block, receipt.success)
        return tx_hash

    def wait_for_receipt(self, tx_hash: str, confirmations: int = 1) -> NetworkReceipt:
        with self._lock:
            receipt = self._receipts.get(tx_hash)
        if receipt is None:
            raise network_error("in-memory", f"unknown transaction {tx_hash}")
        return receipt

    def nonce(self, signer: str) -> int:
        """Number of transactions sent by `signer`."""
        with self._lock:
            return self._nonces.get(normalize_address(signer), 0)
