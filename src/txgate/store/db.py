"""
SQLite storage for txgate.

Design Principles:
    - Append-only transitions: history is never rewritten
    - Integrity: every submission carries a hash of the proposed call
    - One connection per store, shared across threads under a lock
    - Self-contained: a single .db file holds the whole audit trail
"""

import hashlib
import json
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from txgate.errors import StorageConnectionError, StorageReadError, StorageWriteError
from txgate.schema import (
    ExecutionReceipt,
    ReceiptStatus,
    RequestState,
    SubmissionRecord,
    TransactionRequest,
    TransitionRecord,
)

# Schema version for migrations
SCHEMA_VERSION = 1

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS submissions (
    request_id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    sender TEXT NOT NULL,
    target TEXT NOT NULL,
    data TEXT NOT NULL,
    value TEXT NOT NULL,
    endpoint TEXT,
    state TEXT NOT NULL,
    reason TEXT,
    request_hash TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    at TEXT NOT NULL,
    detail TEXT,
    FOREIGN KEY (request_id) REFERENCES submissions(request_id)
);

-- status is NULL while the transaction is broadcast but not yet mined
CREATE TABLE IF NOT EXISTS receipts (
    request_id TEXT PRIMARY KEY,
    tx_hash TEXT NOT NULL,
    broadcast_at TEXT NOT NULL,
    status TEXT,
    block_number INTEGER,
    revert_reason TEXT,
    expected_revert INTEGER NOT NULL DEFAULT 0,
    recorded_at TEXT
);

-- single-use approvals spent so far, per ApprovedCalls policy
CREATE TABLE IF NOT EXISTS consumed_approvals (
    policy TEXT NOT NULL,
    sender TEXT NOT NULL,
    call_hash TEXT NOT NULL,
    count INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (policy, sender, call_hash)
);

CREATE INDEX IF NOT EXISTS idx_transitions_request_id ON transitions(request_id);
CREATE INDEX IF NOT EXISTS idx_submissions_created_at ON submissions(created_at);
"""


def compute_hash(data: Any) -> str:
    """Compute SHA256 hash of data."""
    if data is None:
        return ""
    if isinstance(data, str):
        content = data.encode("utf-8")
    elif isinstance(data, bytes):
        content = data
    else:
        content = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def now_iso() -> str:
    """Get current UTC time in ISO format."""
    return datetime.now(UTC).isoformat()


class SubmissionStore:
    """
    SQLite audit store for gateway submissions.

    Usage:
        store = SubmissionStore("txgate.db")
        store.record_submission(request)
        store.record_transition(request.request_id, RequestState.COMPOSED, RequestState.AWAITING_APPROVAL)
        store.close()

    Or use as context manager:
        with SubmissionStore("txgate.db") as store:
            ...
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Open (and create if needed) the database.

        Args:
            db_path: Path to the SQLite file, or ":memory:"
        """
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._connect()
        self._init_schema()

    def _connect(self) -> None:
        try:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            raise StorageConnectionError(
                db_path=str(self.db_path),
                operation="connect",
                message=f"Failed to connect to database: {e}",
            ) from e

    def _init_schema(self) -> None:
        try:
            cursor = self._conn.executescript(CREATE_TABLES_SQL)
            cursor.close()

            cursor = self._conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            if cursor.fetchone() is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now_iso()),
                )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="init_schema",
                underlying_error=str(e),
            ) from e

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run a block of statements atomically."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "SubmissionStore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Submissions
    # =========================================================================

    def record_submission(
        self,
        request: TransactionRequest,
        state: RequestState = RequestState.COMPOSED,
    ) -> None:
        """
        Record a newly composed request and its initial transition.

        Raises:
            StorageWriteError: If the request_id is already recorded
        """
        at = now_iso()
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO submissions (
                        request_id, created_at, updated_at, sender, target,
                        data, value, state, request_hash
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        request.request_id,
                        at,
                        at,
                        request.sender,
                        request.to,
                        request.data,
                        str(request.value),
                        state.value,
                        compute_hash(request.call_fields()),
                    ),
                )
                conn.execute(
                    "INSERT INTO transitions (request_id, from_state, to_state, at) VALUES (?, NULL, ?, ?)",
                    (request.request_id, state.value, at),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="record_submission",
                underlying_error=str(e),
            ) from e

    def record_transition(
        self,
        request_id: str,
        from_state: RequestState,
        to_state: RequestState,
        detail: str | None = None,
        endpoint: str | None = None,
    ) -> None:
        """
        Append a transition and move the submission to `to_state`.

        Args:
            request_id: Request being moved
            from_state: State being left
            to_state: State being entered
            detail: Reason or other context; stored as the submission
                reason when given
            endpoint: Decision endpoint, recorded once known
        """
        at = now_iso()
        try:
            with self.transaction() as conn:
                conn.execute(
                    "INSERT INTO transitions (request_id, from_state, to_state, at, detail) VALUES (?, ?, ?, ?, ?)",
                    (request_id, from_state.value, to_state.value, at, detail),
                )
                updates = ["state = ?", "updated_at = ?"]
                params: list[Any] = [to_state.value, at]
                if detail is not None:
                    updates.append("reason = ?")
                    params.append(detail)
                if endpoint is not None:
                    updates.append("endpoint = ?")
                    params.append(endpoint)
                params.append(request_id)
                conn.execute(
                    f"UPDATE submissions SET {', '.join(updates)} WHERE request_id = ?",
                    params,
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="record_transition",
                underlying_error=str(e),
            ) from e

    def get_submission(self, request_id: str) -> SubmissionRecord | None:
        """Get a submission by request ID, or None."""
        try:
            with self._lock:
                row = self._conn.execute(
                    """
                    SELECT s.*, r.tx_hash, r.status, r.block_number, r.revert_reason,
                           r.expected_revert, r.recorded_at
                    FROM submissions s
                    LEFT JOIN receipts r ON r.request_id = s.request_id
                    WHERE s.request_id = ?
                    """,
                    (request_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="get_submission",
                underlying_error=str(e),
            ) from e
        return None if row is None else _submission_from_row(row)

    def list_submissions(self, limit: int = 100, state: RequestState | None = None) -> list[SubmissionRecord]:
        """
        List recent submissions, most recent first.

        Args:
            limit: Maximum number of rows
            state: Only return submissions currently in this state
        """
        query = """
            SELECT s.*, r.tx_hash, r.status, r.block_number, r.revert_reason,
                   r.expected_revert, r.recorded_at
            FROM submissions s
            LEFT JOIN receipts r ON r.request_id = s.request_id
        """
        params: list[Any] = []
        if state is not None:
            query += " WHERE s.state = ?"
            params.append(state.value)
        query += " ORDER BY s.created_at DESC, s.rowid DESC LIMIT ?"
        params.append(limit)

        try:
            with self._lock:
                rows = self._conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="list_submissions",
                underlying_error=str(e),
            ) from e
        return [_submission_from_row(row) for row in rows]

    def get_transitions(self, request_id: str) -> list[TransitionRecord]:
        """All transitions of a request, oldest first."""
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT * FROM transitions WHERE request_id = ? ORDER BY id",
                    (request_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="get_transitions",
                underlying_error=str(e),
            ) from e

        return [
            TransitionRecord(
                request_id=row["request_id"],
                from_state=RequestState(row["from_state"]) if row["from_state"] else None,
                to_state=RequestState(row["to_state"]),
                at=datetime.fromisoformat(row["at"]),
                detail=row["detail"],
            )
            for row in rows
        ]

    # =========================================================================
    # Broadcasts and Receipts
    # =========================================================================

    def record_broadcast(self, request_id: str, tx_hash: str) -> None:
        """Record that `request_id` was broadcast as `tx_hash`."""
        try:
            with self.transaction() as conn:
                conn.execute(
                    "INSERT INTO receipts (request_id, tx_hash, broadcast_at) VALUES (?, ?, ?)",
                    (request_id, tx_hash, now_iso()),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="record_broadcast",
                underlying_error=str(e),
            ) from e

    def record_receipt(self, receipt: ExecutionReceipt) -> None:
        """Record the final outcome of a broadcast transaction."""
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO receipts (
                        request_id, tx_hash, broadcast_at, status, block_number,
                        revert_reason, expected_revert, recorded_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(request_id) DO UPDATE SET
                        tx_hash = excluded.tx_hash,
                        status = excluded.status,
                        block_number = excluded.block_number,
                        revert_reason = excluded.revert_reason,
                        expected_revert = excluded.expected_revert,
                        recorded_at = excluded.recorded_at
                    """,
                    (
                        receipt.request_id,
                        receipt.tx_hash,
                        receipt.recorded_at.isoformat(),
                        receipt.status.value,
                        receipt.block_number,
                        receipt.revert_reason,
                        int(receipt.expected_revert),
                        receipt.recorded_at.isoformat(),
                    ),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="record_receipt",
                underlying_error=str(e),
            ) from e

    def find_broadcast(self, request_id: str) -> str | None:
        """Transaction hash `request_id` was broadcast as, or None."""
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT tx_hash FROM receipts WHERE request_id = ?",
                    (request_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="find_broadcast",
                underlying_error=str(e),
            ) from e
        return None if row is None else row["tx_hash"]

    def find_receipt(self, request_id: str) -> ExecutionReceipt | None:
        """Final receipt for `request_id`, or None if not yet mined."""
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT * FROM receipts WHERE request_id = ? AND status IS NOT NULL",
                    (request_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="find_receipt",
                underlying_error=str(e),
            ) from e
        return None if row is None else _receipt_from_row(request_id, row)

    # =========================================================================
    # Single-use Approvals
    # =========================================================================

    def record_consumption(self, policy: str, sender: str, call_hash: str) -> None:
        """Count one use of an approved call."""
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO consumed_approvals (policy, sender, call_hash, count, updated_at)
                    VALUES (?, ?, ?, 1, ?)
                    ON CONFLICT(policy, sender, call_hash) DO UPDATE SET
                        count = count + 1,
                        updated_at = excluded.updated_at
                    """,
                    (policy, sender, call_hash, now_iso()),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="record_consumption",
                underlying_error=str(e),
            ) from e

    def consumed_approvals(self, policy: str) -> dict[tuple[str, str], int]:
        """Uses recorded for `policy`, keyed by (sender, call_hash)."""
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT sender, call_hash, count FROM consumed_approvals WHERE policy = ?",
                    (policy,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="consumed_approvals",
                underlying_error=str(e),
            ) from e
        return {(row["sender"], row["call_hash"]): row["count"] for row in rows}


def _receipt_from_row(request_id: str, row: sqlite3.Row) -> ExecutionReceipt:
    return ExecutionReceipt(
        request_id=request_id,
        tx_hash=row["tx_hash"],
        status=ReceiptStatus(row["status"]),
        block_number=row["block_number"],
        revert_reason=row["revert_reason"],
        expected_revert=bool(row["expected_revert"]),
        recorded_at=datetime.fromisoformat(row["recorded_at"]),
    )


def _submission_from_row(row: sqlite3.Row) -> SubmissionRecord:
    receipt = None
    if row["status"] is not None:
        receipt = _receipt_from_row(row["request_id"], row)
    return SubmissionRecord(
        request_id=row["request_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        sender=row["sender"],
        to=row["target"],
        data=row["data"],
        value=int(row["value"]),
        endpoint=row["endpoint"],
        state=RequestState(row["state"]),
        reason=row["reason"],
        request_hash=row["request_hash"],
        tx_hash=row["tx_hash"],
        receipt=receipt,
    )
