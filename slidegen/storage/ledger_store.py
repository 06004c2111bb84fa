"""
Per-user token ledger storage using SQLite.

Plays the role of the remote real-time store behind the token ledger:
- One ledger document per user (free_tokens, premium_token)
- Atomic conditional updates: sufficiency is re-checked inside the UPDATE,
  never decided from a cached read
- Watchers per user, notified after each committed change
- Audit trail of every mutation (ledger_entries)
- Pending-credit queue for purchases whose credit call failed

Integrity:
- CHECK constraints keep both pools non-negative even if a caller misbehaves
- A credit reference is applied at most once per user (UNIQUE index)
"""

import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from slidegen.models.ledger import DEFAULT_BALANCE, LedgerEntry, PendingCredit, TokenBalance

logger = logging.getLogger(__name__)

BalanceWatcher = Callable[[TokenBalance], None]


class LedgerStoreError(Exception):
    """Ledger store failure (I/O, constraint or schema)."""

    pass


class _MissingDocument(Exception):
    pass


class LedgerStore:
    """
    Ledger document storage.

    All mutations run as single conditional statements (or an IMMEDIATE
    transaction where an audit row must be written alongside), so concurrent
    debit and credit cannot interleave into a negative balance.
    """

    def __init__(self, db_path: str = "./data/ledger.db"):
        """
        Initialize ledger store.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
        """
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._initialized = False
        self._watchers: dict[str, list[BalanceWatcher]] = {}

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing ledger store at {self.db_path}")
        conn = self._get_connection()

        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ledgers (
                    user_id TEXT PRIMARY KEY,
                    free_tokens INTEGER NOT NULL DEFAULT 1,
                    premium_token INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    CHECK (free_tokens >= 0),
                    CHECK (premium_token >= 0)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    free_delta INTEGER NOT NULL DEFAULT 0,
                    premium_delta INTEGER NOT NULL DEFAULT 0,
                    reference TEXT,
                    created_at TEXT NOT NULL,

                    CHECK (kind IN ('debit', 'credit', 'grant'))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_credits (
                    user_id TEXT NOT NULL,
                    purchase_id TEXT NOT NULL,
                    units INTEGER NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    PRIMARY KEY (user_id, purchase_id),
                    CHECK (units >= 1)
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_entries_user ON ledger_entries(user_id)"
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_entries_credit_reference
                ON ledger_entries(user_id, reference)
                WHERE kind = 'credit' AND reference IS NOT NULL
            """
            )

            logger.info("Ledger store initialized successfully")
            self._initialized = True

        except sqlite3.Error as e:
            logger.error(f"Failed to initialize ledger store: {e}")
            raise LedgerStoreError(f"Schema initialization failed: {e}") from e

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed)."""
        if self._conn is None:
            # Autocommit; multi-statement writes use _transaction()
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """IMMEDIATE transaction: takes the write lock before the first read."""
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Ledger documents
    # ------------------------------------------------------------------

    async def ensure_document(
        self, user_id: str, default: TokenBalance = DEFAULT_BALANCE
    ) -> TokenBalance:
        """
        Create the ledger document for a new user if absent.

        Returns:
            TokenBalance: Current balance (existing or newly created)
        """
        conn = self._get_connection()
        now = datetime.now(UTC).isoformat()

        try:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO ledgers (
                    user_id, free_tokens, premium_token, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, default.free_units, default.premium_units, now, now),
            )
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Failed to create ledger document: {e}") from e

        balance = await self.get_balance(user_id)
        if cursor.rowcount > 0:
            logger.info(
                "Ledger document created",
                extra={
                    "user_id": user_id,
                    "free_units": default.free_units,
                    "premium_units": default.premium_units,
                },
            )
            self._notify(user_id, balance)
        return balance

    async def get_balance(self, user_id: str) -> TokenBalance | None:
        """
        Read a user's balance.

        Returns:
            TokenBalance if the document exists, None otherwise
        """
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT free_tokens, premium_token FROM ledgers WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Failed to read ledger document: {e}") from e

        if row is None:
            return None
        return TokenBalance.from_document(
            {"freeTokens": row["free_tokens"], "premiumToken": row["premium_token"]}
        )

    async def apply_debit(
        self, user_id: str, units: int, reference: str | None = None
    ) -> TokenBalance | None:
        """
        Debit units, free pool first (atomic conditional update).

        Args:
            user_id: Ledger owner
            units: Units to consume (>= 1)
            reference: Optional audit reference (e.g. job id)

        Returns:
            New balance, or None if the document is missing or cannot cover
            the debit (nothing is changed in that case)
        """
        if units < 1:
            raise ValueError(f"debit units must be >= 1, got {units}")

        now = datetime.now(UTC).isoformat()
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT free_tokens, premium_token FROM ledgers WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
                if row is None:
                    return None

                from_free = min(row["free_tokens"], units)
                from_premium = units - from_free

                cursor = conn.execute(
                    """
                    UPDATE ledgers
                    SET free_tokens = free_tokens - ?,
                        premium_token = premium_token - ?,
                        updated_at = ?
                    WHERE user_id = ?
                      AND free_tokens >= ?
                      AND premium_token >= ?
                      AND free_tokens + premium_token >= ?
                    """,
                    (from_free, from_premium, now, user_id, from_free, from_premium, units),
                )
                if cursor.rowcount == 0:
                    return None

                conn.execute(
                    """
                    INSERT INTO ledger_entries (
                        user_id, kind, free_delta, premium_delta, reference, created_at
                    ) VALUES (?, 'debit', ?, ?, ?, ?)
                    """,
                    (user_id, -from_free, -from_premium, reference, now),
                )
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Debit failed: {e}") from e

        balance = await self.get_balance(user_id)
        self._notify(user_id, balance)
        return balance

    async def apply_credit(
        self, user_id: str, units: int, reference: str | None = None
    ) -> TokenBalance | None:
        """
        Credit premium units.

        A reference (purchase id) is applied at most once per user; replaying
        it leaves the balance unchanged and returns the current balance.

        Returns:
            New balance, or None if the document does not exist
        """
        if units < 1:
            raise ValueError(f"credit units must be >= 1, got {units}")

        now = datetime.now(UTC).isoformat()
        try:
            with self._transaction() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO ledger_entries (
                            user_id, kind, free_delta, premium_delta, reference, created_at
                        ) VALUES (?, 'credit', 0, ?, ?, ?)
                        """,
                        (user_id, units, reference, now),
                    )
                except sqlite3.IntegrityError:
                    logger.info(
                        "Credit reference already applied",
                        extra={"user_id": user_id, "reference": reference},
                    )
                    applied = False
                else:
                    cursor = conn.execute(
                        """
                        UPDATE ledgers
                        SET premium_token = premium_token + ?,
                            updated_at = ?
                        WHERE user_id = ?
                        """,
                        (units, now, user_id),
                    )
                    if cursor.rowcount == 0:
                        # No document: undo the audit row with the transaction
                        raise _MissingDocument()
                    applied = True
        except _MissingDocument:
            return None
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Credit failed: {e}") from e

        balance = await self.get_balance(user_id)
        if applied:
            self._notify(user_id, balance)
        return balance

    async def ensure_minimum_free_units(self, minimum: int = 1) -> int:
        """
        Raise every user's free units to at least `minimum`.

        Returns:
            int: Number of ledger documents changed
        """
        if minimum < 0:
            raise ValueError("minimum must be >= 0")

        now = datetime.now(UTC).isoformat()
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    "SELECT user_id, free_tokens FROM ledgers WHERE free_tokens < ?",
                    (minimum,),
                ).fetchall()
                for row in rows:
                    conn.execute(
                        "UPDATE ledgers SET free_tokens = ?, updated_at = ? "
                        "WHERE user_id = ? AND free_tokens < ?",
                        (minimum, now, row["user_id"], minimum),
                    )
                    conn.execute(
                        """
                        INSERT INTO ledger_entries (
                            user_id, kind, free_delta, premium_delta, reference, created_at
                        ) VALUES (?, 'grant', ?, 0, 'ensure_minimum', ?)
                        """,
                        (row["user_id"], minimum - row["free_tokens"], now),
                    )
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Minimum free units sweep failed: {e}") from e

        for row in rows:
            balance = await self.get_balance(row["user_id"])
            self._notify(row["user_id"], balance)

        logger.info(
            "Ensured minimum free units",
            extra={"minimum": minimum, "documents_changed": len(rows)},
        )
        return len(rows)

    async def list_entries(self, user_id: str) -> list[LedgerEntry]:
        """Audit trail for a user, oldest first."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT user_id, kind, free_delta, premium_delta, reference, created_at
            FROM ledger_entries WHERE user_id = ? ORDER BY id
            """,
            (user_id,),
        ).fetchall()
        return [
            LedgerEntry(
                user_id=row["user_id"],
                kind=row["kind"],
                free_delta=row["free_delta"],
                premium_delta=row["premium_delta"],
                reference=row["reference"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Watchers
    # ------------------------------------------------------------------

    def watch(self, user_id: str, callback: BalanceWatcher) -> Callable[[], None]:
        """
        Register a change callback for one user's document.

        Returns:
            Unwatch function (idempotent)
        """
        self._watchers.setdefault(user_id, []).append(callback)

        def unwatch() -> None:
            callbacks = self._watchers.get(user_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._watchers.pop(user_id, None)

        return unwatch

    def watcher_count(self, user_id: str) -> int:
        return len(self._watchers.get(user_id, []))

    def _notify(self, user_id: str, balance: TokenBalance | None) -> None:
        if balance is None:
            return
        for callback in list(self._watchers.get(user_id, [])):
            try:
                callback(balance)
            except Exception as e:
                logger.error(
                    f"Ledger watcher failed: {e}",
                    extra={"user_id": user_id},
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Pending credits
    # ------------------------------------------------------------------

    async def enqueue_pending_credit(self, pending: PendingCredit) -> bool:
        """
        Record a purchase awaiting credit.

        Returns:
            bool: True if queued, False if already queued
        """
        conn = self._get_connection()
        now = datetime.now(UTC).isoformat()
        try:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO pending_credits (
                    user_id, purchase_id, units, attempts, last_error, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    pending.user_id,
                    pending.purchase_id,
                    pending.units,
                    pending.attempts,
                    pending.last_error,
                    pending.created_at.isoformat(),
                    now,
                ),
            )
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Failed to queue pending credit: {e}") from e

        return cursor.rowcount > 0

    async def list_pending_credits(self, user_id: str | None = None) -> list[PendingCredit]:
        """Pending credits, oldest first (optionally for one user)."""
        conn = self._get_connection()
        query = (
            "SELECT user_id, purchase_id, units, attempts, last_error, created_at "
            "FROM pending_credits"
        )
        params: tuple = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        query += " ORDER BY created_at"

        rows = conn.execute(query, params).fetchall()
        return [
            PendingCredit(
                user_id=row["user_id"],
                purchase_id=row["purchase_id"],
                units=row["units"],
                attempts=row["attempts"],
                last_error=row["last_error"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    async def record_pending_credit_failure(
        self, user_id: str, purchase_id: str, error: str
    ) -> bool:
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE pending_credits
            SET attempts = attempts + 1,
                last_error = ?,
                updated_at = ?
            WHERE user_id = ? AND purchase_id = ?
            """,
            (error, datetime.now(UTC).isoformat(), user_id, purchase_id),
        )
        return cursor.rowcount > 0

    async def delete_pending_credit(self, user_id: str, purchase_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM pending_credits WHERE user_id = ? AND purchase_id = ?",
            (user_id, purchase_id),
        )
        return cursor.rowcount > 0

    async def count_pending_credits(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS n FROM pending_credits").fetchone()
        return int(row["n"])

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            self._initialized = False

