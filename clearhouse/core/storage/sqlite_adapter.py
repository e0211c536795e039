import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from clearhouse.core.exceptions import StoreError
from clearhouse.utils.logger import get_logger

logger = get_logger("storage.sqlite")


class SQLiteAdapter:
    """
    SQLite backend for persistent storage.

    Provides:
    1. Entity tables for claims, auctions, bids and maturity payments.
    2. Conditional updates (compare-and-set on status columns) so that
       concurrent passes cannot both apply the same transition.
    3. A per-auction settlement lease (token + expiry columns).

    Connections are per thread and run in autocommit mode; multi-statement
    units go through ``transaction()``, which takes the write lock up front
    with ``BEGIN IMMEDIATE`` and may be nested.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn_local = threading.local()

        if not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            try:
                conn = sqlite3.connect(
                    self.db_path,
                    timeout=30.0,
                    check_same_thread=False,
                    isolation_level=None,
                )
            except sqlite3.Error as e:
                raise StoreError("Cannot open database", {"path": str(self.db_path), "error": str(e)}) from e
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            self._conn_local.conn = conn
            self._conn_local.depth = 0
        return self._conn_local.conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block as one atomic unit on this thread's connection.

        Nested calls join the outermost transaction.
        """
        conn = self._get_conn()
        if self._conn_local.depth > 0:
            self._conn_local.depth += 1
            try:
                yield conn
            finally:
                self._conn_local.depth -= 1
            return

        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            raise StoreError("Cannot begin transaction", {"error": str(e)}) from e
        self._conn_local.depth = 1
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            self._conn_local.depth = 0

    def close(self) -> None:
        """Close this thread's connection, if any."""
        conn = getattr(self._conn_local, "conn", None)
        if conn is not None:
            conn.close()
            del self._conn_local.conn

    def _init_schema(self):
        """Initialize database schema."""
        with self.transaction() as conn:
            # 1. Claims (tokenized receivables)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS claims (
                    claim_id TEXT PRIMARY KEY,
                    face_value INTEGER NOT NULL,
                    maturity_ts INTEGER NOT NULL,
                    creator TEXT NOT NULL,
                    holder TEXT NOT NULL,
                    state TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_claim_state ON claims(state, maturity_ts);")

            # 2. Auctions, with settlement lease columns
            conn.execute("""
                CREATE TABLE IF NOT EXISTS auctions (
                    auction_id TEXT PRIMARY KEY,
                    claim_id TEXT NOT NULL REFERENCES claims(claim_id),
                    face_value INTEGER NOT NULL,
                    expiry_ts INTEGER NOT NULL,
                    min_bid INTEGER NOT NULL,
                    current_bid INTEGER NOT NULL,
                    original_owner TEXT NOT NULL,
                    custody INTEGER NOT NULL DEFAULT 1,
                    status TEXT NOT NULL,
                    winner TEXT,
                    final_price INTEGER,
                    outcome_detail TEXT,
                    custody_confirmation TEXT,
                    completed_at INTEGER,
                    created_at INTEGER NOT NULL,
                    lease_token TEXT,
                    lease_expires INTEGER
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_auction_status ON auctions(status, expiry_ts);")

            # 3. Bids; seq gives first-come order among equal amounts
            conn.execute("""
                CREATE TABLE IF NOT EXISTS bids (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    bid_id TEXT NOT NULL UNIQUE,
                    auction_id TEXT NOT NULL REFERENCES auctions(auction_id),
                    bidder TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    instrument_id TEXT,
                    instrument_confirmation TEXT,
                    status TEXT NOT NULL,
                    status_reason TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
            # At most one active bid per (auction, bidder)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_bid_one_active
                ON bids(auction_id, bidder) WHERE status = 'active'
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bid_bidder ON bids(bidder);")

            # 4. Maturity payments, one per claim
            conn.execute("""
                CREATE TABLE IF NOT EXISTS maturity_payments (
                    payment_id TEXT PRIMARY KEY,
                    claim_id TEXT NOT NULL UNIQUE REFERENCES claims(claim_id),
                    debtor TEXT NOT NULL,
                    creditor TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    maturity_ts INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    instrument_id TEXT,
                    instrument_confirmation TEXT,
                    notified_at INTEGER,
                    instrument_created_at INTEGER,
                    paid_at INTEGER,
                    overdue_at INTEGER,
                    created_at INTEGER NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_payment_status ON maturity_payments(status, maturity_ts);")

    # =========================================================================
    # Claim Operations
    # =========================================================================

    def insert_claim(self, claim_id: str, face_value: int, maturity_ts: int,
                     creator: str, holder: str, state: str, now: int):
        conn = self._get_conn()
        conn.execute(
            "INSERT INTO claims (claim_id, face_value, maturity_ts, creator, holder, state, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (claim_id, face_value, maturity_ts, creator, holder, state, now, now)
        )

    def get_claim(self, claim_id: str) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT * FROM claims WHERE claim_id = ?", (claim_id,))
        return cursor.fetchone()

    def update_claim_state(self, claim_id: str, state: str, expected: Sequence[str],
                           now: int, holder: Optional[str] = None) -> bool:
        """
        Move a claim to ``state`` only if it is currently in one of ``expected``.

        Returns:
            True if the row was updated
        """
        conn = self._get_conn()
        marks = ",".join("?" for _ in expected)
        if holder is None:
            cursor = conn.execute(
                f"UPDATE claims SET state = ?, updated_at = ? WHERE claim_id = ? AND state IN ({marks})",
                (state, now, claim_id, *expected)
            )
        else:
            cursor = conn.execute(
                f"UPDATE claims SET state = ?, holder = ?, updated_at = ? WHERE claim_id = ? AND state IN ({marks})",
                (state, holder, now, claim_id, *expected)
            )
        return cursor.rowcount == 1

    def find_matured_claims(self, now: int) -> List[sqlite3.Row]:
        """Owned claims past maturity that have no maturity payment yet."""
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT c.* FROM claims c "
            "LEFT JOIN maturity_payments p ON p.claim_id = c.claim_id "
            "WHERE c.state = 'owned' AND c.maturity_ts <= ? AND p.payment_id IS NULL "
            "ORDER BY c.maturity_ts ASC",
            (now,)
        )
        return cursor.fetchall()

    def delete_claims_in_state(self, state: str, created_before: int) -> int:
        """Delete claims stuck in ``state`` since before ``created_before``."""
        conn = self._get_conn()
        cursor = conn.execute(
            "DELETE FROM claims WHERE state = ? AND created_at < ? "
            "AND claim_id NOT IN (SELECT claim_id FROM auctions) "
            "AND claim_id NOT IN (SELECT claim_id FROM maturity_payments)",
            (state, created_before)
        )
        return cursor.rowcount

    # =========================================================================
    # Auction Operations
    # =========================================================================

    def insert_auction(self, auction_id: str, claim_id: str, face_value: int, expiry_ts: int,
                       min_bid: int, original_owner: str, custody: bool,
                       custody_confirmation: Optional[str], now: int):
        conn = self._get_conn()
        conn.execute(
            "INSERT INTO auctions (auction_id, claim_id, face_value, expiry_ts, min_bid, current_bid, "
            "original_owner, custody, status, custody_confirmation, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)",
            (auction_id, claim_id, face_value, expiry_ts, min_bid, min_bid,
             original_owner, int(custody), custody_confirmation, now)
        )

    def get_auction(self, auction_id: str) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT * FROM auctions WHERE auction_id = ?", (auction_id,))
        return cursor.fetchone()

    def find_expired_auction_ids(self, now: int) -> List[str]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT auction_id FROM auctions WHERE status = 'active' AND expiry_ts <= ? "
            "ORDER BY expiry_ts ASC",
            (now,)
        )
        return [row["auction_id"] for row in cursor]

    def auctions_won_by(self, winner: str) -> List[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT * FROM auctions WHERE status = 'completed' AND winner = ? ORDER BY completed_at DESC",
            (winner,)
        )
        return cursor.fetchall()

    def set_current_bid(self, auction_id: str, current_bid: int):
        conn = self._get_conn()
        conn.execute("UPDATE auctions SET current_bid = ? WHERE auction_id = ?", (current_bid, auction_id))

    def acquire_lease(self, auction_id: str, token: str, now: int, duration: int) -> bool:
        """
        Take the settlement lease on an active auction.

        Succeeds only if the auction is still active and the lease is free
        or expired. A single conditional UPDATE, so two callers can never
        both win.
        """
        conn = self._get_conn()
        cursor = conn.execute(
            "UPDATE auctions SET lease_token = ?, lease_expires = ? "
            "WHERE auction_id = ? AND status = 'active' "
            "AND (lease_token IS NULL OR lease_expires <= ?)",
            (token, now + duration, auction_id, now)
        )
        return cursor.rowcount == 1

    def renew_lease(self, auction_id: str, token: str, now: int, duration: int) -> bool:
        conn = self._get_conn()
        cursor = conn.execute(
            "UPDATE auctions SET lease_expires = ? WHERE auction_id = ? AND lease_token = ?",
            (now + duration, auction_id, token)
        )
        return cursor.rowcount == 1

    def release_lease(self, auction_id: str, token: str):
        conn = self._get_conn()
        conn.execute(
            "UPDATE auctions SET lease_token = NULL, lease_expires = NULL "
            "WHERE auction_id = ? AND lease_token = ?",
            (auction_id, token)
        )

    def close_auction(self, auction_id: str, token: str, status: str, now: int,
                      winner: Optional[str] = None, final_price: Optional[int] = None,
                      outcome_detail: Optional[str] = None,
                      custody_confirmation: Optional[str] = None) -> bool:
        """
        Move an active auction to a terminal status, guarded by the lease.

        Returns:
            True if this lease holder performed the transition
        """
        conn = self._get_conn()
        cursor = conn.execute(
            "UPDATE auctions SET status = ?, winner = ?, final_price = ?, outcome_detail = ?, "
            "custody_confirmation = COALESCE(?, custody_confirmation), completed_at = ? "
            "WHERE auction_id = ? AND status = 'active' AND lease_token = ?",
            (status, winner, final_price, outcome_detail, custody_confirmation, now, auction_id, token)
        )
        return cursor.rowcount == 1

    # =========================================================================
    # Bid Operations
    # =========================================================================

    def insert_bid(self, bid_id: str, auction_id: str, bidder: str, amount: int,
                   instrument_id: Optional[str], instrument_confirmation: Optional[str], now: int):
        conn = self._get_conn()
        conn.execute(
            "INSERT INTO bids (bid_id, auction_id, bidder, amount, instrument_id, "
            "instrument_confirmation, status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, 'active', ?, ?)",
            (bid_id, auction_id, bidder, amount, instrument_id, instrument_confirmation, now, now)
        )

    def get_bid(self, bid_id: str) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT * FROM bids WHERE bid_id = ?", (bid_id,))
        return cursor.fetchone()

    def get_active_bids(self, auction_id: str) -> List[sqlite3.Row]:
        """Active bids, highest amount first, earliest first among equals."""
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT * FROM bids WHERE auction_id = ? AND status = 'active' "
            "ORDER BY amount DESC, seq ASC",
            (auction_id,)
        )
        return cursor.fetchall()

    def get_bids_in_status(self, auction_id: str, status: str) -> List[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT * FROM bids WHERE auction_id = ? AND status = ? ORDER BY amount DESC, seq ASC",
            (auction_id, status)
        )
        return cursor.fetchall()

    def get_active_bid_for(self, auction_id: str, bidder: str) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT * FROM bids WHERE auction_id = ? AND bidder = ? AND status = 'active'",
            (auction_id, bidder)
        )
        return cursor.fetchone()

    def get_bids_by_bidder(self, bidder: str) -> List[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT * FROM bids WHERE bidder = ? ORDER BY seq DESC", (bidder,))
        return cursor.fetchall()

    def max_active_bid(self, auction_id: str) -> Optional[int]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT MAX(amount) AS top FROM bids WHERE auction_id = ? AND status = 'active'",
            (auction_id,)
        )
        return cursor.fetchone()["top"]

    def update_bid_status(self, bid_id: str, status: str, reason: Optional[str], now: int,
                          expected: str = "active") -> bool:
        conn = self._get_conn()
        cursor = conn.execute(
            "UPDATE bids SET status = ?, status_reason = ?, updated_at = ? WHERE bid_id = ? AND status = ?",
            (status, reason, now, bid_id, expected)
        )
        return cursor.rowcount == 1

    # =========================================================================
    # Maturity Payment Operations
    # =========================================================================

    def insert_payment(self, payment_id: str, claim_id: str, debtor: str, creditor: str,
                       amount: int, maturity_ts: int, now: int) -> bool:
        """
        Insert a pending payment.

        Returns:
            False if the claim already has a payment
        """
        conn = self._get_conn()
        cursor = conn.execute(
            "INSERT OR IGNORE INTO maturity_payments (payment_id, claim_id, debtor, creditor, amount, "
            "maturity_ts, status, notified_at, created_at) VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?)",
            (payment_id, claim_id, debtor, creditor, amount, maturity_ts, now, now)
        )
        return cursor.rowcount == 1

    def get_payment(self, payment_id: str) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT * FROM maturity_payments WHERE payment_id = ?", (payment_id,))
        return cursor.fetchone()

    def get_payment_for_claim(self, claim_id: str) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT * FROM maturity_payments WHERE claim_id = ?", (claim_id,))
        return cursor.fetchone()

    def record_payment_instrument(self, payment_id: str, instrument_id: str,
                                  confirmation: Optional[str], now: int,
                                  expected: Sequence[str], status: str = "created") -> bool:
        conn = self._get_conn()
        marks = ",".join("?" for _ in expected)
        cursor = conn.execute(
            "UPDATE maturity_payments SET status = ?, instrument_id = ?, "
            "instrument_confirmation = ?, instrument_created_at = ? "
            f"WHERE payment_id = ? AND status IN ({marks})",
            (status, instrument_id, confirmation, now, payment_id, *expected)
        )
        return cursor.rowcount == 1

    def mark_payment_cashed(self, payment_id: str, now: int, expected: Sequence[str]) -> bool:
        conn = self._get_conn()
        marks = ",".join("?" for _ in expected)
        cursor = conn.execute(
            f"UPDATE maturity_payments SET status = 'cashed', paid_at = ? "
            f"WHERE payment_id = ? AND status IN ({marks})",
            (now, payment_id, *expected)
        )
        return cursor.rowcount == 1

    def mark_payments_overdue(self, matured_before: int, now: int) -> List[str]:
        """
        Escalate uncollected payments whose maturity is at or before ``matured_before``.

        Returns:
            IDs of the payments that were marked
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                "SELECT payment_id FROM maturity_payments "
                "WHERE status IN ('pending', 'created') AND maturity_ts <= ?",
                (matured_before,)
            )
            ids = [row["payment_id"] for row in cursor]
            if ids:
                conn.executemany(
                    "UPDATE maturity_payments SET status = 'overdue', overdue_at = ? "
                    "WHERE payment_id = ? AND status IN ('pending', 'created')",
                    [(now, pid) for pid in ids]
                )
        return ids

    def get_payments(self, statuses: Sequence[str], debtor: Optional[str] = None,
                     creditor: Optional[str] = None) -> List[sqlite3.Row]:
        """Filter payments by status and optionally by party."""
        conn = self._get_conn()
        marks = ",".join("?" for _ in statuses)
        sql = f"SELECT * FROM maturity_payments WHERE status IN ({marks})"
        params: list = list(statuses)
        if debtor is not None:
            sql += " AND debtor = ?"
            params.append(debtor)
        if creditor is not None:
            sql += " AND creditor = ?"
            params.append(creditor)
        sql += " ORDER BY maturity_ts ASC"
        return conn.execute(sql, params).fetchall()

    def get_payments_for_party(self, identity: str) -> List[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT * FROM maturity_payments WHERE debtor = ? OR creditor = ? ORDER BY created_at DESC",
            (identity, identity)
        )
        return cursor.fetchall()

    # =========================================================================
    # Stats
    # =========================================================================

    def count_by_status(self, table: str, column: str) -> dict:
        if (table, column) not in {
            ("claims", "state"), ("auctions", "status"),
            ("bids", "status"), ("maturity_payments", "status"),
        }:
            raise ValueError(f"Unknown status column {table}.{column}")
        conn = self._get_conn()
        cursor = conn.execute(f"SELECT {column} AS s, COUNT(*) AS cnt FROM {table} GROUP BY {column}")
        return {row["s"]: row["cnt"] for row in cursor}
