"""SQLite materialized view of vault protocol state.

Token amounts and scores are uint256 on chain, so they are stored as decimal
TEXT and converted back to Python ints when rows are read.
"""

import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .utils import db_addr


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        last_processed_block INTEGER NOT NULL,
        last_processed_timestamp INTEGER,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vaults (
        vault_address TEXT PRIMARY KEY,
        ip_asset_id TEXT NOT NULL,
        creator TEXT NOT NULL,
        initial_score TEXT NOT NULL DEFAULT '0',
        current_score TEXT NOT NULL DEFAULT '0',
        total_liquidity TEXT NOT NULL DEFAULT '0',
        available_liquidity TEXT NOT NULL DEFAULT '0',
        total_loans_issued TEXT NOT NULL DEFAULT '0',
        active_loans_count INTEGER NOT NULL DEFAULT 0,
        total_license_revenue TEXT NOT NULL DEFAULT '0',
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        block_number INTEGER NOT NULL,
        tx_hash TEXT NOT NULL,
        is_placeholder INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vaults_creator ON vaults(creator)",
    "CREATE INDEX IF NOT EXISTS idx_vaults_ip_asset ON vaults(ip_asset_id)",
    """
    CREATE TABLE IF NOT EXISTS license_sales (
        tx_hash TEXT NOT NULL,
        log_index INTEGER NOT NULL,
        vault_address TEXT NOT NULL,
        ip_asset_id TEXT NOT NULL,
        licensee TEXT NOT NULL,
        sale_price TEXT NOT NULL,
        license_type TEXT NOT NULL,
        score_increment TEXT NOT NULL,
        creator_share TEXT NOT NULL,
        vault_share TEXT NOT NULL,
        protocol_fee TEXT NOT NULL,
        block_number INTEGER NOT NULL,
        timestamp INTEGER NOT NULL,
        PRIMARY KEY (tx_hash, log_index)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_license_sales_vault ON license_sales(vault_address, block_number, log_index)",
    """
    CREATE TABLE IF NOT EXISTS loan_positions (
        vault_address TEXT NOT NULL,
        loan_id TEXT NOT NULL,
        borrower TEXT NOT NULL,
        loan_amount TEXT NOT NULL DEFAULT '0',
        collateral_amount TEXT NOT NULL DEFAULT '0',
        interest_rate TEXT NOT NULL DEFAULT '0',
        duration TEXT NOT NULL DEFAULT '0',
        score_at_issuance TEXT NOT NULL DEFAULT '0',
        status TEXT NOT NULL DEFAULT 'Active',
        repaid_amount TEXT NOT NULL DEFAULT '0',
        outstanding_amount TEXT NOT NULL DEFAULT '0',
        start_time INTEGER NOT NULL,
        end_time TEXT NOT NULL,
        liquidated_at INTEGER,
        block_number INTEGER NOT NULL,
        log_index INTEGER NOT NULL DEFAULT 0,
        tx_hash TEXT NOT NULL,
        is_placeholder INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (vault_address, loan_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_loans_borrower ON loan_positions(borrower)",
    "CREATE INDEX IF NOT EXISTS idx_loans_vault_position ON loan_positions(vault_address, block_number, log_index)",
    """
    CREATE TABLE IF NOT EXISTS loan_repayments (
        tx_hash TEXT NOT NULL,
        log_index INTEGER NOT NULL,
        vault_address TEXT NOT NULL,
        loan_id TEXT NOT NULL,
        payer TEXT NOT NULL,
        amount TEXT NOT NULL,
        block_number INTEGER NOT NULL,
        timestamp INTEGER NOT NULL,
        PRIMARY KEY (tx_hash, log_index)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_repayments_loan ON loan_repayments(vault_address, loan_id)",
    """
    CREATE TABLE IF NOT EXISTS score_updates (
        tx_hash TEXT NOT NULL,
        log_index INTEGER NOT NULL,
        vault_address TEXT NOT NULL,
        old_value TEXT NOT NULL,
        new_value TEXT NOT NULL,
        block_number INTEGER NOT NULL,
        timestamp INTEGER NOT NULL,
        PRIMARY KEY (tx_hash, log_index)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_score_updates_vault ON score_updates(vault_address, block_number, log_index)",
    """
    CREATE TABLE IF NOT EXISTS liquidity_events (
        tx_hash TEXT NOT NULL,
        log_index INTEGER NOT NULL,
        vault_address TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (kind IN ('deposit', 'withdraw')),
        account TEXT NOT NULL,
        amount TEXT NOT NULL,
        shares TEXT NOT NULL,
        block_number INTEGER NOT NULL,
        timestamp INTEGER NOT NULL,
        PRIMARY KEY (tx_hash, log_index)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_liquidity_vault ON liquidity_events(vault_address)",
    """
    CREATE TABLE IF NOT EXISTS processed_logs (
        tx_hash TEXT NOT NULL,
        log_index INTEGER NOT NULL,
        block_number INTEGER NOT NULL,
        event_name TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (tx_hash, log_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS failed_ranges (
        from_block INTEGER NOT NULL,
        to_block INTEGER NOT NULL,
        error TEXT,
        attempts INTEGER NOT NULL DEFAULT 1,
        resolved INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (from_block, to_block)
    )
    """,
]

VAULT_INT_FIELDS = (
    "initial_score",
    "current_score",
    "total_liquidity",
    "available_liquidity",
    "total_loans_issued",
    "total_license_revenue",
)
LOAN_INT_FIELDS = (
    "loan_amount",
    "collateral_amount",
    "interest_rate",
    "duration",
    "score_at_issuance",
    "repaid_amount",
    "outstanding_amount",
    "end_time",
)
SALE_INT_FIELDS = ("sale_price", "score_increment", "creator_share", "vault_share", "protocol_fee")
SCORE_INT_FIELDS = ("old_value", "new_value")
AMOUNT_INT_FIELDS = ("amount", "shares")

VAULT_COLUMNS = (
    "vault_address",
    "ip_asset_id",
    "creator",
    "initial_score",
    "current_score",
    "total_liquidity",
    "available_liquidity",
    "total_loans_issued",
    "active_loans_count",
    "total_license_revenue",
    "created_at",
    "updated_at",
    "block_number",
    "tx_hash",
    "is_placeholder",
)
LOAN_COLUMNS = (
    "vault_address",
    "loan_id",
    "borrower",
    "loan_amount",
    "collateral_amount",
    "interest_rate",
    "duration",
    "score_at_issuance",
    "status",
    "repaid_amount",
    "outstanding_amount",
    "start_time",
    "end_time",
    "liquidated_at",
    "block_number",
    "log_index",
    "tx_hash",
    "is_placeholder",
)

COUNTED_TABLES = (
    "vaults",
    "loan_positions",
    "license_sales",
    "score_updates",
    "loan_repayments",
    "liquidity_events",
    "processed_logs",
)


def _row_dict(row: Optional[sqlite3.Row], int_fields: Tuple[str, ...]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    out = dict(row)
    for key in int_fields:
        if key in out and out[key] is not None:
            out[key] = int(out[key])
    if "is_placeholder" in out:
        out["is_placeholder"] = bool(out["is_placeholder"])
    return out


def _text_params(row: Dict[str, Any], columns: Tuple[str, ...], int_fields: Tuple[str, ...]) -> List[Any]:
    params = []
    for col in columns:
        value = row.get(col)
        if col in int_fields:
            value = str(int(value or 0))
        elif col == "is_placeholder":
            value = 1 if value else 0
        elif col == "active_loans_count":
            value = int(value or 0)
        params.append(value)
    return params


class MaterializedStore:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    def open(self) -> "MaterializedStore":
        if self.conn is not None:
            return self
        # Transactions are managed explicitly with BEGIN / SAVEPOINT.
        self.conn = sqlite3.connect(self.db_path, isolation_level=None, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout = 30000")
        for statement in SCHEMA:
            self.conn.execute(statement)
        return self

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _db(self) -> sqlite3.Connection:
        if self.conn is None:
            raise RuntimeError("DB not initialized")
        return self.conn

    @property
    def in_transaction(self) -> bool:
        return self._db().in_transaction

    @contextmanager
    def transaction(self) -> Iterator[None]:
        conn = self._db()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            try:
                conn.execute("COMMIT")
            except sqlite3.Error:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    @contextmanager
    def savepoint(self, name: str = "event") -> Iterator[None]:
        conn = self._db()
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            conn.execute(f"RELEASE SAVEPOINT {name}")

    # -- idempotency ledger --------------------------------------------------

    def mark_processed(self, tx_hash: str, log_index: int, block_number: int, event_name: str) -> bool:
        """Record a log as applied; False when it had already been applied."""
        cur = self._db().execute(
            """
            INSERT INTO processed_logs (tx_hash, log_index, block_number, event_name)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(tx_hash, log_index) DO NOTHING
            """,
            (tx_hash, log_index, block_number, event_name),
        )
        return cur.rowcount == 1

    def is_processed(self, tx_hash: str, log_index: int) -> bool:
        row = self._db().execute(
            "SELECT 1 FROM processed_logs WHERE tx_hash = ? AND log_index = ?",
            (tx_hash, log_index),
        ).fetchone()
        return row is not None

    # -- checkpoint row ------------------------------------------------------

    def read_sync_state(self) -> Optional[Dict[str, Any]]:
        row = self._db().execute(
            "SELECT last_processed_block, last_processed_timestamp FROM sync_state WHERE id = 1"
        ).fetchone()
        return dict(row) if row else None

    def write_sync_state(self, block_number: int, block_timestamp: Optional[int]) -> None:
        self._db().execute(
            """
            INSERT INTO sync_state (id, last_processed_block, last_processed_timestamp)
            VALUES (1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                last_processed_block = excluded.last_processed_block,
                last_processed_timestamp = excluded.last_processed_timestamp,
                updated_at = CURRENT_TIMESTAMP
            """,
            (block_number, block_timestamp),
        )

    # -- vaults --------------------------------------------------------------

    def get_vault(self, vault_address: str) -> Optional[Dict[str, Any]]:
        row = self._db().execute(
            "SELECT * FROM vaults WHERE vault_address = ?", (db_addr(vault_address),)
        ).fetchone()
        return _row_dict(row, VAULT_INT_FIELDS)

    def upsert_vault(self, vault: Dict[str, Any]) -> None:
        placeholders = ", ".join("?" for _ in VAULT_COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in VAULT_COLUMNS[1:])
        self._db().execute(
            f"""
            INSERT INTO vaults ({", ".join(VAULT_COLUMNS)}) VALUES ({placeholders})
            ON CONFLICT(vault_address) DO UPDATE SET {updates}
            """,
            _text_params(vault, VAULT_COLUMNS, VAULT_INT_FIELDS),
        )

    def list_vaults(self) -> List[Dict[str, Any]]:
        rows = self._db().execute("SELECT * FROM vaults ORDER BY created_at DESC, vault_address").fetchall()
        return [_row_dict(row, VAULT_INT_FIELDS) for row in rows]

    def list_vaults_by_creator(self, creator: str) -> List[Dict[str, Any]]:
        rows = self._db().execute(
            "SELECT * FROM vaults WHERE creator = ? ORDER BY created_at DESC, vault_address",
            (db_addr(creator),),
        ).fetchall()
        return [_row_dict(row, VAULT_INT_FIELDS) for row in rows]

    # -- loans ---------------------------------------------------------------

    def get_loan(self, vault_address: str, loan_id: Any) -> Optional[Dict[str, Any]]:
        row = self._db().execute(
            "SELECT * FROM loan_positions WHERE vault_address = ? AND loan_id = ?",
            (db_addr(vault_address), str(loan_id)),
        ).fetchone()
        return _row_dict(row, LOAN_INT_FIELDS)

    def upsert_loan(self, loan: Dict[str, Any]) -> None:
        row = dict(loan)
        row["loan_id"] = str(row["loan_id"])
        placeholders = ", ".join("?" for _ in LOAN_COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in LOAN_COLUMNS[2:])
        self._db().execute(
            f"""
            INSERT INTO loan_positions ({", ".join(LOAN_COLUMNS)}) VALUES ({placeholders})
            ON CONFLICT(vault_address, loan_id) DO UPDATE SET {updates}
            """,
            _text_params(row, LOAN_COLUMNS, LOAN_INT_FIELDS),
        )

    def list_loans(self, vault_address: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        if vault_address:
            rows = self._db().execute(
                "SELECT * FROM loan_positions WHERE vault_address = ? ORDER BY block_number, log_index",
                (db_addr(vault_address),),
            ).fetchall()
        else:
            rows = self._db().execute(
                "SELECT * FROM loan_positions ORDER BY block_number DESC, log_index DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_row_dict(row, LOAN_INT_FIELDS) for row in rows]

    def list_loans_after(self, vault_address: str, block_number: int, log_index: int) -> List[Dict[str, Any]]:
        """Issued (non-placeholder) loans positioned strictly after ``(block_number, log_index)``."""
        rows = self._db().execute(
            """
            SELECT * FROM loan_positions
            WHERE vault_address = ? AND is_placeholder = 0
              AND (block_number > ? OR (block_number = ? AND log_index > ?))
            ORDER BY block_number, log_index
            """,
            (db_addr(vault_address), block_number, block_number, log_index),
        ).fetchall()
        return [_row_dict(row, LOAN_INT_FIELDS) for row in rows]

    def last_score_position(self, vault_address: str) -> Optional[Tuple[int, int]]:
        """Chain position of the newest licence sale or score overwrite for a vault."""
        positions = []
        for table in ("license_sales", "score_updates"):
            row = self._db().execute(
                f"SELECT block_number, log_index FROM {table} WHERE vault_address = ? "
                "ORDER BY block_number DESC, log_index DESC LIMIT 1",
                (db_addr(vault_address),),
            ).fetchone()
            if row is not None:
                positions.append((row["block_number"], row["log_index"]))
        return max(positions) if positions else None

    # -- append-only child rows ----------------------------------------------

    def insert_license_sale(self, sale: Dict[str, Any]) -> bool:
        cur = self._db().execute(
            """
            INSERT INTO license_sales (
                tx_hash, log_index, vault_address, ip_asset_id, licensee, sale_price,
                license_type, score_increment, creator_share, vault_share, protocol_fee,
                block_number, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(tx_hash, log_index) DO NOTHING
            """,
            (
                sale["tx_hash"],
                sale["log_index"],
                sale["vault_address"],
                sale["ip_asset_id"],
                sale["licensee"],
                str(sale["sale_price"]),
                sale["license_type"],
                str(sale["score_increment"]),
                str(sale["creator_share"]),
                str(sale["vault_share"]),
                str(sale["protocol_fee"]),
                sale["block_number"],
                sale["timestamp"],
            ),
        )
        return cur.rowcount == 1

    def list_license_sales(self, vault_address: str) -> List[Dict[str, Any]]:
        rows = self._db().execute(
            "SELECT * FROM license_sales WHERE vault_address = ? ORDER BY block_number, log_index",
            (db_addr(vault_address),),
        ).fetchall()
        return [_row_dict(row, SALE_INT_FIELDS) for row in rows]

    def insert_score_update(self, update: Dict[str, Any]) -> bool:
        cur = self._db().execute(
            """
            INSERT INTO score_updates (
                tx_hash, log_index, vault_address, old_value, new_value, block_number, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(tx_hash, log_index) DO NOTHING
            """,
            (
                update["tx_hash"],
                update["log_index"],
                update["vault_address"],
                str(update["old_value"]),
                str(update["new_value"]),
                update["block_number"],
                update["timestamp"],
            ),
        )
        return cur.rowcount == 1

    def list_score_updates(self, vault_address: str) -> List[Dict[str, Any]]:
        rows = self._db().execute(
            "SELECT * FROM score_updates WHERE vault_address = ? ORDER BY block_number, log_index",
            (db_addr(vault_address),),
        ).fetchall()
        return [_row_dict(row, SCORE_INT_FIELDS) for row in rows]

    def insert_repayment(self, repayment: Dict[str, Any]) -> bool:
        cur = self._db().execute(
            """
            INSERT INTO loan_repayments (
                tx_hash, log_index, vault_address, loan_id, payer, amount, block_number, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(tx_hash, log_index) DO NOTHING
            """,
            (
                repayment["tx_hash"],
                repayment["log_index"],
                repayment["vault_address"],
                str(repayment["loan_id"]),
                repayment["payer"],
                str(repayment["amount"]),
                repayment["block_number"],
                repayment["timestamp"],
            ),
        )
        return cur.rowcount == 1

    def list_repayments(self, vault_address: str, loan_id: Optional[Any] = None) -> List[Dict[str, Any]]:
        if loan_id is None:
            rows = self._db().execute(
                "SELECT * FROM loan_repayments WHERE vault_address = ? ORDER BY block_number, log_index",
                (db_addr(vault_address),),
            ).fetchall()
        else:
            rows = self._db().execute(
                """
                SELECT * FROM loan_repayments WHERE vault_address = ? AND loan_id = ?
                ORDER BY block_number, log_index
                """,
                (db_addr(vault_address), str(loan_id)),
            ).fetchall()
        return [_row_dict(row, ("amount",)) for row in rows]

    def insert_liquidity_event(self, entry: Dict[str, Any]) -> bool:
        cur = self._db().execute(
            """
            INSERT INTO liquidity_events (
                tx_hash, log_index, vault_address, kind, account, amount, shares, block_number, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(tx_hash, log_index) DO NOTHING
            """,
            (
                entry["tx_hash"],
                entry["log_index"],
                entry["vault_address"],
                entry["kind"],
                entry["account"],
                str(entry["amount"]),
                str(entry["shares"]),
                entry["block_number"],
                entry["timestamp"],
            ),
        )
        return cur.rowcount == 1

    def list_liquidity_events(self, vault_address: str) -> List[Dict[str, Any]]:
        rows = self._db().execute(
            "SELECT * FROM liquidity_events WHERE vault_address = ? ORDER BY block_number, log_index",
            (db_addr(vault_address),),
        ).fetchall()
        return [_row_dict(row, AMOUNT_INT_FIELDS) for row in rows]

    # -- failed block ranges -------------------------------------------------

    def record_failed_range(self, from_block: int, to_block: int, error: str) -> None:
        self._db().execute(
            """
            INSERT INTO failed_ranges (from_block, to_block, error) VALUES (?, ?, ?)
            ON CONFLICT(from_block, to_block) DO UPDATE SET
                error = excluded.error,
                attempts = failed_ranges.attempts + 1,
                resolved = 0,
                updated_at = CURRENT_TIMESTAMP
            """,
            (from_block, to_block, error),
        )

    def resolve_failed_range(self, from_block: int, to_block: int) -> None:
        self._db().execute(
            """
            UPDATE failed_ranges SET resolved = 1, updated_at = CURRENT_TIMESTAMP
            WHERE from_block = ? AND to_block = ?
            """,
            (from_block, to_block),
        )

    def pending_failed_ranges(self) -> List[Dict[str, Any]]:
        rows = self._db().execute(
            "SELECT * FROM failed_ranges WHERE resolved = 0 ORDER BY from_block"
        ).fetchall()
        return [dict(row) for row in rows]

    # -- stats ---------------------------------------------------------------

    def stats(self) -> Dict[str, int]:
        conn = self._db()
        counts = {}
        for table in COUNTED_TABLES:
            counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        counts["pending_failed_ranges"] = conn.execute(
            "SELECT COUNT(*) FROM failed_ranges WHERE resolved = 0"
        ).fetchone()[0]
        return counts
