import sqlite3
import threading
from pathlib import Path

from gavel.utils.logger import get_logger

logger = get_logger("storage.sqlite")


class SQLiteAdapter:
    """
    SQLite backend for the auction store.

    Provides:
    1. Per-thread connections in WAL mode, opened in autocommit so the
       store controls transaction boundaries (BEGIN IMMEDIATE / COMMIT).
    2. The schema:
       - auctions, bids (append-only apart from status)
       - rules, rule_configurations, rule_violations
       - outbox_events, settlements, relay_leases
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn_local = threading.local()

        # Ensure directory exists
        if not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def connection(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            self._conn_local.conn = conn
        return self._conn_local.conn

    def close(self):
        """Close the current thread's connection."""
        conn = getattr(self._conn_local, "conn", None)
        if conn is not None:
            conn.close()
            del self._conn_local.conn

    def _init_schema(self):
        """Initialize database schema."""
        conn = self.connection()
        conn.execute("BEGIN")
        try:
            # 1. Auctions
            conn.execute("""
                CREATE TABLE IF NOT EXISTS auctions (
                    auction_id TEXT PRIMARY KEY,
                    auction_type TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    starting_price INTEGER NOT NULL,
                    reserve_price INTEGER,
                    min_increment INTEGER NOT NULL,
                    start_time INTEGER NOT NULL,
                    end_time INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    params TEXT NOT NULL DEFAULT '{}',
                    created_by TEXT,
                    idempotency_key TEXT UNIQUE,
                    extension_count INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    CHECK (end_time > start_time)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_auction_status_end ON auctions(status, end_time);")

            # 2. Bids
            # seq gives a total order between bids sharing a timestamp
            conn.execute("""
                CREATE TABLE IF NOT EXISTS bids (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    bid_id TEXT NOT NULL UNIQUE,
                    auction_id TEXT NOT NULL REFERENCES auctions(auction_id),
                    bidder_id TEXT NOT NULL,
                    amount INTEGER NOT NULL CHECK (amount > 0),
                    quantity INTEGER NOT NULL DEFAULT 1,
                    timestamp INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    idempotency_key TEXT UNIQUE,
                    side TEXT,
                    package TEXT,
                    fee_charged INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bid_auction ON bids(auction_id, timestamp, seq);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bid_bidder ON bids(bidder_id);")

            # 3. Rule catalog
            conn.execute("""
                CREATE TABLE IF NOT EXISTS rules (
                    rule_id TEXT PRIMARY KEY,
                    rule_code TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    category TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    auction_types TEXT NOT NULL DEFAULT '[]',
                    condition TEXT NOT NULL,
                    default_parameters TEXT NOT NULL DEFAULT '{}',
                    error_message TEXT NOT NULL DEFAULT '',
                    dependencies TEXT NOT NULL DEFAULT '[]',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    effective_from INTEGER,
                    effective_until INTEGER,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS rule_configurations (
                    config_id TEXT PRIMARY KEY,
                    rule_id TEXT NOT NULL REFERENCES rules(rule_id),
                    scope TEXT NOT NULL,
                    auction_id TEXT,
                    auction_type TEXT,
                    scope_value TEXT,
                    config_values TEXT NOT NULL DEFAULT '{}',
                    priority INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    requires_approval INTEGER NOT NULL DEFAULT 0,
                    approved_by TEXT,
                    approved_at INTEGER,
                    effective_from INTEGER,
                    effective_until INTEGER,
                    created_at INTEGER NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_config_rule ON rule_configurations(rule_id, scope);")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS rule_violations (
                    violation_id TEXT PRIMARY KEY,
                    rule_id TEXT NOT NULL REFERENCES rules(rule_id),
                    rule_version INTEGER NOT NULL,
                    config_id TEXT,
                    auction_id TEXT,
                    user_id TEXT,
                    bid_id TEXT,
                    violation_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    message TEXT NOT NULL,
                    expected_values TEXT NOT NULL DEFAULT '{}',
                    actual_values TEXT NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL,
                    resolution TEXT,
                    resolved_by TEXT,
                    resolved_at INTEGER,
                    escalation_level INTEGER NOT NULL DEFAULT 0,
                    next_escalation_at INTEGER,
                    occurred_at INTEGER NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_violation_escalation ON rule_violations(status, next_escalation_at);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_violation_auction ON rule_violations(auction_id);")

            # 4. Transactional outbox
            conn.execute("""
                CREATE TABLE IF NOT EXISTS outbox_events (
                    event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    auction_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    processed_at INTEGER,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at INTEGER,
                    last_error TEXT,
                    dead_lettered_at INTEGER
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_outbox_pending "
                "ON outbox_events(processed_at, dead_lettered_at, event_id);"
            )

            # 5. Settlement records (one per auction, immutable)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settlements (
                    auction_id TEXT PRIMARY KEY REFERENCES auctions(auction_id),
                    result_type TEXT NOT NULL,
                    determination_method TEXT NOT NULL,
                    winner_id TEXT,
                    winning_bid_id TEXT,
                    final_price INTEGER,
                    clearing_price INTEGER,
                    total_value INTEGER,
                    awards TEXT NOT NULL DEFAULT '[]',
                    charges TEXT NOT NULL DEFAULT '[]',
                    forced INTEGER NOT NULL DEFAULT 0,
                    settled_at INTEGER NOT NULL
                )
            """)

            # 6. Relay single-flight leases
            conn.execute("""
                CREATE TABLE IF NOT EXISTS relay_leases (
                    partition_key TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    expires_at INTEGER NOT NULL
                )
            """)
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise

        logger.debug(f"Schema ready at {self.db_path}")
