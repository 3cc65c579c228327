import contextlib
import sqlite3
import time
from typing import Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection
        self._tx_depth = 0

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def executescript(self, sql: str):
        if self.backend != "postgres":
            return self._conn.executescript(sql)
        for statement in _split_sql_statements(sql):
            if statement.strip():
                self.execute(statement)

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    @contextlib.contextmanager
    def transaction(self, timeout_seconds: float | None = None):
        """Run the block atomically; nested calls join the outer transaction.

        ``timeout_seconds`` bounds the whole transaction: PostgreSQL gets a
        ``statement_timeout``, SQLite interrupts statements past the deadline.
        """
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return

        self._begin(timeout_seconds)
        self._tx_depth = 1
        try:
            yield self
        except BaseException:
            self._end("ROLLBACK")
            raise
        else:
            self._end("COMMIT")
        finally:
            self._tx_depth = 0
            if self.backend != "postgres":
                self._conn.set_progress_handler(None, 0)

    def _begin(self, timeout_seconds: float | None) -> None:
        if self.backend == "postgres":
            self.execute("BEGIN")
            if timeout_seconds:
                self.execute(f"SET LOCAL statement_timeout = {max(1, int(float(timeout_seconds) * 1000))}")
            return

        if self._conn.in_transaction:
            self._conn.commit()
        self._conn.execute("BEGIN IMMEDIATE")
        if timeout_seconds:
            deadline = time.monotonic() + float(timeout_seconds)
            self._conn.set_progress_handler(lambda: 1 if time.monotonic() > deadline else 0, 1000)

    def _end(self, statement: str) -> None:
        if self.backend == "postgres":
            self.execute(statement)
        elif statement == "COMMIT":
            self._conn.commit()
        else:
            self._conn.rollback()

    def commit(self):
        if self._tx_depth:
            return
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def integrity_errors() -> tuple:
    errors: tuple = (sqlite3.IntegrityError,)
    if psycopg2 is not None:
        errors = errors + (psycopg2.IntegrityError,)
    return errors


def _split_sql_statements(sql: str) -> List[str]:
    statements = []
    current = []
    in_single = False
    for ch in sql:
        if ch == "'":
            in_single = not in_single
        if ch == ";" and not in_single:
            statements.append("".join(current))
            current = []
            continue
        current.append(ch)
    if current:
        statements.append("".join(current))
    return statements


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def connect_database(db_path: str, busy_timeout: float = 30.0) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=busy_timeout)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        busy_timeout = float(current_app.config.get("DB_BUSY_TIMEOUT_SECONDS", 30) or 30)
        g.db = connect_database(db_path, busy_timeout=busy_timeout)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    create_schema(db)


_DIALECT = {
    "sqlite": {
        "pk": "INTEGER PRIMARY KEY AUTOINCREMENT",
        "real": "REAL",
        "now": "CURRENT_TIMESTAMP",
    },
    "postgres": {
        "pk": "BIGSERIAL PRIMARY KEY",
        "real": "DOUBLE PRECISION",
        "now": "(to_char(now() AT TIME ZONE 'utc', 'YYYY-MM-DD\"T\"HH24:MI:SS\"Z\"'))",
    },
}


SCHEMA_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS clients (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        default_shipping_method_id INTEGER,
        created_at TEXT NOT NULL DEFAULT {now}
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS channels (
        id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL,
        channel_type TEXT NOT NULL CHECK (channel_type IN ('shopify','woocommerce')),
        name TEXT,
        default_shipping_method_id INTEGER,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL DEFAULT {now}
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id {pk},
        client_id TEXT NOT NULL,
        sku TEXT NOT NULL,
        origin TEXT NOT NULL,
        name TEXT,
        description TEXT,
        image_url TEXT,
        net_sales_price {real},
        compare_at_price {real},
        taxable INTEGER,
        seo_title TEXT,
        seo_description TEXT,
        tags TEXT,
        product_type TEXT,
        vendor TEXT,
        gtin TEXT,
        weight {real},
        length {real},
        width {real},
        height {real},
        hazmat INTEGER,
        customs_code TEXT,
        country_of_origin TEXT,
        manufacturer TEXT,
        warehouse_notes TEXT,
        available_quantity INTEGER NOT NULL DEFAULT 0,
        fulfillment_product_id TEXT,
        created_at TEXT NOT NULL DEFAULT {now},
        updated_at TEXT NOT NULL DEFAULT {now},
        UNIQUE (client_id, sku)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_channel_links (
        id {pk},
        client_id TEXT NOT NULL,
        product_id INTEGER NOT NULL,
        channel_id TEXT NOT NULL,
        external_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT {now},
        UNIQUE (channel_id, external_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id {pk},
        client_id TEXT NOT NULL,
        channel_id TEXT,
        external_order_id TEXT,
        origin TEXT NOT NULL,
        is_replacement INTEGER NOT NULL DEFAULT 0,
        original_order_id INTEGER,
        order_number TEXT,
        subtotal {real},
        shipping_cost {real},
        tax_amount {real},
        total {real},
        currency TEXT,
        discount_code TEXT,
        discount_amount {real},
        payment_status TEXT,
        payment_method TEXT,
        customer_name TEXT,
        customer_email TEXT,
        customer_phone TEXT,
        shipping_address TEXT,
        billing_address TEXT,
        shipping_method_code TEXT,
        shipping_method_title TEXT,
        notes TEXT,
        tags TEXT,
        order_date TEXT,
        commerce_cancelled_at TEXT,
        fulfillment_state TEXT NOT NULL DEFAULT 'pending',
        shipping_method_id INTEGER,
        carrier_selection TEXT,
        carrier_service_level TEXT,
        priority_level INTEGER NOT NULL DEFAULT 0,
        warehouse_notes TEXT,
        tracking_number TEXT,
        tracking_url TEXT,
        shipped_at TEXT,
        delivered_at TEXT,
        is_on_hold INTEGER NOT NULL DEFAULT 0,
        hold_reason TEXT,
        is_cancelled INTEGER NOT NULL DEFAULT 0,
        cancelled_at TEXT,
        cancelled_by TEXT,
        cancellation_reason TEXT,
        address_corrected INTEGER NOT NULL DEFAULT 0,
        address_corrected_at TEXT,
        original_shipping_address TEXT,
        outbound_id TEXT,
        sync_status TEXT NOT NULL DEFAULT 'unsynced',
        last_synced_at TEXT,
        last_error TEXT,
        created_at TEXT NOT NULL DEFAULT {now},
        updated_at TEXT NOT NULL DEFAULT {now},
        UNIQUE (channel_id, external_order_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id {pk},
        client_id TEXT NOT NULL,
        order_id INTEGER NOT NULL,
        sku TEXT,
        product_id INTEGER,
        name TEXT,
        quantity INTEGER NOT NULL DEFAULT 1,
        unit_price {real},
        external_line_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS returns (
        id {pk},
        client_id TEXT NOT NULL,
        channel_id TEXT,
        external_return_id TEXT,
        external_order_id TEXT,
        order_id INTEGER,
        origin TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'announced',
        reason TEXT,
        customer_note TEXT,
        requested_items TEXT,
        inspection_result TEXT,
        item_condition TEXT,
        inspected_at TEXT,
        inspected_by TEXT,
        restock_eligible INTEGER NOT NULL DEFAULT 0,
        restock_quantity INTEGER NOT NULL DEFAULT 0,
        restocked_at TEXT,
        refund_amount {real},
        refunded_at TEXT,
        replacement_order_id INTEGER,
        finalized_at TEXT,
        finalized_by TEXT,
        created_at TEXT NOT NULL DEFAULT {now},
        updated_at TEXT NOT NULL DEFAULT {now},
        UNIQUE (channel_id, external_return_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS return_items (
        id {pk},
        client_id TEXT NOT NULL,
        return_id INTEGER NOT NULL,
        sku TEXT,
        product_id INTEGER,
        quantity INTEGER NOT NULL DEFAULT 1,
        restockable_quantity INTEGER,
        item_condition TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shipping_methods (
        id {pk},
        external_id TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        carrier_code TEXT,
        carrier_name TEXT,
        shipping_type TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL DEFAULT {now},
        updated_at TEXT NOT NULL DEFAULT {now}
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shipping_method_mappings (
        id {pk},
        client_id TEXT,
        channel_id TEXT,
        channel_type TEXT NOT NULL,
        channel_shipping_code TEXT,
        channel_shipping_title TEXT,
        shipping_method_id INTEGER NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL DEFAULT {now},
        updated_at TEXT NOT NULL DEFAULT {now}
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shipping_method_mismatches (
        id {pk},
        client_id TEXT NOT NULL,
        channel_id TEXT,
        order_id INTEGER,
        channel_shipping_code TEXT,
        channel_shipping_title TEXT,
        used_fallback INTEGER NOT NULL DEFAULT 0,
        fallback_method_id INTEGER,
        is_resolved INTEGER NOT NULL DEFAULT 0,
        resolved_at TEXT,
        resolved_by TEXT,
        resolution_note TEXT,
        resolved_method_id INTEGER,
        created_at TEXT NOT NULL DEFAULT {now}
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_jobs (
        id {pk},
        queue_name TEXT NOT NULL,
        client_id TEXT,
        payload TEXT NOT NULL,
        priority INTEGER NOT NULL DEFAULT 0,
        state TEXT NOT NULL DEFAULT 'created' CHECK (state IN ('created','active','failed','cancelled')),
        retry_count INTEGER NOT NULL DEFAULT 0,
        retry_limit INTEGER NOT NULL DEFAULT 3,
        retry_delay INTEGER NOT NULL DEFAULT 60,
        retry_backoff INTEGER NOT NULL DEFAULT 1,
        start_after TEXT NOT NULL,
        expire_in_seconds INTEGER NOT NULL DEFAULT 3600,
        singleton_key TEXT,
        last_error TEXT,
        started_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_job_attempts (
        id {pk},
        job_id INTEGER NOT NULL,
        queue_name TEXT NOT NULL,
        attempt INTEGER NOT NULL,
        outcome TEXT NOT NULL CHECK (outcome IN ('succeeded','retried','failed','expired')),
        error TEXT,
        delay_seconds {real},
        started_at TEXT,
        finished_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_logs (
        id {pk},
        client_id TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id INTEGER,
        origin TEXT NOT NULL,
        action TEXT NOT NULL,
        actor TEXT,
        changed_fields TEXT,
        before_state TEXT,
        after_state TEXT,
        success INTEGER NOT NULL DEFAULT 1,
        error_message TEXT,
        created_at TEXT NOT NULL DEFAULT {now}
    )
    """,
)


SCHEMA_INDEXES = (
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_sync_jobs_singleton
    ON sync_jobs (queue_name, singleton_key)
    WHERE singleton_key IS NOT NULL AND state IN ('created','active')
    """,
    "CREATE INDEX IF NOT EXISTS ix_sync_jobs_due ON sync_jobs (queue_name, state, start_after)",
    "CREATE INDEX IF NOT EXISTS ix_sync_job_attempts_job ON sync_job_attempts (job_id)",
    "CREATE INDEX IF NOT EXISTS ix_order_items_order ON order_items (order_id)",
    "CREATE INDEX IF NOT EXISTS ix_return_items_return ON return_items (return_id)",
    "CREATE INDEX IF NOT EXISTS ix_orders_outbound ON orders (client_id, outbound_id)",
    "CREATE INDEX IF NOT EXISTS ix_sync_logs_entity ON sync_logs (client_id, entity_type, entity_id)",
    "CREATE INDEX IF NOT EXISTS ix_mappings_lookup ON shipping_method_mappings (channel_type, client_id, channel_id)",
    "CREATE INDEX IF NOT EXISTS ix_mismatches_open ON shipping_method_mismatches (client_id, is_resolved)",
)


def create_schema(db: Database) -> None:
    dialect = _DIALECT["postgres" if db.backend == "postgres" else "sqlite"]
    for statement in SCHEMA_TABLES:
        db.execute(statement.format(**dialect))
    for statement in SCHEMA_INDEXES:
        db.execute(statement)
    db.commit()
