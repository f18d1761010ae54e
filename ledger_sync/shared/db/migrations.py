"""
Schema Migrations for the local sales store.

Each step moves the store from version N-1 to N. Steps run in ascending
order, each inside a single transaction that also records the new version,
so a failed step leaves the store at the previous version. Every step is
written to be re-runnable (CREATE ... IF NOT EXISTS, guarded column checks).

    v1  legacy sales table (surrogate integer key)
    v2  credentials table, sales scoped by credential_id
    v3  sales keyed by content-address identity key
    v4  sync task queue, display-name columns on sales
"""

from collections.abc import Callable

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from ledger_sync.shared.errors import MigrationError
from ledger_sync.shared.utils import setup_logger

SCHEMA_VERSION = 4
SCHEMA_VERSION_KEY = "schema_version"
LEGACY_CREDENTIAL_ID = "legacy"

logger = setup_logger(__name__)


# -------------------------------------------------------------------
# Metadata
# -------------------------------------------------------------------

SYNC_META_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""


# -------------------------------------------------------------------
# v1: original sales table
# -------------------------------------------------------------------

SALES_V1_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS sales (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    date TEXT NOT NULL,
    app_id INTEGER NOT NULL,
    app_name TEXT,
    package_id INTEGER NOT NULL,
    country_code TEXT NOT NULL,
    units_sold INTEGER NOT NULL,
    gross_revenue REAL NOT NULL,
    net_revenue REAL NOT NULL,
    currency TEXT NOT NULL,
    UNIQUE(date, app_id, package_id, country_code)
)
"""


# -------------------------------------------------------------------
# v2: multi-credential support
# -------------------------------------------------------------------

CREDENTIALS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS credentials (
    id TEXT PRIMARY KEY,
    display_name TEXT,
    fingerprint TEXT NOT NULL,
    created_at INTEGER NOT NULL
)
"""

SALES_V2_TABLE_SQL = """
CREATE TABLE sales_v2 (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    date TEXT NOT NULL,
    app_id INTEGER NOT NULL,
    app_name TEXT,
    package_id INTEGER NOT NULL,
    country_code TEXT NOT NULL,
    units_sold INTEGER NOT NULL,
    gross_revenue REAL NOT NULL,
    net_revenue REAL NOT NULL,
    currency TEXT NOT NULL,
    credential_id TEXT NOT NULL DEFAULT 'legacy',
    UNIQUE(date, app_id, package_id, country_code, credential_id)
)
"""

SALES_V2_COPY_SQL = """
INSERT INTO sales_v2 (id, date, app_id, app_name, package_id, country_code,
                      units_sold, gross_revenue, net_revenue, currency)
SELECT id, date, app_id, app_name, package_id, country_code,
       units_sold, gross_revenue, net_revenue, currency
FROM sales
"""


# -------------------------------------------------------------------
# v3: identity key as primary key
# -------------------------------------------------------------------

SALES_V3_TABLE_SQL = """
CREATE TABLE sales_v3 (
    id TEXT PRIMARY KEY,
    date TEXT NOT NULL,
    app_id INTEGER NOT NULL,
    app_name TEXT,
    package_id INTEGER NOT NULL,
    country_code TEXT NOT NULL,
    units_sold INTEGER NOT NULL,
    gross_revenue REAL NOT NULL,
    net_revenue REAL NOT NULL,
    currency TEXT NOT NULL,
    credential_id TEXT NOT NULL,
    line_item_type TEXT,
    partnerid INTEGER,
    primary_appid INTEGER,
    bundleid INTEGER,
    appid INTEGER,
    game_item_id INTEGER,
    platform TEXT,
    base_price TEXT,
    sale_price TEXT,
    avg_sale_price_usd TEXT,
    package_sale_type TEXT,
    gross_units_sold INTEGER,
    gross_units_returned INTEGER,
    gross_units_activated INTEGER,
    net_units_sold INTEGER,
    gross_sales_usd REAL,
    gross_returns_usd REAL,
    net_sales_usd REAL,
    net_tax_usd REAL,
    combined_discount_id INTEGER,
    total_discount_percentage REAL,
    additional_revenue_share_tier INTEGER,
    key_request_id INTEGER,
    viw_grant_partnerid INTEGER
)
"""

# Rows written before identity keys existed only carry five identifying
# columns; the synthesised key cannot match keys computed for new data.
SALES_V3_COPY_SQL = """
INSERT INTO sales_v3 (id, date, app_id, app_name, package_id, country_code,
                      units_sold, gross_revenue, net_revenue, currency, credential_id)
SELECT date || '|' || app_id || '|' || package_id || '|' || country_code
            || '|' || COALESCE(credential_id, 'legacy'),
       date, app_id, app_name, package_id, country_code,
       units_sold, gross_revenue, net_revenue, currency,
       COALESCE(credential_id, 'legacy')
FROM sales
"""


# -------------------------------------------------------------------
# v4: sync task queue, display names
# -------------------------------------------------------------------

SYNC_TASKS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS sync_tasks (
    id TEXT PRIMARY KEY,
    credential_id TEXT NOT NULL,
    date TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('todo', 'in_progress', 'done')),
    created_at INTEGER NOT NULL,
    completed_at INTEGER
)
"""

SYNC_TASKS_INDEX_SQL = (
    "CREATE INDEX IF NOT EXISTS idx_sync_tasks_credential_status "
    "ON sync_tasks(credential_id, status)"
)

DISPLAY_NAME_COLUMNS: tuple[str, ...] = (
    "package_name",
    "bundle_name",
    "partner_name",
    "country_name",
    "region",
    "game_item_description",
    "game_item_category",
    "key_request_notes",
    "game_code_description",
    "combined_discount_name",
)


# -------------------------------------------------------------------
# Shared helpers
# -------------------------------------------------------------------

STANDARD_INDEXES_SQL = (
    "CREATE INDEX IF NOT EXISTS idx_sales_date ON sales(date)",
    "CREATE INDEX IF NOT EXISTS idx_sales_app_id ON sales(app_id)",
    "CREATE INDEX IF NOT EXISTS idx_sales_country ON sales(country_code)",
)

CREDENTIAL_INDEX_SQL = "CREATE INDEX IF NOT EXISTS idx_sales_credential_id ON sales(credential_id)"


def _create_standard_indexes(conn: Connection) -> None:
    for sql in STANDARD_INDEXES_SQL:
        conn.exec_driver_sql(sql)


def _table_columns(conn: Connection, table: str) -> dict[str, str]:
    """Map column name to declared type for ``table`` (empty if missing)."""
    rows = conn.exec_driver_sql(f"PRAGMA table_info({table})").fetchall()
    return {row[1]: (row[2] or "").upper() for row in rows}


def get_schema_version(conn: Connection) -> int:
    value = conn.execute(
        text("SELECT value FROM sync_meta WHERE key = :key"), {"key": SCHEMA_VERSION_KEY}
    ).scalar()
    if value is None:
        return 0
    try:
        return int(value)
    except ValueError as e:
        raise MigrationError(f"Unreadable schema version {value!r}") from e


def _set_schema_version(conn: Connection, version: int) -> None:
    conn.execute(
        text("INSERT OR REPLACE INTO sync_meta (key, value) VALUES (:key, :value)"),
        {"key": SCHEMA_VERSION_KEY, "value": str(version)},
    )


# -------------------------------------------------------------------
# Steps
# -------------------------------------------------------------------


def migrate_to_v1(conn: Connection) -> None:
    conn.exec_driver_sql(SALES_V1_TABLE_SQL)
    _create_standard_indexes(conn)


def migrate_to_v2(conn: Connection) -> None:
    conn.exec_driver_sql(CREDENTIALS_TABLE_SQL)

    if "credential_id" in _table_columns(conn, "sales"):
        return

    conn.exec_driver_sql("DROP TABLE IF EXISTS sales_v2")
    conn.exec_driver_sql(SALES_V2_TABLE_SQL)
    conn.exec_driver_sql(SALES_V2_COPY_SQL)
    conn.exec_driver_sql("DROP TABLE sales")
    conn.exec_driver_sql("ALTER TABLE sales_v2 RENAME TO sales")
    _create_standard_indexes(conn)
    conn.exec_driver_sql(CREDENTIAL_INDEX_SQL)


def migrate_to_v3(conn: Connection) -> None:
    if _table_columns(conn, "sales").get("id") == "TEXT":
        return

    conn.exec_driver_sql("DROP TABLE IF EXISTS sales_v3")
    conn.exec_driver_sql(SALES_V3_TABLE_SQL)
    conn.exec_driver_sql(SALES_V3_COPY_SQL)
    conn.exec_driver_sql("DROP TABLE sales")
    conn.exec_driver_sql("ALTER TABLE sales_v3 RENAME TO sales")
    _create_standard_indexes(conn)
    conn.exec_driver_sql(CREDENTIAL_INDEX_SQL)


def migrate_to_v4(conn: Connection) -> None:
    conn.exec_driver_sql(SYNC_TASKS_TABLE_SQL)
    conn.exec_driver_sql(SYNC_TASKS_INDEX_SQL)

    existing = _table_columns(conn, "sales")
    for column in DISPLAY_NAME_COLUMNS:
        if column not in existing:
            conn.exec_driver_sql(f"ALTER TABLE sales ADD COLUMN {column} TEXT")


MIGRATIONS: tuple[tuple[int, Callable[[Connection], None]], ...] = (
    (1, migrate_to_v1),
    (2, migrate_to_v2),
    (3, migrate_to_v3),
    (4, migrate_to_v4),
)


def migrate(engine: Engine) -> int:
    """Bring the store at ``engine`` up to SCHEMA_VERSION.

    Returns:
        The schema version after migration.

    Raises:
        MigrationError: If any step fails. The failing step is rolled back;
            earlier steps stay committed.
    """
    try:
        with engine.begin() as conn:
            conn.exec_driver_sql(SYNC_META_TABLE_SQL)
            current = get_schema_version(conn)
    except SQLAlchemyError as e:
        raise MigrationError(f"Cannot read schema version: {e}") from e

    if current > SCHEMA_VERSION:
        raise MigrationError(
            f"Store is at schema version {current}, newer than supported {SCHEMA_VERSION}"
        )

    for version, step in MIGRATIONS:
        if version <= current:
            continue
        logger.info("Migrating store schema to v%d", version)
        try:
            with engine.begin() as conn:
                step(conn)
                _set_schema_version(conn, version)
        except SQLAlchemyError as e:
            logger.error("Schema migration to v%d failed: %s", version, e)
            raise MigrationError(f"Migration to v{version} failed: {e}") from e
        current = version

    return current
