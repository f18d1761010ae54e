from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from ledger_sync.shared.config import Config

SQLITE_BUSY_TIMEOUT = 30  # seconds


def create_store_engine(db_path: Path | None = None, echo: bool = False) -> Engine:
    """Create a SQLite engine for the local store.

    pysqlite's implicit transaction handling is switched off and replaced
    by an explicit BEGIN, so schema changes (CREATE/ALTER/DROP) take part
    in the surrounding transaction and roll back with it. The database runs
    in WAL mode so readers never observe a half-committed write.
    """
    path = Path(db_path or Config.DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"timeout": SQLITE_BUSY_TIMEOUT, "check_same_thread": False},
        echo=echo,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine
