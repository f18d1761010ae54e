"""
Local SQLite storage layer for the partner sales ledger.

Owns four tables: credential metadata, sales facts keyed by identity key,
the sync task queue, and key/value sync metadata (schema version and
per-credential watermarks). Every write runs in one transaction behind a
store-level lock; any SQLAlchemy failure is rolled back and re-raised as
StorageError.

Example:

    from ledger_sync.shared.db.storage import LocalStore

    store = LocalStore.open(Path("data/sales-ledger.db"))
    store.create_tasks("3f0c...", ["2024-01-01"])
    store.upsert_facts([
        {
            "id": "12|2024-01-01|Package|windows|US|USD|3f0c...|99|||||||||",
            "credential_id": "3f0c...",
            "date": "2024-01-01",
            "country_code": "US",
            "app_id": 480,
            "package_id": 99,
            "units_sold": 3,
            "gross_revenue": 29.97,
            "net_revenue": 25.1,
            "currency": "USD",
        }
    ])
"""

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

import pandas as pd
from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_sync.shared.errors import StorageError, TaskStateError
from ledger_sync.shared.utils import now_ms, setup_logger

from .engine import create_store_engine
from .migrations import migrate
from .models import SALES_COLUMNS, Credential, SalesFact, SyncMeta, SyncTask
from .records import CredentialInfo, FactFilter, SyncTaskRecord, TaskStatus, make_task_id
from .session import make_session_factory, session_scope

WATERMARK_PREFIX = "highwatermark:"

_PENDING_STATUSES = (TaskStatus.TODO.value, TaskStatus.IN_PROGRESS.value)

# Legacy NOT NULL columns that the remote API may leave empty.
_FACT_DEFAULTS: dict[str, object] = {
    "app_id": 0,
    "package_id": 0,
    "units_sold": 0,
    "gross_revenue": 0.0,
    "net_revenue": 0.0,
    "currency": "USD",
}

_REQUIRED_FACT_FIELDS = ("id", "credential_id", "date", "country_code")


def watermark_key(credential_id: str) -> str:
    return f"{WATERMARK_PREFIX}{credential_id}"


def _fact_row(fact: dict) -> dict:
    missing = [name for name in _REQUIRED_FACT_FIELDS if fact.get(name) in (None, "")]
    if missing:
        raise StorageError(f"Sales fact is missing required fields: {', '.join(missing)}")

    row = {name: fact.get(name) for name in SALES_COLUMNS}
    for name, default in _FACT_DEFAULTS.items():
        if row[name] is None:
            row[name] = default
    return row


def _task_record(task: SyncTask) -> SyncTaskRecord:
    return SyncTaskRecord(
        id=task.id,
        credential_id=task.credential_id,
        date=task.date,
        status=TaskStatus(task.status),
        created_at=task.created_at,
        completed_at=task.completed_at,
    )


def _credential_info(row: Credential) -> CredentialInfo:
    return CredentialInfo(
        identity_id=row.id,
        fingerprint=row.fingerprint,
        created_at=row.created_at,
        display_name=row.display_name,
    )


class LocalStore:
    """Transactional access to the local sales ledger.

    The store is an explicitly owned object: build one per process and hand
    it to whatever needs it. Writers serialise on an internal lock and on
    SQLite's own transaction; readers run concurrently.
    """

    def __init__(self, engine: Engine, log_file: Path | None = None) -> None:
        self.engine = engine
        self._session_factory = make_session_factory(engine)
        self._write_lock = threading.RLock()
        self.logger = setup_logger(self.__class__.__name__, log_file)

    @classmethod
    def open(cls, db_path: Path | None = None, log_file: Path | None = None) -> "LocalStore":
        """Open (creating if needed) and migrate the store at ``db_path``.

        Raises:
            MigrationError: If the schema cannot be brought to the current version.
        """
        engine = create_store_engine(db_path)
        try:
            migrate(engine)
        except Exception:
            engine.dispose()
            raise
        return cls(engine, log_file=log_file)

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Transaction helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, action: str) -> Iterator[Session]:
        with self._write_lock:
            try:
                with session_scope(self._session_factory) as session:
                    yield session
            except SQLAlchemyError as e:
                self.logger.error("Storage error during %s: %s", action, e)
                raise StorageError(f"{action} failed: {e}") from e

    @contextmanager
    def _reader(self, action: str) -> Iterator[Session]:
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as e:
            self.logger.error("Storage error during %s: %s", action, e)
            raise StorageError(f"{action} failed: {e}") from e

    # ------------------------------------------------------------------
    # Sales facts
    # ------------------------------------------------------------------

    def upsert_facts(self, facts: Iterable[dict]) -> int:
        """Insert or overwrite sales facts keyed by identity key, all in one transaction.

        Returns:
            Number of facts written.

        Raises:
            StorageError: If any fact lacks its key fields or the write fails.
                Nothing from the batch is written in that case.
        """
        rows = [_fact_row(fact) for fact in facts]
        if not rows:
            return 0

        table = SalesFact.__table__
        stmt = sqlite_insert(table)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.id],
            set_={name: stmt.excluded[name] for name in SALES_COLUMNS if name != "id"},
        )

        with self._transaction("upsert_facts") as session:
            session.execute(stmt, rows)

        self.logger.debug("Upserted %d sales facts", len(rows))
        return len(rows)

    def _facts_query(self, filters: FactFilter | None) -> Select:
        table = SalesFact.__table__
        query = select(table)
        if filters is not None:
            if filters.start_date:
                query = query.where(table.c.date >= filters.start_date)
            if filters.end_date:
                query = query.where(table.c.date <= filters.end_date)
            if filters.app_id is not None:
                query = query.where(table.c.app_id == filters.app_id)
            if filters.country_code:
                query = query.where(table.c.country_code == filters.country_code)
            if filters.credential_id:
                query = query.where(table.c.credential_id == filters.credential_id)
        return query.order_by(table.c.date.desc(), table.c.id)

    def get_facts(self, filters: FactFilter | None = None) -> list[dict]:
        """Return sales facts matching ``filters``, newest date first."""
        with self._reader("get_facts") as session:
            result = session.execute(self._facts_query(filters))
            return [dict(row._mapping) for row in result]

    def existing_dates(self, credential_id: str) -> set[str]:
        """Dates that currently hold at least one fact for ``credential_id``."""
        table = SalesFact.__table__
        with self._reader("existing_dates") as session:
            result = session.execute(
                select(table.c.date).where(table.c.credential_id == credential_id).distinct()
            )
            return {row[0] for row in result}

    def clear_facts_for_date(self, credential_id: str, date: str) -> int:
        table = SalesFact.__table__
        with self._transaction("clear_facts_for_date") as session:
            result = session.execute(
                delete(table).where(table.c.credential_id == credential_id, table.c.date == date)
            )
        return result.rowcount

    def read_facts_frame(self, filters: FactFilter | None = None) -> pd.DataFrame:
        """Read-only DataFrame view of the sales facts for dashboard consumers."""
        try:
            with self.engine.connect() as conn:
                return pd.read_sql(self._facts_query(filters), conn)
        except SQLAlchemyError as e:
            raise StorageError(f"read_facts_frame failed: {e}") from e

    def export_to_csv(self, output_path: Path, filters: FactFilter | None = None) -> Path:
        """Export sales facts matching ``filters`` to a CSV file."""
        df = self.read_facts_frame(filters)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(output_path, index=False, encoding="utf-8")
        self.logger.info("Exported %d sales facts to %s", len(df), output_path)
        return output_path

    # ------------------------------------------------------------------
    # Watermarks
    # ------------------------------------------------------------------

    def get_watermark(self, credential_id: str) -> int:
        with self._reader("get_watermark") as session:
            value = session.execute(
                select(SyncMeta.value).where(SyncMeta.key == watermark_key(credential_id))
            ).scalar()
        if value is None:
            return 0
        try:
            return int(value)
        except ValueError as e:
            raise StorageError(f"Corrupt watermark for {credential_id}: {value!r}") from e

    def set_watermark(self, credential_id: str, value: int) -> None:
        stmt = sqlite_insert(SyncMeta.__table__).values(
            key=watermark_key(credential_id), value=str(int(value))
        )
        stmt = stmt.on_conflict_do_update(index_elements=["key"], set_={"value": stmt.excluded.value})
        with self._transaction("set_watermark") as session:
            session.execute(stmt)

    # ------------------------------------------------------------------
    # Sync task queue
    # ------------------------------------------------------------------

    def create_tasks(self, credential_id: str, dates: Iterable[str]) -> list[str]:
        """Queue a todo task per date, first deleting that date's stored facts.

        Each date is handled in its own transaction, so a task never exists
        next to stale facts for the same date.

        Returns:
            Task ids in the order the dates were given (duplicates dropped).
        """
        task_ids: list[str] = []
        sales = SalesFact.__table__
        for date in dict.fromkeys(dates):
            task_id = make_task_id(credential_id, date)
            stmt = sqlite_insert(SyncTask.__table__).values(
                id=task_id,
                credential_id=credential_id,
                date=date,
                status=TaskStatus.TODO.value,
                created_at=now_ms(),
                completed_at=None,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    "status": stmt.excluded.status,
                    "created_at": stmt.excluded.created_at,
                    "completed_at": None,
                },
            )
            with self._transaction("create_tasks") as session:
                session.execute(
                    delete(sales).where(sales.c.credential_id == credential_id, sales.c.date == date)
                )
                session.execute(stmt)
            task_ids.append(task_id)

        if task_ids:
            self.logger.info("Queued %d sync tasks for credential %s", len(task_ids), credential_id)
        return task_ids

    def _transition(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        action: str,
        **values,
    ) -> None:
        with self._transaction(action) as session:
            result = session.execute(
                update(SyncTask)
                .where(SyncTask.id == task_id, SyncTask.status == from_status.value)
                .values(status=to_status.value, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = session.execute(
                    select(SyncTask.status).where(SyncTask.id == task_id)
                ).scalar()
                if current is None:
                    raise TaskStateError(f"Cannot {action} unknown task {task_id!r}")
                raise TaskStateError(
                    f"Cannot {action} task {task_id!r}: status is {current!r}, "
                    f"expected {from_status.value!r}"
                )

    def claim(self, task_id: str) -> None:
        """Move a task from todo to in_progress."""
        self._transition(task_id, TaskStatus.TODO, TaskStatus.IN_PROGRESS, "claim")

    def complete(self, task_id: str) -> None:
        """Move a task from in_progress to done and stamp completed_at."""
        self._transition(
            task_id, TaskStatus.IN_PROGRESS, TaskStatus.DONE, "complete", completed_at=now_ms()
        )

    def reset_stuck(self) -> int:
        """Return every in_progress task to todo. Call once at process start."""
        with self._transaction("reset_stuck") as session:
            result = session.execute(
                update(SyncTask)
                .where(SyncTask.status == TaskStatus.IN_PROGRESS.value)
                .values(status=TaskStatus.TODO.value)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            self.logger.warning("Reset %d interrupted sync tasks to todo", result.rowcount)
        return result.rowcount

    def pending(self, credential_id: str | None = None) -> list[SyncTaskRecord]:
        """Todo and in_progress tasks, oldest date first."""
        query = select(SyncTask).where(SyncTask.status.in_(_PENDING_STATUSES))
        if credential_id is not None:
            query = query.where(SyncTask.credential_id == credential_id)
        query = query.order_by(SyncTask.date.asc(), SyncTask.credential_id.asc())
        with self._reader("pending") as session:
            return [_task_record(task) for task in session.execute(query).scalars()]

    def get_task(self, task_id: str) -> SyncTaskRecord | None:
        with self._reader("get_task") as session:
            task = session.get(SyncTask, task_id)
            return _task_record(task) if task is not None else None

    def count_pending(self) -> dict[str, int]:
        """Pending task count per credential."""
        query = (
            select(SyncTask.credential_id, func.count())
            .where(SyncTask.status.in_(_PENDING_STATUSES))
            .group_by(SyncTask.credential_id)
        )
        with self._reader("count_pending") as session:
            return {credential_id: count for credential_id, count in session.execute(query)}

    def count_all_pending(self) -> int:
        return sum(self.count_pending().values())

    def purge_done(self) -> int:
        with self._transaction("purge_done") as session:
            result = session.execute(
                delete(SyncTask)
                .where(SyncTask.status == TaskStatus.DONE.value)
                .execution_options(synchronize_session=False)
            )
        self.logger.debug("Purged %d completed sync tasks", result.rowcount)
        return result.rowcount

    def delete_tasks(self, credential_id: str) -> int:
        with self._transaction("delete_tasks") as session:
            result = session.execute(
                delete(SyncTask)
                .where(SyncTask.credential_id == credential_id)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Credential metadata
    # ------------------------------------------------------------------

    def add_credential(self, info: CredentialInfo) -> None:
        with self._transaction("add_credential") as session:
            session.add(
                Credential(
                    id=info.identity_id,
                    display_name=info.display_name,
                    fingerprint=info.fingerprint,
                    created_at=info.created_at,
                )
            )

    def list_credentials(self) -> list[CredentialInfo]:
        """All credentials, newest first."""
        query = select(Credential).order_by(Credential.created_at.desc(), Credential.id)
        with self._reader("list_credentials") as session:
            return [_credential_info(row) for row in session.execute(query).scalars()]

    def get_credential(self, identity_id: str) -> CredentialInfo | None:
        with self._reader("get_credential") as session:
            row = session.get(Credential, identity_id)
            return _credential_info(row) if row is not None else None

    def rename_credential(self, identity_id: str, display_name: str | None) -> bool:
        with self._transaction("rename_credential") as session:
            result = session.execute(
                update(Credential)
                .where(Credential.id == identity_id)
                .values(display_name=display_name)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount > 0

    def delete_credential(self, identity_id: str) -> None:
        with self._transaction("delete_credential") as session:
            session.execute(
                delete(Credential)
                .where(Credential.id == identity_id)
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Bulk clearing
    # ------------------------------------------------------------------

    def clear_credential(self, credential_id: str) -> None:
        """Delete every fact, task and the watermark owned by ``credential_id``.

        Runs before the credential's secret leaves the vault, so an
        interrupted deletion leaves a harmless secret rather than
        unreachable data.
        """
        sales = SalesFact.__table__
        with self._transaction("clear_credential") as session:
            facts = session.execute(delete(sales).where(sales.c.credential_id == credential_id))
            session.execute(
                delete(SyncTask)
                .where(SyncTask.credential_id == credential_id)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                delete(SyncMeta)
                .where(SyncMeta.key == watermark_key(credential_id))
                .execution_options(synchronize_session=False)
            )
        self.logger.info(
            "Cleared %d sales facts, tasks and watermark for credential %s",
            facts.rowcount,
            credential_id,
        )

    def clear_all(self) -> None:
        """Delete all facts, tasks, credentials and watermarks. The schema version stays."""
        with self._transaction("clear_all") as session:
            session.execute(delete(SalesFact.__table__))
            session.execute(delete(SyncTask).execution_options(synchronize_session=False))
            session.execute(delete(Credential).execution_options(synchronize_session=False))
            session.execute(
                delete(SyncMeta)
                .where(SyncMeta.key.like(f"{WATERMARK_PREFIX}%"))
                .execution_options(synchronize_session=False)
            )
        self.logger.info("Cleared all stored sales data and credentials")
