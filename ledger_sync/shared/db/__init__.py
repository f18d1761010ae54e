"""Database engine, session factory, ORM models, migrations and the local store."""

from .base import Base
from .engine import create_store_engine
from .migrations import LEGACY_CREDENTIAL_ID, SCHEMA_VERSION, get_schema_version, migrate
from .models import SALES_COLUMNS, Credential, SalesFact, SyncMeta, SyncTask
from .records import CredentialInfo, FactFilter, SyncTaskRecord, TaskStatus, make_task_id
from .session import make_session_factory, session_scope
from .storage import LocalStore, watermark_key

__all__ = [
    # ORM infrastructure
    "Base",
    "create_store_engine",
    "make_session_factory",
    "session_scope",
    # Schema
    "SCHEMA_VERSION",
    "LEGACY_CREDENTIAL_ID",
    "get_schema_version",
    "migrate",
    # ORM models
    "Credential",
    "SalesFact",
    "SyncTask",
    "SyncMeta",
    "SALES_COLUMNS",
    # Records
    "CredentialInfo",
    "FactFilter",
    "SyncTaskRecord",
    "TaskStatus",
    "make_task_id",
    # Store
    "LocalStore",
    "watermark_key",
]
