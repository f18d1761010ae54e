"""Shared utilities and configuration."""

from ledger_sync.shared.config import Config
from ledger_sync.shared.errors import (
    CryptoError,
    LedgerSyncError,
    MigrationError,
    ProtocolError,
    StorageError,
    TaskStateError,
    TransportError,
)
from ledger_sync.shared.utils import chunked, now_ms, setup_logger

__all__ = [
    "Config",
    "setup_logger",
    "now_ms",
    "chunked",
    "LedgerSyncError",
    "TransportError",
    "ProtocolError",
    "StorageError",
    "MigrationError",
    "CryptoError",
    "TaskStateError",
]
