"""Incremental, crash-recoverable sync of a partner sales ledger into a local store."""

__version__ = "0.1.0"
