"""Data ingestion: remote collectors, record identity and normalisation."""

from ledger_sync.ingestion.identity import IDENTITY_FIELDS, identity_key

__all__ = ["IDENTITY_FIELDS", "identity_key"]
