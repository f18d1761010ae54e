"""Preprocessors turning raw API line items into store rows."""

from ledger_sync.ingestion.preprocessors.sales_normalizer import (
    LookupTables,
    normalize_item,
    normalize_items,
    parse_usd,
)

__all__ = [
    "LookupTables",
    "normalize_item",
    "normalize_items",
    "parse_usd",
]
