"""Remote data collectors."""

from ledger_sync.ingestion.collectors.base_collector import BaseCollector
from ledger_sync.ingestion.collectors.financials_collector import (
    ChangedDates,
    DetailPage,
    PartnerFinancialsCollector,
)

__all__ = [
    "BaseCollector",
    "ChangedDates",
    "DetailPage",
    "PartnerFinancialsCollector",
]
