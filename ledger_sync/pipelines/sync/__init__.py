"""Incremental sync pipeline: orchestrator and command-line runner."""

from ledger_sync.pipelines.sync.orchestrator import SyncOrchestrator, SyncPhase, SyncReport, order_dates

__all__ = ["SyncOrchestrator", "SyncPhase", "SyncReport", "order_dates"]
