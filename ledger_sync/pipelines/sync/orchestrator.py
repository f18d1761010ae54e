"""
Sync Orchestrator
Per-credential incremental sync of the partner sales ledger.

One run for a credential moves through these phases:

    DISCOVERING  ask the API which dates changed since the stored watermark
    QUEUING      turn changed dates into todo tasks, persist the new watermark
    FETCHING     page through the detailed sales of each queued date
    COMMITTING   normalise, key and upsert the date's facts, mark its task done
    IDLE         finished (terminal, success)
    FAILED       stopped on the first error (terminal)

Dates left as todo by an earlier, interrupted run are processed before any
newly discovered date. Nothing is rolled back on failure: completed dates
stay done, the failed date stays in_progress until the next process start
calls ``recover()``.
"""

import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TypeVar

from ledger_sync.ingestion.collectors.financials_collector import PartnerFinancialsCollector
from ledger_sync.ingestion.preprocessors.sales_normalizer import normalize_items
from ledger_sync.security.vault import CredentialVault
from ledger_sync.shared.config import Config
from ledger_sync.shared.db.records import TaskStatus, make_task_id
from ledger_sync.shared.db.storage import LocalStore
from ledger_sync.shared.errors import LedgerSyncError, TransportError
from ledger_sync.shared.utils import chunked, setup_logger

T = TypeVar("T")


class SyncPhase(str, Enum):
    DISCOVERING = "discovering"
    QUEUING = "queuing"
    FETCHING = "fetching"
    COMMITTING = "committing"
    IDLE = "idle"
    FAILED = "failed"


@dataclass
class SyncReport:
    """Progress and outcome of one credential's sync run."""

    credential_id: str
    phase: SyncPhase = SyncPhase.DISCOVERING
    total_dates: int = 0
    processed_dates: int = 0
    resumed_dates: int = 0
    facts_written: int = 0
    watermark: int | None = None
    current_date: str | None = None
    failed_date: str | None = None
    error: Exception | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.phase is SyncPhase.IDLE

    def to_dict(self) -> dict:
        return {
            "credential_id": self.credential_id,
            "phase": self.phase.value,
            "total_dates": self.total_dates,
            "processed_dates": self.processed_dates,
            "resumed_dates": self.resumed_dates,
            "facts_written": self.facts_written,
            "watermark": self.watermark,
            "failed_date": self.failed_date,
            "error": type(self.error).__name__ if self.error else None,
            "message": self.message,
        }


def order_dates(resumed: list[str], changed: list[str], existing: set[str]) -> list[str]:
    """Processing order for one run.

    Resumed dates come first (ascending). Newly changed dates follow, those
    never stored before ahead of revisions of stored dates, ties by
    ascending date.
    """
    resumed_sorted = sorted(set(resumed))
    seen = set(resumed_sorted)
    fresh = [d for d in dict.fromkeys(changed) if d not in seen]
    return resumed_sorted + sorted(fresh, key=lambda d: (d in existing, d))


class SyncOrchestrator:
    """Drives incremental sync runs over an injected store, vault and client."""

    def __init__(
        self,
        store: LocalStore,
        vault: CredentialVault,
        client: PartnerFinancialsCollector,
        batch_size: int | None = None,
        transport_retries: int | None = None,
        retry_backoff: float | None = None,
        on_progress: Callable[[SyncReport], None] | None = None,
        dump_raw: bool = False,
        log_file: Path | None = None,
    ) -> None:
        self.store = store
        self.vault = vault
        self.client = client
        self.batch_size = batch_size or Config.FETCH_BATCH_SIZE
        self.transport_retries = (
            transport_retries if transport_retries is not None else Config.TRANSPORT_RETRIES
        )
        self.retry_backoff = retry_backoff if retry_backoff is not None else Config.RETRY_BACKOFF
        self.on_progress = on_progress
        self.dump_raw = dump_raw
        self.logger = setup_logger(
            self.__class__.__name__,
            log_file or Config.LOGS_DIR / "pipelines" / "sync_orchestrator.log",
        )
        self._active: set[str] = set()
        self._active_lock = threading.Lock()

        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def recover(self) -> int:
        """Return tasks interrupted by a previous process to todo. Call once at startup."""
        return self.store.reset_stuck()

    def run(self, credential_id: str) -> SyncReport:
        """Run one incremental sync for ``credential_id``.

        Only LedgerSyncError failures are caught and reported; anything else
        is a bug and propagates.
        """
        report = SyncReport(credential_id=credential_id)

        with self._active_lock:
            if credential_id in self._active:
                return self._fail(
                    report, LedgerSyncError(f"Sync already running for credential {credential_id}")
                )
            self._active.add(credential_id)

        try:
            self._run(report)
        except LedgerSyncError as e:
            return self._fail(report, e)
        finally:
            with self._active_lock:
                self._active.discard(credential_id)

        return report

    def run_all(self, max_workers: int | None = None) -> dict[str, SyncReport]:
        """Sync every registered credential, concurrently across credentials.

        Completed tasks are purged once all runs have finished.
        """
        credentials = [info.identity_id for info in self.store.list_credentials()]
        if not credentials:
            self.logger.info("No credentials registered; nothing to sync")
            return {}

        reports: dict[str, SyncReport] = {}
        workers = max_workers or len(credentials)
        self.logger.info("Syncing %d credential(s) with %d worker(s)", len(credentials), workers)

        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_credential = {
                executor.submit(self.run, credential_id): credential_id
                for credential_id in credentials
            }
            for future in as_completed(future_to_credential):
                credential_id = future_to_credential[future]
                try:
                    reports[credential_id] = future.result()
                except Exception as e:
                    self.logger.error(
                        "Unexpected error syncing %s: %s", credential_id, e, exc_info=True
                    )
                    reports[credential_id] = self._fail(SyncReport(credential_id=credential_id), e)

        purged = self.store.purge_done()
        self.logger.info("Sync finished, purged %d completed tasks", purged)
        return {credential_id: reports[credential_id] for credential_id in credentials}

    # ------------------------------------------------------------------
    # Run phases
    # ------------------------------------------------------------------

    def _run(self, report: SyncReport) -> None:
        credential_id = report.credential_id
        secret = self.vault.get(credential_id)
        if secret is None:
            raise LedgerSyncError(f"No secret stored for credential {credential_id}")

        pending = self.store.pending(credential_id)
        resumed = [task.date for task in pending if task.status is TaskStatus.TODO]
        stuck = len(pending) - len(resumed)
        if stuck:
            self.logger.warning(
                "%d in_progress task(s) for %s are waiting for startup recovery",
                stuck,
                credential_id,
            )
        report.resumed_dates = len(set(resumed))

        self._enter(report, SyncPhase.DISCOVERING)
        stored_watermark = self.store.get_watermark(credential_id)
        changed = self._with_retries(
            "discover", lambda: self.client.discover(secret, stored_watermark)
        )

        self._enter(report, SyncPhase.QUEUING)
        existing = self.store.existing_dates(credential_id)
        self.store.create_tasks(credential_id, changed.dates)
        report.watermark = self._advance_watermark(
            credential_id, stored_watermark, changed.watermark
        )

        dates = order_dates(resumed, changed.dates, existing)
        report.total_dates = len(dates)
        self.logger.info(
            "Credential %s: %d date(s) to sync (%d resumed)",
            credential_id,
            len(dates),
            report.resumed_dates,
        )

        for batch_number, batch in enumerate(chunked(dates, self.batch_size), start=1):
            self.logger.debug("Credential %s: batch %d %s", credential_id, batch_number, batch)
            for date in batch:
                report.current_date = date
                report.facts_written += self._sync_date(secret, report, date)
                report.processed_dates += 1
                self._notify(report)

        report.current_date = None
        report.message = f"processed {report.processed_dates} of {report.total_dates} dates"
        self._enter(report, SyncPhase.IDLE)
        self.logger.info(
            "Credential %s synced: %s, %d facts written",
            credential_id,
            report.message,
            report.facts_written,
        )

    def _sync_date(self, secret: str, report: SyncReport, date: str) -> int:
        credential_id = report.credential_id
        task_id = make_task_id(credential_id, date)

        self._enter(report, SyncPhase.FETCHING)
        self.store.claim(task_id)
        facts = self._with_retries(
            f"fetch {date}", lambda: self._fetch_facts(secret, credential_id, date)
        )

        if self.dump_raw and facts:
            try:
                self.client.export_csv(facts, f"sales_{credential_id}_{date}")
            except OSError as e:
                self.logger.warning("Raw dump for %s %s failed: %s", credential_id, date, e)

        self._enter(report, SyncPhase.COMMITTING)
        written = self.store.upsert_facts(facts)
        self.store.complete(task_id)
        self.logger.debug("Credential %s: committed %d facts for %s", credential_id, written, date)
        return written

    def _fetch_facts(self, secret: str, credential_id: str, date: str) -> list[dict]:
        facts: list[dict] = []
        for page in self.client.iter_date_pages(secret, date):
            facts.extend(normalize_items(page.items, credential_id, page.lookups))
        return facts

    def _advance_watermark(self, credential_id: str, stored: int, returned: int) -> int:
        if returned < stored:
            self.logger.warning(
                "Credential %s: API returned watermark %d below stored %d; keeping stored value",
                credential_id,
                returned,
                stored,
            )
            return stored
        if returned != stored:
            self.store.set_watermark(credential_id, returned)
        return returned

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _with_retries(self, action: str, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except TransportError as e:
                if attempt >= self.transport_retries:
                    raise
                attempt += 1
                delay = self.retry_backoff * attempt
                self.logger.warning(
                    "%s failed (%s); retry %d/%d in %.1fs",
                    action,
                    e,
                    attempt,
                    self.transport_retries,
                    delay,
                )
                time.sleep(delay)

    def _enter(self, report: SyncReport, phase: SyncPhase) -> None:
        if report.phase is not phase:
            report.phase = phase
            self._notify(report)

    def _notify(self, report: SyncReport) -> None:
        if self.on_progress is not None:
            self.on_progress(report)

    def _fail(self, report: SyncReport, error: Exception) -> SyncReport:
        failed_in = report.phase
        report.error = error
        report.failed_date = report.current_date
        if report.failed_date is not None:
            report.message = (
                f"processed {report.processed_dates} of {report.total_dates} dates, "
                f"error on date {report.failed_date}"
            )
        else:
            report.message = f"failed while {failed_in.value}: {error}"
        report.phase = SyncPhase.FAILED
        self.logger.error(
            "Sync failed for credential %s (phase=%s, date=%s): %s",
            report.credential_id,
            failed_in.value,
            report.failed_date,
            error,
        )
        self._notify(report)
        return report
