"""
Root pytest configuration.

Points every Config path at a per-test temporary directory and provides
shared fixtures: a migrated file-backed store, a vault, a factory for raw
detailed-sales line items and an in-memory stand-in for the financials API
client.
"""

from pathlib import Path

import pytest

from ledger_sync.ingestion.collectors.financials_collector import ChangedDates, DetailPage
from ledger_sync.security.vault import CredentialVault
from ledger_sync.shared.config import Config
from ledger_sync.shared.db.storage import LocalStore


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep logs, manifests, store and vault of every test under tmp_path."""
    data_dir = tmp_path / "data"
    monkeypatch.setattr(Config, "DATA_DIR", data_dir)
    monkeypatch.setattr(Config, "LOGS_DIR", tmp_path / "logs")
    monkeypatch.setattr(Config, "MANIFEST_DIR", data_dir / "manifests")
    monkeypatch.setattr(Config, "DB_PATH", data_dir / "sales-ledger.db")
    monkeypatch.setattr(Config, "VAULT_DIR", data_dir / "vault")
    monkeypatch.setattr(Config, "MIN_REQUEST_INTERVAL", 0.0)
    monkeypatch.setattr(Config, "RETRY_BACKOFF", 0.0)


@pytest.fixture
def store(tmp_path):
    local_store = LocalStore.open(tmp_path / "store" / "ledger.db")
    yield local_store
    local_store.close()


@pytest.fixture
def vault(tmp_path):
    return CredentialVault(tmp_path / "vault")


def _make_item(date: str = "2024-01-01", country_code: str = "US", **overrides) -> dict:
    item = {
        "partnerid": 1001,
        "date": date,
        "line_item_type": "Package",
        "packageid": 55,
        "primary_appid": 480,
        "country_code": country_code,
        "platform": "windows",
        "currency": "USD",
        "base_price": "9.99",
        "sale_price": "9.99",
        "package_sale_type": "Steam",
        "gross_units_sold": 3,
        "gross_units_returned": 1,
        "net_units_sold": 2,
        "gross_sales_usd": "29.97",
        "gross_returns_usd": "9.99",
        "net_sales_usd": "19.98",
        "net_tax_usd": "1.50",
    }
    item.update(overrides)
    return item


@pytest.fixture
def make_item():
    """Factory for raw detailed-sales line items."""
    return _make_item


class FakeFinancialsClient:
    """In-memory stand-in for PartnerFinancialsCollector.

    Attributes:
        changed: ChangedDates returned by every discover() call.
        pages: date -> list of item lists, one per page.
        failures: date -> exceptions raised (one per attempt) before the
            date's pages are served.
    """

    def __init__(self):
        self.changed = ChangedDates(dates=[], watermark=0)
        self.pages: dict[str, list[list[dict]]] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.healthy = True
        self.discover_calls: list[tuple[str, int]] = []
        self.fetched: list[str] = []
        self.exported: dict[str, list[dict]] = {}

    def discover(self, secret, since_watermark):
        self.discover_calls.append((secret, since_watermark))
        return self.changed

    def iter_date_pages(self, secret, date):
        self.fetched.append(date)
        errors = self.failures.get(date)
        if errors:
            raise errors.pop(0)
        for cursor, items in enumerate(self.pages.get(date, [])):
            yield DetailPage(date=date, cursor=cursor, items=items, max_id=cursor + 1)

    def export_csv(self, data, dataset_name):
        self.exported[dataset_name] = list(data)
        return Path(f"{dataset_name}.csv")

    def health_check(self, secret):
        return self.healthy


@pytest.fixture
def fake_client():
    return FakeFinancialsClient()
