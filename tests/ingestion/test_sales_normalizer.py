"""Tests for the detailed-sales normaliser."""

import pytest

from ledger_sync.ingestion.identity import identity_key
from ledger_sync.ingestion.preprocessors.sales_normalizer import (
    LookupTables,
    normalize_item,
    normalize_items,
    parse_usd,
)
from ledger_sync.shared.errors import ProtocolError

SAMPLE_RESPONSE = {
    "app_info": [{"appid": 480, "app_name": "Spacewar"}],
    "package_info": [{"packageid": 55, "package_name": "Spacewar Deluxe"}],
    "bundle_info": [{"bundleid": 7, "bundle_name": "Space Bundle"}],
    "partner_info": [{"partnerid": 1001, "partner_name": "Valve Test Partner"}],
    "country_info": [{"country_code": "US", "country_name": "United States", "region": "North America"}],
    "game_item_info": [
        {
            "appid": 570,
            "game_item_id": 9,
            "game_item_description": "Arcana",
            "game_item_category": "Cosmetic",
        }
    ],
    "key_request_info": [
        {"key_request_id": 31, "key_request_notes": "Retail", "game_code_description": "Box"}
    ],
    "combined_discount_info": [{"combined_discount_id": 12, "combined_discount_name": "Summer"}],
}


@pytest.fixture
def lookups():
    return LookupTables.from_response(SAMPLE_RESPONSE)


# ---------------------------------------------------------------------------
# LookupTables
# ---------------------------------------------------------------------------


class TestLookupTables:
    def test_from_response(self, lookups):
        assert lookups.app_names == {480: "Spacewar"}
        assert lookups.countries["US"] == ("United States", "North America")
        assert lookups.game_items["570-9"] == ("Arcana", "Cosmetic")
        assert lookups.key_requests[31] == ("Retail", "Box")
        assert lookups.discount_names == {12: "Summer"}

    def test_missing_sections(self):
        tables = LookupTables.from_response({})
        assert tables.app_names == {}
        assert tables.countries == {}

    def test_malformed_section(self):
        with pytest.raises(ProtocolError, match="app_info"):
            LookupTables.from_response({"app_info": {"480": "Spacewar"}})


# ---------------------------------------------------------------------------
# normalize_item
# ---------------------------------------------------------------------------


class TestNormalizeItem:
    def test_package_item(self, make_item, lookups):
        row = normalize_item(make_item(bundleid=7, combined_discount_id=12), "k1", lookups)

        assert row["credential_id"] == "k1"
        assert row["app_id"] == 480
        assert row["package_id"] == 55
        assert row["units_sold"] == 2
        assert row["gross_revenue"] == pytest.approx(29.97)
        assert row["net_revenue"] == pytest.approx(19.98)
        assert row["net_tax_usd"] == pytest.approx(1.5)
        assert row["app_name"] == "Spacewar"
        assert row["package_name"] == "Spacewar Deluxe"
        assert row["bundle_name"] == "Space Bundle"
        assert row["partner_name"] == "Valve Test Partner"
        assert row["country_name"] == "United States"
        assert row["region"] == "North America"
        assert row["combined_discount_name"] == "Summer"

    def test_id_is_identity_key(self, make_item):
        row = normalize_item(make_item(), "k1")
        assert row["id"] == identity_key(row)
        assert row["id"].startswith("1001|2024-01-01|Package|windows|US|USD|k1|55|")

    def test_app_id_falls_back_to_appid(self, make_item):
        row = normalize_item(make_item(primary_appid=None, appid=570), "k1")
        assert row["app_id"] == 570
        assert row["primary_appid"] == 570

    def test_app_id_defaults_to_zero(self, make_item):
        row = normalize_item(make_item(primary_appid=None), "k1")
        assert row["app_id"] == 0

    @pytest.mark.parametrize(
        ("overrides", "expected"),
        [
            ({}, 2),
            ({"net_units_sold": None}, 3),
            ({"net_units_sold": None, "gross_units_sold": None, "gross_units_activated": 8}, 8),
            ({"net_units_sold": None, "gross_units_sold": None}, 0),
            ({"net_units_sold": 0}, 0),
        ],
    )
    def test_units_sold_fallback(self, make_item, overrides, expected):
        assert normalize_item(make_item(**overrides), "k1")["units_sold"] == expected

    def test_unparsable_revenue_is_zero(self, make_item):
        row = normalize_item(make_item(gross_sales_usd="n/a", net_sales_usd=None), "k1")
        assert row["gross_sales_usd"] == 0.0
        assert row["gross_revenue"] == 0.0
        assert row["net_revenue"] == 0.0

    def test_currency_default_does_not_change_key(self, make_item):
        row = normalize_item(make_item(currency=None), "k1")
        assert row["currency"] == "USD"
        assert "|US||k1|" in row["id"]

    def test_microtransaction_lookups(self, make_item, lookups):
        item = make_item(
            line_item_type="MicroTxn", packageid=None, primary_appid=None, appid=570, game_item_id=9
        )
        row = normalize_item(item, "k1", lookups)
        assert row["package_id"] == 0
        assert row["game_item_description"] == "Arcana"
        assert row["game_item_category"] == "Cosmetic"

    def test_key_request_lookup(self, make_item, lookups):
        row = normalize_item(make_item(key_request_id=31), "k1", lookups)
        assert row["key_request_notes"] == "Retail"
        assert row["game_code_description"] == "Box"

    def test_unknown_country_has_no_names(self, make_item, lookups):
        row = normalize_item(make_item(country_code="ZZ"), "k1", lookups)
        assert row["country_name"] is None
        assert row["region"] is None

    def test_numeric_strings_accepted(self, make_item):
        row = normalize_item(make_item(packageid="55", partnerid="1001"), "k1")
        assert row["package_id"] == 55
        assert row["id"] == normalize_item(make_item(), "k1")["id"]

    @pytest.mark.parametrize("field", ["date", "line_item_type", "country_code"])
    def test_missing_required_field(self, make_item, field):
        with pytest.raises(ProtocolError, match=field):
            normalize_item(make_item(**{field: None}), "k1")

    def test_non_numeric_id(self, make_item):
        with pytest.raises(ProtocolError, match="packageid"):
            normalize_item(make_item(packageid="abc"), "k1")

    def test_not_an_object(self):
        with pytest.raises(ProtocolError):
            normalize_item(["not", "a", "dict"], "k1")

    def test_normalize_items(self, make_item):
        rows = normalize_items([make_item(country_code="US"), make_item(country_code="DE")], "k1")
        assert [r["country_code"] for r in rows] == ["US", "DE"]
        assert rows[0]["id"] != rows[1]["id"]


def test_parse_usd():
    assert parse_usd("12.50") == 12.5
    assert parse_usd(3) == 3.0
    assert parse_usd("") == 0.0
    assert parse_usd(None) == 0.0
