"""Tests for sales line item identity keys."""

from ledger_sync.ingestion.identity import IDENTITY_FIELDS, identity_key


def _record(**overrides) -> dict:
    record = {
        "partnerid": 1001,
        "date": "2024-01-01",
        "line_item_type": "Package",
        "platform": "windows",
        "country_code": "US",
        "currency": "USD",
        "credential_id": "k1",
        "packageid": 55,
        "bundleid": None,
        "package_sale_type": "Steam",
        "key_request_id": None,
        "base_price": "9.99",
        "sale_price": "7.99",
        "appid": None,
        "game_item_id": None,
        "combined_discount_id": 0,
    }
    record.update(overrides)
    return record


def test_field_order():
    assert len(IDENTITY_FIELDS) == 16
    assert IDENTITY_FIELDS[:7] == (
        "partnerid",
        "date",
        "line_item_type",
        "platform",
        "country_code",
        "currency",
        "credential_id",
    )
    assert IDENTITY_FIELDS[-1] == "combined_discount_id"


def test_key_layout():
    assert identity_key(_record()) == (
        "1001|2024-01-01|Package|windows|US|USD|k1|55||Steam||9.99|7.99|||0"
    )


def test_missing_fields_are_empty():
    key = identity_key({"date": "2024-01-01", "country_code": "US", "credential_id": "k1"})
    assert key == "|2024-01-01|||US||k1|||||||||"
    assert key.count("|") == len(IDENTITY_FIELDS) - 1


def test_zero_is_not_empty():
    assert identity_key(_record(bundleid=0)) != identity_key(_record(bundleid=None))


def test_integral_float_rendered_as_int():
    assert identity_key(_record(packageid=55.0)) == identity_key(_record(packageid=55))


def test_deterministic():
    assert identity_key(_record()) == identity_key(_record())


def test_credential_separates_keys():
    assert identity_key(_record(credential_id="k1")) != identity_key(_record(credential_id="k2"))


def test_display_fields_ignored():
    plain = identity_key(_record())
    enriched = identity_key(_record(app_name="Spacewar", country_name="United States", units_sold=9))
    assert plain == enriched


def test_each_identity_field_matters():
    base = identity_key(_record())
    for name in IDENTITY_FIELDS:
        assert identity_key(_record(**{name: "changed"})) != base, name
