"""Normalise detailed-sales line items into sales fact rows.

A detail page carries the line items plus lookup arrays (app names,
package names, countries, ...). The lookups are joined onto each item in
memory; the resulting row matches the ``sales`` table and carries its
identity key in ``id``.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field

from ledger_sync.ingestion.identity import identity_key
from ledger_sync.shared.errors import ProtocolError

DEFAULT_CURRENCY = "USD"

REQUIRED_ITEM_FIELDS = ("date", "line_item_type", "country_code")

INT_FIELDS = (
    "partnerid",
    "primary_appid",
    "packageid",
    "bundleid",
    "appid",
    "game_item_id",
    "gross_units_sold",
    "gross_units_returned",
    "gross_units_activated",
    "net_units_sold",
    "combined_discount_id",
    "additional_revenue_share_tier",
    "key_request_id",
    "viw_grant_partnerid",
)

TEXT_FIELDS = (
    "platform",
    "currency",
    "base_price",
    "sale_price",
    "avg_sale_price_usd",
    "package_sale_type",
)

USD_FIELDS = ("gross_sales_usd", "gross_returns_usd", "net_sales_usd", "net_tax_usd")


def _as_int(value: object, name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ProtocolError(f"Field {name!r} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
    raise ProtocolError(f"Field {name!r} must be an integer, got {value!r}")


def _as_float(value: object) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_usd(value: object) -> float:
    """Revenue amounts arrive as decimal strings; unparsable or absent is 0.0."""
    parsed = _as_float(value)
    return parsed if parsed is not None else 0.0


def _index(entries: object, key: str, value: str, section: str) -> dict:
    if entries is None:
        return {}
    if not isinstance(entries, list):
        raise ProtocolError(f"Lookup section {section!r} is not a list")
    return {
        entry[key]: entry.get(value)
        for entry in entries
        if isinstance(entry, Mapping) and entry.get(key) is not None
    }


@dataclass
class LookupTables:
    """Display-name lookups shipped alongside a detail page."""

    app_names: dict[int, str] = field(default_factory=dict)
    package_names: dict[int, str] = field(default_factory=dict)
    bundle_names: dict[int, str] = field(default_factory=dict)
    partner_names: dict[int, str] = field(default_factory=dict)
    countries: dict[str, tuple[str | None, str | None]] = field(default_factory=dict)
    game_items: dict[str, tuple[str | None, str | None]] = field(default_factory=dict)
    key_requests: dict[int, tuple[str | None, str | None]] = field(default_factory=dict)
    discount_names: dict[int, str] = field(default_factory=dict)

    @classmethod
    def from_response(cls, response: Mapping) -> "LookupTables":
        countries = {
            entry["country_code"]: (entry.get("country_name"), entry.get("region"))
            for entry in response.get("country_info") or []
            if isinstance(entry, Mapping) and entry.get("country_code")
        }
        game_items = {
            f"{entry['appid']}-{entry['game_item_id']}": (
                entry.get("game_item_description"),
                entry.get("game_item_category"),
            )
            for entry in response.get("game_item_info") or []
            if isinstance(entry, Mapping)
            and entry.get("appid") is not None
            and entry.get("game_item_id") is not None
        }
        key_requests = {
            entry["key_request_id"]: (
                entry.get("key_request_notes"),
                entry.get("game_code_description"),
            )
            for entry in response.get("key_request_info") or []
            if isinstance(entry, Mapping) and entry.get("key_request_id") is not None
        }
        return cls(
            app_names=_index(response.get("app_info"), "appid", "app_name", "app_info"),
            package_names=_index(
                response.get("package_info"), "packageid", "package_name", "package_info"
            ),
            bundle_names=_index(
                response.get("bundle_info"), "bundleid", "bundle_name", "bundle_info"
            ),
            partner_names=_index(
                response.get("partner_info"), "partnerid", "partner_name", "partner_info"
            ),
            countries=countries,
            game_items=game_items,
            key_requests=key_requests,
            discount_names=_index(
                response.get("combined_discount_info"),
                "combined_discount_id",
                "combined_discount_name",
                "combined_discount_info",
            ),
        )


def normalize_item(item: Mapping, credential_id: str, lookups: LookupTables | None = None) -> dict:
    """Turn one raw line item into a ``sales`` row owned by ``credential_id``.

    Raises:
        ProtocolError: If the item is not an object, lacks a required field,
            or carries a non-numeric id.
    """
    if not isinstance(item, Mapping):
        raise ProtocolError(f"Sales line item is not an object: {item!r}")

    missing = [name for name in REQUIRED_ITEM_FIELDS if not item.get(name)]
    if missing:
        raise ProtocolError(f"Sales line item is missing {', '.join(missing)}")

    lookups = lookups or LookupTables()

    record: dict = {
        "credential_id": credential_id,
        "date": str(item["date"]),
        "line_item_type": str(item["line_item_type"]),
        "country_code": str(item["country_code"]),
    }
    for name in INT_FIELDS:
        record[name] = _as_int(item.get(name), name)
    for name in TEXT_FIELDS:
        value = item.get(name)
        record[name] = None if value is None else str(value)
    for name in USD_FIELDS:
        record[name] = parse_usd(item.get(name))
    record["total_discount_percentage"] = _as_float(item.get("total_discount_percentage"))

    # Key fields use the values as received, before any legacy defaults.
    record["id"] = identity_key(record)

    primary_appid = record["primary_appid"] or record["appid"] or 0
    record["primary_appid"] = primary_appid

    units_sold = record["net_units_sold"]
    if units_sold is None:
        units_sold = record["gross_units_sold"]
    if units_sold is None:
        units_sold = record["gross_units_activated"]

    country_name, region = lookups.countries.get(record["country_code"], (None, None))
    game_item = (None, None)
    if record["appid"] and record["game_item_id"]:
        game_item = lookups.game_items.get(f"{record['appid']}-{record['game_item_id']}", game_item)
    key_request = (None, None)
    if record["key_request_id"]:
        key_request = lookups.key_requests.get(record["key_request_id"], key_request)

    record.update(
        {
            # Legacy chart columns
            "app_id": primary_appid,
            "package_id": record["packageid"] or 0,
            "units_sold": units_sold or 0,
            "gross_revenue": record["gross_sales_usd"],
            "net_revenue": record["net_sales_usd"],
            "currency": record["currency"] or DEFAULT_CURRENCY,
            # Display names
            "app_name": lookups.app_names.get(primary_appid),
            "package_name": lookups.package_names.get(record["packageid"]),
            "bundle_name": lookups.bundle_names.get(record["bundleid"]),
            "partner_name": lookups.partner_names.get(record["partnerid"]),
            "country_name": country_name,
            "region": region,
            "game_item_description": game_item[0],
            "game_item_category": game_item[1],
            "key_request_notes": key_request[0],
            "game_code_description": key_request[1],
            "combined_discount_name": lookups.discount_names.get(record["combined_discount_id"]),
        }
    )
    return record


def normalize_items(items: list, credential_id: str, lookups: LookupTables | None = None) -> list[dict]:
    return [normalize_item(item, credential_id, lookups) for item in items]
