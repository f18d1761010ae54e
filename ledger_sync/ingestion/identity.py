"""
Content-addressed identity keys for sales line items.

The key is built from a fixed, ordered projection of the identifying
fields of a line item plus the owning credential id. Two items that agree
on every identifying field get the same key and overwrite each other in
the store; display names never take part.
"""

from collections.abc import Mapping

IDENTITY_FIELDS: tuple[str, ...] = (
    "partnerid",
    "date",
    "line_item_type",
    "platform",
    "country_code",
    "currency",
    "credential_id",
    # Package line items
    "packageid",
    "bundleid",
    "package_sale_type",
    "key_request_id",
    "base_price",
    "sale_price",
    # Microtransaction line items
    "appid",
    "game_item_id",
    "combined_discount_id",
)

KEY_SEPARATOR = "|"


def _canonical(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def identity_key(record: Mapping[str, object]) -> str:
    """Return the identity key of ``record``.

    Missing or None fields contribute an empty string at their position,
    so the key always has ``len(IDENTITY_FIELDS)`` components.

    >>> identity_key({"date": "2024-01-01", "country_code": "US", "credential_id": "k1"})
    '|2024-01-01|||US||k1|||||||||'
    """
    return KEY_SEPARATOR.join(_canonical(record.get(name)) for name in IDENTITY_FIELDS)
