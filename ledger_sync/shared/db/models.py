"""ORM mappings for the current (v4) store schema.

The tables themselves are created by ``migrations.py``; these classes only
describe their shape for queries and writes.
"""

from sqlalchemy import Column, Float, Integer, String, Text

from .base import Base


class Credential(Base):
    __tablename__ = "credentials"

    id = Column(String, primary_key=True)
    display_name = Column(String)
    fingerprint = Column(String, nullable=False)
    created_at = Column(Integer, nullable=False)


class SalesFact(Base):
    __tablename__ = "sales"

    id = Column(Text, primary_key=True)
    date = Column(Text, nullable=False)
    app_id = Column(Integer, nullable=False)
    app_name = Column(Text)
    package_id = Column(Integer, nullable=False)
    country_code = Column(Text, nullable=False)
    units_sold = Column(Integer, nullable=False)
    gross_revenue = Column(Float, nullable=False)
    net_revenue = Column(Float, nullable=False)
    currency = Column(Text, nullable=False)
    credential_id = Column(Text, nullable=False)

    line_item_type = Column(Text)
    partnerid = Column(Integer)
    primary_appid = Column(Integer)
    bundleid = Column(Integer)
    appid = Column(Integer)
    game_item_id = Column(Integer)
    platform = Column(Text)
    base_price = Column(Text)
    sale_price = Column(Text)
    avg_sale_price_usd = Column(Text)
    package_sale_type = Column(Text)

    gross_units_sold = Column(Integer)
    gross_units_returned = Column(Integer)
    gross_units_activated = Column(Integer)
    net_units_sold = Column(Integer)

    gross_sales_usd = Column(Float)
    gross_returns_usd = Column(Float)
    net_sales_usd = Column(Float)
    net_tax_usd = Column(Float)

    combined_discount_id = Column(Integer)
    total_discount_percentage = Column(Float)
    additional_revenue_share_tier = Column(Integer)
    key_request_id = Column(Integer)
    viw_grant_partnerid = Column(Integer)

    # Display-only lookups (v4)
    package_name = Column(Text)
    bundle_name = Column(Text)
    partner_name = Column(Text)
    country_name = Column(Text)
    region = Column(Text)
    game_item_description = Column(Text)
    game_item_category = Column(Text)
    key_request_notes = Column(Text)
    game_code_description = Column(Text)
    combined_discount_name = Column(Text)


class SyncTask(Base):
    __tablename__ = "sync_tasks"

    id = Column(Text, primary_key=True)
    credential_id = Column(Text, nullable=False)
    date = Column(Text, nullable=False)
    status = Column(Text, nullable=False)
    created_at = Column(Integer, nullable=False)
    completed_at = Column(Integer)


class SyncMeta(Base):
    __tablename__ = "sync_meta"

    key = Column(Text, primary_key=True)
    value = Column(Text, nullable=False)


SALES_COLUMNS: tuple[str, ...] = tuple(c.name for c in SalesFact.__table__.columns)
