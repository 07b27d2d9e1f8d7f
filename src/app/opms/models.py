"""OPMS operational tables consumed and written by the sync engine.

Five SQLAlchemy models mirroring the OPMS catalog:
- VendorModel: Fabric suppliers
- VendorMappingModel: OPMS vendor -> NetSuite vendor mapping (read-only here)
- ProductModel: Product (pattern) with dimensions, compliance and descriptive fields
- ItemModel: Sellable item (pattern + colorway) identified by its item code
- ProductPriceModel: Product pricing and cost, the only field set NetSuite writes back

Multi-value descriptive fields (finishes, cleaning codes, origins, uses, colors)
are stored as ordered JSON lists. Content, abrasion and fire code sub-forms are
stored pre-rendered as text.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VendorModel(Base):
    """Fabric supplier."""

    __tablename__ = "opms_vendors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class VendorMappingModel(Base):
    """Maps an OPMS vendor to its NetSuite vendor record.

    Produced by the vendor matching workflow; the sync engine only reads it.
    A mapping is usable when active and both vendor names agree.
    """

    __tablename__ = "opms_netsuite_vendor_mapping"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    opms_vendor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("opms_vendors.id"), nullable=False, unique=True
    )
    opms_vendor_name: Mapped[str] = mapped_column(String(200), nullable=False)
    netsuite_vendor_id: Mapped[str] = mapped_column(String(50), nullable=False)
    netsuite_vendor_name: Mapped[str] = mapped_column(String(200), nullable=False)
    match_method: Mapped[str] = mapped_column(String(50), default="manual")
    confidence: Mapped[float] = mapped_column(Float, default=1.0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ProductModel(Base):
    """Product (pattern) shared by one or more items."""

    __tablename__ = "opms_products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    product_type: Mapped[str] = mapped_column(String(1), default="R", nullable=False)
    width: Mapped[Decimal | None] = mapped_column(Numeric(10, 3), nullable=True)
    vrepeat: Mapped[Decimal | None] = mapped_column(Numeric(10, 3), nullable=True)
    hrepeat: Mapped[Decimal | None] = mapped_column(Numeric(10, 3), nullable=True)
    vendor_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("opms_vendors.id"), nullable=True
    )
    vendor_product_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    prop_65: Mapped[str | None] = mapped_column(String(1), nullable=True)
    ab_2998_compliant: Mapped[str | None] = mapped_column(String(1), nullable=True)
    tariff_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    front_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    back_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    abrasion: Mapped[str | None] = mapped_column(Text, nullable=True)
    firecodes: Mapped[str | None] = mapped_column(Text, nullable=True)
    finishes: Mapped[list] = mapped_column(JSON, default=list)
    cleanings: Mapped[list] = mapped_column(JSON, default=list)
    origins: Mapped[list] = mapped_column(JSON, default=list)
    uses: Mapped[list] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
    updated_by: Mapped[int | None] = mapped_column(Integer, nullable=True)


class ItemModel(Base):
    """Sellable item (product + colorway), keyed remotely by its item code."""

    __tablename__ = "opms_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("opms_products.id"), nullable=False, index=True
    )
    code: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    vendor_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    vendor_color: Mapped[str | None] = mapped_column(String(200), nullable=True)
    colors: Mapped[list] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
    updated_by: Mapped[int | None] = mapped_column(Integer, nullable=True)


class ProductPriceModel(Base):
    """Customer pricing and vendor cost for a product."""

    __tablename__ = "opms_product_prices"

    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("opms_products.id"), primary_key=True
    )
    p_res_cut: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    p_hosp_roll: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    cost_cut: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    cost_roll: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
    updated_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
