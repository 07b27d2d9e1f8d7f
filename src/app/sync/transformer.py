"""Data Transformer -- OPMS item -> NetSuite payload with eligibility gating.

DataTransformer.transform() loads an item with its product, vendor, vendor
mapping and pricing, evaluates the eligibility rules in a fixed order, and
either returns a ready payload or the first failing SkipReason.

Purchase and sales descriptions are composed from ordered (condition,
renderer) rules over an ItemSnapshot; each rule contributes at most one line.

The output depends only on database state: no clock or random values.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from decimal import Decimal
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.opms.models import (
    ItemModel,
    ProductModel,
    ProductPriceModel,
    VendorMappingModel,
    VendorModel,
)
from src.app.sync.field_mapping import (
    EMPTY_VALUE,
    join_values,
    plain_number,
    text_or_empty,
    to_netsuite_payload,
)
from src.app.sync.schemas import EntityType, SkipReason, TransformResult

logger = structlog.get_logger(__name__)

ITEM_CODE_PATTERN = re.compile(r"^\d{4}-\d{4}$")

_ABRASION_NOISE = re.compile(
    r"\(\s*unknown\s*\)|\bunknown\b|\bdon'?t know\b|\bn/a\b", re.IGNORECASE
)


class ItemSnapshot(BaseModel):
    """Flattened view of an item and everything its payload depends on."""

    item_id: int
    item_code: str | None = None
    product_id: int
    product_name: str | None = None
    colors: list[str] = Field(default_factory=list)
    width: Decimal | None = None
    vrepeat: Decimal | None = None
    hrepeat: Decimal | None = None
    vendor_name: str | None = None
    netsuite_vendor_id: int | str | None = None
    vendor_code: str | None = None
    vendor_color: str | None = None
    vendor_product_name: str | None = None
    prop_65: str | None = None
    ab_2998_compliant: str | None = None
    tariff_code: str | None = None
    front_content: str | None = None
    back_content: str | None = None
    abrasion: str | None = None
    firecodes: str | None = None
    finishes: list[str] = Field(default_factory=list)
    cleanings: list[str] = Field(default_factory=list)
    origins: list[str] = Field(default_factory=list)
    uses: list[str] = Field(default_factory=list)
    prices: dict[str, Decimal | None] = Field(default_factory=dict)


def clean_abrasion(value: str | None) -> str | None:
    """Strip placeholder noise ("Unknown", "Don't know", "n/a") from abrasion text."""
    if not value:
        return None
    text = _ABRASION_NOISE.sub("", value)
    text = re.sub(r"\s*,(\s*,)+", ",", text)
    text = re.sub(r"\s+,", ",", text)
    text = re.sub(r"\s{2,}", " ", text).strip(" ,")
    return text or None


# ── Description Rules ───────────────────────────────────────────────────────

DescriptionRule = tuple[Callable[[ItemSnapshot], bool], Callable[[ItemSnapshot], str]]


def _always(_: ItemSnapshot) -> bool:
    return True


def _has_repeat(s: ItemSnapshot) -> bool:
    return bool(s.hrepeat) or bool(s.vrepeat)


def _repeat_line(s: ItemSnapshot) -> str:
    horizontal = plain_number(s.hrepeat) or "0"
    vertical = plain_number(s.vrepeat) or "0"
    return f"Repeat: H: {horizontal}'' V: {vertical}''"


# Lines shared by both descriptions, after the identity lines
_DETAIL_RULES: list[DescriptionRule] = [
    (lambda s: bool(s.width), lambda s: f"Width: {plain_number(s.width)}''"),
    (_has_repeat, _repeat_line),
    (lambda s: bool((s.front_content or "").strip()),
     lambda s: f"Content: {s.front_content.strip()}"),
    (lambda s: bool((s.back_content or "").strip()),
     lambda s: f"Back Content: {s.back_content.strip()}"),
    (lambda s: clean_abrasion(s.abrasion) is not None,
     lambda s: f"Abrasion: {clean_abrasion(s.abrasion)}"),
    (lambda s: bool((s.firecodes or "").strip()),
     lambda s: f"Fire Rating: {s.firecodes.strip()}"),
]

PURCHASE_DESCRIPTION_RULES: list[DescriptionRule] = [
    (_always, lambda s: f"Pattern: {text_or_empty(s.vendor_product_name)}"),
    (_always, lambda s: f"Color: {text_or_empty(s.vendor_color)}"),
    *_DETAIL_RULES,
]

SALES_DESCRIPTION_RULES: list[DescriptionRule] = [
    (lambda s: bool(s.item_code), lambda s: f"#{s.item_code}"),
    (_always, lambda s: f"Pattern: {text_or_empty(s.product_name)}"),
    (_always, lambda s: f"Color: {text_or_empty(join_values(s.colors))}"),
    *_DETAIL_RULES,
    (_always, lambda s: f"Country of Origin: {text_or_empty(join_values(s.origins))}"),
]


def render_description(snapshot: ItemSnapshot, rules: list[DescriptionRule]) -> str:
    """Apply rules in order, one line per rule whose condition holds."""
    return "\n".join(render(snapshot) for condition, render in rules if condition(snapshot))


def build_payload(snapshot: ItemSnapshot) -> dict[str, Any]:
    """Build the NetSuite payload for an eligible item snapshot."""
    row = snapshot.model_dump()
    row["purchase_description"] = render_description(snapshot, PURCHASE_DESCRIPTION_RULES)
    row["sales_description"] = render_description(snapshot, SALES_DESCRIPTION_RULES)
    return to_netsuite_payload(row)


def _netsuite_vendor_id(value: str) -> int | str:
    return int(value) if value.isdigit() else value


# ── Transformer ─────────────────────────────────────────────────────────────


class DataTransformer:
    """Turns an OPMS item into a NetSuite payload or a skip reason."""

    async def transform(
        self, session: AsyncSession, entity_type: EntityType, entity_id: int
    ) -> TransformResult:
        """Evaluate eligibility and build the payload for one item.

        Raises:
            ValueError: If entity_type is not ITEM. PRODUCT jobs fan out
                into ITEM jobs before reaching the transformer.
        """
        if entity_type != EntityType.ITEM:
            raise ValueError(f"Cannot transform entity type {entity_type.value}")

        def skip(reason: SkipReason, detail: str | None = None) -> TransformResult:
            logger.info(
                "sync.transform_skipped",
                item_id=entity_id,
                reason=reason.value,
                detail=detail,
            )
            return TransformResult(
                entity_type=entity_type,
                entity_id=entity_id,
                skip_reason=reason,
                skip_detail=detail,
            )

        item = await session.get(ItemModel, entity_id)
        if item is None:
            return skip(SkipReason.ENTITY_NOT_FOUND)
        product = await session.get(ProductModel, item.product_id)
        if product is None:
            return skip(SkipReason.ENTITY_NOT_FOUND, f"product {item.product_id} missing")

        if item.archived:
            return skip(SkipReason.ITEM_ARCHIVED)
        if product.archived:
            return skip(SkipReason.PRODUCT_ARCHIVED)

        code = (item.code or "").strip()
        if not code:
            return skip(SkipReason.MISSING_ITEM_CODE)
        if not ITEM_CODE_PATTERN.match(code):
            return skip(SkipReason.INVALID_ITEM_CODE, code)

        if not (product.name or "").strip():
            return skip(SkipReason.MISSING_PRODUCT_NAME)

        colors = [c.strip() for c in item.colors or [] if c and c.strip()]
        if not colors:
            return skip(SkipReason.NO_COLORS)

        if product.vendor_id is None:
            return skip(SkipReason.NO_VENDOR)
        vendor = await session.get(VendorModel, product.vendor_id)
        if vendor is None:
            return skip(SkipReason.NO_VENDOR, f"vendor {product.vendor_id} missing")
        if not vendor.active or vendor.archived:
            return skip(SkipReason.VENDOR_INACTIVE, vendor.name)

        stmt = select(VendorMappingModel).where(
            VendorMappingModel.opms_vendor_id == vendor.id,
            VendorMappingModel.is_active.is_(True),
        )
        mapping = (await session.execute(stmt)).scalar_one_or_none()
        if mapping is None:
            return skip(SkipReason.NO_VENDOR_MAPPING, vendor.name)
        if mapping.opms_vendor_name.strip() != vendor.name.strip():
            return skip(
                SkipReason.VENDOR_MAPPING_MISMATCH,
                f"{vendor.name!r} != {mapping.opms_vendor_name!r}",
            )

        price = await session.get(ProductPriceModel, product.id)
        prices = {}
        if price is not None:
            prices = {
                "p_res_cut": price.p_res_cut,
                "p_hosp_roll": price.p_hosp_roll,
                "cost_cut": price.cost_cut,
                "cost_roll": price.cost_roll,
            }

        snapshot = ItemSnapshot(
            item_id=item.id,
            item_code=code,
            product_id=product.id,
            product_name=product.name.strip(),
            colors=colors,
            width=product.width,
            vrepeat=product.vrepeat,
            hrepeat=product.hrepeat,
            vendor_name=mapping.netsuite_vendor_name or vendor.name,
            netsuite_vendor_id=_netsuite_vendor_id(mapping.netsuite_vendor_id),
            vendor_code=item.vendor_code,
            vendor_color=item.vendor_color,
            vendor_product_name=product.vendor_product_name,
            prop_65=product.prop_65,
            ab_2998_compliant=product.ab_2998_compliant,
            tariff_code=product.tariff_code,
            front_content=product.front_content,
            back_content=product.back_content,
            abrasion=product.abrasion,
            firecodes=product.firecodes,
            finishes=list(product.finishes or []),
            cleanings=list(product.cleanings or []),
            origins=list(product.origins or []),
            uses=list(product.uses or []),
            prices=prices,
        )
        return TransformResult(
            entity_type=entity_type,
            entity_id=entity_id,
            payload=build_payload(snapshot),
        )


__all__ = [
    "DataTransformer",
    "EMPTY_VALUE",
    "ItemSnapshot",
    "PURCHASE_DESCRIPTION_RULES",
    "SALES_DESCRIPTION_RULES",
    "build_payload",
    "clean_abrasion",
    "render_description",
]
