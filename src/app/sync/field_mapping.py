"""Field tables for OPMS <-> NetSuite sync.

Defines:
- SYNC_RELEVANT_FIELDS: Per-table columns whose change triggers an export
- TABLE_ENTITY: Which entity a table's mutation is queued against
- PRICING_FIELD_MAP: NetSuite pricing field -> OPMS price column (reverse sync allow-list)
- NETSUITE_ITEM_DEFAULTS: Constant item settings sent on every upsert
- to_netsuite_payload(): Pure row -> payload mapping consumed by the transformer
- Formatting helpers shared by payload fields and description lines
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from src.app.sync.schemas import EntityType

# Shown in NetSuite for any blank OPMS value
EMPTY_VALUE = " - "

MEASUREMENT_PLACES = 3
PRICE_PLACES = 2


# ── Change Detection ────────────────────────────────────────────────────────

SYNC_RELEVANT_FIELDS: dict[str, frozenset[str]] = {
    "opms_items": frozenset({
        "product_id",
        "code",
        "archived",
        "vendor_code",
        "vendor_color",
        "colors",
    }),
    "opms_products": frozenset({
        "name",
        "archived",
        "width",
        "vrepeat",
        "hrepeat",
        "vendor_id",
        "vendor_product_name",
        "prop_65",
        "ab_2998_compliant",
        "tariff_code",
        "front_content",
        "back_content",
        "abrasion",
        "firecodes",
        "finishes",
        "cleanings",
        "origins",
        "uses",
    }),
    "opms_product_prices": frozenset({
        "p_res_cut",
        "p_hosp_roll",
        "cost_cut",
        "cost_roll",
    }),
}

TABLE_ENTITY: dict[str, EntityType] = {
    "opms_items": EntityType.ITEM,
    "opms_products": EntityType.PRODUCT,
    "opms_product_prices": EntityType.PRODUCT,
}


# ── Reverse Sync (NetSuite -> OPMS) ─────────────────────────────────────────

# Only these NetSuite fields may be written back into OPMS
PRICING_FIELD_MAP: dict[str, str] = {
    "price_1_": "p_res_cut",
    "price_1_5": "p_hosp_roll",
    "cost": "cost_cut",
    "custitem_f3_rollprice": "cost_roll",
}

# NetSuite checkbox that excludes an item from reverse sync entirely
REVERSE_SYNC_EXCLUSION_FIELD = "custitemf3_lisa_item"

# Marker stamped on every record written by the sync adapter
SYNC_SOURCE_FIELD = "custitem_opms_sync_source"
SYNC_SOURCE_VALUE = "OPMS_SYNC"
SYNC_ACTOR_FIELD = "custitem_opms_sync_actor"

MIN_PRICE = Decimal("0.01")
MAX_PRICE = Decimal("999999.99")


# ── Outbound (OPMS -> NetSuite) ─────────────────────────────────────────────

NETSUITE_ITEM_DEFAULTS: dict[str, Any] = {
    "usebins": True,
    "matchbilltoreceipt": True,
    "custitem_aln_1_auto_numbered": True,
    "unitstype": 2,  # Area
    "custitem_aln_2_number_format": 1,  # Bolt/Lot number
    "custitem_aln_3_initial_sequence": 1,
}

COMPLIANCE_VALUES: dict[str, str] = {
    "Y": "Yes",
    "N": "No",
}

# OPMS price column -> NetSuite field
OUTBOUND_PRICE_FIELDS: dict[str, str] = {
    opms: netsuite for netsuite, opms in PRICING_FIELD_MAP.items()
}


def to_decimal(value: Any) -> Decimal | None:
    """Coerce a numeric-ish value to Decimal, None when blank or unparsable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


def fixed(value: Any, places: int) -> str | None:
    """Render a number as a fixed-precision string ("54" -> "54.000")."""
    number = to_decimal(value)
    if number is None:
        return None
    quantum = Decimal(1).scaleb(-places)
    return str(number.quantize(quantum, rounding=ROUND_HALF_UP))


def plain_number(value: Any) -> str | None:
    """Render a number without trailing zeros ("54.000" -> "54")."""
    number = to_decimal(value)
    if number is None:
        return None
    normalized = number.normalize()
    if normalized == normalized.to_integral_value():
        return str(normalized.quantize(Decimal(1)))
    return format(normalized, "f")


def text_or_empty(value: Any) -> str:
    """Return the stripped text, or EMPTY_VALUE for None/blank."""
    if value is None:
        return EMPTY_VALUE
    text = str(value).strip()
    return text if text else EMPTY_VALUE


def join_values(values: Iterable[Any] | None) -> str | None:
    """Comma-join non-blank values in their given order."""
    parts = [str(v).strip() for v in values or [] if v is not None and str(v).strip()]
    return ", ".join(parts) if parts else None


def compliance_value(value: Any) -> str:
    """Map an OPMS Y/N/D compliance flag to NetSuite's list value."""
    return COMPLIANCE_VALUES.get(str(value).strip().upper() if value else "", EMPTY_VALUE)


def to_netsuite_payload(row: dict[str, Any]) -> dict[str, Any]:
    """Map a flattened item row to the NetSuite RESTlet payload.

    ``row`` is the transformer's flattened snapshot plus the composed
    ``purchase_description`` and ``sales_description``. Keys with a None
    value are dropped; blank text fields become EMPTY_VALUE.
    """
    colors = join_values(row.get("colors"))
    product_name = text_or_empty(row.get("product_name"))
    measurement = {
        key: fixed(row.get(key), MEASUREMENT_PLACES) for key in ("width", "vrepeat", "hrepeat")
    }

    payload: dict[str, Any] = {
        "itemId": text_or_empty(row.get("item_code")),
        "custitem_opms_item_id": row.get("item_id"),
        "custitem_opms_prod_id": row.get("product_id"),
        "displayname": f"{product_name}: {text_or_empty(colors)}",
        "custitem_opms_parent_product_name": product_name,
        "fabricWidth": measurement["width"] or EMPTY_VALUE,
        "custitem_vertical_repeat": measurement["vrepeat"] or EMPTY_VALUE,
        "custitem_horizontal_repeat": measurement["hrepeat"] or EMPTY_VALUE,
        "custitem_opms_is_repeat": bool(measurement["vrepeat"] or measurement["hrepeat"]),
        "vendor": row.get("netsuite_vendor_id"),
        "vendorcode": text_or_empty(row.get("vendor_code")),
        "vendorName": text_or_empty(row.get("vendor_name")),
        "custitem_opms_vendor_prod_name": text_or_empty(row.get("vendor_product_name")),
        "custitem_opms_vendor_color": text_or_empty(row.get("vendor_color")),
        "custitem_opms_item_colors": text_or_empty(colors),
        "finish": text_or_empty(join_values(row.get("finishes"))),
        "cleaning": text_or_empty(join_values(row.get("cleanings"))),
        "origin": text_or_empty(join_values(row.get("origins"))),
        "custitem_item_application": text_or_empty(join_values(row.get("uses"))),
        "custitem_prop65_compliance": compliance_value(row.get("prop_65")),
        "custitem_ab2998_compliance": compliance_value(row.get("ab_2998_compliant")),
        "custitem_tariff_harmonized_code": text_or_empty(row.get("tariff_code")),
        "custitem_opms_front_content": text_or_empty(row.get("front_content")),
        "custitem_opms_back_content": text_or_empty(row.get("back_content")),
        "custitem_opms_abrasion": text_or_empty(row.get("abrasion")),
        "custitem_opms_firecodes": text_or_empty(row.get("firecodes")),
        "purchasedescription": row.get("purchase_description"),
        "salesdescription": row.get("sales_description"),
    }

    prices = row.get("prices") or {}
    for opms_field, netsuite_field in OUTBOUND_PRICE_FIELDS.items():
        payload[netsuite_field] = fixed(prices.get(opms_field), PRICE_PLACES)

    payload.update(NETSUITE_ITEM_DEFAULTS)
    return {key: value for key, value in payload.items() if value is not None}
