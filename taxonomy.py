"""Item-type taxonomy for cycling listings.

Three categories (bike / part / apparel), each owning a set of ListingFields
attributes. Supports:
  - detect_item_type(): normalized item type from an analysis payload
  - category_details(): category-specific attributes from nested or flat payloads
  - visible_fields() / latent_fields(): split a form by the active category
  - marketplace_category(): storefront category name for an item type
"""

from typing import Any

from models import ItemType, ListingFields, normalize_item_type

# =====================================================================
# Category field maps
# =====================================================================

# ListingFields attribute -> payload keys to try, in order
BIKE_FIELDS: dict[str, tuple[str, ...]] = {
    "bike_type": ("bike_type",),
    "frame_size": ("frame_size",),
    "frame_material": ("frame_material",),
    "groupset": ("groupset",),
    "wheel_size": ("wheel_size",),
    "suspension_type": ("suspension_type",),
    "color_primary": ("color_primary",),
    "color_secondary": ("color_secondary",),
}

PART_FIELDS: dict[str, tuple[str, ...]] = {
    "part_type_detail": ("part_type", "part_category", "category"),
    "compatibility_notes": ("compatibility", "compatibility_notes"),
    "material": ("material",),
    "weight": ("weight", "weight_grams"),
}

APPAREL_FIELDS: dict[str, tuple[str, ...]] = {
    "size": ("size",),
    "gender_fit": ("gender_fit",),
    "apparel_material": ("apparel_material", "material"),
}

CATEGORY_FIELDS: dict[ItemType, dict[str, tuple[str, ...]]] = {
    ItemType.BIKE: BIKE_FIELDS,
    ItemType.PART: PART_FIELDS,
    ItemType.APPAREL: APPAREL_FIELDS,
}

# Nested object the analysis service builds for each category
DETAIL_KEYS = {
    ItemType.BIKE: "bike_details",
    ItemType.PART: "part_details",
    ItemType.APPAREL: "apparel_details",
}

MARKETPLACE_CATEGORIES = {
    ItemType.BIKE: "Bicycles",
    ItemType.PART: "Parts",
    ItemType.APPAREL: "Apparel",
}


# =====================================================================
# Lookups
# =====================================================================


def detect_item_type(analysis: dict[str, Any]) -> ItemType | None:
    """Item type reported by the analysis, or inferred from which details block is present."""
    detected = normalize_item_type(analysis.get("item_type"))
    if detected:
        return detected
    for item_type, key in DETAIL_KEYS.items():
        if isinstance(analysis.get(key), dict) and analysis[key]:
            return item_type
    return None


def category_details(analysis: dict[str, Any], item_type: ItemType) -> dict[str, str]:
    """Pull the attributes for one category out of an analysis payload.

    Prefers the nested ``<category>_details`` object and falls back to the
    flat keys of the service's raw schema. Empty values are left out.
    """
    sources: list[dict] = []
    nested = analysis.get(DETAIL_KEYS[item_type])
    if isinstance(nested, dict):
        sources.append(nested)
    sources.append(analysis)

    values: dict[str, str] = {}
    for attr, keys in CATEGORY_FIELDS[item_type].items():
        for source in sources:
            val = _first_present(source, keys)
            if val:
                values[attr] = val
                break
    return values


def _first_present(source: dict, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        val = source.get(key)
        if val is not None and str(val).strip():
            return str(val).strip()
    return None


def fields_for(item_type: ItemType) -> tuple[str, ...]:
    return tuple(CATEGORY_FIELDS[item_type])


def visible_fields(form: ListingFields) -> dict[str, str]:
    """Category attributes shown for the form's active item type."""
    return {attr: getattr(form, attr) for attr in fields_for(form.item_type)}


def latent_fields(form: ListingFields) -> dict[str, str]:
    """Non-empty attributes that belong to other categories (kept, but hidden)."""
    latent: dict[str, str] = {}
    for item_type, attrs in CATEGORY_FIELDS.items():
        if item_type == form.item_type:
            continue
        for attr in attrs:
            val = getattr(form, attr)
            if val:
                latent[attr] = val
    return latent


def marketplace_category(item_type: ItemType) -> str:
    return MARKETPLACE_CATEGORIES.get(item_type, MARKETPLACE_CATEGORIES[ItemType.BIKE])
