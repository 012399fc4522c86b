import math
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel

from config import DEFAULT_SCHEDULE_TIME


class ItemType(str, Enum):
    BIKE = "bike"
    PART = "part"
    APPAREL = "apparel"


CONDITION_RATINGS = ("New", "Like New", "Excellent", "Good", "Fair", "Well Used")
DEFAULT_CONDITION = "Good"

# Canonical synonyms for item types returned by the analysis service.
# Maps raw value (lowercased) -> ItemType value.
_ITEM_TYPE_ALIASES = {
    "bike": "bike",
    "bikes": "bike",
    "bicycle": "bike",
    "bicycles": "bike",
    "ebike": "bike",
    "e-bike": "bike",
    "frameset": "bike",
    "part": "part",
    "parts": "part",
    "component": "part",
    "components": "part",
    "accessory": "part",
    "accessories": "part",
    "apparel": "apparel",
    "clothing": "apparel",
    "kit": "apparel",
    "jersey": "apparel",
    "shoes": "apparel",
}

# Maps raw condition (lowercased) -> canonical rating
_CONDITION_ALIASES = {
    "new": "New",
    "brand new": "New",
    "like new": "Like New",
    "like-new": "Like New",
    "mint": "Like New",
    "excellent": "Excellent",
    "very good": "Excellent",
    "good": "Good",
    "fair": "Fair",
    "average": "Fair",
    "well used": "Well Used",
    "well-used": "Well Used",
    "used": "Well Used",
    "worn": "Well Used",
    "poor": "Well Used",
}


def normalize_item_type(raw) -> ItemType | None:
    """Resolve a raw item type to an ItemType, or None if unrecognised."""
    if isinstance(raw, ItemType):
        return raw
    if not isinstance(raw, str):
        return None
    value = _ITEM_TYPE_ALIASES.get(raw.strip().lower())
    return ItemType(value) if value else None


def normalize_condition(raw) -> str:
    """Resolve a raw condition string to one of CONDITION_RATINGS (default "Good")."""
    if not isinstance(raw, str):
        return DEFAULT_CONDITION
    return _CONDITION_ALIASES.get(raw.strip().lower(), DEFAULT_CONDITION)


class ImageVariants(BaseModel):
    """One image as stored by the asset service, with its pre-built transforms."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str | None = None
    url: str
    card_url: str
    thumbnail_url: str
    gallery_url: str | None = None
    detail_url: str | None = None


class UploadedAsset(ImageVariants):
    """Produced one-to-one from a RawPhoto by the upload batcher."""

    id: str


class EnhancedImage(ImageVariants):
    """Variant set returned by the enhancement service for a cover image."""

    @model_validator(mode="before")
    @classmethod
    def fill_missing_url(cls, data):
        # Some enhancement responses only carry the card transform
        if isinstance(data, dict) and not data.get("url") and data.get("cardUrl"):
            data = {**data, "url": data["cardUrl"]}
        return data


class PhotoGroup(BaseModel):
    """A candidate product: the indexes of the uploaded assets that show it."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    photo_indexes: list[int]
    suggested_name: str = ""
    confidence: float = 1.0

    @field_validator("photo_indexes")
    @classmethod
    def dedupe_indexes(cls, v: list[int]) -> list[int]:
        seen: set[int] = set()
        ordered = []
        for idx in v:
            if idx not in seen:
                seen.add(idx)
                ordered.append(idx)
        return ordered

    @field_validator("confidence", mode="before")
    @classmethod
    def normalize_confidence(cls, v) -> float:
        if v is None:
            return 1.0
        if isinstance(v, bool) or not isinstance(v, (int, float, str)):
            raise ValueError(f"confidence must be a number, got {type(v).__name__}")
        v = float(v)
        if not math.isfinite(v):
            return 1.0
        if v > 1.0:
            v = v / 100.0  # clustering service reports 0-100
        return min(max(v, 0.0), 1.0)


class ListingFields(BaseModel):
    """Normalized listing fields for one product. Serialized in camelCase as formData."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
        protected_namespaces=(),
    )

    title: str = ""
    product_description: str = ""
    seller_notes: str = ""
    wear_notes: str = ""
    usage_estimate: str = ""
    brand: str = ""
    model: str = ""
    model_year: str = ""
    item_type: ItemType = ItemType.BIKE
    # Bike taxonomy
    bike_type: str = ""
    frame_size: str = ""
    frame_material: str = ""
    groupset: str = ""
    wheel_size: str = ""
    color_primary: str = ""
    color_secondary: str = ""
    suspension_type: str = ""
    # Part taxonomy
    part_type_detail: str = ""
    compatibility_notes: str = ""
    material: str = ""
    weight: str = ""
    # Apparel taxonomy
    size: str = ""
    gender_fit: str = ""
    apparel_material: str = ""
    # Condition and pricing
    condition_rating: str = DEFAULT_CONDITION
    condition_details: str = ""
    price: int = 0
    original_rrp: float = 0

    @field_validator("item_type", mode="before")
    @classmethod
    def coerce_item_type(cls, v) -> ItemType:
        return normalize_item_type(v) or ItemType.BIKE

    @field_validator("condition_rating", mode="before")
    @classmethod
    def coerce_condition(cls, v) -> str:
        return normalize_condition(v)


class DraftStatus(str, Enum):
    PENDING = "pending"
    PERSISTED = "persisted"
    DISCARDED = "discarded"


class ProductDraft(BaseModel):
    """Mutable per-group listing awaiting operator save or skip. images[0] is the cover."""

    group_id: str
    suggested_name: str = ""
    images: list[ImageVariants]
    form: ListingFields
    analysed: bool = False  # False when the analysis call failed and defaults were used
    target_user_id: str = ""
    scheduled_date: str = ""  # YYYY-MM-DD, operator local
    scheduled_time: str = DEFAULT_SCHEDULE_TIME  # HH:MM, operator local
    status: DraftStatus = DraftStatus.PENDING
    listing_id: str | None = None
    last_error: str | None = None

    @property
    def image_urls(self) -> list[str]:
        return [img.url for img in self.images]

    @property
    def cover(self) -> ImageVariants | None:
        return self.images[0] if self.images else None
