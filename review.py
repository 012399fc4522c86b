"""
Review cursor: walk the operator through each product draft, one at a time.

States are Reviewing(i) for i in [0, N) and Done. Save and Skip commit the
current draft and advance (or finish after the last one); JumpTo moves
without committing. A failed save never moves the cursor.

Also owns the edits made during review (fields, assignment, category,
cover, moving photos between drafts) and the listing-store payload.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import taxonomy
from config import DEFAULT_SCHEDULE_TIME, DEFAULT_TIMEZONE
from errors import CursorError, DraftIncomplete, PersistError, ServiceError
from models import DraftStatus, ImageVariants, ItemType, ListingFields, ProductDraft, normalize_item_type

logger = logging.getLogger(__name__)

PersistFn = Callable[[dict[str, Any]], Awaitable[dict]]


@dataclass(frozen=True)
class Reviewing:
    index: int


@dataclass(frozen=True)
class Done:
    pass


CursorState = Union[Reviewing, Done]


# =====================================================================
# Listing-store payload
# =====================================================================


def normalize_schedule(date_str: str, time_str: str, tz_name: str = DEFAULT_TIMEZONE) -> str:
    """Operator-local date + time -> UTC ISO-8601 with millisecond precision and a Z suffix."""
    try:
        local = datetime.strptime(f"{date_str.strip()} {time_str.strip() or DEFAULT_SCHEDULE_TIME}", "%Y-%m-%d %H:%M")
    except ValueError as e:
        raise DraftIncomplete(f"Invalid schedule '{date_str} {time_str}'") from e
    try:
        zone = ZoneInfo(tz_name)
    except ZoneInfoNotFoundError as e:
        raise DraftIncomplete(f"Unknown time zone '{tz_name}'") from e
    utc = local.replace(tzinfo=zone).astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _image_record(draft: ProductDraft, position: int, image: ImageVariants) -> dict[str, Any]:
    record = image.model_dump(mode="json", by_alias=True, exclude_none=True)
    record["id"] = image.id or f"{draft.group_id}-{position}"
    return record


def build_listing_payload(draft: ProductDraft, tz_name: str = DEFAULT_TIMEZONE) -> dict[str, Any]:
    """Request body for the listing store. Primary image is derived from position 0."""
    if not draft.images:
        raise DraftIncomplete("Draft has no photos")

    images = [_image_record(draft, pos, img) for pos, img in enumerate(draft.images)]
    cover = draft.images[0]

    form_data = draft.form.model_dump(mode="json", by_alias=True)
    form_data["marketplaceCategory"] = taxonomy.marketplace_category(draft.form.item_type)
    form_data["images"] = [{**record, "order": pos, "isPrimary": pos == 0} for pos, record in enumerate(images)]
    form_data["primaryImageUrl"] = cover.card_url or cover.url

    return {
        "targetUserId": draft.target_user_id.strip(),
        "scheduledFor": normalize_schedule(draft.scheduled_date, draft.scheduled_time, tz_name),
        "formData": form_data,
        "images": images,
    }


# =====================================================================
# Cursor
# =====================================================================


class ReviewCursor:
    def __init__(
        self,
        drafts: list[ProductDraft],
        persist: PersistFn,
        tz_name: str = DEFAULT_TIMEZONE,
        on_done: Callable[[], None] | None = None,
    ):
        self.drafts = drafts
        self._persist = persist
        self._tz_name = tz_name
        self._on_done = on_done
        self._saving = False
        self.state: CursorState = Reviewing(0) if drafts else Done()

    @property
    def done(self) -> bool:
        return isinstance(self.state, Done)

    @property
    def index(self) -> int:
        if isinstance(self.state, Done):
            raise CursorError("Review is finished")
        return self.state.index

    @property
    def current(self) -> ProductDraft:
        return self.drafts[self.index]

    def _draft(self, i: int) -> ProductDraft:
        if self.done:
            raise CursorError("Review is finished")
        if not 0 <= i < len(self.drafts):
            raise CursorError(f"No draft at index {i} (have {len(self.drafts)})")
        return self.drafts[i]

    def _require_current(self, i: int) -> ProductDraft:
        draft = self._draft(i)
        if i != self.index:
            raise CursorError(f"Draft {i} is not under review (cursor at {self.index})")
        if draft.status != DraftStatus.PENDING:
            raise CursorError(f"Draft {i} is already {draft.status.value}")
        return draft

    def _advance(self, i: int) -> CursorState:
        if i + 1 < len(self.drafts):
            self.state = Reviewing(i + 1)
            return self.state

        self.state = Done()
        left = sum(1 for d in self.drafts if d.status == DraftStatus.PENDING)
        if left:
            logger.warning(f"  Review finished with {left} drafts never saved or skipped")
        logger.info("Review complete")
        if self._on_done:
            self._on_done()
        return self.state

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def save(self, i: int) -> CursorState:
        """Persist draft i and advance. Raises DraftIncomplete / PersistError without moving."""
        draft = self._require_current(i)
        if self._saving:
            raise CursorError("A save is already in progress")
        if not draft.target_user_id.strip():
            raise DraftIncomplete("Please select a user for this product")
        if not draft.scheduled_date.strip():
            raise DraftIncomplete("Please select a date for this product")

        payload = build_listing_payload(draft, self._tz_name)

        self._saving = True
        try:
            listing = await self._persist(payload)
        except ServiceError as e:
            draft.last_error = e.message
            logger.error(f"  Failed to save product {i + 1}: {e}")
            raise PersistError(e.message) from e
        finally:
            self._saving = False

        draft.status = DraftStatus.PERSISTED
        draft.listing_id = listing.get("id")
        draft.last_error = None
        logger.info(f"  Saved product {i + 1}/{len(self.drafts)} for user {payload['targetUserId']}")
        return self._advance(i)

    def skip(self, i: int) -> CursorState:
        draft = self._require_current(i)
        if self._saving:
            raise CursorError("A save is already in progress")
        draft.status = DraftStatus.DISCARDED
        logger.info(f"  Skipped product {i + 1}/{len(self.drafts)}")
        return self._advance(i)

    def jump_to(self, j: int) -> CursorState:
        """Navigate without committing anything."""
        self._draft(j)
        if self._saving:
            raise CursorError("A save is already in progress")
        self.state = Reviewing(j)
        return self.state

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def update_fields(self, i: int, **changes: Any) -> ListingFields:
        """Apply all changes or none: the whole set is validated before the form is touched."""
        form = self._draft(i).form
        unknown = set(changes) - set(ListingFields.model_fields)
        if unknown:
            raise ValueError(f"Unknown listing fields: {sorted(unknown)}")
        candidate = ListingFields.model_validate({**form.model_dump(), **changes})
        for name in changes:
            setattr(form, name, getattr(candidate, name))
        return form

    def assign(
        self,
        i: int,
        target_user_id: str | None = None,
        scheduled_date: str | None = None,
        scheduled_time: str | None = None,
    ) -> ProductDraft:
        draft = self._draft(i)
        if target_user_id is not None:
            draft.target_user_id = target_user_id
        if scheduled_date is not None:
            draft.scheduled_date = scheduled_date
        if scheduled_time is not None:
            draft.scheduled_time = scheduled_time
        return draft

    def switch_category(self, i: int, item_type: ItemType | str) -> ListingFields:
        """Change the active category only; other categories' values stay on the form."""
        form = self._draft(i).form
        resolved = normalize_item_type(item_type)
        if resolved is None:
            raise ValueError(f"Unknown item type '{item_type}'")
        form.item_type = resolved
        return form

    def set_cover(self, i: int, j: int) -> list[ImageVariants]:
        """Move image j to position 0; the others keep their relative order."""
        draft = self._draft(i)
        if not 0 <= j < len(draft.images):
            raise CursorError(f"Draft {i} has no image {j}")
        images = list(draft.images)
        images.insert(0, images.pop(j))
        draft.images = images
        return images

    def move_photo(self, from_i: int, image_index: int, to_i: int) -> None:
        """Move one image to the end of another draft."""
        if from_i == to_i:
            return
        source = self._draft(from_i)
        target = self._draft(to_i)
        if not 0 <= image_index < len(source.images):
            raise CursorError(f"Draft {from_i} has no image {image_index}")
        images = list(source.images)
        moved = images.pop(image_index)
        source.images = images
        target.images = [*target.images, moved]

    def split_photo(self, from_i: int, image_index: int) -> int:
        """Move one image into a new, empty draft appended at the end. Returns its index."""
        source = self._draft(from_i)
        if not 0 <= image_index < len(source.images):
            raise CursorError(f"Draft {from_i} has no image {image_index}")
        images = list(source.images)
        moved = images.pop(image_index)
        source.images = images

        n = len(self.drafts) + 1
        self.drafts.append(
            ProductDraft(
                group_id=f"split-{n}",
                suggested_name=f"Product {n}",
                images=[moved],
                form=ListingFields(),
            )
        )
        return len(self.drafts) - 1

    def remove_empty_drafts(self) -> int:
        """Drop drafts left without images. Returns how many were removed."""
        if self.done:
            raise CursorError("Review is finished")
        current = self.drafts[self.index]
        kept = [d for d in self.drafts if d.images]
        removed = len(self.drafts) - len(kept)
        if not removed:
            return 0

        position = next((k for k, d in enumerate(kept) if d is current), None)
        old_index = self.index
        self.drafts[:] = kept
        if not kept:
            self.state = Done()
            if self._on_done:
                self._on_done()
        elif position is not None:
            self.state = Reviewing(position)
        else:
            self.state = Reviewing(min(old_index, len(kept) - 1))
        return removed
