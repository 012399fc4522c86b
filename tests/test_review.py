import pytest

import taxonomy
from errors import CursorError, DraftIncomplete, PersistError, ServiceError
from models import DraftStatus, ItemType, ListingFields, ProductDraft
from review import Done, ReviewCursor, Reviewing, build_listing_payload, normalize_schedule

from conftest import asset


def _drafts(n: int, photos_each: int = 3) -> list[ProductDraft]:
    return [
        ProductDraft(
            group_id=f"group-{d}",
            suggested_name=f"Product {d + 1}",
            images=[asset(d * 10 + k) for k in range(photos_each)],
            form=ListingFields(title=f"Bike {d + 1}", brand="Trek", frame_size="56cm"),
        )
        for d in range(n)
    ]


def _assigned(cursor: ReviewCursor, i: int) -> None:
    cursor.assign(i, target_user_id="user-42", scheduled_date="2026-11-02", scheduled_time="09:30")


class Store:
    def __init__(self, error: ServiceError | None = None):
        self.error = error
        self.payloads: list[dict] = []

    async def __call__(self, payload: dict) -> dict:
        if self.error:
            raise self.error
        self.payloads.append(payload)
        return {"id": f"listing-{len(self.payloads)}"}


# ---------------------------------------------------------------------------
# Scheduling and payload
# ---------------------------------------------------------------------------


def test_schedule_is_utc_with_millis():
    # Sydney is UTC+11 in November (daylight saving)
    assert normalize_schedule("2026-11-02", "09:30", "Australia/Sydney") == "2026-11-01T22:30:00.000Z"
    # and UTC+10 in July
    assert normalize_schedule("2026-07-01", "", "Australia/Sydney") == "2026-06-30T23:00:00.000Z"


def test_bad_schedule_is_incomplete():
    with pytest.raises(DraftIncomplete):
        normalize_schedule("02/11/2026", "09:00")


def test_payload_marks_only_cover_primary():
    draft = _drafts(1)[0]
    draft.target_user_id = "user-42"
    draft.scheduled_date = "2026-11-02"

    payload = build_listing_payload(draft)

    images = payload["formData"]["images"]
    assert [img["isPrimary"] for img in images] == [True, False, False]
    assert [img["order"] for img in images] == [0, 1, 2]
    assert payload["formData"]["primaryImageUrl"] == draft.images[0].card_url
    assert payload["formData"]["marketplaceCategory"] == "Bicycles"
    assert payload["formData"]["frameSize"] == "56cm"
    assert payload["images"][0]["cardUrl"] == draft.images[0].card_url
    assert payload["targetUserId"] == "user-42"
    assert payload["scheduledFor"].endswith("Z")


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


async def test_save_persists_and_advances():
    store = Store()
    cursor = ReviewCursor(_drafts(2), store)
    _assigned(cursor, 0)

    state = await cursor.save(0)

    assert state == Reviewing(1)
    assert cursor.drafts[0].status == DraftStatus.PERSISTED
    assert cursor.drafts[0].listing_id == "listing-1"
    assert store.payloads[0]["scheduledFor"] == "2026-11-01T22:30:00.000Z"


async def test_last_save_finishes_and_calls_done():
    finished = []
    store = Store()
    cursor = ReviewCursor(_drafts(2), store, on_done=lambda: finished.append(True))
    cursor.skip(0)
    _assigned(cursor, 1)

    state = await cursor.save(1)

    assert state == Done()
    assert cursor.done
    assert finished == [True]


def test_skip_last_is_done_not_past_the_end():
    cursor = ReviewCursor(_drafts(3), Store())
    cursor.jump_to(2)

    assert cursor.skip(2) == Done()
    with pytest.raises(CursorError):
        cursor.index


async def test_save_without_user_or_date_does_not_move():
    store = Store()
    cursor = ReviewCursor(_drafts(2), store)

    with pytest.raises(DraftIncomplete, match="user"):
        await cursor.save(0)
    cursor.assign(0, target_user_id="user-42")
    with pytest.raises(DraftIncomplete, match="date"):
        await cursor.save(0)

    assert cursor.state == Reviewing(0)
    assert store.payloads == []


async def test_persist_failure_keeps_cursor_and_records_error():
    cursor = ReviewCursor(_drafts(2), Store(ServiceError("listings", "User not found", 404)))
    _assigned(cursor, 0)

    with pytest.raises(PersistError, match="User not found"):
        await cursor.save(0)

    assert cursor.state == Reviewing(0)
    assert cursor.drafts[0].status == DraftStatus.PENDING
    assert cursor.drafts[0].last_error == "User not found"


async def test_only_the_current_draft_can_be_committed():
    cursor = ReviewCursor(_drafts(3), Store())
    _assigned(cursor, 2)

    with pytest.raises(CursorError):
        await cursor.save(2)
    with pytest.raises(CursorError):
        cursor.skip(1)


def test_jump_does_not_commit():
    cursor = ReviewCursor(_drafts(3), Store())

    assert cursor.jump_to(2) == Reviewing(2)
    assert all(d.status == DraftStatus.PENDING for d in cursor.drafts)
    with pytest.raises(CursorError):
        cursor.jump_to(3)


def test_empty_review_is_done():
    assert ReviewCursor([], Store()).done


# ---------------------------------------------------------------------------
# Edits
# ---------------------------------------------------------------------------


def test_set_cover_moves_photo_to_front():
    cursor = ReviewCursor(_drafts(1, photos_each=4), Store())
    chosen = cursor.drafts[0].images[2]

    cursor.set_cover(0, 2)

    draft = cursor.drafts[0]
    assert draft.image_urls[0] == chosen.url
    assert [img.id for img in draft.images] == ["asset-2", "asset-0", "asset-1", "asset-3"]
    draft.target_user_id, draft.scheduled_date = "user-42", "2026-11-02"
    flags = [img["isPrimary"] for img in build_listing_payload(draft)["formData"]["images"]]
    assert flags == [True, False, False, False]


def test_switch_category_keeps_latent_values():
    cursor = ReviewCursor(_drafts(1), Store())

    form = cursor.switch_category(0, "part")
    cursor.update_fields(0, part_type_detail="Crankset")

    assert form.item_type == ItemType.PART
    assert taxonomy.latent_fields(form) == {"frame_size": "56cm"}
    assert cursor.switch_category(0, ItemType.BIKE).frame_size == "56cm"
    with pytest.raises(ValueError):
        cursor.switch_category(0, "boat")


def test_update_fields_rejects_unknown_names():
    cursor = ReviewCursor(_drafts(1), Store())

    cursor.update_fields(0, title="Trek Domane SL5", price=2700)
    assert cursor.drafts[0].form.price == 2700
    with pytest.raises(ValueError):
        cursor.update_fields(0, colour="red")


def test_update_fields_is_all_or_nothing():
    cursor = ReviewCursor(_drafts(1), Store())

    with pytest.raises(ValueError):
        cursor.update_fields(0, title="Trek Madone", item_type=ItemType.PART, price="a lot")

    form = cursor.drafts[0].form
    assert form.title == "Bike 1"
    assert form.item_type == ItemType.BIKE
    assert form.price == 0


def test_move_and_split_photos():
    cursor = ReviewCursor(_drafts(2, photos_each=2), Store())
    moved = cursor.drafts[0].images[1]

    cursor.move_photo(0, 1, 1)
    assert len(cursor.drafts[0].images) == 1
    assert cursor.drafts[1].images[-1] == moved

    new_index = cursor.split_photo(1, 0)
    assert new_index == 2
    assert cursor.drafts[2].group_id == "split-3"
    assert len(cursor.drafts[2].images) == 1


def test_remove_empty_drafts_keeps_cursor_on_same_draft():
    cursor = ReviewCursor(_drafts(3, photos_each=1), Store())
    cursor.jump_to(2)
    current = cursor.current
    cursor.move_photo(0, 0, 1)

    assert cursor.remove_empty_drafts() == 1
    assert cursor.current is current
    assert cursor.state == Reviewing(1)
