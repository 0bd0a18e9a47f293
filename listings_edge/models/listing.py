"""Listing record layout — image slots and media list items.

Listing records themselves stay plain dicts: upstream owns their shape and
everything except the id field and the image slots is passed through.
"""

from typing import Any

from pydantic import BaseModel

from listings_edge.errors import InvalidInput

MAIN_SLOT = "photo1"
PHOTO_SLOTS = [f"photo{i}" for i in range(1, 10)]
IMAGE_SLOTS = PHOTO_SLOTS + ["floorplan", "epc"]

# Media list order hints that are not sequential photos
FLOORPLAN_HINTS = {"floorplan", "fp"}
EPC_HINTS = {"epc"}


def slot_field(slot: str) -> str:
    """Record field holding the base64 blob for a slot (photo3 → photo3binary)."""
    return f"{slot}binary"


def photo_slot(index: int) -> str:
    if not 1 <= index <= len(PHOTO_SLOTS):
        raise InvalidInput(f"Photo index must be between 1 and {len(PHOTO_SLOTS)}")
    return f"photo{index}"


class MediaItem(BaseModel):
    """One entry of the per-listing media list."""
    filename: str = ""
    base64data: str = ""
    order_hint: str = ""
    slot: str | None = None   # None for photos beyond the last slot


def _photo_sort_key(item: tuple[int, dict[str, Any]]) -> tuple[int, int, int]:
    position, raw = item
    hint = str(raw.get("imgorder", "")).strip()
    if hint.isdigit():
        return (0, int(hint), position)
    return (1, 0, position)


def classify_media(raw_items: list[dict[str, Any]]) -> list[MediaItem]:
    """Map upstream media entries onto image slots using their order hint."""
    items: list[MediaItem] = []
    photos: list[tuple[int, dict[str, Any]]] = []

    for position, raw in enumerate(raw_items):
        hint = str(raw.get("imgorder", "")).strip().lower()
        if hint in FLOORPLAN_HINTS or hint in EPC_HINTS:
            items.append(MediaItem(
                filename=str(raw.get("filename", "")),
                base64data=str(raw.get("base64data", "")),
                order_hint=hint,
                slot="floorplan" if hint in FLOORPLAN_HINTS else "epc",
            ))
        else:
            photos.append((position, raw))

    for index, (_, raw) in enumerate(sorted(photos, key=_photo_sort_key), start=1):
        items.append(MediaItem(
            filename=str(raw.get("filename", "")),
            base64data=str(raw.get("base64data", "")),
            order_hint=str(raw.get("imgorder", "")),
            slot=f"photo{index}" if index <= len(PHOTO_SLOTS) else None,
        ))

    return items
