"""Pydantic models shared by the services and the HTTP layer."""

from listings_edge.models.featured import (
    BackfillJob,
    BackfillOutcome,
    BackfillStatus,
    FeaturedLimits,
    ToggleResult,
)
from listings_edge.models.image import ImageVariant
from listings_edge.models.listing import IMAGE_SLOTS, MAIN_SLOT, MediaItem, slot_field

__all__ = [
    "BackfillJob",
    "BackfillOutcome",
    "BackfillStatus",
    "FeaturedLimits",
    "IMAGE_SLOTS",
    "ImageVariant",
    "MAIN_SLOT",
    "MediaItem",
    "ToggleResult",
    "slot_field",
]
