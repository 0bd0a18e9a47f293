"""Image variants — resized / format-converted renditions of listing photos.

Variants:
  - thumbnail    300×300, q75, cached 24h
  - medium       800×800, q85, cached 12h
  - full         original size, q90, cached 6h
  - placeholder  tiny low-fidelity preview, cached 1 week

Format fallback is an ordered list of strategies, tried in sequence:
avif → webp → jpeg → original bytes. The first success wins and its depth in
the list becomes the `fallback` flag. Conversion problems never raise.
"""

import asyncio
import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass
from typing import Any

from PIL import Image, ImageOps

from listings_edge.errors import InvalidInput, NotFound, StoreError
from listings_edge.models.image import ImageVariant
from listings_edge.models.listing import photo_slot, slot_field
from listings_edge.services.listings_cache import ListingsCache
from listings_edge.services.store import KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "image-variant:"
DEFAULT_TTL = 3600
SAFE_CONTENT_TYPE = "application/octet-stream"

FORMATS = ("avif", "webp", "jpeg")
FALLBACK_CHAIN = ["avif", "webp", "jpeg"]
CONTENT_TYPES = {"avif": "image/avif", "webp": "image/webp", "jpeg": "image/jpeg"}
PIL_FORMATS = {"avif": "AVIF", "webp": "WEBP", "jpeg": "JPEG"}

# 1×1 transparent GIF
TRANSPARENT_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")
JPEG_MAGIC = b"\xff\xd8\xff"

_SAFARI_VERSION = re.compile(r"version/(\d+)\.(\d+)")


@dataclass(frozen=True)
class VariantSpec:
    width: int | None
    height: int | None
    quality: int
    ttl: int


VARIANTS: dict[str, VariantSpec] = {
    "thumbnail": VariantSpec(300, 300, 75, 24 * 3600),
    "medium": VariantSpec(800, 800, 85, 12 * 3600),
    "full": VariantSpec(None, None, 90, 6 * 3600),
    "placeholder": VariantSpec(32, 32, 30, 7 * 24 * 3600),
}


@dataclass
class ConversionAttempt:
    """Tagged result of one strategy in the fallback chain."""
    format: str
    ok: bool
    data: bytes = b""
    width: int | None = None
    height: int | None = None
    error: str = ""


def select_format(accept: str = "", user_agent: str = "") -> str:
    """Pick avif > webp > jpeg from the Accept header and user agent.

    Safari only gets AVIF from 16.1 on.
    """
    accept = accept or ""
    ua = (user_agent or "").lower()

    if "image/avif" in accept:
        if "safari" not in ua or "chrome" in ua:
            return "avif"
        match = _SAFARI_VERSION.search(ua)
        if match:
            major, minor = int(match.group(1)), int(match.group(2))
            if major > 16 or (major == 16 and minor >= 1):
                return "avif"

    if "image/webp" in accept:
        return "webp"

    return "jpeg"


def fit_dimensions(
    src_width: int, src_height: int, width: int | None = None, height: int | None = None,
) -> tuple[int, int]:
    """Target size preserving aspect ratio.

    One bound: derive the other side from the source ratio.
    Both bounds: shrink until the image fits inside the box. Never upscales.
    """
    if not width and not height:
        return src_width, src_height

    ratio = src_width / src_height

    if width and not height:
        return width, max(1, round(width / ratio))
    if height and not width:
        return max(1, round(height * ratio)), height

    if src_width <= width and src_height <= height:
        return src_width, src_height

    if width / height > ratio:
        # Source is taller than the box; height binds
        return max(1, round(height * ratio)), height
    return width, max(1, round(width / ratio))


def cache_key(listing_id: str, variant: str, fmt: str, slot_index: int = 1) -> str:
    """Variant cache key. `fmt` must already be resolved, never 'auto'."""
    if fmt not in FORMATS:
        raise ValueError(f"Cache keys need a concrete format, got {fmt!r}")
    return f"{KEY_PREFIX}{listing_id}:{variant}:{fmt}:{slot_index}"


def cache_ttl(variant: str) -> int:
    spec = VARIANTS.get(variant)
    return spec.ttl if spec else DEFAULT_TTL


def _open(source: bytes) -> Image.Image | None:
    try:
        image = Image.open(io.BytesIO(source))
        image.load()
        return ImageOps.exif_transpose(image)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        logger.warning("Image decode failed | bytes=%d | %s", len(source), str(e)[:100])
        return None


def _encode(image: Image.Image, target: str, size: tuple[int, int], quality: int) -> bytes:
    frame = image if image.size == size else image.resize(size, Image.Resampling.LANCZOS)
    if target == "jpeg":
        if frame.mode != "RGB":
            frame = frame.convert("RGB")
    elif frame.mode not in ("RGB", "RGBA"):
        frame = frame.convert("RGBA" if frame.mode in ("P", "LA", "PA") else "RGB")
    buffer = io.BytesIO()
    frame.save(buffer, format=PIL_FORMATS[target], quality=quality)
    return buffer.getvalue()


class ImageVariantEngine:
    """Derives and caches image variants for listing photos."""

    def __init__(self, kv: KeyValueStore | None = None, listings: ListingsCache | None = None):
        self.kv = kv
        self.listings = listings

    # ═══════════════ CONVERSION ═══════════════

    def process_variant(
        self,
        source: bytes,
        variant: str = "full",
        fmt: str = "jpeg",
        accept: str = "",
        user_agent: str = "",
    ) -> ImageVariant:
        """Produce one rendition of `source`. Only bad arguments raise."""
        spec = VARIANTS.get(variant)
        if spec is None:
            raise InvalidInput(f"Unknown variant: {variant}. Must be one of: {', '.join(VARIANTS)}")

        resolved = select_format(accept, user_agent) if fmt == "auto" else fmt
        if resolved not in FORMATS:
            raise InvalidInput(f"Unknown format: {fmt}")

        image = _open(source)

        if variant == "placeholder":
            return self._placeholder(source, image, resolved, spec)

        if image is not None and spec.width is None and resolved == "jpeg" and source[:3] == JPEG_MAGIC:
            # Full-size JPEG needs no re-encode
            return self._result(source, source, variant, "jpeg", resolved, spec, image.size, fallback=False)

        for depth, target in enumerate(FALLBACK_CHAIN[FALLBACK_CHAIN.index(resolved):]):
            attempt = self._convert(image, target, spec)
            if attempt.ok:
                if depth:
                    logger.info("Conversion fallback | requested=%s | delivered=%s", resolved, target)
                return self._result(
                    source, attempt.data, variant, target, resolved, spec,
                    (attempt.width, attempt.height), fallback=depth > 0,
                )
            logger.warning("Conversion failed | variant=%s | format=%s | %s", variant, target, attempt.error[:100])

        logger.warning("Conversion fallback | variant=%s | returning original bytes", variant)
        return ImageVariant(
            data=source,
            content_type=SAFE_CONTENT_TYPE,
            variant=variant,
            format="original",
            requested_format=resolved,
            original_size=len(source),
            compressed_size=len(source),
            compression_ratio=1.0,
            fallback=True,
            quality=spec.quality,
        )

    def _convert(self, image: Image.Image | None, target: str, spec: VariantSpec) -> ConversionAttempt:
        if image is None:
            return ConversionAttempt(target, ok=False, error="source is not a decodable image")
        try:
            size = fit_dimensions(image.width, image.height, spec.width, spec.height)
            data = _encode(image, target, size, spec.quality)
        except (OSError, ValueError, KeyError) as e:
            # KeyError: Pillow built without an encoder for this format
            return ConversionAttempt(target, ok=False, error=f"{type(e).__name__}: {e}")
        return ConversionAttempt(target, ok=True, data=data, width=size[0], height=size[1])

    def _placeholder(
        self, source: bytes, image: Image.Image | None, resolved: str, spec: VariantSpec,
    ) -> ImageVariant:
        attempt = self._convert(image, "jpeg", spec)
        if attempt.ok:
            return self._result(
                source, attempt.data, "placeholder", "jpeg", resolved, spec,
                (attempt.width, attempt.height), fallback=False,
            )
        return self._result(
            source, TRANSPARENT_PIXEL, "placeholder", "gif", resolved, spec, (1, 1),
            fallback=True, content_type="image/gif",
        )

    @staticmethod
    def _result(
        source: bytes,
        data: bytes,
        variant: str,
        delivered: str,
        requested: str,
        spec: VariantSpec,
        size: tuple[int | None, int | None],
        fallback: bool,
        content_type: str | None = None,
    ) -> ImageVariant:
        return ImageVariant(
            data=data,
            content_type=content_type or CONTENT_TYPES[delivered],
            variant=variant,
            format=delivered,
            requested_format=requested,
            original_size=len(source),
            compressed_size=len(data),
            compression_ratio=(len(data) / len(source)) if source else 1.0,
            fallback=fallback,
            quality=spec.quality,
            width=size[0],
            height=size[1],
        )

    # ═══════════════ CACHED DELIVERY ═══════════════

    async def get_variant(
        self,
        listing_id: str,
        variant: str = "medium",
        fmt: str = "auto",
        slot_index: int = 1,
        accept: str = "",
        user_agent: str = "",
    ) -> ImageVariant:
        """Cached variant of one listing photo. Raises NotFound for missing images."""
        if variant not in VARIANTS:
            raise InvalidInput(f"Unknown variant: {variant}. Must be one of: {', '.join(VARIANTS)}")
        slot = photo_slot(slot_index)
        resolved = select_format(accept, user_agent) if fmt == "auto" else fmt
        key = cache_key(str(listing_id), variant, resolved, slot_index)

        cached = await self._load(key)
        if cached is not None:
            logger.info("Variant HIT | key=%s", key)
            return cached

        blob = await self.listings.get_image(listing_id, slot)
        if not blob:
            raise NotFound(f"Image {slot_index} not found for property {listing_id}")

        try:
            source = base64.b64decode(blob)
        except (binascii.Error, ValueError):
            logger.warning("Invalid base64 image | id=%s | slot=%s", listing_id, slot)
            source = blob.encode("utf-8", errors="ignore")

        result = await asyncio.to_thread(self.process_variant, source, variant, resolved)
        result.cache_key = key

        try:
            await self.kv.put(key, self._dump(result), ttl=cache_ttl(variant))
        except StoreError as e:
            logger.warning("Variant cache write failed | key=%s | %s", key, e)

        logger.info(
            "Variant MISS | key=%s | %d→%d bytes | fallback=%s",
            key, result.original_size, result.compressed_size, result.fallback,
        )
        return result

    async def image_info(self, listing_id: str, base_url: str) -> dict[str, Any]:
        """URLs of every variant for each photo the listing has."""
        record = await self.listings.fetch_one(listing_id)
        base = base_url.rstrip("/")
        images: dict[str, Any] = {}

        for index in range(1, 10):
            if not record.get(slot_field(photo_slot(index))):
                continue
            prefix = f"{base}/api/images/{listing_id}"
            images[f"photo{index}"] = {
                name: f"{prefix}/{name}?photo={index}" for name in VARIANTS
            }
            images[f"photo{index}"]["auto"] = {
                name: f"{prefix}/{name}/auto?photo={index}" for name in ("thumbnail", "medium", "full")
            }

        return {"propref": str(listing_id), "images": images, "count": len(images)}

    async def _load(self, key: str) -> ImageVariant | None:
        payload = await self.kv.get(key)
        if not isinstance(payload, dict):
            return None
        try:
            data = base64.b64decode(payload.pop("data"))
            return ImageVariant(data=data, **{**payload, "cache_status": "HIT"})
        except (KeyError, binascii.Error, ValueError) as e:
            logger.warning("Variant cache entry unreadable | key=%s | %s", key, e)
            return None

    @staticmethod
    def _dump(result: ImageVariant) -> dict[str, Any]:
        payload = result.model_dump(exclude={"data", "cache_status"})
        payload["data"] = base64.b64encode(result.data).decode("ascii")
        return payload
