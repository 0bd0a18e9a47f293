"""Listings cache — split metadata/image caching in front of Rentman.

Layout in the key/value store:
  listings:metadata            {"stored_at", "records", "combined"}  (images stripped)
  listings:image:{id}:{slot}   base64 blob per image slot
  listings:record:{id}         single metadata record, longer TTL
  listings:media:{id}          {"stored_at", "items"} media list

The metadata envelope is fresh for ttl_metadata seconds but retained for
ttl_image seconds, so a 304 from upstream can still be answered from it.

Concurrent refreshes of the same resource share one asyncio.Task: at most one
upstream request per key is in flight and every waiter sees the same result
or the same exception.
"""

import asyncio
import copy
import logging
import time
from typing import Any, Awaitable, Callable

from listings_edge.errors import InconsistentState, NotFound, StoreError
from listings_edge.integrations.rentman import PROPERTIES_RESOURCE, RentmanClient
from listings_edge.models.listing import IMAGE_SLOTS, MAIN_SLOT, MediaItem, classify_media, slot_field
from listings_edge.services.store import KeyValueStore

logger = logging.getLogger(__name__)

METADATA_KEY = "listings:metadata"
IMAGE_PREFIX = "listings:image:"
RECORD_PREFIX = "listings:record:"
MEDIA_PREFIX = "listings:media:"

FEATURED_FIELD = "isFeatured"
SLOTS_FIELD = "_image_slots"
IMAGES_FIELD = "_images"

SLOT_FIELDS = {slot_field(slot) for slot in IMAGE_SLOTS}

FeaturedSource = Callable[[], Awaitable[list[str]]]


class ListingsCache:
    """Serves the listings snapshot with minimal upstream calls."""

    def __init__(
        self,
        kv: KeyValueStore,
        client: RentmanClient,
        id_field: str = "propref",
        ttl_metadata: int = 300,
        ttl_image: int = 3600,
        ttl_record: int = 900,
        clock: Callable[[], float] = time.time,
        featured_source: FeaturedSource | None = None,
    ):
        self.kv = kv
        self.client = client
        self.id_field = id_field
        self.ttl_metadata = ttl_metadata
        self.ttl_image = ttl_image
        self.ttl_record = ttl_record
        self.featured_source = featured_source
        self._clock = clock
        self._inflight: dict[str, asyncio.Task] = {}

    def listing_id(self, record: dict[str, Any]) -> str:
        return str(record.get(self.id_field, ""))

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    # ═══════════════ READS ═══════════════

    async def fetch_all(self) -> list[dict[str, Any]]:
        """Return every listing, from cache when fresh, otherwise from upstream."""
        envelope = await self._load_envelope(METADATA_KEY)
        if envelope is not None and self._is_fresh(envelope):
            logger.info("Listings HIT | records=%d", len(envelope["records"]))
            return await self._reconstruct_all(envelope)

        records = await self._deduplicate("listings", self._refresh_listings)
        return copy.deepcopy(records)

    async def fetch_one(self, listing_id: str) -> dict[str, Any]:
        """Return one listing: per-id entry → snapshot scan → full fetch."""
        listing_id = str(listing_id)

        cached = await self._safe_get(RECORD_PREFIX + listing_id)
        if cached is not None:
            logger.info("Listing HIT (record) | id=%s", listing_id)
            return await self._with_featured_flag(await self.reconstruct(cached))

        envelope = await self._load_envelope(METADATA_KEY)
        meta = self._find(envelope, listing_id)

        if meta is None:
            records = await self.fetch_all()
            envelope = await self._load_envelope(METADATA_KEY)
            meta = self._find(envelope, listing_id)
            if meta is None:
                # Caching failed entirely; answer from the fetched data
                for record in records:
                    if self.listing_id(record) == listing_id:
                        return await self._with_featured_flag(record)
                raise NotFound(f"Property {listing_id} not found")

        await self._safe_put(RECORD_PREFIX + listing_id, meta, self.ttl_record)
        return await self._with_featured_flag(await self.reconstruct(meta))

    async def get_image(self, listing_id: str, slot: str) -> str | None:
        """Base64 blob of one image slot, or None if the listing has no such image."""
        listing_id = str(listing_id)
        blob = await self._load_image(listing_id, slot)
        if blob:
            return blob
        record = await self.fetch_one(listing_id)
        return record.get(slot_field(slot)) or None

    async def fetch_media(self, listing_id: str) -> list[MediaItem]:
        """Media list of one listing, classified into image slots."""
        listing_id = str(listing_id)
        key = MEDIA_PREFIX + listing_id
        envelope = await self._load_envelope(key)
        if envelope is not None and self._is_fresh(envelope):
            return [MediaItem(**item) for item in envelope["items"]]

        items = await self._deduplicate(f"media:{listing_id}", lambda: self._refresh_media(listing_id))
        return [item.model_copy() for item in items]

    async def warm(self):
        """Populate the cache ahead of the first request."""
        records = await self.fetch_all()
        logger.info("Listings cache warmed | records=%d", len(records))

    # ═══════════════ WRITES ═══════════════

    async def store(self, records: list[dict[str, Any]]):
        """Split records into metadata + per-slot image entries and cache them.

        If any split write fails, everything goes into one combined entry under
        the metadata key instead. Raises StoreError only if that fails too.
        """
        stored_at = self._clock()
        metadata: list[dict[str, Any]] = []
        image_writes: list[tuple[str, str]] = []

        for record in records:
            meta, images = self._split(record)
            listing_id = self.listing_id(record)
            for slot, blob in images.items():
                image_writes.append((self._image_key(listing_id, slot), blob))
            metadata.append(meta)

        try:
            results = await asyncio.gather(
                *(self.kv.put(key, blob, ttl=self.ttl_image) for key, blob in image_writes),
                return_exceptions=True,
            )
            failures = [r for r in results if isinstance(r, BaseException)]
            for failure in failures:
                if not isinstance(failure, StoreError):
                    raise failure
            if failures:
                raise failures[0]

            await self.kv.put(
                METADATA_KEY,
                {"stored_at": stored_at, "records": metadata, "combined": False},
                ttl=self.ttl_image,
            )
            logger.info("Cache SET (split) | records=%d | images=%d", len(metadata), len(image_writes))
        except StoreError as e:
            logger.warning("Cache write degraded | split write failed, using combined write | %s", e)
            combined = []
            for record, meta in zip(records, metadata):
                full = dict(record)
                full[SLOTS_FIELD] = meta[SLOTS_FIELD]
                combined.append(full)
            await self.kv.put(
                METADATA_KEY,
                {"stored_at": stored_at, "records": combined, "combined": True},
                ttl=self.ttl_image,
            )
            logger.info("Cache SET (combined) | records=%d", len(combined))

    async def patch_featured_flag(self, featured_ids) -> bool:
        """Rewrite the cached featured flags in place. False if nothing is cached."""
        try:
            stored = await self.kv.get_with_metadata(METADATA_KEY)
        except StoreError as e:
            logger.warning("Featured patch read failed | %s", e)
            return False
        if stored is None or not isinstance(stored.value, dict):
            return False

        ttl = None
        if stored.expiration is not None:
            ttl = int(stored.expiration - self._clock())
            if ttl <= 0:
                return False

        featured = {str(i) for i in featured_ids}
        envelope = stored.value
        changed = 0
        for record in envelope.get("records", []):
            flag = self.listing_id(record) in featured
            if record.get(FEATURED_FIELD) != flag:
                record[FEATURED_FIELD] = flag
                changed += 1

        try:
            await self.kv.put(METADATA_KEY, envelope, ttl=ttl)
        except StoreError as e:
            logger.warning("Featured patch write failed | %s", e)
            return False

        logger.info("Featured flags patched | changed=%d | featured=%d", changed, len(featured))
        return True

    async def invalidate(self) -> bool:
        """Drop the cached snapshot so the next read refetches.

        The listings ETag goes too: without a snapshot a 304 has nothing to
        answer from, so the next fetch must be unconditional.
        """
        try:
            await self.kv.delete(METADATA_KEY)
        except StoreError as e:
            logger.error("Listings invalidation failed | %s", e)
            return False
        await self.client.forget_etag(PROPERTIES_RESOURCE)
        logger.info("Listings cache invalidated")
        return True

    # ═══════════════ RECONSTRUCTION ═══════════════

    async def reconstruct(self, record: dict[str, Any]) -> dict[str, Any]:
        """Reattach image slots to a metadata record.

        The main photo is loaded first; the other slots are fetched together.
        Missing images never fail the record; they are reported in `_images`.
        """
        record = copy.deepcopy(record)
        slots = record.pop(SLOTS_FIELD, None)
        if slots is None:
            slots = [slot for slot in IMAGE_SLOTS if record.get(slot_field(slot))]

        listing_id = self.listing_id(record)
        pending = [slot for slot in slots if not record.get(slot_field(slot))]
        loaded = len(slots) - len(pending)
        missing: list[str] = []

        if MAIN_SLOT in pending:
            blob = await self._load_image(listing_id, MAIN_SLOT)
            if blob:
                record[slot_field(MAIN_SLOT)] = blob
                loaded += 1
            else:
                missing.append(MAIN_SLOT)

        secondary = [slot for slot in pending if slot != MAIN_SLOT]
        blobs = await asyncio.gather(*(self._load_image(listing_id, slot) for slot in secondary))
        for slot, blob in zip(secondary, blobs):
            if blob:
                record[slot_field(slot)] = blob
                loaded += 1
            else:
                missing.append(slot)

        if missing:
            logger.info("Reconstruct partial | id=%s | loaded=%d | missing=%s", listing_id, loaded, ",".join(missing))

        record[IMAGES_FIELD] = {"loaded": loaded, "missing": missing}
        return record

    # ═══════════════ INTERNALS ═══════════════

    async def _deduplicate(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Run `factory` once per key; concurrent callers await the same task."""
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._finish_inflight(key, t))
        else:
            logger.info("Dedup JOIN | key=%s", key)
        return await asyncio.shield(task)

    def _finish_inflight(self, key: str, task: asyncio.Task):
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _refresh_listings(self) -> list[dict[str, Any]]:
        result = await self.client.fetch_properties()

        if not result.is_fresh:
            envelope = await self._load_envelope(METADATA_KEY)
            if envelope is None:
                await self.client.forget_etag(PROPERTIES_RESOURCE)
                raise InconsistentState("Upstream reported no changes but no cached listings exist")
            envelope["stored_at"] = self._clock()
            await self._safe_put(METADATA_KEY, envelope, self.ttl_image)
            logger.info("Listings revalidated (304) | records=%d", len(envelope["records"]))
            return await self._reconstruct_all(envelope)

        records = result.data
        featured = await self._featured_ids()
        for record in records:
            record[FEATURED_FIELD] = self.listing_id(record) in featured

        try:
            await self.store(records)
        except StoreError as e:
            logger.error("Cache write degraded | combined write failed | %s", e)

        for record in records:
            present = [slot for slot in IMAGE_SLOTS if record.get(slot_field(slot))]
            record[IMAGES_FIELD] = {"loaded": len(present), "missing": []}
        logger.info("Listings refreshed | records=%d", len(records))
        return records

    async def _refresh_media(self, listing_id: str) -> list[MediaItem]:
        key = MEDIA_PREFIX + listing_id
        resource_key = f"media:{listing_id}"
        result = await self.client.fetch_media_list(listing_id)

        if not result.is_fresh:
            envelope = await self._load_envelope(key)
            if envelope is None:
                await self.client.forget_etag(resource_key)
                raise InconsistentState(f"Upstream reported no media changes for {listing_id} but nothing is cached")
            envelope["stored_at"] = self._clock()
            await self._safe_put(key, envelope, self.ttl_image)
            return [MediaItem(**item) for item in envelope["items"]]

        items = classify_media(result.data)
        await self._safe_put(
            key,
            {"stored_at": self._clock(), "items": [item.model_dump() for item in items]},
            self.ttl_image,
        )
        return items

    async def _reconstruct_all(self, envelope: dict[str, Any]) -> list[dict[str, Any]]:
        return list(await asyncio.gather(*(self.reconstruct(r) for r in envelope["records"])))

    async def _with_featured_flag(self, record: dict[str, Any]) -> dict[str, Any]:
        if self.featured_source is not None:
            record[FEATURED_FIELD] = self.listing_id(record) in await self._featured_ids()
        return record

    async def _featured_ids(self) -> set[str]:
        if self.featured_source is None:
            return set()
        return {str(i) for i in await self.featured_source()}

    def _split(self, record: dict[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
        meta = {k: v for k, v in record.items() if k not in SLOT_FIELDS and k != IMAGES_FIELD}
        images = {}
        for slot in IMAGE_SLOTS:
            blob = record.get(slot_field(slot))
            if blob:
                images[slot] = blob
        meta[SLOTS_FIELD] = list(images)
        return meta, images

    def _find(self, envelope: dict[str, Any] | None, listing_id: str) -> dict[str, Any] | None:
        if envelope is None:
            return None
        for record in envelope.get("records", []):
            if self.listing_id(record) == listing_id:
                return record
        return None

    def _is_fresh(self, envelope: dict[str, Any]) -> bool:
        return self._clock() - float(envelope.get("stored_at", 0)) < self.ttl_metadata

    @staticmethod
    def _image_key(listing_id: str, slot: str) -> str:
        return f"{IMAGE_PREFIX}{listing_id}:{slot}"

    async def _load_envelope(self, key: str) -> dict[str, Any] | None:
        envelope = await self._safe_get(key)
        if not isinstance(envelope, dict):
            return None
        return envelope

    async def _load_image(self, listing_id: str, slot: str) -> str | None:
        try:
            return await self.kv.get(self._image_key(listing_id, slot), "text")
        except StoreError as e:
            logger.warning("Image read failed | id=%s | slot=%s | %s", listing_id, slot, e)
            return None

    async def _safe_get(self, key: str) -> Any | None:
        try:
            return await self.kv.get(key)
        except StoreError as e:
            logger.warning("Cache read failed | key=%s | %s", key[:60], e)
            return None

    async def _safe_put(self, key: str, value: Any, ttl: int):
        try:
            await self.kv.put(key, value, ttl=ttl)
        except StoreError as e:
            logger.warning("Cache write failed | key=%s | %s", key[:60], e)
