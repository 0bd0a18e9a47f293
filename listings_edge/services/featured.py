"""Featured set manager — curated listing ids with min/max bounds.

Source of truth is `featured:ids`; `featured:ids:cache` is a longer-lived
read cache dropped on every mutation. After each mutation the cached listings
snapshot gets its featured flags patched in place, or is invalidated when
there is nothing to patch.

When a removal leaves fewer than `min_featured` ids, a backfill job is armed.
Executing it re-checks the count first, then tops the set up with randomly
chosen non-featured listings.
"""

import asyncio
import logging
import random
from typing import Any

from listings_edge.errors import CapacityExceeded, InvalidInput, StoreError
from listings_edge.models.featured import BackfillOutcome, FeaturedLimits, ToggleResult
from listings_edge.services.backfill import BackfillScheduler
from listings_edge.services.listings_cache import ListingsCache
from listings_edge.services.store import KeyValueStore

logger = logging.getLogger(__name__)

IDS_KEY = "featured:ids"
IDS_CACHE_KEY = "featured:ids:cache"


class FeaturedSetManager:
    """Owns the featured id list and drives its backfill."""

    def __init__(
        self,
        kv: KeyValueStore,
        listings: ListingsCache,
        scheduler: BackfillScheduler,
        min_featured: int = 7,
        max_featured: int = 10,
        cache_ttl: int = 3600,
        rng: random.Random | None = None,
    ):
        self.kv = kv
        self.listings = listings
        self.scheduler = scheduler
        self.min_featured = min_featured
        self.max_featured = max_featured
        self.cache_ttl = cache_ttl
        self._rng = rng or random.Random()
        self._backfill_lock = asyncio.Lock()

    def limits(self, current: int) -> FeaturedLimits:
        return FeaturedLimits(min=self.min_featured, max=self.max_featured, current=current)

    # ═══════════════ READS ═══════════════

    async def get_ids(self) -> list[str]:
        """Featured ids, served from the read cache when possible."""
        cached = await self.kv.get(IDS_CACHE_KEY)
        if isinstance(cached, list):
            return [str(i) for i in cached]

        ids = await self._load_source()
        try:
            await self.kv.put(IDS_CACHE_KEY, ids, ttl=self.cache_ttl)
        except StoreError as e:
            logger.warning("Featured read-cache write failed | %s", e)
        return ids

    async def get_featured_listings(self) -> list[dict[str, Any]]:
        """Full listing records of the featured set."""
        featured = set(await self.get_ids())
        records = await self.listings.fetch_all()
        return [r for r in records if self.listings.listing_id(r) in featured]

    # ═══════════════ MUTATIONS ═══════════════

    async def toggle(self, listing_id: str) -> ToggleResult:
        """Remove `listing_id` if featured, add it otherwise."""
        listing_id = str(listing_id).strip()
        if not listing_id:
            raise InvalidInput("Property ID is required")

        ids = await self._load_source()
        if listing_id in ids:
            ids.remove(listing_id)
            action = "removed"
        else:
            if len(ids) >= self.max_featured:
                raise CapacityExceeded(self.max_featured)
            ids.append(listing_id)
            action = "added"

        await self._persist(ids)

        job = None
        if action == "removed" and len(ids) < self.min_featured:
            try:
                job = await self.scheduler.schedule(len(ids), self.min_featured)
            except StoreError as e:
                logger.error("Backfill scheduling failed | count=%d | %s", len(ids), e)

        logger.info("Featured %s | id=%s | count=%d", action, listing_id, len(ids))
        return ToggleResult(
            featured_ids=ids,
            action=action,
            auto_backfill_scheduled=job is not None,
            shortfall=job.shortfall if job else None,
            execute_at=job.execute_at if job else None,
            limits=self.limits(len(ids)),
        )

    async def add_many(self, new_ids: list[str]) -> list[str]:
        """Add several ids in one write, stopping at `max_featured`."""
        ids = await self._load_source()
        added = []
        for listing_id in (str(i) for i in new_ids):
            if len(ids) >= self.max_featured:
                break
            if listing_id and listing_id not in ids:
                ids.append(listing_id)
                added.append(listing_id)

        if added:
            await self._persist(ids)
        return added

    # ═══════════════ BACKFILL ═══════════════

    async def execute_due_backfill(self) -> BackfillOutcome:
        """Run the pending job if it is due.

        Executions are serialized within the process, so overlapping checks
        see the job (and the count) left by the previous one. On error the job
        stays stored so the next check retries it.
        """
        async with self._backfill_lock:
            return await self._execute_due_backfill()

    async def _execute_due_backfill(self) -> BackfillOutcome:
        status = await self.scheduler.status()
        if not status.pending:
            return BackfillOutcome(status="idle")
        if not status.is_ready:
            return BackfillOutcome(status="not_due", time_remaining=status.time_remaining)

        job = status.job
        ids = await self._load_source()
        needed = job.target_count - len(ids)

        if needed <= 0:
            await self.scheduler.delete()
            logger.info("Backfill satisfied | count=%d | target=%d", len(ids), job.target_count)
            return BackfillOutcome(status="satisfied", featured_count=len(ids))

        featured = set(ids)
        candidates = []
        for record in await self.listings.fetch_all():
            listing_id = self.listings.listing_id(record)
            if listing_id and listing_id not in featured and listing_id not in candidates:
                candidates.append(listing_id)

        # Fisher–Yates, then take the first `needed`
        self._rng.shuffle(candidates)
        added = await self.add_many(candidates[:needed])
        await self.scheduler.delete()

        partial = len(added) < needed
        logger.info(
            "Backfill executed | added=%d | needed=%d | candidates=%d | partial=%s",
            len(added), needed, len(candidates), partial,
        )
        return BackfillOutcome(
            status="executed",
            added=added,
            needed=needed,
            partial=partial,
            featured_count=len(ids) + len(added),
        )

    async def schedule_check(self) -> BackfillOutcome:
        """Periodic trigger: execute the job when due, log failures."""
        try:
            return await self.execute_due_backfill()
        except Exception as e:
            logger.error("Backfill failed — job kept for retry | %s: %s", type(e).__name__, str(e)[:200])
            return BackfillOutcome(status="failed")

    # ═══════════════ INTERNALS ═══════════════

    async def _load_source(self) -> list[str]:
        raw = await self.kv.get(IDS_KEY)
        if not isinstance(raw, list):
            return []
        ids: list[str] = []
        for item in raw:
            item = str(item)
            if item not in ids:
                ids.append(item)
        return ids

    async def _persist(self, ids: list[str]):
        """Write the source of truth, then bring derived caches in line."""
        await self.kv.put(IDS_KEY, ids)

        try:
            await self.kv.delete(IDS_CACHE_KEY)
        except StoreError as e:
            logger.error("Featured read-cache invalidation failed | %s", e)

        if not await self.listings.patch_featured_flag(ids):
            await self.listings.invalidate()
