"""Service construction.

Everything is built from one Settings object and lives as long as the
process (created in the FastAPI lifespan, closed on shutdown). Tests build
their own container with a fake clock and the in-memory store.
"""

import random
import time
from dataclasses import dataclass
from typing import Callable

from listings_edge.config import Settings
from listings_edge.integrations.rentman import RentmanClient
from listings_edge.services.background import BackgroundTasks
from listings_edge.services.backfill import BackfillScheduler
from listings_edge.services.featured import FeaturedSetManager
from listings_edge.services.image_variants import ImageVariantEngine
from listings_edge.services.listings_cache import ListingsCache
from listings_edge.services.store import KeyValueStore


@dataclass
class Services:
    settings: Settings
    store: KeyValueStore
    client: RentmanClient
    listings: ListingsCache
    images: ImageVariantEngine
    scheduler: BackfillScheduler
    featured: FeaturedSetManager
    background: BackgroundTasks

    async def close(self):
        await self.background.cancel_all()
        await self.store.disconnect()


def build_services(
    settings: Settings,
    store: KeyValueStore | None = None,
    clock: Callable[[], float] = time.time,
    rng: random.Random | None = None,
) -> Services:
    """Wire every service. Pass `store` to reuse an existing (or fake) store."""
    store = store or KeyValueStore(
        redis_url=settings.redis_url,
        memory_budget_bytes=settings.store_memory_bytes,
        max_value_bytes=settings.max_value_bytes,
        clock=clock,
    )
    client = RentmanClient(
        store,
        token=settings.rentman_token,
        base_url=settings.rentman_api_base_url,
        timeout=settings.upstream_timeout_seconds,
        media_timeout=settings.media_timeout_seconds,
        etag_ttl=settings.ttl_etag,
    )
    listings = ListingsCache(
        store,
        client,
        id_field=settings.id_field,
        ttl_metadata=settings.ttl_metadata,
        ttl_image=settings.ttl_image,
        ttl_record=settings.ttl_record,
        clock=clock,
    )
    scheduler = BackfillScheduler(
        store,
        delay_seconds=settings.backfill_delay_seconds,
        buffer_seconds=settings.backfill_buffer_seconds,
        clock=clock,
    )
    featured = FeaturedSetManager(
        store,
        listings,
        scheduler,
        min_featured=settings.min_featured,
        max_featured=settings.max_featured,
        cache_ttl=settings.ttl_featured_cache,
        rng=rng,
    )
    # Listings read featured flags through the manager's read cache
    listings.featured_source = featured.get_ids

    return Services(
        settings=settings,
        store=store,
        client=client,
        listings=listings,
        images=ImageVariantEngine(store, listings),
        scheduler=scheduler,
        featured=featured,
        background=BackgroundTasks(),
    )
