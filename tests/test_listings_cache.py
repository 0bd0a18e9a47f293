"""Tests for the listings cache — split storage, dedup, reconstruction, 304 handling."""

import asyncio
import random
import re

import httpx
import pytest

from conftest import FakeRentman, make_listing
from listings_edge.errors import InconsistentState, NotFound, StoreError, UpstreamUnavailable
from listings_edge.integrations.rentman import ETAG_PREFIX, PROPERTIES_RESOURCE, RentmanClient
from listings_edge.services.listings_cache import (
    FEATURED_FIELD,
    IMAGES_FIELD,
    METADATA_KEY,
    RECORD_PREFIX,
)
from listings_edge.services.registry import build_services
from listings_edge.services.store import KeyValueStore

PROPERTIES_URL = re.compile(r"https://rentman\.test/propertyadvertising\.php.*")


class FlakyStore(KeyValueStore):
    """Store whose writes fail for selected key prefixes."""

    def __init__(self, fail_prefixes: tuple[str, ...], **kwargs):
        super().__init__(**kwargs)
        self.fail_prefixes = fail_prefixes

    async def put(self, key, value, ttl=None):
        if key.startswith(self.fail_prefixes):
            raise StoreError(f"simulated write failure for {key}")
        await super().put(key, value, ttl)


@pytest.fixture
def listings(services):
    return services.listings


def _flaky_services(settings, clock, records, fail_prefixes):
    store = FlakyStore(fail_prefixes, clock=clock)
    svc = build_services(settings, store=store, clock=clock, rng=random.Random(1))
    svc.listings.client = FakeRentman(records)
    return svc


# ═══════════════ fetch_all ═══════════════


class TestFetchAll:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, listings, fake_rentman, sample_listings):
        first = await listings.fetch_all()
        second = await listings.fetch_all()

        assert fake_rentman.calls == 1
        assert len(first) == len(sample_listings)
        assert [r["propref"] for r in second] == [r["propref"] for r in sample_listings]
        assert second[0]["photo1binary"] == sample_listings[0]["photo1binary"]
        assert second[0]["photo2binary"] == sample_listings[0]["photo2binary"]

    @pytest.mark.asyncio
    async def test_refetch_after_metadata_ttl(self, listings, fake_rentman, clock):
        await listings.fetch_all()
        clock.advance(listings.ttl_metadata + 1)
        await listings.fetch_all()
        assert fake_rentman.calls == 2

    @pytest.mark.asyncio
    async def test_featured_flag_applied(self, services, listings):
        await services.store.put("featured:ids", ["P002"])
        records = await listings.fetch_all()
        flags = {r["propref"]: r[FEATURED_FIELD] for r in records}
        assert flags["P002"] is True
        assert flags["P001"] is False

    @pytest.mark.asyncio
    async def test_upstream_error_propagates(self, listings, fake_rentman):
        fake_rentman.error = UpstreamUnavailable("Rentman timeout after 10000ms")
        with pytest.raises(UpstreamUnavailable):
            await listings.fetch_all()

    @pytest.mark.asyncio
    async def test_callers_get_independent_copies(self, listings):
        first = await listings.fetch_all()
        first[0]["displayaddress"] = "mutated"
        second = await listings.fetch_all()
        assert second[0]["displayaddress"] != "mutated"


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self, listings, fake_rentman):
        results = await asyncio.gather(*(listings.fetch_all() for _ in range(10)))

        assert fake_rentman.calls == 1
        assert all(r == results[0] for r in results)
        assert listings.inflight_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_failure(self, listings, fake_rentman):
        fake_rentman.error = UpstreamUnavailable("Rentman API error: 502", status_code=502)
        results = await asyncio.gather(
            *(listings.fetch_all() for _ in range(5)), return_exceptions=True,
        )

        assert fake_rentman.calls == 1
        assert all(isinstance(r, UpstreamUnavailable) for r in results)
        assert all(r is results[0] for r in results)
        assert listings.inflight_count == 0

    @pytest.mark.asyncio
    async def test_new_fetch_after_completion(self, listings, fake_rentman, clock):
        await asyncio.gather(listings.fetch_all(), listings.fetch_all())
        clock.advance(listings.ttl_metadata + 1)
        await asyncio.gather(listings.fetch_all(), listings.fetch_all())
        assert fake_rentman.calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_fetch(self, listings, fake_rentman):
        fake_rentman.delay = 0.05
        first = asyncio.ensure_future(listings.fetch_all())
        second = asyncio.ensure_future(listings.fetch_all())
        await asyncio.sleep(0.01)
        first.cancel()

        records = await second
        assert len(records) == len(fake_rentman.records)
        assert fake_rentman.calls == 1


# ═══════════════ store / reconstruct ═══════════════


class TestSplitStorage:
    @pytest.mark.asyncio
    async def test_metadata_has_no_images(self, listings, store):
        await listings.store([make_listing("A1", photos=3, floorplan=True)])

        envelope = await store.get(METADATA_KEY)
        meta = envelope["records"][0]
        assert envelope["combined"] is False
        assert "photo1binary" not in meta
        assert "floorplanbinary" not in meta
        assert meta["_image_slots"] == ["photo1", "photo2", "photo3", "floorplan"]
        assert await store.get("listings:image:A1:photo1", "text")
        assert await store.get("listings:image:A1:floorplan", "text")

    @pytest.mark.asyncio
    async def test_image_ttl_longer_than_freshness(self, listings, store, clock):
        await listings.store([make_listing("A1")])
        clock.advance(listings.ttl_metadata + 1)
        assert await store.get("listings:image:A1:photo1", "text") is not None

    @pytest.mark.asyncio
    async def test_round_trip_restores_all_slots(self, listings, store):
        original = make_listing("A1", photos=9, floorplan=True, epc=True)
        await listings.store([original])

        envelope = await store.get(METADATA_KEY)
        rebuilt = await listings.reconstruct(envelope["records"][0])

        for field, value in original.items():
            assert rebuilt[field] == value
        assert rebuilt[IMAGES_FIELD] == {"loaded": 11, "missing": []}

    @pytest.mark.asyncio
    async def test_partial_image_loss(self, listings, store):
        await listings.store([make_listing("A1", photos=3)])
        await store.delete("listings:image:A1:photo2")

        envelope = await store.get(METADATA_KEY)
        rebuilt = await listings.reconstruct(envelope["records"][0])

        assert "photo2binary" not in rebuilt
        assert rebuilt["photo1binary"]
        assert rebuilt[IMAGES_FIELD] == {"loaded": 2, "missing": ["photo2"]}

    @pytest.mark.asyncio
    async def test_main_photo_missing_reported_first(self, listings, store):
        await listings.store([make_listing("A1", photos=3)])
        await store.delete("listings:image:A1:photo1")
        await store.delete("listings:image:A1:photo3")

        envelope = await store.get(METADATA_KEY)
        rebuilt = await listings.reconstruct(envelope["records"][0])
        assert rebuilt[IMAGES_FIELD]["missing"] == ["photo1", "photo3"]

    @pytest.mark.asyncio
    async def test_record_without_images(self, listings, store):
        await listings.store([make_listing("A1", photos=0)])
        envelope = await store.get(METADATA_KEY)
        rebuilt = await listings.reconstruct(envelope["records"][0])
        assert rebuilt[IMAGES_FIELD] == {"loaded": 0, "missing": []}

    @pytest.mark.asyncio
    async def test_combined_write_when_image_writes_fail(self, settings, clock):
        records = [make_listing("A1", photos=2)]
        svc = _flaky_services(settings, clock, records, ("listings:image:",))

        fetched = await svc.listings.fetch_all()
        envelope = await svc.store.get(METADATA_KEY)

        assert envelope["combined"] is True
        assert envelope["records"][0]["photo1binary"] == records[0]["photo1binary"]
        assert fetched[0]["photo2binary"] == records[0]["photo2binary"]

        cached = await svc.listings.fetch_all()
        assert svc.listings.client.calls == 1
        assert cached[0]["photo1binary"] == records[0]["photo1binary"]
        assert cached[0][IMAGES_FIELD] == {"loaded": 2, "missing": []}

    @pytest.mark.asyncio
    async def test_total_write_failure_still_returns_data(self, settings, clock):
        records = [make_listing("A1", photos=1)]
        svc = _flaky_services(settings, clock, records, ("listings:",))

        fetched = await svc.listings.fetch_all()
        assert fetched[0]["photo1binary"] == records[0]["photo1binary"]
        assert await svc.store.get(METADATA_KEY) is None


# ═══════════════ 304 handling ═══════════════


class TestNotModified:
    @pytest.mark.asyncio
    async def test_serves_retained_copy(self, listings, fake_rentman, clock, sample_listings):
        await listings.fetch_all()
        clock.advance(listings.ttl_metadata + 1)
        fake_rentman.not_modified = True

        records = await listings.fetch_all()

        assert fake_rentman.calls == 2
        assert [r["propref"] for r in records] == [r["propref"] for r in sample_listings]
        assert records[0]["photo1binary"] == sample_listings[0]["photo1binary"]

    @pytest.mark.asyncio
    async def test_revalidation_restamps_freshness(self, listings, fake_rentman, clock):
        await listings.fetch_all()
        clock.advance(listings.ttl_metadata + 1)
        fake_rentman.not_modified = True
        await listings.fetch_all()
        await listings.fetch_all()
        assert fake_rentman.calls == 2

    @pytest.mark.asyncio
    async def test_without_cached_copy_is_inconsistent(self, listings, fake_rentman):
        fake_rentman.not_modified = True
        with pytest.raises(InconsistentState):
            await listings.fetch_all()
        assert fake_rentman.forgotten == ["properties"]

    @pytest.mark.asyncio
    async def test_refetch_after_invalidate(self, listings, store, httpx_mock):
        records = [make_listing("P001", photos=1), make_listing("P002", photos=1)]

        def unchanged_upstream(request: httpx.Request) -> httpx.Response:
            if "If-None-Match" in request.headers:
                return httpx.Response(304)
            return httpx.Response(200, json=records, headers={"ETag": '"v1"'})

        httpx_mock.add_callback(unchanged_upstream, url=PROPERTIES_URL)
        httpx_mock.add_callback(unchanged_upstream, url=PROPERTIES_URL)
        listings.client = RentmanClient(store, token="t", base_url="https://rentman.test/")

        await listings.fetch_all()
        assert await store.get(ETAG_PREFIX + PROPERTIES_RESOURCE, "text") == '"v1"'

        await listings.invalidate()
        refetched = await listings.fetch_all()

        assert [r["propref"] for r in refetched] == ["P001", "P002"]
        assert "If-None-Match" not in httpx_mock.get_requests()[1].headers

    @pytest.mark.asyncio
    async def test_invalidate_forgets_listings_etag(self, listings, fake_rentman):
        await listings.fetch_all()
        await listings.invalidate()
        assert fake_rentman.forgotten == ["properties"]


# ═══════════════ fetch_one ═══════════════


class TestFetchOne:
    @pytest.mark.asyncio
    async def test_cold_cache_triggers_fetch_all(self, listings, fake_rentman, store):
        record = await listings.fetch_one("P003")
        assert record["propref"] == "P003"
        assert record["photo1binary"]
        assert fake_rentman.calls == 1
        assert await store.get(RECORD_PREFIX + "P003") is not None

    @pytest.mark.asyncio
    async def test_found_in_snapshot_populates_record_entry(self, listings, store):
        await listings.fetch_all()
        await listings.fetch_one("P004")

        entry = await store.get_with_metadata(RECORD_PREFIX + "P004")
        assert entry.value["propref"] == "P004"
        assert "photo1binary" not in entry.value

    @pytest.mark.asyncio
    async def test_record_entry_outlives_snapshot(self, listings, fake_rentman, store, clock):
        await listings.fetch_one("P001")
        clock.advance(listings.ttl_metadata + 1)
        await store.delete(METADATA_KEY)

        record = await listings.fetch_one("P001")
        assert record["propref"] == "P001"
        assert record["photo2binary"]
        assert fake_rentman.calls == 1

    @pytest.mark.asyncio
    async def test_numeric_ids_are_strings(self, listings):
        numeric = make_listing("0", photos=1)
        numeric["propref"] = 1042
        listings.client = FakeRentman([numeric])

        record = await listings.fetch_one(1042)
        assert record["propref"] == 1042
        assert record["photo1binary"] == numeric["photo1binary"]

    @pytest.mark.asyncio
    async def test_unknown_id(self, listings):
        with pytest.raises(NotFound):
            await listings.fetch_one("NOPE")

    @pytest.mark.asyncio
    async def test_featured_flag_is_current(self, services, listings):
        await listings.fetch_one("P005")
        await services.featured.toggle("P005")
        record = await listings.fetch_one("P005")
        assert record[FEATURED_FIELD] is True


# ═══════════════ featured patch / invalidation ═══════════════


class TestPatchFeaturedFlag:
    @pytest.mark.asyncio
    async def test_nothing_cached(self, listings):
        assert await listings.patch_featured_flag({"P001"}) is False

    @pytest.mark.asyncio
    async def test_patch_in_place(self, listings, fake_rentman, store):
        await listings.fetch_all()
        assert await listings.patch_featured_flag({"P001", "P009"}) is True

        records = await listings.fetch_all()
        featured = {r["propref"] for r in records if r[FEATURED_FIELD]}
        assert featured == {"P001", "P009"}
        assert fake_rentman.calls == 1

    @pytest.mark.asyncio
    async def test_patch_keeps_expiration(self, listings, store):
        await listings.fetch_all()
        before = await store.get_with_metadata(METADATA_KEY)
        await listings.patch_featured_flag({"P001"})
        after = await store.get_with_metadata(METADATA_KEY)
        assert after.expiration == pytest.approx(before.expiration, abs=1)

    @pytest.mark.asyncio
    async def test_invalidate(self, listings, fake_rentman):
        await listings.fetch_all()
        assert await listings.invalidate() is True
        await listings.fetch_all()
        assert fake_rentman.calls == 2


# ═══════════════ media ═══════════════


class TestMedia:
    @pytest.mark.asyncio
    async def test_media_classified_and_cached(self, listings, fake_rentman):
        fake_rentman.media["P001"] = [
            {"filename": "fp.jpg", "base64data": "AAA", "imgorder": "floorplan"},
            {"filename": "b.jpg", "base64data": "BBB", "imgorder": "2"},
            {"filename": "a.jpg", "base64data": "CCC", "imgorder": "1"},
            {"filename": "epc.png", "base64data": "DDD", "imgorder": "EPC"},
        ]
        items = await listings.fetch_media("P001")
        again = await listings.fetch_media("P001")

        slots = {item.filename: item.slot for item in items}
        assert slots == {"fp.jpg": "floorplan", "epc.png": "epc", "a.jpg": "photo1", "b.jpg": "photo2"}
        assert [i.filename for i in again] == [i.filename for i in items]
        assert fake_rentman.media_calls == 1

    @pytest.mark.asyncio
    async def test_media_not_modified_without_copy(self, listings, fake_rentman):
        fake_rentman.not_modified = True
        with pytest.raises(InconsistentState):
            await listings.fetch_media("P001")
        assert fake_rentman.forgotten == ["media:P001"]
