"""Shared test fixtures and configuration."""

import asyncio
import base64
import io
import os
import random

import pytest
from PIL import Image

# Never pick up a developer's real credentials during tests
os.environ.setdefault("RENTMAN_API_TOKEN", "")
os.environ.setdefault("ADMIN_TOKEN", "")

from listings_edge.config import Settings
from listings_edge.integrations.rentman import FetchResult, FetchStatus
from listings_edge.services.registry import build_services
from listings_edge.services.store import KeyValueStore

ADMIN_TOKEN = "test-admin-token"


class FakeClock:
    """Manually advanced wall clock (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRentman:
    """Stand-in for RentmanClient that counts upstream calls."""

    def __init__(self, records=None, delay: float = 0.01):
        self.records = records or []
        self.delay = delay
        self.calls = 0
        self.media_calls = 0
        self.not_modified = False
        self.error: Exception | None = None
        self.media: dict[str, list[dict]] = {}
        self.forgotten: list[str] = []

    async def fetch_properties(self) -> FetchResult:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.not_modified:
            return FetchResult(FetchStatus.NOT_MODIFIED, etag='"v1"')
        return FetchResult(FetchStatus.FRESH, data=[dict(r) for r in self.records], etag='"v1"')

    async def fetch_media_list(self, propref: str) -> FetchResult:
        self.media_calls += 1
        await asyncio.sleep(self.delay)
        if self.not_modified:
            return FetchResult(FetchStatus.NOT_MODIFIED)
        return FetchResult(FetchStatus.FRESH, data=self.media.get(propref, []))

    async def forget_etag(self, resource_key: str):
        self.forgotten.append(resource_key)


def make_jpeg(width: int = 1200, height: int = 800, color=(200, 120, 40)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="JPEG", quality=90)
    return buffer.getvalue()


def make_listing(listing_id: str, photos: int = 2, floorplan: bool = False, epc: bool = False) -> dict:
    record = {
        "propref": listing_id,
        "displayaddress": f"{listing_id} High Street",
        "rentmonth": "1250",
        "beds": "2",
        "type": "Flat",
    }
    for i in range(1, photos + 1):
        record[f"photo{i}binary"] = base64.b64encode(f"{listing_id}-photo{i}".encode()).decode()
    if floorplan:
        record["floorplanbinary"] = base64.b64encode(f"{listing_id}-floorplan".encode()).decode()
    if epc:
        record["epcbinary"] = base64.b64encode(f"{listing_id}-epc".encode()).decode()
    return record


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """In-memory store (no Redis) driven by the fake clock."""
    return KeyValueStore(clock=clock)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        rentman_api_token="test-token",
        admin_token=ADMIN_TOKEN,
        redis_url="",
    )


@pytest.fixture
def sample_listings():
    return [make_listing(f"P{i:03d}", photos=2) for i in range(1, 16)]


@pytest.fixture
def fake_rentman(sample_listings):
    return FakeRentman(sample_listings)


@pytest.fixture
def services(settings, store, clock, fake_rentman):
    svc = build_services(settings, store=store, clock=clock, rng=random.Random(42))
    svc.listings.client = fake_rentman
    return svc
