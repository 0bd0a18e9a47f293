#!/usr/bin/env python3
"""Live Rentman verification script — run outside the sandbox with a real token.

Usage:
  1. Put RENTMAN_API_TOKEN (and optionally REDIS_URL) in .env
  2. Run: python scripts/verify_apis.py

Steps:
  Step 1: Verify .env configuration
  Step 2: Fetch the listings feed, then repeat it conditionally (expect 304)
  Step 3: Fetch the media list of the first listing
  Step 4: Derive a thumbnail of the first listing's main photo
"""

import asyncio
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def step_header(n: int, title: str) -> None:
    print(f"\n{'='*60}")
    print(f"  Step {n}: {title}")
    print(f"{'='*60}\n")


def ok(msg: str) -> None:
    print(f"  ✅ {msg}")


def fail(msg: str) -> None:
    print(f"  ❌ {msg}")


def info(msg: str) -> None:
    print(f"  ℹ️  {msg}")


async def step1_verify_env(settings):
    step_header(1, "Verify .env Configuration")

    if settings.has_rentman_token:
        ok(f"RENTMAN_API_TOKEN: set ({settings.rentman_token[:6]}...)")
    else:
        fail("RENTMAN_API_TOKEN: NOT SET — upstream steps will fail!")
        return False

    ok(f"Base URL: {settings.rentman_api_base_url}")
    ok(f"Id field: {settings.id_field}")
    if settings.redis_url:
        ok(f"Redis: {settings.redis_url}")
    else:
        info("REDIS_URL: not set (in-memory store)")
    return True


async def step2_listings(services):
    step_header(2, "Listings feed + conditional request")

    first = await services.client.fetch_properties()
    if not first.is_fresh or not first.data:
        fail(f"Unexpected first response: status={first.status.value}")
        return None
    ok(f"Got {len(first.data)} listings (etag={first.etag or 'none'})")

    await services.listings.store(first.data)
    second = await services.client.fetch_properties()
    if first.etag:
        if second.is_fresh:
            info("Upstream ignored If-None-Match (full body returned again)")
        else:
            ok("Second request answered 304 Not Modified")
    else:
        info("Upstream sent no ETag — conditional requests not supported")

    return services.listings.listing_id(first.data[0])


async def step3_media(services, listing_id):
    step_header(3, f"Media list for {listing_id}")

    items = await services.listings.fetch_media(listing_id)
    if not items:
        info("No media returned for this listing")
        return True
    ok(f"Got {len(items)} media items")
    for item in items[:5]:
        print(f"    - {item.slot or '-':10} {item.filename[:50]} (hint={item.order_hint or 'none'})")
    return True


async def step4_thumbnail(services, listing_id):
    step_header(4, f"Thumbnail for {listing_id}")

    result = await services.images.get_variant(listing_id, "thumbnail", "auto", accept="image/avif,image/webp")
    ok(f"{result.content_type} {result.width}x{result.height} | {result.original_size}→{result.compressed_size} bytes")
    if result.fallback:
        info(f"Fallback used: requested {result.requested_format}, delivered {result.format}")
    return True


async def main():
    from listings_edge.config import settings
    from listings_edge.services.registry import build_services

    print("\n🏠 Listings Edge — Live Rentman Verification")
    print("=" * 60)

    services = build_services(settings)
    await services.store.connect()
    results = {}

    try:
        results[1] = await step1_verify_env(settings)
        if not results[1]:
            print("\n⚠️  RENTMAN_API_TOKEN is required. Fill in .env and re-run.\n")
            results[2] = results[3] = results[4] = False
        else:
            listing_id = await step2_listings(services)
            results[2] = listing_id is not None
            if listing_id is None:
                results[3] = results[4] = False
            else:
                results[3] = await step3_media(services, listing_id)
                results[4] = await step4_thumbnail(services, listing_id)
    except Exception as e:
        fail(f"{type(e).__name__}: {e}")
        for n in range(1, 5):
            results.setdefault(n, False)
    finally:
        await services.close()

    print(f"\n{'='*60}")
    print("  SUMMARY")
    print(f"{'='*60}")
    for step_n, passed in sorted(results.items()):
        status = "✅ PASS" if passed else "❌ FAIL"
        print(f"  Step {step_n}: {status}")

    total_passed = sum(1 for v in results.values() if v)
    print(f"\n  {total_passed}/{len(results)} steps passed")
    print(f"{'='*60}\n")

    sys.exit(0 if all(results.values()) else 1)


if __name__ == "__main__":
    asyncio.run(main())
