"""Listings edge — FastAPI application entry point.

Thin HTTP surface over the listings cache, image variants and the featured
set. Error taxonomy → status codes:
  UpstreamUnavailable → 503, NotFound → 404, CapacityExceeded → 400,
  anything else → 500 with a generic message.
"""

import asyncio
import hmac
import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from listings_edge.config import settings
from listings_edge.errors import (
    CapacityExceeded,
    InvalidInput,
    ListingsEdgeError,
    NotFound,
    UpstreamUnavailable,
)
from listings_edge.services.registry import Services, build_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger("listings_edge")


class ToggleRequest(BaseModel):
    propertyId: str | int | None = None


# ═══════════════ LIFESPAN ═══════════════

async def _backfill_loop(services: Services):
    interval = services.settings.backfill_check_interval_seconds
    while True:
        await asyncio.sleep(interval)
        outcome = await services.featured.schedule_check()
        if outcome.status not in ("idle", "not_due"):
            logger.info("Periodic backfill check | status=%s | added=%d", outcome.status, len(outcome.added))


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = build_services(settings)
    app.state.services = services

    # Redis (graceful degradation if unavailable)
    redis_ok = await services.store.connect()
    logger.info("Redis: %s", "connected" if redis_ok else "unavailable (using in-memory fallback)")

    services.background.spawn(_backfill_loop(services), name="backfill-loop")
    if settings.has_rentman_token:
        services.background.spawn(services.listings.warm(), name="cache-warm")
    else:
        logger.warning("RENTMAN_API_TOKEN not set — upstream fetches will fail")

    yield

    await services.close()
    logger.info("Listings edge shutting down")


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_admin(
    request: Request,
    authorization: str | None = Header(default=None),
):
    expected = get_services(request).settings.admin_token
    if not authorization or not authorization.startswith("Bearer "):
        raise _Unauthorized("Authentication required")
    token = authorization[len("Bearer "):]
    if not expected or not hmac.compare_digest(token.encode(), expected.encode()):
        raise _Unauthorized("Invalid or expired session")


class _Unauthorized(Exception):
    pass


# ═══════════════ APP ═══════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="Listings Edge API",
        description="Caching and image delivery in front of the Rentman listings API",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(_Unauthorized)
    async def unauthorized(request: Request, exc: _Unauthorized):
        return JSONResponse(status_code=401, content={"error": str(exc)})

    @app.exception_handler(UpstreamUnavailable)
    async def upstream_unavailable(request: Request, exc: UpstreamUnavailable):
        logger.warning("Upstream unavailable | path=%s | %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"error": "Listings service temporarily unavailable"})

    @app.exception_handler(NotFound)
    async def not_found(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(CapacityExceeded)
    async def capacity_exceeded(request: Request, exc: CapacityExceeded):
        return JSONResponse(status_code=400, content={"error": str(exc), "limit": exc.limit})

    @app.exception_handler(InvalidInput)
    async def bad_request(request: Request, exc: InvalidInput):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(ListingsEdgeError)
    async def internal_error(request: Request, exc: ListingsEdgeError):
        logger.error("Request failed | path=%s | %s: %s", request.url.path, type(exc).__name__, str(exc)[:300])
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.error("Unhandled error | path=%s | %s: %s", request.url.path, type(exc).__name__, str(exc)[:300])
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    _register_routes(app)
    return app


def _register_routes(app: FastAPI):

    @app.get("/health")
    async def health(services: Services = Depends(get_services)):
        return {
            "status": "ok",
            "store": services.store.backend,
            "has_rentman_token": services.settings.has_rentman_token,
        }

    # ═══════════════ PROPERTIES ═══════════════

    @app.get("/api/properties")
    async def list_properties(services: Services = Depends(get_services)):
        start = time.monotonic()
        properties = await services.listings.fetch_all()
        elapsed_ms = int((time.monotonic() - start) * 1000)
        return {"success": True, "data": properties, "count": len(properties), "_ms": elapsed_ms}

    @app.get("/api/properties/{listing_id}")
    async def get_property(listing_id: str, services: Services = Depends(get_services)):
        return {"success": True, "data": await services.listings.fetch_one(listing_id)}

    @app.get("/api/properties/{listing_id}/media")
    async def get_property_media(listing_id: str, services: Services = Depends(get_services)):
        items = await services.listings.fetch_media(listing_id)
        return {"success": True, "data": [item.model_dump() for item in items], "count": len(items)}

    # ═══════════════ FEATURED ═══════════════

    @app.get("/api/featured")
    async def featured_properties(services: Services = Depends(get_services)):
        properties = await services.featured.get_featured_listings()
        # Piggyback a backfill check on reads, never awaited here
        services.background.spawn(services.featured.schedule_check(), name="backfill-check")
        return {"success": True, "data": properties, "count": len(properties)}

    @app.get("/api/featured/ids")
    async def featured_ids(services: Services = Depends(get_services)):
        ids = await services.featured.get_ids()
        return {"success": True, "data": ids, "limits": services.featured.limits(len(ids)).model_dump()}

    @app.post("/api/featured/toggle", dependencies=[Depends(require_admin)])
    async def toggle_featured(body: ToggleRequest, services: Services = Depends(get_services)):
        if body.propertyId is None or str(body.propertyId).strip() == "":
            return JSONResponse(status_code=400, content={"error": "Property ID is required"})
        result = await services.featured.toggle(str(body.propertyId))
        return {
            "success": True,
            "data": result.model_dump(),
            "message": "Featured status updated successfully",
        }

    # ═══════════════ BACKFILL ═══════════════

    @app.get("/api/backfill/status")
    async def backfill_status(services: Services = Depends(get_services)):
        return (await services.scheduler.status()).model_dump()

    @app.post("/api/backfill/check", dependencies=[Depends(require_admin)])
    async def backfill_check(services: Services = Depends(get_services)):
        return (await services.featured.schedule_check()).model_dump()

    # ═══════════════ IMAGES ═══════════════

    @app.get("/api/images/info/{listing_id}")
    async def image_info(listing_id: str, request: Request, services: Services = Depends(get_services)):
        info = await services.images.image_info(listing_id, str(request.base_url))
        return JSONResponse(
            content={"success": True, **info},
            headers={"Cache-Control": "public, max-age=300"},
        )

    @app.get("/api/images/{listing_id}")
    @app.get("/api/images/{listing_id}/{variant}")
    @app.get("/api/images/{listing_id}/{variant}/{fmt}")
    async def image(
        listing_id: str,
        request: Request,
        variant: str = "medium",
        fmt: str = "auto",
        photo: int = Query(default=1),
        services: Services = Depends(get_services),
    ):
        result = await services.images.get_variant(
            listing_id,
            variant=variant,
            fmt=fmt,
            slot_index=photo,
            accept=request.headers.get("accept", ""),
            user_agent=request.headers.get("user-agent", ""),
        )
        max_age = 86400 if variant == "placeholder" else 3600
        return Response(
            content=result.data,
            media_type=result.content_type,
            headers={
                "Cache-Control": f"public, max-age={max_age}",
                "ETag": f'"{result.cache_key}"',
                "X-Cache-Status": result.cache_status,
                "X-Original-Size": str(result.original_size),
                "X-Compressed-Size": str(result.compressed_size),
                "X-Variant": result.variant,
                "X-Format": result.format,
                "X-Requested-Format": result.requested_format,
                "X-Fallback": "true" if result.fallback else "false",
            },
        )


app = create_app()
