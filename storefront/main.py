"""
Storefront Cache - FastAPI application
Serves cached storefront data and exposes cache inspection endpoints
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request

from storefront.cache import NetworkError, NotFoundError, ResourceType
from storefront.resources import CacheRegistry
from storefront.schemas import (
    CacheKeyInfo,
    ClearResult,
    EventResult,
    HealthStatus,
    RefetchResult,
    ResourceCacheInfo,
)
from config.settings import settings

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("main")

# Version tracking
APP_VERSION = "v0.1.0"
APP_NAME = "Storefront Cache"


def _registry(request: Request) -> CacheRegistry:
    return request.app.state.registry


def _resource(name: str) -> ResourceType:
    """Resolve a path segment to a resource type, 404 if unknown."""
    try:
        return ResourceType(name)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown cache resource: {name}")


def create_app(registry: Optional[CacheRegistry] = None) -> FastAPI:
    """
    Build the application.

    Args:
        registry: Pre-built cache registry (tests); built from settings if omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.registry = registry or CacheRegistry.create(settings)
        hydrated = await app.state.registry.hydrate()
        logger.info(f"Hydrated cache entries: {hydrated}")
        app.state.registry.start()
        try:
            yield
        finally:
            await app.state.registry.stop()

    app = FastAPI(
        title=APP_NAME,
        description="Stale-while-revalidate cache for storefront data",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    @app.get("/health", response_model=HealthStatus)
    def health_check(request: Request):
        """Health check endpoint."""
        return HealthStatus(status="ok", subdomain=_registry(request).subdomain)

    @app.get("/version")
    def version_info():
        """Version information endpoint."""
        return {"name": APP_NAME, "version": APP_VERSION}

    # =========================================================================
    # Storefront data
    # =========================================================================

    @app.get("/store/products")
    async def store_products(request: Request, refresh: bool = Query(False)):
        """Product listing, served stale-while-revalidate."""
        try:
            return await _registry(request).products(force_refresh=refresh)
        except NetworkError as e:
            raise HTTPException(status_code=502, detail=str(e))

    @app.get("/store/products/{product_id}")
    async def store_product(request: Request, product_id: str, refresh: bool = Query(False)):
        """Details for one product."""
        try:
            return await _registry(request).product(product_id, force_refresh=refresh)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Product not found")
        except NetworkError as e:
            raise HTTPException(status_code=502, detail=str(e))

    @app.get("/store/config")
    async def store_config(request: Request, refresh: bool = Query(False)):
        """Store configuration merged over the defaults."""
        try:
            return await _registry(request).store_config(force_refresh=refresh)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Store not found")
        except NetworkError as e:
            raise HTTPException(status_code=502, detail=str(e))

    # =========================================================================
    # Cache inspection
    # =========================================================================

    @app.get("/cache/stats")
    def cache_stats(request: Request):
        """Get cache statistics."""
        return _registry(request).get_stats()

    @app.get("/cache/{resource}/info", response_model=Union[CacheKeyInfo, ResourceCacheInfo])
    def cache_info(request: Request, resource: str, key: Optional[str] = Query(None)):
        """Describe one cached key, or every key of a resource."""
        engine = _registry(request).engine(_resource(resource))
        return engine.cache_info(key)

    @app.post("/cache/{resource}/refetch", response_model=RefetchResult)
    async def cache_refetch(request: Request, resource: str, force: bool = Query(False)):
        """Refresh stale (or, with force, all) registered keys of a resource."""
        engine = _registry(request).engine(_resource(resource))
        refreshed = await engine.refetch_all_stale(force=force)
        return RefetchResult(resource=resource, refreshed=refreshed)

    @app.delete("/cache/{resource}", response_model=ClearResult)
    async def cache_clear(request: Request, resource: str, key: Optional[str] = Query(None)):
        """Clear one key of a resource, or the whole resource."""
        removed = await _registry(request).clear(_resource(resource), key)
        return ClearResult(resource=resource, key=key, removed=removed)

    @app.post("/cache/events/focus", response_model=EventResult)
    async def cache_focus(request: Request):
        """Host regained focus."""
        return EventResult(refreshed=await _registry(request).handle_focus())

    @app.post("/cache/events/reconnect", response_model=EventResult)
    async def cache_reconnect(request: Request):
        """Host network reconnected."""
        return EventResult(refreshed=await _registry(request).handle_reconnect())

    return app


app = create_app()
