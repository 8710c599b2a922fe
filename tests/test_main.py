"""
Tests for the HTTP surface: health, storefront data and cache inspection
"""
import tempfile
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from config.settings import Settings
from storefront.api_client import StorefrontClient
from storefront.cache import ResourceType, get_cache_config
from storefront.main import create_app
from storefront.resources import CacheRegistry
from tests.test_resources import BASE_URL, FakeStorefront


@pytest.fixture
def origin():
    return FakeStorefront()


@pytest.fixture
def client(origin):
    """TestClient over an app wired to the fake origin, without retries."""
    with tempfile.TemporaryDirectory() as tmpdir:
        settings = Settings(
            storefront_api_base_url=BASE_URL,
            storefront_subdomain="shop",
            cache_directory=Path(tmpdir),
        )
        api = StorefrontClient(BASE_URL, "shop", transport=httpx.MockTransport(origin))
        policies = {
            resource: get_cache_config(resource, retry_count=0) for resource in ResourceType
        }
        registry = CacheRegistry.create(settings, client=api, policies=policies)
        with TestClient(create_app(registry)) as test_client:
            yield test_client


def test_health_endpoint_returns_ok_status(client):
    """Test that /health returns status: ok"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "subdomain": "shop"}


def test_version_endpoint(client):
    assert client.get("/version").json()["name"] == "Storefront Cache"


def test_products_served_from_cache(client, origin):
    """Second request is answered from memory"""
    first = client.get("/store/products")
    second = client.get("/store/products")

    assert first.status_code == 200
    assert first.json() == second.json()
    assert origin.count("/public/store/products") == 1


def test_refresh_query_forces_network(client, origin):
    client.get("/store/products")
    client.get("/store/products", params={"refresh": "true"})

    assert origin.count("/public/store/products") == 2


def test_unknown_product_returns_404(client):
    response = client.get("/store/products/unknown")
    assert response.status_code == 404


def test_store_not_found_returns_404(client, origin):
    origin.status["/public/store/config"] = 404
    assert client.get("/store/config").status_code == 404
    assert client.get("/cache/stats").json()["not_found"] == ["config_shop"]


def test_store_config_upstream_failure_returns_502(client, origin):
    origin.status["/public/store/config"] = 500
    assert client.get("/store/config").status_code == 502


def test_store_config(client):
    response = client.get("/store/config")
    assert response.json()["content"]["BRAND_NAME"] == "Shop"


def test_cache_info_for_key(client):
    client.get("/store/products")

    response = client.get("/cache/products/info", params={"key": "products_shop"})
    info = response.json()

    assert response.status_code == 200
    assert info["cached"] is True
    assert info["is_stale"] is False


def test_cache_info_for_resource(client):
    client.get("/store/products/p1")

    info = client.get("/cache/product/info").json()

    assert info["total_cached"] == 1
    assert info["entries"][0]["key"] == "product_p1_shop"


def test_unknown_resource_returns_404(client):
    assert client.get("/cache/widgets/info").status_code == 404


def test_clear_resource_key(client):
    client.get("/store/products")

    response = client.delete("/cache/products", params={"key": "products_shop"})

    assert response.json() == {"resource": "products", "key": "products_shop", "removed": 1}
    assert client.get("/cache/products/info", params={"key": "products_shop"}).json()["cached"] is False


def test_forced_refetch(client, origin):
    client.get("/store/products")

    response = client.post("/cache/products/refetch", params={"force": "true"})

    assert response.json() == {"resource": "products", "refreshed": 1}
    assert origin.count("/public/store/products") == 2


def test_focus_event_skips_fresh_data(client, origin):
    client.get("/store/products")

    response = client.post("/cache/events/focus")

    assert response.json()["refreshed"]["products"] == 0
    assert origin.count("/public/store/products") == 1


def test_reconnect_event_refreshes_store_keys(client, origin):
    client.get("/store/products")

    response = client.post("/cache/events/reconnect")

    assert response.json()["refreshed"]["products"] == 1
    assert origin.count("/public/store/products") == 2


def test_cache_stats(client):
    client.get("/store/products")

    stats = client.get("/cache/stats").json()

    assert stats["resources"]["products"]["misses"] == 1
    assert stats["resources"]["products"]["revalidator"]["running"] is True
