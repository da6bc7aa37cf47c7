"""Tests for the JSON API."""

import os
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from conftest import manifest_of, model_node
from dbt_ui.build import build
from dbt_ui.server import create_app
from dbt_ui.storage import StoreCache


@pytest.fixture
def client(built_store: Path):
    cache = StoreCache(built_store)
    with TestClient(create_app(cache)) as test_client:
        yield test_client
    cache.close()


@pytest.fixture
def missing_client(temp_dir: Path):
    cache = StoreCache(temp_dir / "missing.sqlite")
    with TestClient(create_app(cache)) as test_client:
        yield test_client
    cache.close()


class TestHealth:
    def test_ok(self, client: TestClient, built_store: Path):
        response = client.get("/api/db")
        assert response.status_code == 200
        assert response.json() == {"ok": True, "dbPath": str(built_store.resolve())}

    def test_missing_store(self, missing_client: TestClient, temp_dir: Path):
        response = missing_client.get("/api/db")
        assert response.status_code == 500
        body = response.json()
        assert body["ok"] is False
        assert body["dbPath"].endswith("missing.sqlite")
        assert body["error"]


class TestModels:
    def test_list(self, client: TestClient):
        body = client.get("/api/models").json()
        assert body["total"] == 6
        assert [m["name"] for m in body["items"]][:2] == ["customer_ltv", "customers"]
        assert body["facets"]["schemas"] == ["marts", "staging"]
        assert set(body["items"][0]) == {
            "unique_id", "name", "description", "schema", "package_name",
            "materialization", "resource_type", "tags",
        }

    def test_query_params_are_clamped(self, client: TestClient):
        assert len(client.get("/api/models", params={"limit": "0"}).json()["items"]) == 1
        assert len(client.get("/api/models", params={"limit": "abc"}).json()["items"]) == 6
        body = client.get("/api/models", params={"limit": "2", "offset": "5"}).json()
        assert [m["name"] for m in body["items"]] == ["stg_orders"]

    def test_detail(self, client: TestClient):
        response = client.get("/api/models/model.shop.orders")
        assert response.status_code == 200
        body = response.json()
        assert body["name"] == "orders"
        assert body["meta"] == {"owner": "finance-team"}
        assert [c["name"] for c in body["columns"]] == ["amount", "customer_id", "order_id"]

    def test_detail_not_found(self, client: TestClient):
        response = client.get("/api/models/model.shop.nope")
        assert response.status_code == 404
        assert response.json() == {"error": "Model not found"}

    def test_missing_store(self, missing_client: TestClient):
        response = missing_client.get("/api/models")
        assert response.status_code == 500
        assert "error" in response.json()


class TestLineage:
    def test_lineage(self, client: TestClient):
        body = client.get("/api/lineage/model.shop.orders").json()
        assert [m["name"] for m in body["upstream"]] == ["stg_customers", "stg_orders"]
        assert [m["name"] for m in body["downstream"]] == ["customers"]
        assert len(body["nodes"]) == 4
        assert {"source", "target"} == set(body["edges"][0])

    def test_depth_param(self, client: TestClient):
        shallow = client.get("/api/lineage/model.shop.orders", params={"depth": "1"}).json()
        deep = client.get("/api/lineage/model.shop.orders", params={"depth": "9"}).json()
        assert len(deep["nodes"]) > len(shallow["nodes"])

    def test_all(self, client: TestClient):
        body = client.get("/api/lineage/all").json()
        assert body["total"] == 6
        assert len(body["nodes"]) == 6
        assert len(body["models"]) == 6
        assert len(body["edges"]) == 8


class TestSearchAndNav:
    def test_search(self, client: TestClient):
        results = client.get("/api/search", params={"q": "ORDERS"}).json()["results"]
        assert "model.shop.orders" in {r["doc_id"] for r in results}
        assert set(results[0]) == {"doc_type", "doc_id", "model_unique_id", "name", "description"}

    def test_blank_search_skips_store(self, missing_client: TestClient):
        response = missing_client.get("/api/search", params={"q": "  "})
        assert response.status_code == 200
        assert response.json() == {"results": []}

    def test_nav(self, client: TestClient):
        databases = client.get("/api/nav/database").json()["databases"]
        assert {db["name"] for db in databases} == {"analytics", "default"}


class TestRebuildPickup:
    def test_rebuilt_store_is_served(self, client: TestClient, built_store: Path, write_manifest):
        assert client.get("/api/models").json()["total"] == 6
        build(write_manifest(manifest_of(model_node("model.p.only"))), built_store)
        stat = built_store.stat()
        os.utime(built_store, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
        assert client.get("/api/models").json()["total"] == 1


class TestUnexpectedErrors:
    def test_unserializable_payload_returns_json_error(self, temp_dir: Path, write_manifest):
        store = temp_dir / "nan.sqlite"
        build(write_manifest(manifest_of(model_node("model.p.a", meta={"x": float("nan")}))), store)
        cache = StoreCache(store)
        try:
            with TestClient(create_app(cache), raise_server_exceptions=False) as test_client:
                response = test_client.get("/api/models/model.p.a")
                assert response.status_code == 500
                assert response.headers["content-type"].startswith("application/json")
                assert response.json()["error"]
                assert test_client.get("/api/models").status_code == 200
        finally:
            cache.close()
