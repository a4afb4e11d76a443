"""
Integration tests for the optimization HTTP API
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text

from queryopt.api.main_app import app

ORDERS = {"table_name": "orders", "row_count": 500000}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def catalog_database(tmp_path, monkeypatch):
    """File backed SQLite database served as the catalog"""
    url = f"sqlite:///{tmp_path / 'catalog.db'}"
    engine = create_engine(url)
    with engine.begin() as conn:
        conn.execute(text("""
            CREATE TABLE products (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                category_id INTEGER
            )
        """))
        conn.execute(text("CREATE INDEX idx_products_category ON products(category_id)"))
        conn.execute(text("""
            INSERT INTO products (id, name, category_id) VALUES
            (1, 'Laptop', 2),
            (2, 'Phone', 3)
        """))
    engine.dispose()
    monkeypatch.setenv("DATABASE_URL", url)
    return url


@pytest.fixture
def catalog_client(catalog_database):
    with TestClient(app) as client:
        yield client


class TestOptimizeEndpoint:

    def test_optimize(self, client):
        response = client.post("/optimize", json={"query": "SELECT * FROM orders", "table_statistics": [ORDERS]})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert [q["optimized_sql"] for q in data["optimized_queries"]] == [
            "SELECT column1, column2, column3 FROM orders",
            "SELECT * FROM orders LIMIT 1000",
        ]
        assert data["optimized_queries"][0]["applied_optimizations"] == ["PROJECTION_PRUNING"]
        assert data["cost_analysis"]["original_cost"]["total_cost"] == 5000.0
        assert data["cost_analysis"]["improvement_percentage"] == pytest.approx(99.8)

    def test_optimize_with_level_and_timeout(self, client):
        response = client.post("/optimize", json={
            "query": "SELECT id FROM orders WHERE customer_id IN (SELECT id FROM customers)",
            "optimization_level": "ADVANCED",
            "timeout_seconds": 10,
            "max_alternatives": None,
        })

        assert response.status_code == 200
        applied = [t for q in response.json()["optimized_queries"] for t in q["applied_optimizations"]]
        assert "SUBQUERY_OPTIMIZATION" in applied

    def test_enabled_optimizations(self, client):
        response = client.post("/optimize", json={
            "query": "SELECT * FROM orders",
            "enabled_optimizations": ["query_rewrite"],
        })

        queries = response.json()["optimized_queries"]
        assert [q["applied_optimizations"] for q in queries] == [["QUERY_REWRITE"]]

    def test_invalid_request_is_reported_in_response(self, client):
        response = client.post("/optimize", json={"query": "   "})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["error_code"] == "VALIDATION_ERROR"

    @pytest.mark.parametrize("payload", [
        {"query": "SELECT 1", "optimization_level": "EXTREME"},
        {"query": "SELECT 1", "optimization_level": 9},
        {"query": "SELECT 1", "enabled_optimizations": ["TELEPORTATION"]},
    ])
    def test_invalid_policy(self, client, payload):
        assert client.post("/optimize", json=payload).status_code == 400

    def test_missing_query_field(self, client):
        response = client.post("/optimize", json={"table_statistics": []})
        assert response.status_code == 422

    def test_catalog_statistics_without_catalog(self, client):
        response = client.post("/optimize", json={"query": "SELECT 1", "use_catalog_statistics": True})
        assert response.status_code == 503


class TestComponentEndpoints:

    def test_analyze(self, client):
        response = client.post("/analyze", json={"query": "SELECT * FROM orders", "table_statistics": [ORDERS]})

        assert response.status_code == 200
        data = response.json()
        assert len(data["bottlenecks"]) == 2
        assert data["plan_nodes"][0]["node_type"] == "SELECT"

    def test_indexes(self, client):
        response = client.post("/indexes", json={"query": "SELECT * FROM a JOIN b ON a.id = b.a_id"})

        assert response.status_code == 200
        suggestions = response.json()["suggestions"]
        assert suggestions[0]["implementation"] == "CREATE INDEX idx_join_a_id ON b (a_id)"
        assert suggestions[0]["type"] == "INDEX_OPTIMIZATION"

    def test_cost(self, client):
        response = client.post("/cost", json={"query": "SELECT * FROM orders", "table_statistics": [ORDERS]})

        assert response.status_code == 200
        assert response.json()["cost_estimate"]["total_cost"] == 5000.0


class TestServiceEndpoints:

    def test_metrics_and_cache(self, client):
        client.post("/optimize", json={"query": "SELECT * FROM orders"})

        metrics = client.get("/metrics").json()
        assert metrics["total_optimizations"] == 1
        assert metrics["cache_size"] == 1

        cleared = client.delete("/cache").json()
        assert cleared == {"status": "cleared", "entries_removed": 1}
        assert client.get("/metrics").json()["cache_size"] == 0

    def test_health(self, client):
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["components"] == {"optimization_engine": True, "catalog": False}

    def test_catalog_not_configured(self, client):
        assert client.get("/catalog").status_code == 503


class TestCatalogEndpoints:

    def test_catalog(self, catalog_client):
        response = catalog_client.get("/catalog")

        assert response.status_code == 200
        data = response.json()
        assert [t["table_name"] for t in data["table_statistics"]] == ["products"]
        assert data["table_statistics"][0]["row_count"] == 2
        assert "idx_products_category" in [i["index_name"] for i in data["existing_indexes"]]

    def test_health_reports_catalog(self, catalog_client):
        assert catalog_client.get("/health").json()["components"]["catalog"] is True

    def test_indexes_from_catalog_statistics(self, catalog_client):
        response = catalog_client.post("/indexes", json={
            "query": "SELECT name FROM products WHERE category_id = 2",
            "use_catalog_statistics": True,
        })

        assert response.status_code == 200
        assert response.json()["suggestions"] == []
