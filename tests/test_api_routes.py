import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import pytest
from starlette.testclient import TestClient

from app.main import create_app


@pytest.fixture
def client(pipeline):
    return TestClient(create_app(use_lifespan=False))


def test_root_lists_endpoints(client):
    response = client.get("/")
    assert response.status_code == 200
    body = response.json()
    assert body["service"] == "ContextMatch"
    assert body["fusion_weights"] == {"user": 0.75, "thread": 0.25}


def test_health_reports_dependencies(client, monkeypatch):
    import app.routes.health as health

    monkeypatch.setattr(
        health, "schema_revisions", lambda engine: ("0002_owner_embeddings", "0002_owner_embeddings")
    )
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["database"]["ok"] is True
    assert body["generation_provider"]["status"] == "ready"


def test_health_fails_when_schema_is_behind(client, monkeypatch):
    import app.routes.health as health

    monkeypatch.setattr(health, "schema_revisions", lambda engine: ("0001_initial_schema", "0002_owner_embeddings"))
    assert client.get("/health").status_code == 503


def test_post_message_and_history(client):
    response = client.post(
        "/chat/message",
        json={"session_id": "s1", "user_id": "u1", "message": {"role": "user", "content": "We need a CRM"}},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "processed"
    assert body["context_updated"] is True

    history = client.get("/chat/history/s1", params={"limit": 10})
    assert history.status_code == 200
    assert history.json()["total"] == 1
    assert client.get("/chat/count/s1").json()["count"] == 1


def test_malformed_body_is_400(client):
    response = client.post("/chat/message", json={"message": {"content": "no session"}})
    assert response.status_code == 400
    body = response.json()
    assert body["error_type"] == "validation_error"
    assert body["field"] == "session_id"


def test_service_validation_error_is_400(client):
    response = client.get("/chat/history/s1", params={"limit": 0})
    assert response.status_code == 400
    assert response.json()["field"] == "limit"


def test_recommendations_endpoints(client, seeded_catalog):
    search = client.post("/recommendations/search", json={"query": "project management tool", "threshold": 0.5})
    assert search.status_code == 200
    assert [item["product_id"] for item in search.json()["recommendations"]] == [
        seeded_catalog["board"]["product_id"]
    ]

    recommend = client.post(
        "/recommendations",
        json={"user_id": "nobody", "thread_summary": "cooking in my kitchen", "threshold": 0.5},
    )
    assert recommend.status_code == 200
    assert recommend.json()["recommendations"][0]["product_id"] == seeded_catalog["cookware"]["product_id"]

    missing = client.get("/recommendations/similar/does-not-exist")
    assert missing.status_code == 404
    assert missing.json()["error_type"] == "not_found"


def test_threshold_out_of_range_is_400(client):
    response = client.post("/recommendations/search", json={"query": "crm", "threshold": 2})
    assert response.status_code == 400
    assert response.json()["field"] == "threshold"


def test_upstream_outage_is_503(client, embedding_provider, seeded_catalog):
    embedding_provider.fail = True
    response = client.post("/recommendations/search", json={"query": "crm"})
    assert response.status_code == 503
    assert response.json()["retryable"] is True


def test_user_context_lifecycle(client):
    created = client.post(
        "/users/onboarding",
        json={"user_id": "u1", "metadata": {"industry": "saas"}, "narrative_prompt": "Sales leader"},
    )
    assert created.status_code == 201
    assert created.json()["context"]["version"] == 1

    updated = client.put("/users/u1/context", json={"narrative_prompt": "Sales and ops leader"})
    assert updated.status_code == 200
    assert updated.json()["context"]["metadata"] == {"industry": "saas"}

    folded = client.put(
        "/users/u1/context/thread-summary",
        json={"thread_summary": "Evaluating CRM tools", "metadata": {"seats": 5}},
    )
    assert folded.json()["context"]["metadata"] == {"industry": "saas", "seats": 5}

    fetched = client.get("/users/u1/context", params={"include_embedding": True})
    assert len(fetched.json()["context"]["embedding"]) == 1536

    assert client.delete("/users/u1/context").json()["status"] == "deleted"
    assert client.get("/users/u1/context").status_code == 404


def test_update_missing_context_is_404(client):
    response = client.put("/users/ghost/context", json={"narrative_prompt": "anything"})
    assert response.status_code == 404


def test_catalog_endpoints(client):
    owner = client.post("/owners", json={"name": "Chef Supply", "domain": "chefsupply.example"})
    assert owner.status_code == 201
    owner_id = owner.json()["owner"]["owner_id"]

    product = client.post(
        "/products",
        json={"owner_id": owner_id, "title": "Chef Knife", "categories": ["kitchen"]},
    )
    assert product.status_code == 201
    product_id = product.json()["product"]["product_id"]

    listed = client.get(f"/owners/{owner_id}/products")
    assert [p["product_id"] for p in listed.json()["products"]] == [product_id]

    renamed = client.put(f"/products/{product_id}", json={"title": "Chef Knife Pro"})
    assert renamed.json()["product"]["title"] == "Chef Knife Pro"

    assert client.delete(f"/owners/{owner_id}").status_code == 400
    assert client.delete(f"/products/{product_id}").json()["status"] == "deleted"
    assert client.delete(f"/owners/{owner_id}").json()["status"] == "deleted"
    assert client.get(f"/products/{product_id}").status_code == 404


def test_product_for_unknown_owner_is_404(client):
    response = client.post("/products", json={"owner_id": "missing", "title": "Orphan"})
    assert response.status_code == 404


def test_owner_update_and_search(client, seeded_catalog):
    owners = client.get("/owners").json()["owners"]
    boardly = next(o for o in owners if o["name"] == "Boardly")
    assert boardly["has_embedding"] is True

    updated = client.put(f"/owners/{boardly['owner_id']}", json={"description": "Recipe planner for every kitchen"})
    assert updated.status_code == 200
    assert updated.json()["owner"]["description"] == "Recipe planner for every kitchen"

    found = client.post("/owners/search", json={"query": "kitchen"})
    assert found.status_code == 200
    names = [o["name"] for o in found.json()["owners"]]
    assert names == ["Chef Supply", "Boardly"]
    assert all(o["similarity_score"] >= 0.7 for o in found.json()["owners"])

    assert client.put("/owners/missing", json={"name": "Ghost"}).status_code == 404


def test_product_listing_and_search(client, seeded_catalog):
    listed = client.get("/products", params={"limit": 2})
    assert [p["product_id"] for p in listed.json()["products"]] == [
        seeded_catalog["crm"]["product_id"],
        seeded_catalog["cookware"]["product_id"],
    ]
    owner_id = seeded_catalog["board"]["owner_id"]
    filtered = client.get("/products", params={"owner_id": owner_id})
    assert [p["product_id"] for p in filtered.json()["products"]] == [seeded_catalog["board"]["product_id"]]

    found = client.post("/products/search", json={"query": "kanban project tool"})
    assert found.status_code == 200
    hits = found.json()["products"]
    assert [p["product_id"] for p in hits] == [seeded_catalog["board"]["product_id"]]
    assert hits[0]["owner_info"]["name"] == "Boardly"


def test_user_search_and_similar(client):
    for user_id, narrative in (("u1", "crm for sales"), ("u2", "sales pipeline crm"), ("u3", "kitchen recipe")):
        client.post("/users/onboarding", json={"user_id": user_id, "narrative_prompt": narrative})

    similar = client.get("/users/u1/similar")
    assert similar.status_code == 200
    assert [u["user_id"] for u in similar.json()["users"]] == ["u2"]
    assert client.get("/users/ghost/similar").json()["users"] == []

    found = client.post("/users/search", json={"query": "cooking", "limit": 5})
    assert [u["user_id"] for u in found.json()["users"]] == ["u3"]

    listed = client.get("/users", params={"limit": 2})
    assert [u["user_id"] for u in listed.json()["users"]] == ["u1", "u2"]


def test_store_error_is_503(client, monkeypatch):
    from sqlalchemy.exc import OperationalError

    import core.services.catalog as catalog

    def locked(*args, **kwargs):
        raise OperationalError("SELECT owners", {}, Exception("database is locked"))

    monkeypatch.setattr(catalog, "list_owners", locked)
    response = client.get("/owners")
    assert response.status_code == 503
    assert response.json()["error_type"] == "store_unavailable"
