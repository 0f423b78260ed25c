import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import pytest

from core.errors import ValidationIssue
from core.models import Product
from core.services.vectorizer import cosine_similarity
from fakes import topic_vector


def _ids(result):
    return [item["product_id"] for item in result["recommendations"]]


def test_crm_thread_outranks_unrelated_products(pipeline, seeded_catalog):
    turns = [
        "We need a CRM for a 5-person sales team.",
        "Our pipeline has about 200 leads right now.",
        "Which CRM works best for a small sales team?",
    ]
    for turn in turns:
        result = pipeline.chat.process_message("S1", {"role": "user", "content": turn}, user_id="u1")
        assert result["status"] == "processed"
    assert result["context_updated"] is True
    assert result["message_count_covered"] == 3

    ranked = pipeline.recommendations.recommend("u1", session_id="S1", limit=5, threshold=0.5)
    assert ranked["status"] == "ok"
    scores = [item["similarity_score"] for item in ranked["recommendations"]]
    assert 0 < ranked["total"] <= 5
    assert all(score >= 0.5 for score in scores)
    assert scores == sorted(scores, reverse=True)
    assert _ids(ranked)[0] == seeded_catalog["crm"]["product_id"]
    assert seeded_catalog["cookware"]["product_id"] not in _ids(ranked)
    assert ranked["recommendations"][0]["owner_info"]["company_name"] == "Pipeline Inc"


def test_text_search_matches_direct_cosine_ranking(pipeline, seeded_catalog, db_session):
    query = "project management tool"
    result = pipeline.recommendations.search(query, limit=10, threshold=0.0)
    assert result["user_context_summary"] == 'Search results for: "project management tool"'

    query_vector = topic_vector(query)
    products = db_session.query(Product).order_by(Product.id.asc()).all()
    expected = sorted(
        products,
        key=lambda product: -cosine_similarity(query_vector, list(product.embedding)),
    )
    assert _ids(result) == [product.product_id for product in expected]
    assert _ids(result)[0] == seeded_catalog["board"]["product_id"]
    for item, product in zip(result["recommendations"], expected):
        assert item["similarity_score"] == pytest.approx(
            cosine_similarity(query_vector, list(product.embedding))
        )


def test_threshold_is_inclusive_and_limit_caps(pipeline, seeded_catalog):
    full = pipeline.recommendations.search("crm kitchen", limit=10, threshold=0.0)
    assert full["total"] == 3
    top_score = full["recommendations"][0]["similarity_score"]

    capped = pipeline.recommendations.search("crm kitchen", limit=1, threshold=0.0)
    assert capped["total"] == 1

    at_threshold = pipeline.recommendations.search("crm kitchen", limit=10, threshold=top_score)
    assert at_threshold["total"] == 2
    assert all(item["similarity_score"] >= top_score for item in at_threshold["recommendations"])


def test_ties_keep_catalog_order(pipeline, seeded_catalog):
    result = pipeline.recommendations.search("crm kitchen", limit=10, threshold=0.0)
    assert _ids(result)[:2] == [
        seeded_catalog["crm"]["product_id"],
        seeded_catalog["cookware"]["product_id"],
    ]


def test_no_match_is_empty_list(pipeline, seeded_catalog):
    result = pipeline.recommendations.search("cooking recipe", limit=5, threshold=0.99)
    assert _ids(result) == [seeded_catalog["cookware"]["product_id"]]

    nothing = pipeline.recommendations.search("weather forecast", limit=5, threshold=0.5)
    assert nothing["recommendations"] == []
    assert nothing["total"] == 0


def test_user_only_when_no_summary(pipeline, seeded_catalog):
    pipeline.users.onboard_user("u1", narrative_prompt="Runs a kitchen and loves cooking")
    result = pipeline.recommendations.recommend("u1", threshold=0.5)
    assert _ids(result) == [seeded_catalog["cookware"]["product_id"]]
    assert result["recommendations"][0]["similarity_score"] == pytest.approx(1.0)


def test_thread_only_when_no_user_context(pipeline, seeded_catalog):
    result = pipeline.recommendations.recommend(
        "stranger", thread_summary="Comparing kanban tools for project tasks", threshold=0.5
    )
    assert _ids(result) == [seeded_catalog["board"]["product_id"]]
    assert result["user_id"] == "stranger"


def test_nothing_to_rank_returns_empty(pipeline, seeded_catalog):
    result = pipeline.recommendations.recommend("stranger", session_id="no-such-session")
    assert result["status"] == "ok"
    assert result["recommendations"] == []
    assert result["total"] == 0


def test_blended_score_uses_configured_weights(pipeline, seeded_catalog):
    result = pipeline.ranker.rank(
        topic_vector("crm for sales"), "kanban project tasks", limit=10, threshold=0.0
    )
    scores = {item["product_id"]: item["similarity_score"] for item in result["recommendations"]}
    assert scores[seeded_catalog["crm"]["product_id"]] == pytest.approx(0.75)
    assert scores[seeded_catalog["board"]["product_id"]] == pytest.approx(0.25)
    assert scores[seeded_catalog["cookware"]["product_id"]] == pytest.approx(0.0)


def test_similar_products_excludes_source(pipeline, seeded_catalog):
    crm_owner = seeded_catalog["crm"]["owner_id"]
    sibling = pipeline.catalog.create_product(
        crm_owner, "LeadTracker", description="Sales leads pipeline"
    )["product"]

    result = pipeline.recommendations.similar(seeded_catalog["crm"]["product_id"])
    assert result["product_id"] == seeded_catalog["crm"]["product_id"]
    assert _ids(result) == [sibling["product_id"]]


def test_similar_products_unknown_id(pipeline, seeded_catalog):
    result = pipeline.recommendations.similar("missing")
    assert result["status"] == "error"
    assert result["error_type"] == "not_found"


def test_invalid_parameters_become_validation_errors(pipeline):
    too_many = pipeline.recommendations.search("crm", limit=10_000)
    assert too_many["error_type"] == "validation_error"
    assert too_many["field"] == "limit"

    bad_threshold = pipeline.recommendations.recommend("u1", threshold=1.5)
    assert bad_threshold["error_type"] == "validation_error"
    assert bad_threshold["field"] == "threshold"

    with pytest.raises(ValidationIssue):
        pipeline.ranker.rank(None, "crm", limit=0)


def test_provider_outage_is_upstream_error(pipeline, embedding_provider, seeded_catalog):
    embedding_provider.fail = True
    result = pipeline.recommendations.search("crm")
    assert result["status"] == "error"
    assert result["error_type"] == "upstream_unavailable"
