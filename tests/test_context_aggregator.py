import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy.exc import OperationalError

from core.errors import NotFound, StoreWriteConflict, ValidationIssue
from core.models import UserEnhancedContext
from core.services import context_store, thread_store
from core.services.context_aggregator import ContextAggregator
from core.services.summarizer import Summarizer, SummaryCache
from core.services.vectorizer import Vectorizer
from fakes import FakeEmbeddingProvider, FakeGenerator, topic_vector


@pytest.fixture
def provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def aggregator(server_db, provider, generator):
    return ContextAggregator(
        Vectorizer(provider),
        Summarizer(generator),
        summary_cache=SummaryCache(64),
        history_mode="full",
        narrative_enabled=True,
        write_retry_max=2,
    )


def _say(db, session_id, content, user_id="u1", role="user"):
    return thread_store.append_message(db, session_id, role, content, user_id=user_id)


def test_refresh_creates_single_row_and_is_idempotent(aggregator, db_session):
    _say(db_session, "s1", "We need a CRM for our sales team")

    first = aggregator.refresh_for_session("s1", "u1", {"company_size": 5})
    assert first.context_updated is True
    assert first.error is None
    assert first.thread_summary.message_count_covered == 1
    assert first.context["metadata"] == {"company_size": 5}

    second = aggregator.refresh_for_session("s1", "u1", {"company_size": 5})
    assert second.context_updated is True
    assert context_store.count_contexts(db_session, "u1") == 1

    db_session.expire_all()
    row = context_store.get_context(db_session, "u1")
    expected = topic_vector(context_store.serialize_context(row.metadata_, row.narrative_prompt))
    assert context_store.embedding_as_list(row.embedding) == pytest.approx(expected)
    assert row.version == 2


def test_metadata_is_merged_across_refreshes(aggregator, db_session):
    _say(db_session, "s1", "crm please")
    aggregator.refresh_for_session("s1", "u1", {"industry": "retail"})
    result = aggregator.refresh_for_session("s1", "u1", {"company_size": 12})
    assert result.context["metadata"] == {"industry": "retail", "company_size": 12}


def test_embedding_failure_leaves_row_untouched(aggregator, provider, db_session):
    _say(db_session, "s1", "crm for sales")
    aggregator.refresh_for_session("s1", "u1")
    db_session.expire_all()
    before = context_store.serialize_user_context(context_store.get_context(db_session, "u1"), True)

    _say(db_session, "s1", "actually we want a kitchen recipe tool")
    provider.fail = True
    result = aggregator.refresh_for_session("s1", "u1")

    assert result.context_updated is False
    assert result.error["error_type"] == "upstream_unavailable"
    assert result.thread_summary is not None
    db_session.expire_all()
    after = context_store.serialize_user_context(context_store.get_context(db_session, "u1"), True)
    assert after == before


def test_summary_failure_reports_error(aggregator, generator, db_session):
    _say(db_session, "s1", "crm for sales")
    generator.fail_on.add("thread_summary")
    result = aggregator.refresh_for_session("s1", "u1")
    assert result.context_updated is False
    assert result.thread_summary is None
    assert result.error["error_type"] == "upstream_unavailable"
    assert context_store.count_contexts(db_session, "u1") == 0


def test_unknown_session_reports_not_found(aggregator):
    result = aggregator.refresh_for_session("empty", "u1")
    assert result.context_updated is False
    assert result.error["error_type"] == "not_found"


def test_write_conflict_is_retried_with_fresh_read(aggregator, db_session, monkeypatch):
    _say(db_session, "s1", "crm for sales")
    aggregator.refresh_for_session("s1", "u1")

    real_write = context_store.write_context
    attempts = []

    def flaky_write(db, user_id, **kwargs):
        attempts.append(kwargs["expected_version"])
        if len(attempts) == 1:
            raise StoreWriteConflict("simulated concurrent write")
        return real_write(db, user_id, **kwargs)

    monkeypatch.setattr(context_store, "write_context", flaky_write)
    result = aggregator.refresh_for_session("s1", "u1", {"plan": "team"})

    assert result.context_updated is True
    assert attempts == [1, 1]
    assert result.context["version"] == 2


def test_write_conflict_exhausted_is_reported(aggregator, db_session, monkeypatch):
    _say(db_session, "s1", "crm for sales")

    def always_conflict(db, user_id, **kwargs):
        raise StoreWriteConflict("simulated concurrent write")

    monkeypatch.setattr(context_store, "write_context", always_conflict)
    result = aggregator.refresh_for_session("s1", "u1")
    assert result.context_updated is False
    assert result.error["error_type"] == "conflict"


def test_store_error_is_reported_not_raised(aggregator, db_session, monkeypatch):
    _say(db_session, "s1", "need a crm")

    def locked_write(db, user_id, **kwargs):
        raise OperationalError("UPDATE user_contexts", {}, Exception("database is locked"))

    monkeypatch.setattr(context_store, "write_context", locked_write)
    result = aggregator.refresh_for_session("s1", "u1")
    assert result.context_updated is False
    assert result.error["error_type"] == "store_unavailable"
    assert result.error["retryable"] is True
    assert result.thread_summary.message_count_covered == 1
    assert context_store.find_context(db_session, "u1") is None


def test_concurrent_refreshes_keep_one_consistent_row(aggregator, db_session):
    for content in ("crm for sales", "pipeline and leads", "team of five"):
        _say(db_session, "s1", content)

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: aggregator.refresh_for_session("s1", "u1"), range(8)))

    assert all(result.context_updated for result in results)
    assert context_store.count_contexts(db_session, "u1") == 1
    db_session.expire_all()
    row = context_store.get_context(db_session, "u1")
    assert row.version == 8
    expected = topic_vector(context_store.serialize_context(row.metadata_, row.narrative_prompt))
    assert context_store.embedding_as_list(row.embedding) == pytest.approx(expected)


def test_summary_cache_folds_new_messages(aggregator, generator, db_session):
    _say(db_session, "s1", "We need a CRM")
    first = aggregator.summarize_session("s1")
    assert first.message_count_covered == 1

    again = aggregator.summarize_session("s1")
    assert again == first
    assert generator.calls.count("thread_summary") == 1

    _say(db_session, "s1", "Budget is small", role="assistant")
    folded = aggregator.summarize_session("s1")
    assert folded.message_count_covered == 2
    assert folded.text.startswith(first.text)
    assert "Budget is small" in folded.text
    assert folded.text.count("We need a CRM") == 1


def test_recent_history_mode_limits_window(server_db, generator, db_session):
    aggregator = ContextAggregator(
        Vectorizer(FakeEmbeddingProvider()),
        Summarizer(generator),
        history_mode="recent",
        history_window=2,
    )
    for content in ("oldest message", "middle message", "newest message"):
        _say(db_session, "s1", content)

    summary = aggregator.summarize_session("s1")
    assert "oldest message" not in summary.text
    assert "newest message" in summary.text
    assert summary.message_count_covered == 3


def test_narrative_disabled_uses_thread_summary(server_db, generator, db_session):
    aggregator = ContextAggregator(
        Vectorizer(FakeEmbeddingProvider()),
        Summarizer(generator),
        narrative_enabled=False,
    )
    context = aggregator.update_with_summary("u1", "Looking for kanban tooling")
    assert context["narrative_prompt"] == "Looking for kanban tooling"
    assert "user_context_narrative" not in generator.calls


def test_onboard_and_update_context(aggregator):
    created = aggregator.onboard("u1", {"industry": "saas"}, "Sales leader")
    assert created["version"] == 1
    assert created["narrative_prompt"] == "Sales leader"

    updated = aggregator.update_context("u1", narrative_prompt="Sales and marketing leader")
    assert updated["metadata"] == {"industry": "saas"}
    assert updated["narrative_prompt"] == "Sales and marketing leader"
    assert updated["version"] == 2

    with pytest.raises(NotFound):
        aggregator.update_context("someone-else", metadata={"a": 1})


def test_update_with_summary_validates_input(aggregator):
    with pytest.raises(ValidationIssue):
        aggregator.update_with_summary("u1", "   ")
    with pytest.raises(ValidationIssue):
        aggregator.update_with_summary("", "summary")


def test_similar_contexts_exclude_the_user(aggregator, db_session):
    aggregator.onboard("u1", {}, "crm for sales")
    aggregator.onboard("u2", {}, "sales pipeline crm")
    aggregator.onboard("u3", {}, "kitchen recipe")

    similar = context_store.similar_contexts(db_session, "u1", 0.8, 5)
    assert [(row.user_id, round(score, 6)) for row, score in similar] == [("u2", 1.0)]
    assert context_store.similar_contexts(db_session, "nobody", 0.8, 5) == []

    found = context_store.search_contexts(db_session, topic_vector("cooking"), 0.7, 10)
    assert [row.user_id for row, _ in found] == ["u3"]
    assert [row.user_id for row in context_store.list_contexts(db_session, limit=2, offset=1)] == ["u2", "u3"]


def test_similar_contexts_without_embedding(aggregator, db_session):
    aggregator.onboard("u1", {}, "crm for sales")
    aggregator.onboard("u2", {}, "crm leads")
    db_session.query(UserEnhancedContext).filter(UserEnhancedContext.user_id == "u1").update(
        {UserEnhancedContext.embedding: None}, synchronize_session=False
    )
    db_session.commit()
    db_session.expire_all()
    assert context_store.similar_contexts(db_session, "u1", 0.0, 5) == []
