import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from core.models import ChatMessage
from core.services import context_store, retention_service


def _user(content):
    return {"role": "user", "content": content}


def test_message_survives_embedding_outage(pipeline, embedding_provider):
    embedding_provider.fail = True
    result = pipeline.chat.process_message("s1", _user("We need a CRM"), user_id="u1")

    assert result["status"] == "processed"
    assert result["context_updated"] is False
    assert result["context_error"]["error_type"] == "upstream_unavailable"
    assert result["thread_summary"] == "user: We need a CRM"
    assert pipeline.chat.get_message_count("s1")["count"] == 1


def test_message_survives_generation_outage(pipeline, generator):
    generator.fail_on.add("thread_summary")
    result = pipeline.chat.process_message("s1", _user("We need a CRM"))

    assert result["status"] == "processed"
    assert result["thread_summary"] is None
    assert result["context_error"]["error_type"] == "upstream_unavailable"
    assert result["purchase_intent"]["level"] == "unknown"
    assert pipeline.chat.get_message_count("s1")["count"] == 1


def test_message_survives_locked_context_store(pipeline, monkeypatch):
    def locked_write(db, user_id, **kwargs):
        raise OperationalError("UPDATE user_contexts", {}, Exception("database is locked"))

    monkeypatch.setattr(context_store, "write_context", locked_write)
    result = pipeline.chat.process_message("s1", _user("need a crm"), user_id="u1")

    assert result["status"] == "processed"
    assert result["context_updated"] is False
    assert result["context_error"]["error_type"] == "store_unavailable"
    assert pipeline.chat.get_message_count("s1")["count"] == 1


def test_anonymous_message_survives_store_error_in_summary(pipeline, monkeypatch):
    def locked_summary(session_id):
        raise OperationalError("SELECT chat_messages", {}, Exception("database is locked"))

    monkeypatch.setattr(pipeline.aggregator, "summarize_session", locked_summary)
    result = pipeline.chat.process_message("s1", _user("need a crm"))

    assert result["status"] == "processed"
    assert result["thread_summary"] is None
    assert result["context_error"]["error_type"] == "store_unavailable"
    assert pipeline.chat.get_message_count("s1")["count"] == 1


def test_process_message_reports_intent_and_context(pipeline):
    result = pipeline.chat.process_message(
        "s1", _user("How much is the CRM per seat?"), user_id="u1", metadata={"plan": "team"}
    )
    assert result["context_updated"] is True
    assert "context_error" not in result
    assert result["message_count_covered"] == 1
    assert result["purchase_intent"] == {"level": "high", "score": 82, "rationale": "asked about pricing"}

    context = pipeline.users.get_user_context("u1")["context"]
    assert context["metadata"] == {"plan": "team"}


def test_invalid_message_is_rejected_before_saving(pipeline):
    result = pipeline.chat.process_message("s1", {"role": "user"})
    assert result["error_type"] == "validation_error"
    assert result["field"] == "message.content"
    assert pipeline.chat.get_message_count("s1")["count"] == 0


def test_extra_message_fields_are_kept(pipeline):
    pipeline.chat.process_message("s1", {"role": "user", "content": "hi there", "channel": "web"})
    history = pipeline.chat.get_thread_history("s1")
    assert history["messages"][0]["message"] == {"role": "user", "content": "hi there", "channel": "web"}


def test_thread_history_pages_in_order(pipeline):
    for index in range(4):
        pipeline.chat.process_message("s1", _user(f"message {index}"))

    page = pipeline.chat.get_thread_history("s1", limit=2, offset=1)
    assert [m["message"]["content"] for m in page["messages"]] == ["message 1", "message 2"]
    assert page["total"] == 4
    assert page["summary"] == "user: message 1\nuser: message 2"

    recent = pipeline.chat.get_recent_messages("s1", limit=2)
    assert [m["message"]["content"] for m in recent["messages"]] == ["message 2", "message 3"]
    assert recent["count"] == 2


def test_history_limit_is_validated(pipeline):
    result = pipeline.chat.get_thread_history("s1", limit=0)
    assert result["error_type"] == "validation_error"
    assert result["field"] == "limit"


def test_user_threads_and_patterns(pipeline):
    pipeline.chat.process_message("s1", _user("kanban boards for project tasks"), user_id="u1")
    pipeline.chat.process_message("s1", _user("kanban with sprint planning"), user_id="u1")
    pipeline.chat.process_message("s2", _user("kanban pricing question"), user_id="u1")
    pipeline.chat.process_message("s3", _user("unrelated"), user_id="u2")

    threads = pipeline.chat.get_user_threads("u1")
    assert threads["count"] == 2
    assert [t["session_id"] for t in threads["threads"]] == ["s2", "s1"]
    assert threads["threads"][1]["message_count"] == 2

    patterns = pipeline.chat.analyze_conversation_patterns("u1")
    assert patterns["total_threads"] == 2
    assert patterns["total_messages"] == 3
    assert patterns["average_messages_per_thread"] == 1.5
    topics = {item["word"]: item["frequency"] for item in patterns["common_topics"]}
    assert topics["kanban"] == 3
    assert "for" not in topics


def test_search_messages_ranks_by_relevance(pipeline):
    pipeline.chat.process_message("s1", _user("crm crm crm for our sales pipeline"))
    pipeline.chat.process_message("s1", _user("crm and a kitchen recipe"))
    pipeline.chat.process_message("s1", _user("nothing to see"))

    result = pipeline.chat.search_messages("crm sales", session_id="s1")
    assert result["count"] == 2
    contents = [item["message"]["content"] for item in result["results"]]
    assert contents == ["crm crm crm for our sales pipeline", "crm and a kitchen recipe"]
    relevance = [item["relevance"] for item in result["results"]]
    assert relevance == sorted(relevance, reverse=True)


def test_search_messages_without_candidates(pipeline, embedding_provider):
    result = pipeline.chat.search_messages("nonexistent")
    assert result == {"status": "ok", "query": "nonexistent", "results": [], "count": 0}
    assert embedding_provider.calls == []


def test_generate_response(pipeline, seeded_catalog):
    pipeline.chat.process_message("s1", _user("We need a CRM for our sales team"), user_id="u1")
    result = pipeline.chat.generate_response("s1", user_id="u1", threshold=0.5)

    assert result["status"] == "ok"
    assert result["response"] == "Here are 1 options for you."
    assert result["recommendations_used"] == 1
    assert result["total"] == 1
    assert result["recommendations"][0]["product_id"] == seeded_catalog["crm"]["product_id"]
    assert result["user_context_summary"] == result["context_summary"]


def test_generate_response_unknown_session(pipeline):
    result = pipeline.chat.generate_response("missing")
    assert result["status"] == "error"
    assert result["error_type"] == "not_found"


def test_cleanup_old_messages(pipeline, db_session):
    pipeline.chat.process_message("s1", _user("old news"))
    pipeline.chat.process_message("s1", _user("fresh news"))
    db_session.query(ChatMessage).filter(ChatMessage.content == "old news").update(
        {ChatMessage.created_at: datetime.utcnow() - timedelta(days=45)},
        synchronize_session=False,
    )
    db_session.commit()
    assert len(pipeline.summary_cache) > 0

    result = pipeline.chat.cleanup_old_messages(days_old=30)
    assert result == {"status": "ok", "days_old": 30, "deleted": 1}
    assert len(pipeline.summary_cache) == 0
    assert pipeline.chat.get_message_count("s1")["count"] == 1


def test_cleanup_old_messages_runs_retention_sweep(pipeline, monkeypatch):
    calls = []

    def fake_tick(days_old=None, summary_cache=None, now=None, session_factory=None):
        calls.append((days_old, summary_cache))
        return 3

    monkeypatch.setattr(retention_service, "run_retention_tick", fake_tick)
    result = pipeline.chat.cleanup_old_messages(days_old=7)
    assert result == {"status": "ok", "days_old": 7, "deleted": 3}
    assert calls == [(7, pipeline.summary_cache)]


def test_cleanup_old_messages_rejects_zero_days(pipeline):
    result = pipeline.chat.cleanup_old_messages(days_old=0)
    assert result["error_type"] == "validation_error"
    assert result["field"] == "days_old"
