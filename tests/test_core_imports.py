import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import pytest


def test_core_imports():
    import app.main  # noqa: F401
    import core.models  # noqa: F401
    import core.services.pipeline  # noqa: F401


def test_core_smoke_lifecycle(pipeline):
    owner = pipeline.catalog.create_owner("Pipeline Inc")["owner"]
    product = pipeline.catalog.create_product(
        owner["owner_id"], "PipelineCRM", description="CRM for sales teams"
    )["product"]
    assert product["has_embedding"] is True

    processed = pipeline.chat.process_message(
        "smoke", {"role": "user", "content": "Looking for a CRM"}, user_id="smoke-user"
    )
    assert processed["context_updated"] is True

    ranked = pipeline.recommendations.recommend("smoke-user", session_id="smoke", threshold=0.5)
    assert [item["product_id"] for item in ranked["recommendations"]] == [product["product_id"]]

    assert pipeline.users.delete_user_context("smoke-user")["status"] == "deleted"
    assert pipeline.catalog.delete_product(product["product_id"])["status"] == "deleted"


def test_build_engine_binds_sessions(tmp_path, monkeypatch):
    from core import db as core_db

    monkeypatch.setattr(core_db.DB, "engine", None)
    monkeypatch.setattr(core_db.DB, "SessionLocal", None)
    engine = core_db.build_engine(f"sqlite:///{tmp_path / 'bind.sqlite'}")
    try:
        core_db.bind_engine(engine)
        session = core_db.DB.SessionLocal()
        assert session.get_bind() is engine
        session.close()
    finally:
        engine.dispose()


def test_migrate_to_head_refuses_when_auto_migrate_is_off(monkeypatch):
    import core.config as config
    from core import db as core_db

    monkeypatch.setattr(core_db, "schema_revisions", lambda engine: ("0001_initial_schema", "0002_owner_embeddings"))
    monkeypatch.setattr(config, "AUTO_MIGRATE_ON_STARTUP", False)
    with pytest.raises(RuntimeError, match="0002_owner_embeddings"):
        core_db.migrate_to_head(object())

    monkeypatch.setattr(core_db, "schema_revisions", lambda engine: ("0002_owner_embeddings", "0002_owner_embeddings"))
    assert core_db.migrate_to_head(object()) is None
