import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")
os.environ.setdefault("EMBEDDING_PROVIDER", "none")

import pytest
from sqlalchemy import create_engine

from core.db import DB, bind_engine
from core.models import Base
from core.services.pipeline import PipelineState, build_pipeline
from fakes import FakeEmbeddingProvider, FakeGenerator


@pytest.fixture
def server_db(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'contextmatch.sqlite'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    bind_engine(engine)
    try:
        yield engine
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    db = DB.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def embedding_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def pipeline(server_db, embedding_provider, generator):
    built = build_pipeline(embedding_provider, generator)
    previous = PipelineState.current
    PipelineState.current = built
    try:
        yield built
    finally:
        PipelineState.current = previous


@pytest.fixture
def seeded_catalog(pipeline):
    """Three owners with one product each, inserted CRM, cooking, project management."""
    service = pipeline.catalog
    crm_owner = service.create_owner("Pipeline Inc", domain="pipeline.example")["owner"]
    kitchen_owner = service.create_owner("Chef Supply", domain="chefsupply.example")["owner"]
    pm_owner = service.create_owner("Boardly", domain="boardly.example")["owner"]

    crm = service.create_product(
        crm_owner["owner_id"],
        "PipelineCRM",
        description="CRM for small sales teams",
        categories=["crm", "sales"],
        url="https://pipeline.example/crm",
    )["product"]
    cookware = service.create_product(
        kitchen_owner["owner_id"],
        "Cast Iron Set",
        description="Professional cookware for home cooking",
        categories=["kitchen", "cookware"],
    )["product"]
    board = service.create_product(
        pm_owner["owner_id"],
        "Boardly",
        description="Kanban project management tool",
        categories=["project management"],
    )["product"]
    return {"crm": crm, "cookware": cookware, "board": board}
