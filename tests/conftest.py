"""Shared fixtures: in-memory database, services' session and API client."""
import os

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from experiment_engine import models  # noqa: F401 - registers tables on Base
from experiment_engine.auth import create_access_token
from experiment_engine.database import Base, get_db
from experiment_engine.main import app
from experiment_engine.models import ExperimentResult, ExperimentType, ResultType
from experiment_engine.schemas import ExperimentCreate, VariantCreate
from experiment_engine.services.experiment_service import ExperimentService

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    """Fresh schema per test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_access_token('ops-1', role='admin')}"}


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {create_access_token('storefront-1')}"}


def search_experiment(**overrides) -> ExperimentCreate:
    """Two-arm search ranking experiment; control first."""
    data = {
        "name": "Search ranking v2",
        "description": "Learned ranker against BM25",
        "type": ExperimentType.SEARCH_ALGORITHM,
        "variants": [
            VariantCreate(name="control", is_control=True, configuration={"ranker": "bm25"}),
            VariantCreate(name="learned", configuration={"ranker": "learned"}),
        ],
    }
    data.update(overrides)
    return ExperimentCreate(**data)


@pytest.fixture
def draft_experiment(db):
    return ExperimentService(db).create_experiment(search_experiment())


@pytest.fixture
def running_experiment(db, draft_experiment):
    return ExperimentService(db).start_experiment(draft_experiment.id)


def add_results(db, variant, result_type: ResultType, count: int, value=None):
    """Bulk-inserts events straight into the log."""
    db.add_all([
        ExperimentResult(variant_id=variant.id, result_type=result_type, value=value)
        for _ in range(count)
    ])
    db.commit()
