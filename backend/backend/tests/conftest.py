import pytest
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.db.base import Base
from app.db import models  # noqa: F401
from app.db.session import build_engine, build_session_factory
from main import create_app
from services.lifecycle.orchestrator import LifecycleOrchestrator


@pytest.fixture(scope="function")
def settings():
    return Settings(
        database_url="sqlite:///:memory:",
        dispatcher_enabled=False,
        log_json=False,
        log_level="WARNING",
    )


@pytest.fixture(scope="function")
def engine(settings):
    eng = build_engine(settings.database_url)
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture(scope="function")
def session(session_factory):
    with session_factory() as sess:
        yield sess


@pytest.fixture(scope="function")
def orchestrator(settings):
    return LifecycleOrchestrator(settings)


@pytest.fixture(scope="function")
def planned_batch(session, orchestrator):
    """Request R1 with one batch B1: two steps and one material needing 100 units."""
    request = orchestrator.create_request(
        session, product_name="Widget", quantity=100, request_number="R1"
    ).entity
    batch = orchestrator.create_batch(
        session,
        request.id,
        quantity=100,
        batch_number="B1",
        steps=[
            {"step_name": "Cutting", "machine_type": "cnc"},
            {"step_name": "Assembly", "machine_type": "line"},
        ],
        materials=[{"material_id": "MAT-1", "quantity_required": 100, "unit_of_measure": "kg"}],
    ).entity
    return request, batch


@pytest.fixture(scope="function")
def client(settings):
    app = create_app(settings)
    with TestClient(app) as c:
        yield c
