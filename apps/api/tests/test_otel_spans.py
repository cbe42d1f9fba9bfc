from __future__ import annotations

import os
from collections.abc import Generator
from datetime import date, timedelta

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crosssell.api import get_actor
from app.crosssell.models import Client, Opportunity, Service, Task, User
from app.crosssell.service import ActorContext
from app.crosssell.workflow import workflow_service
from app.main import app
from app.otel import setup_inmemory_otel


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("crosssell-api")
    exporter.clear()
    return exporter


@pytest.fixture()
def user_id(db_session: Session) -> int:
    user = User(username="admin", email="admin@example.com", role="admin", password_hash="x")
    db_session.add(user)
    db_session.commit()
    return user.id


@pytest.fixture()
def client(db_session: Session, user_id: int) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_actor(request: Request) -> ActorContext:
        return ActorContext(
            user_id=user_id,
            role="admin",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_actor] = override_get_actor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post("/api/clients", json={"name": "OTel Client"}, headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_matrix_span_records_dimensions(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    service_id = client.post("/api/services", json={"name": "Audit", "business_unit": "Risk"}).json()["data"]["id"]
    client.post("/api/services", json={"name": "Backup", "business_unit": "Cloud"})
    client.post("/api/clients", json={"name": "Acme", "services_used": [service_id]})

    response = client.get("/api/opportunities/matrix")
    assert response.status_code == 200

    matrix_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crosssell.matrix.build"]
    assert matrix_spans
    attributes = matrix_spans[-1].attributes
    assert attributes.get("clients") == 1
    assert attributes.get("services") == 2
    assert attributes.get("active_cells") == 1
    assert attributes.get("opportunity_cells") == 0


def test_job_span_contains_job_type(
    db_session: Session,
    user_id: int,
    span_exporter: InMemorySpanExporter,
) -> None:
    service = Service(name="Audit", business_unit="Risk")
    client = Client(name="Acme", account_owner_id=user_id, services_used=[])
    db_session.add_all([service, client])
    db_session.flush()
    opportunity = Opportunity(name="Acme audit", client_id=client.id, service_id=service.id)
    db_session.add(opportunity)
    db_session.flush()
    db_session.add(
        Task(
            name="Call back",
            opportunity_id=opportunity.id,
            assigned_user_id=user_id,
            due_date=date.today() - timedelta(days=2),
        )
    )
    db_session.commit()

    workflow_service.process_overdue_tasks(db_session)

    job_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crosssell.job.run"]
    assert job_spans
    assert any(
        span.attributes.get("job_type") == "process_overdue_tasks" and span.attributes.get("processed") == 1
        for span in job_spans
    )
