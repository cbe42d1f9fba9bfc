from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crosssell.api import get_actor
from app.crosssell.models import User
from app.crosssell.service import ActorContext
from app.crosssell.workflow import workflow_service
from app.main import app


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def auth_role() -> dict[str, str]:
    return {"role": "admin"}


@pytest.fixture()
def client(db_session: Session, auth_role: dict[str, str]) -> Generator[TestClient, None, None]:
    admin = User(username="admin", email="admin@example.com", role="admin", password_hash="x")
    db_session.add(admin)
    db_session.commit()
    admin_id = admin.id

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_actor(request: Request) -> ActorContext:
        return ActorContext(
            user_id=admin_id,
            role="admin",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub=str(admin_id), role=auth_role["role"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_actor] = override_get_actor
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_job_and_domain_metrics(client: TestClient, db_session: Session) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"

    service_id = client.post("/api/services", json={"name": "Audit", "business_unit": "Risk"}).json()["data"]["id"]
    client_id = client.post("/api/clients", json={"name": "Acme", "services_used": [service_id]}).json()["data"]["id"]
    assert client.get(f"/api/clients/{client_id}").status_code == 200
    assert client.get("/api/opportunities/matrix").status_code == 200
    assert client.get("/api/clients/export").status_code == 200

    workflow_service.process_overdue_tasks(db_session)

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crosssell_jobs_total" in body
    assert "crosssell_job_duration_seconds" in body
    assert "matrix_build_duration_seconds" in body
    assert "matrix_cells_total" in body
    assert "csv_export_rows_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/clients/{id}"' in body
    assert 'job_type="process_overdue_tasks"' in body
    assert 'kind="active"' in body
    assert 'entity_type="clients"' in body


@pytest.mark.parametrize("role", ["sales", "bu_head"])
def test_metrics_endpoint_requires_admin_role(client: TestClient, auth_role: dict[str, str], role: str) -> None:
    auth_role["role"] = role

    response = client.get("/metrics")

    assert response.status_code == 403
    assert response.json()["code"] == "http_error"


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert client.get("/metrics").status_code == 404
