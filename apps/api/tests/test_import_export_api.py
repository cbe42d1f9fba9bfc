from __future__ import annotations

import csv
import io
import logging
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crosssell.api import get_actor
from app.crosssell.models import Client, Opportunity, Task, User
from app.crosssell.service import ActorContext
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
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def users(db_session: Session) -> dict[str, int]:
    admin = User(username="admin", email="admin@example.com", role="admin", password_hash="x")
    jane = User(username="jane", email="jane@example.com", role="sales", password_hash="x")
    db_session.add_all([admin, jane])
    db_session.commit()
    return {"admin": admin.id, "jane": jane.id}


@pytest.fixture()
def client(db_session: Session, users: dict[str, int]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_actor(request: Request) -> ActorContext:
        return ActorContext(
            user_id=users["admin"],
            role="admin",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_actor] = override_get_actor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _upload(client: TestClient, entity_type: str, content: str | bytes):  # type: ignore[no-untyped-def]
    payload = content.encode("utf-8") if isinstance(content, str) else content
    return client.post(
        f"/api/{entity_type}/import",
        files={"file": (f"{entity_type}.csv", payload, "text/csv")},
    )


def test_import_clients_creates_rows_and_resolves_owner(
    client: TestClient,
    db_session: Session,
    users: dict[str, int],
) -> None:
    content = (
        "name,industry,contact_phone,account_owner_name,status\n"
        "Acme,Technology,5550123,jane,Active\n"
        "Globex,Finance,,,\n"
    )

    response = _upload(client, "clients", content)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    summary = body["data"]
    assert summary["attempted"] == 2
    assert summary["created"] == 2
    assert summary["failed"] == 0

    rows = {row.name: row for row in db_session.scalars(select(Client)).all()}
    assert rows["Acme"].account_owner_id == users["jane"]
    assert rows["Acme"].contact_phone == "5550123"
    assert rows["Acme"].status == "active"
    assert rows["Globex"].account_owner_id == get_settings().import_fallback_user_id
    assert rows["Globex"].status == "prospect"


def test_import_validation_failure_writes_nothing(client: TestClient, db_session: Session) -> None:
    content = "name,status\nAcme,active\n,prospect\nGlobex,archived\n"

    response = _upload(client, "clients", content)

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "csv_validation_failed"
    messages = [item["message"] for item in body["data"]["errors"]]
    assert 'Row 2: Required field "name" is empty' in messages
    assert any(message.startswith('Row 3: Invalid status "archived"') for message in messages)
    assert [item["row_number"] for item in body["data"]["errors"]] == [2, 3]
    assert db_session.scalars(select(Client)).all() == []


def test_import_missing_required_column(client: TestClient) -> None:
    response = _upload(client, "services", "name,description\nAudit,Yearly audit\n")
    assert response.status_code == 422
    assert response.json()["data"]["errors"][0]["message"] == 'Required field "business_unit" is missing'


def test_import_rejects_undecodable_file(client: TestClient) -> None:
    response = _upload(client, "clients", b"\xff\xfe\xfa\xfb")
    assert response.status_code == 422
    assert response.json()["code"] == "csv_import_failed"


def test_import_unknown_entity_type(client: TestClient) -> None:
    response = _upload(client, "invoices", "name\nX\n")
    assert response.status_code == 404


def test_import_opportunities_and_tasks_by_name(
    client: TestClient,
    db_session: Session,
    users: dict[str, int],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    client_id = client.post("/api/clients", json={"name": "Acme"}).json()["data"]["id"]
    service_id = client.post("/api/services", json={"name": "Audit", "business_unit": "Risk"}).json()["data"]["id"]

    opportunities = (
        "name,client_name,service_name,assigned_user_name,priority,estimated_value,due_date\n"
        "Acme audit,acme,AUDIT,jane,High,1500.50,2030-06-30\n"
        "Ghost deal,Nobody,Audit,,,,\n"
    )
    response = _upload(client, "opportunities", opportunities)
    assert response.status_code == 200
    summary = response.json()["data"]
    assert summary["created"] == 1
    assert summary["failed"] == 1
    assert summary["errors"][0]["row_number"] == 2
    assert 'Row 2: Client "Nobody" not found' in summary["warnings"]
    assert response.json()["success"] is False

    opportunity = db_session.scalars(select(Opportunity)).one()
    assert opportunity.client_id == client_id
    assert opportunity.service_id == service_id
    assert opportunity.assigned_user_id == users["jane"]
    assert opportunity.priority == "high"
    assert str(opportunity.due_date) == "2030-06-30"

    tasks = "name,opportunity_name,due_date,status\nSend proposal,Acme audit,2030-06-01,in_progress\n"
    task_response = _upload(client, "tasks", tasks)
    assert task_response.status_code == 200
    assert task_response.json()["data"]["created"] == 1
    task = db_session.scalars(select(Task)).one()
    assert task.opportunity_id == opportunity.id
    assert task.status == "in_progress"

    assert any(
        record.name == "app.crosssell.import_export"
        and record.getMessage() == "import.lookup_unresolved"
        and getattr(record, "entity_type", None) == "opportunities"
        for record in caplog.records
    )


def test_importing_same_csv_twice_creates_two_sets(client: TestClient, db_session: Session) -> None:
    client.post("/api/clients", json={"name": "Acme"})
    client.post("/api/services", json={"name": "Audit", "business_unit": "Risk"})
    content = (
        "name,client_name,service_name,priority,due_date\n"
        "Acme audit,Acme,Audit,high,2030-06-30\n"
        "Acme renewal,Acme,Audit,low,2030-09-30\n"
    )

    first = _upload(client, "opportunities", content)
    second = _upload(client, "opportunities", content)

    assert first.json()["data"]["created"] == 2
    assert second.json()["data"]["created"] == 2
    assert second.json()["data"]["failed"] == 0
    rows = db_session.scalars(select(Opportunity).order_by(Opportunity.id.asc())).all()
    assert [row.name for row in rows] == ["Acme audit", "Acme renewal", "Acme audit", "Acme renewal"]
    assert len({row.id for row in rows}) == 4


def test_import_row_conflict_does_not_undo_earlier_rows(client: TestClient, db_session: Session) -> None:
    client.post("/api/clients", json={"name": "Initech"})

    response = _upload(client, "clients", "name\nHooli\nInitech\nPied Piper\n")

    assert response.status_code == 200
    summary = response.json()["data"]
    assert summary["created"] == 2
    assert summary["failed"] == 1
    assert summary["errors"][0]["row_number"] == 2
    assert summary["errors"][0]["error_code"] == "HTTP_ERROR"
    names = sorted(row.name for row in db_session.scalars(select(Client)).all())
    assert names == ["Hooli", "Initech", "Pied Piper"]


def test_export_clients_csv(client: TestClient, users: dict[str, int]) -> None:
    client.post("/api/clients", json={"name": "Acme, Inc.", "account_owner_id": users["jane"], "status": "active"})

    response = client.get("/api/clients/export")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert 'filename="clients.csv"' in response.headers["content-disposition"]
    rows = list(csv.DictReader(io.StringIO(response.text)))
    assert rows[0]["name"] == "Acme, Inc."
    assert rows[0]["account_owner_name"] == "jane"
    assert "id" in rows[0]


def test_export_for_import_round_trips(client: TestClient, db_session: Session) -> None:
    service_id = client.post("/api/services", json={"name": "Audit", "business_unit": "Risk"}).json()["data"]["id"]
    client.post("/api/clients", json={"name": "Acme", "services_used": [service_id]})

    exported = client.get("/api/clients/export", params={"for_import": "true"})
    assert exported.status_code == 200
    header = exported.text.splitlines()[0].split(",")
    assert "id" not in header
    assert "created_at" not in header
    assert "account_owner_name" not in header

    client.delete("/api/clients/1")
    reimported = _upload(client, "clients", exported.text)
    assert reimported.status_code == 200
    assert reimported.json()["data"]["created"] == 1

    restored = db_session.scalars(select(Client)).one()
    assert restored.name == "Acme"
    assert restored.services_used == [service_id]


def test_csv_template_endpoint(client: TestClient) -> None:
    response = client.get("/api/csv/templates/opportunities")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["required_fields"] == ["name"]
    assert data["csv"].startswith("name,client_name,service_name")

    assert client.get("/api/csv/templates/invoices").status_code == 404
