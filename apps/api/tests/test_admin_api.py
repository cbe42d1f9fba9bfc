from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crosssell.api import get_actor
from app.crosssell.models import BusinessUnit, Opportunity, Service, User
from app.crosssell.service import ActorContext, verify_password
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
def client(
    db_session: Session,
    users: dict[str, int],
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    roles = {"admin": "admin", "jane": "sales"}
    state = {"current": "admin"}

    def override_get_actor(request: Request) -> ActorContext:
        return ActorContext(
            user_id=users[state["current"]],
            role=roles[state["current"]],
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_actor] = override_get_actor
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def test_business_unit_management_is_admin_only(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("jane")

    response = test_client.post("/api/admin/business-units", json={"name": "Cloud"})
    assert response.status_code == 403
    assert response.json()["code"] == "business_unit_create_failed"
    assert test_client.get("/api/admin/business-units").status_code == 200


def test_business_unit_rename_propagates_to_services(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    unit_id = test_client.post("/api/admin/business-units", json={"name": "Cloud"}).json()["data"]["id"]
    service_id = test_client.post(
        "/api/services",
        json={"name": "Migration", "business_unit": "CLOUD"},
    ).json()["data"]["id"]

    renamed = test_client.put(f"/api/admin/business-units/{unit_id}", json={"name": "Cloud Services"})
    assert renamed.status_code == 200
    assert renamed.json()["data"]["name"] == "Cloud Services"

    service = test_client.get(f"/api/services/{service_id}").json()["data"]
    assert service["business_unit"] == "Cloud Services"

    inactive = test_client.patch(f"/api/admin/business-units/{unit_id}/status", json={"status": "inactive"})
    assert inactive.status_code == 200
    listed = test_client.get("/api/admin/business-units", params={"status": "active"}).json()["data"]
    assert listed == []


def test_business_unit_delete_requires_force_when_it_owns_services(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    unit_id = test_client.post("/api/admin/business-units", json={"name": "Risk"}).json()["data"]["id"]
    service_id = test_client.post("/api/services", json={"name": "Audit", "business_unit": "Risk"}).json()["data"]["id"]
    client_id = test_client.post(
        "/api/clients",
        json={"name": "Acme", "services_used": [service_id]},
    ).json()["data"]["id"]
    opportunity = test_client.post(
        "/api/opportunities",
        json={"name": "Audit renewal", "client_id": client_id, "service_id": service_id},
    )
    assert opportunity.status_code == 201

    refused = test_client.delete(f"/api/admin/business-units/{unit_id}")
    assert refused.status_code == 409
    assert refused.json()["hasServices"] is True
    assert refused.json()["serviceCount"] == 1

    forced = test_client.delete(f"/api/admin/business-units/{unit_id}", params={"force": "true"})
    assert forced.status_code == 200
    assert forced.json()["opportunityCount"] == 1

    db_session.expire_all()
    assert db_session.scalars(select(BusinessUnit)).all() == []
    assert db_session.scalars(select(Service)).all() == []
    assert db_session.scalars(select(Opportunity)).all() == []
    assert test_client.get(f"/api/clients/{client_id}").json()["data"]["services_used"] == []


def test_service_delete_reports_references(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    service_id = test_client.post("/api/services", json={"name": "Audit", "business_unit": "Risk"}).json()["data"]["id"]
    test_client.post("/api/clients", json={"name": "Acme", "services_used": [service_id]})

    refused = test_client.delete(f"/api/services/{service_id}")
    assert refused.status_code == 409
    body = refused.json()
    assert body["hasClients"] is True
    assert body["clientCount"] == 1
    assert body["hasOpportunities"] is False

    duplicate = test_client.post("/api/services", json={"name": "Audit", "business_unit": "Risk"})
    assert duplicate.status_code == 409


def test_service_filters_by_industry_and_business_unit(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    test_client.post(
        "/api/services",
        json={"name": "Audit", "business_unit": "Risk", "applicable_industries": "Finance;Healthcare"},
    )
    test_client.post("/api/services", json={"name": "Migration", "business_unit": "Cloud"})

    finance = test_client.get("/api/services", params={"industry": "finance"}).json()["data"]
    assert [row["name"] for row in finance] == ["Audit"]
    assert finance[0]["applicable_industries"] == ["Finance", "Healthcare"]

    cloud = test_client.get("/api/services", params={"business_unit": "Cloud"}).json()["data"]
    assert [row["name"] for row in cloud] == ["Migration"]


def test_industry_crud(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = test_client.post("/api/admin/industries", json={"name": "Healthcare"})
    assert created.status_code == 201
    industry_id = created.json()["data"]["id"]

    assert test_client.post("/api/admin/industries", json={"name": "Healthcare"}).status_code == 409

    updated = test_client.put(f"/api/admin/industries/{industry_id}", json={"description": "Hospitals"})
    assert updated.json()["data"]["description"] == "Hospitals"

    status_change = test_client.patch(f"/api/admin/industries/{industry_id}/status", json={"status": "inactive"})
    assert status_change.json()["data"]["status"] == "inactive"

    deleted = test_client.delete(f"/api/admin/industries/{industry_id}")
    assert deleted.status_code == 200
    assert test_client.get(f"/api/admin/industries/{industry_id}").status_code == 404


def test_user_lifecycle(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, int],
) -> None:
    test_client, set_actor = client
    created = test_client.post(
        "/api/users",
        json={"username": "mark", "email": "Mark@Example.com", "password": "s3cret!", "role": "bu_head"},
    )
    assert created.status_code == 201
    data = created.json()["data"]
    assert data["email"] == "mark@example.com"
    assert "password" not in data
    assert "password_hash" not in data

    stored = db_session.get(User, data["id"])
    assert stored is not None
    assert verify_password("s3cret!", stored.password_hash)

    duplicate = test_client.post(
        "/api/users",
        json={"username": "mark", "email": "other@example.com", "password": "s3cret!"},
    )
    assert duplicate.status_code == 409

    bu_heads = test_client.get("/api/users", params={"role": "bu_head"}).json()["data"]
    assert [row["username"] for row in bu_heads] == ["mark"]

    set_actor("jane")
    assert test_client.post(
        "/api/users",
        json={"username": "eve", "email": "eve@example.com", "password": "s3cret!"},
    ).status_code == 403
    promote = test_client.put(f"/api/users/{users['jane']}", json={"role": "admin"})
    assert promote.status_code == 403
    rename = test_client.put(f"/api/users/{users['jane']}", json={"username": "jane.doe"})
    assert rename.status_code == 200
    assert rename.json()["data"]["username"] == "jane.doe"


def test_delete_referenced_user_is_refused(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, int],
) -> None:
    test_client, _ = client
    client_id = test_client.post(
        "/api/clients",
        json={"name": "Acme", "account_owner_id": users["jane"]},
    ).json()["data"]["id"]

    refused = test_client.delete(f"/api/users/{users['jane']}")
    assert refused.status_code == 409
    body = refused.json()
    assert body["code"] == "user_delete_failed"
    assert body["details"]["dependencies"] == {"clients": 1, "opportunities": 0, "tasks": 0}

    assert test_client.put(f"/api/clients/{client_id}", json={"account_owner_id": None}).status_code == 200
    deleted = test_client.delete(f"/api/users/{users['jane']}")
    assert deleted.status_code == 200
    assert test_client.get(f"/api/users/{users['jane']}").status_code == 404
