from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import date, timedelta

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crosssell.api import get_actor
from app.crosssell.models import Notification, User
from app.crosssell.schemas import TaskRead
from app.crosssell.service import ActorContext, is_task_overdue
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
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def users(db_session: Session) -> dict[str, int]:
    jane = User(username="jane", email="jane@example.com", role="sales", password_hash="x")
    mark = User(username="mark", email="mark@example.com", role="sales", password_hash="x")
    db_session.add_all([jane, mark])
    db_session.commit()
    return {"jane": jane.id, "mark": mark.id}


@pytest.fixture()
def client(
    db_session: Session,
    users: dict[str, int],
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"current": "jane"}

    def override_get_actor(request: Request) -> ActorContext:
        return ActorContext(
            user_id=users[state["current"]],
            role="sales",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_actor] = override_get_actor
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


@pytest.fixture()
def opportunity_id(client: tuple[TestClient, Callable[[str], None]]) -> int:
    test_client, _ = client
    service_id = test_client.post("/api/services", json={"name": "Audit", "business_unit": "Risk"}).json()["data"]["id"]
    client_id = test_client.post("/api/clients", json={"name": "Acme"}).json()["data"]["id"]
    response = test_client.post(
        "/api/opportunities",
        json={"name": "Acme audit", "client_id": client_id, "service_id": service_id},
    )
    assert response.status_code == 201
    return response.json()["data"]["id"]


def _create_task(test_client: TestClient, opportunity_id: int, name: str, due: date, **extra: object) -> dict:
    response = test_client.post(
        "/api/tasks",
        json={"name": name, "opportunity_id": opportunity_id, "due_date": due.isoformat(), **extra},
    )
    assert response.status_code == 201
    return response.json()["data"]


def test_is_task_overdue_rules() -> None:
    today = date(2024, 5, 10)
    task = TaskRead.model_validate(
        {
            "id": 1,
            "name": "Call",
            "opportunity_id": 1,
            "assigned_user_id": None,
            "due_date": date(2024, 5, 9),
            "status": "pending",
            "description": None,
            "created_at": "2024-05-01T00:00:00Z",
            "updated_at": "2024-05-01T00:00:00Z",
        }
    )
    assert is_task_overdue(task, today)
    assert not is_task_overdue(task.model_copy(update={"due_date": today}), today)
    assert not is_task_overdue(task.model_copy(update={"status": "completed"}), today)
    assert is_task_overdue(task.model_copy(update={"status": "cancelled"}), today)


def test_create_task_defaults_to_actor_and_skips_self_notification(
    client: tuple[TestClient, Callable[[str], None]],
    opportunity_id: int,
    users: dict[str, int],
    db_session: Session,
) -> None:
    test_client, _ = client
    task = _create_task(test_client, opportunity_id, "Prepare deck", date.today() + timedelta(days=3))

    assert task["assigned_user_id"] == users["jane"]
    assert task["opportunity_name"] == "Acme audit"
    assert task["status"] == "pending"
    assert task["is_overdue"] is False

    assigned = [item for item in events.published_events if item["event_type"] == "crosssell.task.assigned"]
    assert assigned[-1]["payload"]["task_id"] == task["id"]

    db_session.expire_all()
    task_notes = db_session.scalars(select(Notification).where(Notification.type == "task_assigned")).all()
    assert task_notes == []


def test_assigning_task_to_someone_else_notifies_them(
    client: tuple[TestClient, Callable[[str], None]],
    opportunity_id: int,
    users: dict[str, int],
    db_session: Session,
) -> None:
    test_client, _ = client
    task = _create_task(test_client, opportunity_id, "Prepare deck", date.today() + timedelta(days=3))

    reassigned = test_client.put(f"/api/tasks/{task['id']}", json={"assigned_user_id": users["mark"]})
    assert reassigned.status_code == 200
    assert reassigned.json()["data"]["assigned_user_name"] == "mark"

    db_session.expire_all()
    notes = db_session.scalars(select(Notification).where(Notification.user_id == users["mark"])).all()
    assert [(item.type, item.title) for item in notes] == [("task_assigned", "New Task Assigned")]
    assert notes[0].message == "You have been assigned a new task: Prepare deck"


def test_overdue_listing_and_stats(
    client: tuple[TestClient, Callable[[str], None]],
    opportunity_id: int,
    users: dict[str, int],
) -> None:
    test_client, _ = client
    yesterday = date.today() - timedelta(days=1)
    late = _create_task(test_client, opportunity_id, "Late", yesterday)
    _create_task(test_client, opportunity_id, "Done late", yesterday, status="completed")
    _create_task(test_client, opportunity_id, "Future", date.today() + timedelta(days=5), assigned_user_id=users["mark"])

    overdue = test_client.get("/api/tasks/overdue")
    assert overdue.status_code == 200
    assert [row["id"] for row in overdue.json()["data"]] == [late["id"]]
    assert overdue.json()["data"][0]["is_overdue"] is True

    filtered = test_client.get("/api/tasks", params={"overdue": "true"})
    assert [row["name"] for row in filtered.json()["data"]] == ["Late"]

    mine = test_client.get("/api/tasks", params={"mine": "true"})
    assert sorted(row["name"] for row in mine.json()["data"]) == ["Done late", "Late"]

    stats = test_client.get("/api/tasks/stats").json()["data"]
    assert stats == {
        "total": 3,
        "pending": 2,
        "in_progress": 0,
        "completed": 1,
        "on_hold": 0,
        "cancelled": 0,
        "overdue": 1,
    }

    mark_stats = test_client.get("/api/tasks/stats", params={"assigned_user_id": users["mark"]}).json()["data"]
    assert mark_stats["total"] == 1
    assert mark_stats["overdue"] == 0


def test_task_status_change_and_delete(
    client: tuple[TestClient, Callable[[str], None]],
    opportunity_id: int,
) -> None:
    test_client, _ = client
    task = _create_task(test_client, opportunity_id, "Late", date.today() - timedelta(days=2))

    invalid = test_client.patch(f"/api/tasks/{task['id']}/status", json={"status": "done"})
    assert invalid.status_code == 422
    assert invalid.json()["code"] == "task_status_failed"

    completed = test_client.patch(f"/api/tasks/{task['id']}/status", json={"status": "completed"})
    assert completed.status_code == 200
    assert completed.json()["data"]["is_overdue"] is False

    deleted = test_client.delete(f"/api/tasks/{task['id']}")
    assert deleted.status_code == 200
    assert test_client.get(f"/api/tasks/{task['id']}").status_code == 404


def test_task_requires_existing_opportunity(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post(
        "/api/tasks",
        json={"name": "Orphan", "opportunity_id": 42, "due_date": "2030-01-01"},
    )
    assert response.status_code == 422
    assert response.json()["code"] == "task_create_failed"


def test_completing_task_notifies_opportunity_owner(
    client: tuple[TestClient, Callable[[str], None]],
    opportunity_id: int,
    users: dict[str, int],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    task = _create_task(
        test_client,
        opportunity_id,
        "Send proposal",
        date.today() + timedelta(days=2),
        assigned_user_id=users["mark"],
    )

    set_actor("mark")
    completed = test_client.patch(f"/api/tasks/{task['id']}/status", json={"status": "completed"})
    assert completed.status_code == 200
    again = test_client.patch(f"/api/tasks/{task['id']}/status", json={"status": "completed"})
    assert again.status_code == 200

    completion_events = [item for item in events.published_events if item["event_type"] == "crosssell.task.completed"]
    assert len(completion_events) == 1
    assert completion_events[0]["payload"]["opportunity_assigned_user_id"] == users["jane"]

    db_session.expire_all()
    notes = db_session.scalars(
        select(Notification).where(Notification.user_id == users["jane"], Notification.type == "task_completed")
    ).all()
    assert [(item.title, item.related_to, item.related_id) for item in notes] == [
        ("Task Completed", "task", task["id"])
    ]
    assert notes[0].message == 'Task "Send proposal" has been marked as completed'


def test_owner_completing_task_through_update_is_not_notified(
    client: tuple[TestClient, Callable[[str], None]],
    opportunity_id: int,
    users: dict[str, int],
    db_session: Session,
) -> None:
    test_client, _ = client
    task = _create_task(test_client, opportunity_id, "Book meeting", date.today() + timedelta(days=2))

    updated = test_client.put(f"/api/tasks/{task['id']}", json={"status": "completed"})
    assert updated.status_code == 200

    assert [item for item in events.published_events if item["event_type"] == "crosssell.task.completed"]
    db_session.expire_all()
    notes = db_session.scalars(select(Notification).where(Notification.type == "task_completed")).all()
    assert notes == []
