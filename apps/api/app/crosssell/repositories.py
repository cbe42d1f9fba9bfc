from __future__ import annotations

from datetime import date, datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, and_, delete, func, select, update
from sqlalchemy.orm import Session

from app.core.database import Base
from app.crosssell.models import BusinessUnit, Client, Industry, Notification, Opportunity, Service, Task, User


ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]
    resource = ""
    default_order: tuple[Any, ...] = ()

    def get(self, session: Session, entity_id: int) -> ModelT | None:
        return session.get(self.model, entity_id)

    def list(self, session: Session, filters: dict[str, Any] | None = None) -> list[ModelT]:
        stmt = self.apply_filters(select(self.model), filters or {})
        if self.default_order:
            stmt = stmt.order_by(*self.default_order)
        return list(session.scalars(stmt).all())

    def apply_filters(self, stmt: Select[Any], filters: dict[str, Any]) -> Select[Any]:
        for field_name, value in filters.items():
            if value is None or value == "":
                continue
            column = getattr(self.model, field_name, None)
            if column is None:
                continue
            stmt = stmt.where(column == value)
        return stmt

    def add(self, session: Session, entity: ModelT) -> ModelT:
        session.add(entity)
        return entity


class UserRepository(BaseRepository[User]):
    model = User
    resource = "user"
    default_order = (User.username.asc(),)

    def first_with_role(self, session: Session, role: str) -> User | None:
        return session.scalar(select(User).where(User.role == role).order_by(User.id.asc()).limit(1))

    def count_references(self, session: Session, user_id: int) -> dict[str, int]:
        return {
            "clients": int(session.scalar(select(func.count(Client.id)).where(Client.account_owner_id == user_id)) or 0),
            "opportunities": int(
                session.scalar(select(func.count(Opportunity.id)).where(Opportunity.assigned_user_id == user_id)) or 0
            ),
            "tasks": int(session.scalar(select(func.count(Task.id)).where(Task.assigned_user_id == user_id)) or 0),
        }


class BusinessUnitRepository(BaseRepository[BusinessUnit]):
    model = BusinessUnit
    resource = "business_unit"
    default_order = (BusinessUnit.name.asc(),)

    def get_by_name(self, session: Session, name: str, *, active_only: bool = False) -> BusinessUnit | None:
        stmt = select(BusinessUnit).where(func.lower(BusinessUnit.name) == name.strip().lower())
        if active_only:
            stmt = stmt.where(BusinessUnit.status == "active")
        return session.scalar(stmt)


class IndustryRepository(BaseRepository[Industry]):
    model = Industry
    resource = "industry"
    default_order = (Industry.name.asc(),)


class ClientRepository(BaseRepository[Client]):
    model = Client
    resource = "client"
    default_order = (Client.name.asc(),)

    def apply_filters(self, stmt: Select[Any], filters: dict[str, Any]) -> Select[Any]:
        name_filter = filters.get("name")
        if name_filter:
            stmt = stmt.where(Client.name.ilike(f"%{name_filter}%"))
        industry = filters.get("industry")
        if industry:
            stmt = stmt.where(func.lower(Client.industry) == str(industry).lower())
        return super().apply_filters(
            stmt,
            {key: value for key, value in filters.items() if key not in {"name", "industry"}},
        )

    def list_using_service(self, session: Session, service_id: int) -> list[Client]:
        # services_used is a JSON list, so membership is checked in Python.
        return [client for client in session.scalars(select(Client)).all() if service_id in (client.services_used or [])]


class ServiceRepository(BaseRepository[Service]):
    model = Service
    resource = "service"
    default_order = (Service.business_unit.asc(), Service.name.asc())

    def apply_filters(self, stmt: Select[Any], filters: dict[str, Any]) -> Select[Any]:
        name_filter = filters.get("name")
        if name_filter:
            stmt = stmt.where(Service.name.ilike(f"%{name_filter}%"))
        return super().apply_filters(
            stmt,
            {key: value for key, value in filters.items() if key not in {"name", "industry"}},
        )

    def list(self, session: Session, filters: dict[str, Any] | None = None) -> list[Service]:
        filters = filters or {}
        rows = super().list(session, filters)
        industry = filters.get("industry")
        if industry:
            needle = str(industry).strip().lower()
            rows = [row for row in rows if needle in {item.lower() for item in (row.applicable_industries or [])}]
        return rows

    def list_active(self, session: Session) -> list[Service]:
        return self.list(session, {"status": "active"})

    def list_for_business_unit(self, session: Session, business_unit: str) -> list[Service]:
        return list(
            session.scalars(
                select(Service).where(func.lower(Service.business_unit) == business_unit.strip().lower())
            ).all()
        )


class OpportunityRepository(BaseRepository[Opportunity]):
    model = Opportunity
    resource = "opportunity"
    default_order = (Opportunity.created_at.desc(), Opportunity.id.desc())

    def count_for_client(self, session: Session, client_id: int) -> int:
        return int(session.scalar(select(func.count(Opportunity.id)).where(Opportunity.client_id == client_id)) or 0)

    def count_for_service(self, session: Session, service_id: int) -> int:
        return int(session.scalar(select(func.count(Opportunity.id)).where(Opportunity.service_id == service_id)) or 0)

    def list_for_clients_and_services(
        self,
        session: Session,
        client_ids: list[int],
        service_ids: list[int],
    ) -> list[Opportunity]:
        if not client_ids or not service_ids:
            return []
        stmt = select(Opportunity).where(
            and_(Opportunity.client_id.in_(client_ids), Opportunity.service_id.in_(service_ids))
        )
        return list(session.scalars(stmt.order_by(Opportunity.created_at.asc(), Opportunity.id.asc())).all())


class TaskRepository(BaseRepository[Task]):
    model = Task
    resource = "task"
    default_order = (Task.due_date.asc(), Task.id.asc())

    def list_overdue(self, session: Session, today: date) -> list[Task]:
        stmt = select(Task).where(and_(Task.due_date < today, Task.status != "completed"))
        return list(session.scalars(stmt.order_by(Task.due_date.asc(), Task.id.asc())).all())

    def delete_for_opportunities(self, session: Session, opportunity_ids: list[int]) -> int:
        if not opportunity_ids:
            return 0
        result = session.execute(delete(Task).where(Task.opportunity_id.in_(opportunity_ids)))
        return int(result.rowcount or 0)

    def status_counts(self, session: Session, assigned_user_id: int | None = None) -> dict[str, int]:
        stmt = select(Task.status, func.count(Task.id)).group_by(Task.status)
        if assigned_user_id is not None:
            stmt = stmt.where(Task.assigned_user_id == assigned_user_id)
        return {str(row[0]): int(row[1]) for row in session.execute(stmt).all()}


class NotificationRepository(BaseRepository[Notification]):
    model = Notification
    resource = "notification"

    def list_for_user(
        self,
        session: Session,
        user_id: int,
        *,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Notification]:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit)
        return list(session.scalars(stmt).all())

    def counts_for_user(self, session: Session, user_id: int) -> dict[str, int]:
        total = session.scalar(select(func.count(Notification.id)).where(Notification.user_id == user_id))
        unread = session.scalar(
            select(func.count(Notification.id)).where(
                and_(Notification.user_id == user_id, Notification.is_read.is_(False))
            )
        )
        return {"total": int(total or 0), "unread": int(unread or 0)}

    def mark_all_read(self, session: Session, user_id: int) -> int:
        result = session.execute(
            update(Notification)
            .where(and_(Notification.user_id == user_id, Notification.is_read.is_(False)))
            .values(is_read=True)
        )
        return int(result.rowcount or 0)

    def delete_many(self, session: Session, user_id: int, ids: list[int]) -> int:
        result = session.execute(
            delete(Notification).where(and_(Notification.user_id == user_id, Notification.id.in_(ids)))
        )
        return int(result.rowcount or 0)

    def delete_older_than(self, session: Session, cutoff: datetime) -> int:
        result = session.execute(delete(Notification).where(Notification.created_at < cutoff))
        return int(result.rowcount or 0)

    def exists_since(
        self,
        session: Session,
        *,
        user_id: int,
        notification_type: str,
        related_id: int,
        since: datetime,
    ) -> bool:
        found = session.scalar(
            select(Notification.id)
            .where(
                and_(
                    Notification.user_id == user_id,
                    Notification.type == notification_type,
                    Notification.related_id == related_id,
                    Notification.created_at >= since,
                )
            )
            .limit(1)
        )
        return found is not None
