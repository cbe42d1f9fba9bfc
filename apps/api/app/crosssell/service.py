from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from passlib.context import CryptContext
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import events
from app.core.config import get_settings
from app.crosssell.models import BusinessUnit, Client, Industry, Notification, Opportunity, Service, Task, User
from app.crosssell.repositories import (
    BusinessUnitRepository,
    ClientRepository,
    IndustryRepository,
    NotificationRepository,
    OpportunityRepository,
    ServiceRepository,
    TaskRepository,
    UserRepository,
)
from app.crosssell.schemas import (
    BusinessUnitCreate,
    BusinessUnitRead,
    BusinessUnitUpdate,
    ClientCreate,
    ClientRead,
    ClientUpdate,
    DeleteResult,
    IndustryCreate,
    IndustryRead,
    IndustryUpdate,
    NotificationCount,
    NotificationCreate,
    NotificationRead,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    ServiceCreate,
    ServiceRead,
    ServiceUpdate,
    TaskCreate,
    TaskRead,
    TaskStats,
    TaskUpdate,
    UserCreate,
    UserRead,
    UserUpdate,
)
from app.metrics import observe_notification_created


logger = logging.getLogger("app.crosssell.service")
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

USER_ROLES = {"admin", "sales", "bu_head", "senior_management"}
RECORD_STATUSES = {"active", "inactive"}
CLIENT_STATUSES = {"active", "inactive", "prospect"}
SERVICE_STATUSES = {"active", "inactive", "deprecated"}
OPPORTUNITY_STATUSES = {"new", "in_progress", "qualified", "proposal", "negotiation", "won", "lost", "on_hold"}
OPPORTUNITY_PRIORITIES = {"low", "medium", "high", "critical"}
TASK_STATUSES = {"pending", "in_progress", "completed", "on_hold", "cancelled"}
TERMINAL_OPPORTUNITY_STATUSES = {"won", "lost"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorContext:
    """Request-scoped identity handed to every service call."""

    user_id: int | None
    role: str = "sales"
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def require_admin(ctx: ActorContext) -> None:
    if not ctx.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required")


def is_task_overdue(task: Task | TaskRead, today: date | None = None) -> bool:
    reference = today or date.today()
    if task.status == "completed":
        return False
    due = task.due_date
    if isinstance(due, datetime):
        due = due.date()
    return due < reference


def _validate_status(value: str, allowed: set[str]) -> str:
    normalized = str(value).strip().lower()
    if normalized not in allowed:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=f"Invalid status value. Must be one of: {', '.join(sorted(allowed))}",
        )
    return normalized


def _commit(session: Session, conflict_detail: str) -> None:
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=conflict_detail)


def _publish(event_type: str, ctx: ActorContext, payload: dict[str, Any]) -> None:
    envelope = events.build_envelope(event_type, ctx.user_id, payload)
    envelope["correlation_id"] = ctx.correlation_id
    events.publish(envelope)


def _require_user(session: Session, user_id: int | None, field_name: str) -> None:
    if user_id is None:
        return
    if session.get(User, user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=f"{field_name} does not reference an existing user",
        )


class UserService:
    entity_type = "user"

    def __init__(self) -> None:
        self.repository = UserRepository()

    def create_user(self, session: Session, ctx: ActorContext, dto: UserCreate) -> UserRead:
        user = User(
            username=dto.username.strip(),
            email=str(dto.email).lower(),
            role=dto.role,
            password_hash=hash_password(dto.password),
        )
        self.repository.add(session, user)
        _commit(session, "username or email already exists")
        session.refresh(user)
        logger.info("user.created", extra={"entity_type": self.entity_type, "entity_id": user.id, "user_id": ctx.user_id})
        return UserRead.model_validate(user)

    def list_users(self, session: Session, ctx: ActorContext, filters: dict[str, Any] | None = None) -> list[UserRead]:
        return [UserRead.model_validate(row) for row in self.repository.list(session, filters)]

    def get_user(self, session: Session, ctx: ActorContext, user_id: int) -> UserRead:
        return UserRead.model_validate(self._get_or_404(session, user_id))

    def update_user(self, session: Session, ctx: ActorContext, user_id: int, dto: UserUpdate) -> UserRead:
        user = self._get_or_404(session, user_id)
        changes = dto.model_dump(exclude_unset=True)
        if "role" in changes and changes["role"] != user.role:
            require_admin(ctx)
        password = changes.pop("password", None)
        if password:
            user.password_hash = hash_password(password)
        for field_name, value in changes.items():
            if value is None:
                continue
            if field_name == "email":
                value = str(value).lower()
            setattr(user, field_name, value)
        _commit(session, "username or email already exists")
        session.refresh(user)
        return UserRead.model_validate(user)

    def delete_user(self, session: Session, ctx: ActorContext, user_id: int) -> None:
        require_admin(ctx)
        user = self._get_or_404(session, user_id)
        references = self.repository.count_references(session, user_id)
        if any(count > 0 for count in references.values()):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"message": "User is still referenced", "dependencies": references},
            )
        session.execute(update(BusinessUnit).where(BusinessUnit.owner_id == user_id).values(owner_id=None))
        for notification in session.scalars(select(Notification).where(Notification.user_id == user_id)).all():
            session.delete(notification)
        session.delete(user)
        session.commit()
        logger.info("user.deleted", extra={"entity_type": self.entity_type, "entity_id": user_id, "user_id": ctx.user_id})

    def _get_or_404(self, session: Session, user_id: int) -> User:
        user = self.repository.get(session, user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
        return user


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


class BusinessUnitService:
    entity_type = "business_unit"

    def __init__(self) -> None:
        self.repository = BusinessUnitRepository()
        self.service_repository = ServiceRepository()

    def create_business_unit(self, session: Session, ctx: ActorContext, dto: BusinessUnitCreate) -> BusinessUnitRead:
        require_admin(ctx)
        _require_user(session, dto.owner_id, "owner_id")
        unit = BusinessUnit(
            name=dto.name.strip(),
            description=dto.description,
            status=dto.status,
            owner_id=dto.owner_id,
        )
        self.repository.add(session, unit)
        _commit(session, "business unit already exists")
        session.refresh(unit)
        return BusinessUnitRead.model_validate(unit)

    def list_business_units(
        self,
        session: Session,
        ctx: ActorContext,
        filters: dict[str, Any] | None = None,
    ) -> list[BusinessUnitRead]:
        return [BusinessUnitRead.model_validate(row) for row in self.repository.list(session, filters)]

    def get_business_unit(self, session: Session, ctx: ActorContext, unit_id: int) -> BusinessUnitRead:
        return BusinessUnitRead.model_validate(self._get_or_404(session, unit_id))

    def update_business_unit(
        self,
        session: Session,
        ctx: ActorContext,
        unit_id: int,
        dto: BusinessUnitUpdate,
    ) -> BusinessUnitRead:
        require_admin(ctx)
        unit = self._get_or_404(session, unit_id)
        changes = dto.model_dump(exclude_unset=True)
        if "owner_id" in changes:
            _require_user(session, changes["owner_id"], "owner_id")
            unit.owner_id = changes.pop("owner_id")

        new_name = changes.pop("name", None)
        if new_name and new_name.strip() != unit.name:
            # Services reference their unit by name.
            for service in self.service_repository.list_for_business_unit(session, unit.name):
                service.business_unit = new_name.strip()
            unit.name = new_name.strip()

        for field_name, value in changes.items():
            if value is not None:
                setattr(unit, field_name, value)
        _commit(session, "business unit already exists")
        session.refresh(unit)
        return BusinessUnitRead.model_validate(unit)

    def change_status(self, session: Session, ctx: ActorContext, unit_id: int, new_status: str) -> BusinessUnitRead:
        require_admin(ctx)
        unit = self._get_or_404(session, unit_id)
        unit.status = _validate_status(new_status, RECORD_STATUSES)
        session.commit()
        session.refresh(unit)
        return BusinessUnitRead.model_validate(unit)

    def delete_business_unit(
        self,
        session: Session,
        ctx: ActorContext,
        unit_id: int,
        *,
        force: bool = False,
    ) -> DeleteResult:
        require_admin(ctx)
        unit = self._get_or_404(session, unit_id)
        services = self.service_repository.list_for_business_unit(session, unit.name)
        if services and not force:
            return DeleteResult(
                success=False,
                message="Business unit still owns services",
                has_services=True,
                service_count=len(services),
            )

        removed_opportunities = 0
        for service in services:
            removed_opportunities += service_catalog_service.remove_service_rows(session, service)
        session.delete(unit)
        session.commit()
        logger.info(
            "business_unit.deleted",
            extra={"entity_type": self.entity_type, "entity_id": unit_id, "count": len(services), "user_id": ctx.user_id},
        )
        return DeleteResult(
            success=True,
            message="Business unit deleted",
            service_count=len(services),
            opportunity_count=removed_opportunities,
        )

    def _get_or_404(self, session: Session, unit_id: int) -> BusinessUnit:
        unit = self.repository.get(session, unit_id)
        if unit is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="business unit not found")
        return unit


class IndustryService:
    entity_type = "industry"

    def __init__(self) -> None:
        self.repository = IndustryRepository()

    def create_industry(self, session: Session, ctx: ActorContext, dto: IndustryCreate) -> IndustryRead:
        require_admin(ctx)
        industry = Industry(name=dto.name.strip(), description=dto.description, status=dto.status)
        self.repository.add(session, industry)
        _commit(session, "industry already exists")
        session.refresh(industry)
        return IndustryRead.model_validate(industry)

    def list_industries(
        self,
        session: Session,
        ctx: ActorContext,
        filters: dict[str, Any] | None = None,
    ) -> list[IndustryRead]:
        return [IndustryRead.model_validate(row) for row in self.repository.list(session, filters)]

    def get_industry(self, session: Session, ctx: ActorContext, industry_id: int) -> IndustryRead:
        return IndustryRead.model_validate(self._get_or_404(session, industry_id))

    def update_industry(self, session: Session, ctx: ActorContext, industry_id: int, dto: IndustryUpdate) -> IndustryRead:
        require_admin(ctx)
        industry = self._get_or_404(session, industry_id)
        for field_name, value in dto.model_dump(exclude_unset=True).items():
            if value is None:
                continue
            setattr(industry, field_name, value.strip() if field_name == "name" else value)
        _commit(session, "industry already exists")
        session.refresh(industry)
        return IndustryRead.model_validate(industry)

    def change_status(self, session: Session, ctx: ActorContext, industry_id: int, new_status: str) -> IndustryRead:
        require_admin(ctx)
        industry = self._get_or_404(session, industry_id)
        industry.status = _validate_status(new_status, RECORD_STATUSES)
        session.commit()
        session.refresh(industry)
        return IndustryRead.model_validate(industry)

    def delete_industry(self, session: Session, ctx: ActorContext, industry_id: int) -> DeleteResult:
        # Clients carry industry as free text, so nothing dangles.
        require_admin(ctx)
        industry = self._get_or_404(session, industry_id)
        session.delete(industry)
        session.commit()
        return DeleteResult(success=True, message="Industry deleted")

    def _get_or_404(self, session: Session, industry_id: int) -> Industry:
        industry = self.repository.get(session, industry_id)
        if industry is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="industry not found")
        return industry


class ClientService:
    entity_type = "client"

    def __init__(self) -> None:
        self.repository = ClientRepository()
        self.service_repository = ServiceRepository()
        self.opportunity_repository = OpportunityRepository()

    def create_client(self, session: Session, ctx: ActorContext, dto: ClientCreate) -> ClientRead:
        if not dto.name.strip():
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="name is required")
        _require_user(session, dto.account_owner_id, "account_owner_id")
        services_used = self._validated_service_ids(session, dto.services_used)

        client = Client(
            name=dto.name.strip(),
            industry=dto.industry,
            contact_name=dto.contact_name,
            contact_email=dto.contact_email,
            contact_phone=dto.contact_phone,
            address=dto.address,
            account_owner_id=dto.account_owner_id,
            services_used=services_used,
            crm_link=dto.crm_link,
            notes=dto.notes,
            status=dto.status,
        )
        self.repository.add(session, client)
        _commit(session, "client already exists")
        session.refresh(client)

        logger.info("client.created", extra={"entity_type": self.entity_type, "entity_id": client.id, "user_id": ctx.user_id})
        _publish(
            "crosssell.client.created",
            ctx,
            {"client_id": client.id, "name": client.name, "account_owner_id": client.account_owner_id},
        )
        return self._to_read(client)

    def list_clients(self, session: Session, ctx: ActorContext, filters: dict[str, Any] | None = None) -> list[ClientRead]:
        return [self._to_read(row) for row in self.repository.list(session, filters)]

    def get_client(self, session: Session, ctx: ActorContext, client_id: int) -> ClientRead:
        return self._to_read(self._get_or_404(session, client_id))

    def update_client(self, session: Session, ctx: ActorContext, client_id: int, dto: ClientUpdate) -> ClientRead:
        client = self._get_or_404(session, client_id)
        changes = dto.model_dump(exclude_unset=True)
        if "account_owner_id" in changes:
            _require_user(session, changes["account_owner_id"], "account_owner_id")
        if changes.get("services_used") is not None:
            changes["services_used"] = self._validated_service_ids(
                session,
                changes["services_used"],
                already_used=client.services_used or [],
            )
        if changes.get("name") is not None:
            changes["name"] = changes["name"].strip()

        for field_name, value in changes.items():
            if value is None and field_name in {"name", "status", "services_used"}:
                continue
            setattr(client, field_name, value)
        _commit(session, "client already exists")
        session.refresh(client)
        return self._to_read(client)

    def change_status(self, session: Session, ctx: ActorContext, client_id: int, new_status: str) -> ClientRead:
        client = self._get_or_404(session, client_id)
        client.status = _validate_status(new_status, CLIENT_STATUSES)
        session.commit()
        session.refresh(client)
        return self._to_read(client)

    def delete_client(self, session: Session, ctx: ActorContext, client_id: int, *, force: bool = False) -> DeleteResult:
        client = self._get_or_404(session, client_id)
        opportunity_count = self.opportunity_repository.count_for_client(session, client_id)
        if opportunity_count > 0 and not force:
            return DeleteResult(
                success=False,
                message="Client has associated opportunities",
                has_opportunities=True,
                opportunity_count=opportunity_count,
            )

        # ORM cascade removes opportunities and their tasks in the same transaction.
        session.delete(client)
        session.commit()
        logger.info(
            "client.deleted",
            extra={
                "entity_type": self.entity_type,
                "entity_id": client_id,
                "count": opportunity_count,
                "user_id": ctx.user_id,
            },
        )
        return DeleteResult(success=True, message="Client deleted", opportunity_count=opportunity_count)

    def list_client_services(self, session: Session, ctx: ActorContext, client_id: int) -> list[ServiceRead]:
        client = self._get_or_404(session, client_id)
        ids = list(client.services_used or [])
        if not ids:
            return []
        rows = session.scalars(select(Service).where(Service.id.in_(ids)).order_by(Service.name.asc())).all()
        return [ServiceRead.model_validate(row) for row in rows]

    def add_service(self, session: Session, ctx: ActorContext, client_id: int, service_id: int) -> ClientRead:
        client = self._get_or_404(session, client_id)
        service = self.service_repository.get(session, service_id)
        if service is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="service not found")
        if service.status != "active" and service_id not in (client.services_used or []):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="service is not active")
        add_service_to_client(client, service_id)
        session.commit()
        session.refresh(client)
        return self._to_read(client)

    def remove_service(self, session: Session, ctx: ActorContext, client_id: int, service_id: int) -> ClientRead:
        client = self._get_or_404(session, client_id)
        client.services_used = [item for item in (client.services_used or []) if item != service_id]
        session.commit()
        session.refresh(client)
        return self._to_read(client)

    def _validated_service_ids(
        self,
        session: Session,
        service_ids: list[int],
        *,
        already_used: Iterable[int] = (),
    ) -> list[int]:
        """Known ids, deduplicated. Newly added ids must point at active services."""
        unique_ids = sorted(set(int(item) for item in service_ids))
        if not unique_ids:
            return []
        found = dict(session.execute(select(Service.id, Service.status).where(Service.id.in_(unique_ids))).all())
        missing = [item for item in unique_ids if item not in found]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail=f"services_used references unknown services: {', '.join(str(item) for item in missing)}",
            )
        kept = set(already_used)
        not_active = [item for item in unique_ids if found[item] != "active" and item not in kept]
        if not_active:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail=f"services_used references services that are not active: {', '.join(str(item) for item in not_active)}",
            )
        return unique_ids

    def _get_or_404(self, session: Session, client_id: int) -> Client:
        client = self.repository.get(session, client_id)
        if client is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="client not found")
        return client

    def _to_read(self, client: Client) -> ClientRead:
        return ClientRead.model_validate(
            {
                "id": client.id,
                "name": client.name,
                "industry": client.industry,
                "contact_name": client.contact_name,
                "contact_email": client.contact_email,
                "contact_phone": client.contact_phone,
                "address": client.address,
                "account_owner_id": client.account_owner_id,
                "account_owner_name": client.account_owner.username if client.account_owner else None,
                "services_used": list(client.services_used or []),
                "crm_link": client.crm_link,
                "notes": client.notes,
                "status": client.status,
                "created_at": client.created_at,
                "updated_at": client.updated_at,
            }
        )


def add_service_to_client(client: Client, service_id: int) -> bool:
    """Set-union the service into services_used. Returns False when it was already present."""
    current = list(client.services_used or [])
    if service_id in current:
        return False
    # Reassign so the JSON column is flagged dirty.
    client.services_used = sorted(set(current) | {service_id})
    return True


def add_won_service(client: Client, service: Service) -> bool:
    """Record a won service on the client. Services that are not active are left out."""
    if service.status != "active":
        logger.warning(
            "opportunity.won_service_not_active",
            extra={"entity_type": "service", "entity_id": service.id, "status": service.status},
        )
        return False
    return add_service_to_client(client, service.id)


class ServiceCatalogService:
    entity_type = "service"

    def __init__(self) -> None:
        self.repository = ServiceRepository()
        self.client_repository = ClientRepository()
        self.opportunity_repository = OpportunityRepository()
        self.business_unit_repository = BusinessUnitRepository()

    def create_service(self, session: Session, ctx: ActorContext, dto: ServiceCreate) -> ServiceRead:
        business_unit = self._resolve_business_unit_name(session, dto.business_unit)
        service = Service(
            name=dto.name.strip(),
            description=dto.description,
            business_unit=business_unit,
            pricing_model=dto.pricing_model,
            pricing_details=dto.pricing_details,
            applicable_industries=list(dto.applicable_industries),
            client_role=dto.client_role,
            status=dto.status,
        )
        self.repository.add(session, service)
        _commit(session, "service already exists in this business unit")
        session.refresh(service)
        logger.info("service.created", extra={"entity_type": self.entity_type, "entity_id": service.id, "user_id": ctx.user_id})
        return ServiceRead.model_validate(service)

    def list_services(self, session: Session, ctx: ActorContext, filters: dict[str, Any] | None = None) -> list[ServiceRead]:
        return [ServiceRead.model_validate(row) for row in self.repository.list(session, filters)]

    def get_service(self, session: Session, ctx: ActorContext, service_id: int) -> ServiceRead:
        return ServiceRead.model_validate(self._get_or_404(session, service_id))

    def update_service(self, session: Session, ctx: ActorContext, service_id: int, dto: ServiceUpdate) -> ServiceRead:
        service = self._get_or_404(session, service_id)
        changes = dto.model_dump(exclude_unset=True)
        if changes.get("business_unit"):
            changes["business_unit"] = self._resolve_business_unit_name(session, changes["business_unit"])
        for field_name, value in changes.items():
            if value is None and field_name in {"name", "business_unit", "status", "applicable_industries"}:
                continue
            setattr(service, field_name, value)
        _commit(session, "service already exists in this business unit")
        session.refresh(service)
        return ServiceRead.model_validate(service)

    def change_status(self, session: Session, ctx: ActorContext, service_id: int, new_status: str) -> ServiceRead:
        service = self._get_or_404(session, service_id)
        service.status = _validate_status(new_status, SERVICE_STATUSES)
        session.commit()
        session.refresh(service)
        return ServiceRead.model_validate(service)

    def delete_service(self, session: Session, ctx: ActorContext, service_id: int, *, force: bool = False) -> DeleteResult:
        service = self._get_or_404(session, service_id)
        opportunity_count = self.opportunity_repository.count_for_service(session, service_id)
        client_count = len(self.client_repository.list_using_service(session, service_id))
        if (opportunity_count > 0 or client_count > 0) and not force:
            return DeleteResult(
                success=False,
                message="Service is referenced by opportunities or clients",
                has_opportunities=opportunity_count > 0,
                opportunity_count=opportunity_count,
                has_clients=client_count > 0,
                client_count=client_count,
            )

        self.remove_service_rows(session, service)
        session.commit()
        logger.info(
            "service.deleted",
            extra={"entity_type": self.entity_type, "entity_id": service_id, "count": opportunity_count, "user_id": ctx.user_id},
        )
        return DeleteResult(
            success=True,
            message="Service deleted",
            opportunity_count=opportunity_count,
            client_count=client_count,
        )

    def remove_service_rows(self, session: Session, service: Service) -> int:
        """Delete a service with its opportunities and tasks, and drop it from every client's services_used."""
        opportunity_count = len(service.opportunities)
        for client in self.client_repository.list_using_service(session, service.id):
            client.services_used = [item for item in (client.services_used or []) if item != service.id]
        session.delete(service)
        session.flush()
        return opportunity_count

    def _resolve_business_unit_name(self, session: Session, name: str) -> str:
        cleaned = name.strip()
        unit = self.business_unit_repository.get_by_name(session, cleaned)
        # Free-text units are accepted; a known unit normalizes the casing.
        return unit.name if unit is not None else cleaned

    def _get_or_404(self, session: Session, service_id: int) -> Service:
        service = self.repository.get(session, service_id)
        if service is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="service not found")
        return service


class OpportunityService:
    entity_type = "opportunity"

    def __init__(self) -> None:
        self.repository = OpportunityRepository()
        self.client_repository = ClientRepository()
        self.service_repository = ServiceRepository()

    def create_opportunity(self, session: Session, ctx: ActorContext, dto: OpportunityCreate) -> OpportunityRead:
        client = self.client_repository.get(session, dto.client_id)
        if client is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="client_id does not reference an existing client")
        service = self.service_repository.get(session, dto.service_id)
        if service is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="service_id does not reference an existing service")

        assigned_user_id = dto.assigned_user_id if dto.assigned_user_id is not None else ctx.user_id
        _require_user(session, assigned_user_id, "assigned_user_id")
        due_date = dto.due_date or date.today() + timedelta(days=get_settings().opportunity_default_due_days)

        opportunity = Opportunity(
            name=dto.name.strip(),
            client_id=client.id,
            service_id=service.id,
            assigned_user_id=assigned_user_id,
            status=dto.status,
            priority=dto.priority,
            estimated_value=dto.estimated_value,
            due_date=due_date,
            notes=dto.notes,
        )
        self.repository.add(session, opportunity)
        won = opportunity.status == "won"
        if won:
            add_won_service(client, service)
        _commit(session, "opportunity could not be created")
        session.refresh(opportunity)

        logger.info(
            "opportunity.created",
            extra={"entity_type": self.entity_type, "entity_id": opportunity.id, "user_id": ctx.user_id},
        )
        _publish(
            "crosssell.opportunity.created",
            ctx,
            {
                "opportunity_id": opportunity.id,
                "name": opportunity.name,
                "client_id": client.id,
                "client_name": client.name,
                "service_id": service.id,
                "service_name": service.name,
                "business_unit": service.business_unit,
                "assigned_user_id": opportunity.assigned_user_id,
            },
        )
        if won:
            self._publish_won(ctx, opportunity, client, service)
        return self._to_read(opportunity)

    def list_opportunities(
        self,
        session: Session,
        ctx: ActorContext,
        filters: dict[str, Any] | None = None,
    ) -> list[OpportunityRead]:
        return [self._to_read(row) for row in self.repository.list(session, filters)]

    def get_opportunity(self, session: Session, ctx: ActorContext, opportunity_id: int) -> OpportunityRead:
        return self._to_read(self._get_or_404(session, opportunity_id))

    def update_opportunity(
        self,
        session: Session,
        ctx: ActorContext,
        opportunity_id: int,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        opportunity = self._get_or_404(session, opportunity_id)
        changes = dto.model_dump(exclude_unset=True)
        new_status = changes.pop("status", None)

        if changes.get("client_id") is not None and self.client_repository.get(session, changes["client_id"]) is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="client_id does not reference an existing client")
        if changes.get("service_id") is not None and self.service_repository.get(session, changes["service_id"]) is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="service_id does not reference an existing service")
        if "assigned_user_id" in changes:
            _require_user(session, changes["assigned_user_id"], "assigned_user_id")

        for field_name, value in changes.items():
            if value is None and field_name in {"name", "client_id", "service_id", "priority", "estimated_value"}:
                continue
            setattr(opportunity, field_name, value.strip() if field_name == "name" else value)

        if new_status is not None and new_status != opportunity.status:
            return self._apply_status(session, ctx, opportunity, new_status)

        _commit(session, "opportunity could not be updated")
        session.refresh(opportunity)
        return self._to_read(opportunity)

    def change_status(self, session: Session, ctx: ActorContext, opportunity_id: int, new_status: str) -> OpportunityRead:
        opportunity = self._get_or_404(session, opportunity_id)
        normalized = _validate_status(new_status, OPPORTUNITY_STATUSES)
        if normalized == opportunity.status:
            return self._to_read(opportunity)
        return self._apply_status(session, ctx, opportunity, normalized)

    def delete_opportunity(self, session: Session, ctx: ActorContext, opportunity_id: int) -> DeleteResult:
        opportunity = self._get_or_404(session, opportunity_id)
        task_count = len(opportunity.tasks)
        session.delete(opportunity)
        session.commit()
        logger.info(
            "opportunity.deleted",
            extra={"entity_type": self.entity_type, "entity_id": opportunity_id, "count": task_count, "user_id": ctx.user_id},
        )
        return DeleteResult(success=True, message="Opportunity deleted")

    def _apply_status(self, session: Session, ctx: ActorContext, opportunity: Opportunity, new_status: str) -> OpportunityRead:
        previous_status = opportunity.status
        opportunity.status = new_status
        client = opportunity.client
        service = opportunity.service
        won = new_status == "won"
        if won:
            add_won_service(client, service)
        _commit(session, "opportunity could not be updated")
        session.refresh(opportunity)

        logger.info(
            "opportunity.status_changed",
            extra={"entity_type": self.entity_type, "entity_id": opportunity.id, "status": new_status, "user_id": ctx.user_id},
        )
        _publish(
            "crosssell.opportunity.status_changed",
            ctx,
            {
                "opportunity_id": opportunity.id,
                "name": opportunity.name,
                "from_status": previous_status,
                "to_status": new_status,
                "assigned_user_id": opportunity.assigned_user_id,
                "account_owner_id": client.account_owner_id,
                "client_name": client.name,
            },
        )
        if won:
            self._publish_won(ctx, opportunity, client, service)
        return self._to_read(opportunity)

    def _publish_won(self, ctx: ActorContext, opportunity: Opportunity, client: Client, service: Service) -> None:
        _publish(
            "crosssell.opportunity.won",
            ctx,
            {
                "opportunity_id": opportunity.id,
                "name": opportunity.name,
                "client_id": client.id,
                "client_name": client.name,
                "service_id": service.id,
                "service_name": service.name,
                "business_unit": service.business_unit,
                "account_owner_id": client.account_owner_id,
                "service_active": service.status == "active",
            },
        )

    def _get_or_404(self, session: Session, opportunity_id: int) -> Opportunity:
        opportunity = self.repository.get(session, opportunity_id)
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        return opportunity

    def _to_read(self, opportunity: Opportunity) -> OpportunityRead:
        return OpportunityRead.model_validate(
            {
                "id": opportunity.id,
                "name": opportunity.name,
                "client_id": opportunity.client_id,
                "client_name": opportunity.client.name if opportunity.client else None,
                "service_id": opportunity.service_id,
                "service_name": opportunity.service.name if opportunity.service else None,
                "assigned_user_id": opportunity.assigned_user_id,
                "assigned_user_name": opportunity.assigned_user.username if opportunity.assigned_user else None,
                "status": opportunity.status,
                "priority": opportunity.priority,
                "estimated_value": opportunity.estimated_value,
                "due_date": opportunity.due_date,
                "notes": opportunity.notes,
                "created_at": opportunity.created_at,
                "updated_at": opportunity.updated_at,
            }
        )


class TaskService:
    entity_type = "task"

    def __init__(self) -> None:
        self.repository = TaskRepository()
        self.opportunity_repository = OpportunityRepository()

    def create_task(self, session: Session, ctx: ActorContext, dto: TaskCreate) -> TaskRead:
        if self.opportunity_repository.get(session, dto.opportunity_id) is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail="opportunity_id does not reference an existing opportunity",
            )
        assigned_user_id = dto.assigned_user_id if dto.assigned_user_id is not None else ctx.user_id
        _require_user(session, assigned_user_id, "assigned_user_id")

        task = Task(
            name=dto.name.strip(),
            opportunity_id=dto.opportunity_id,
            assigned_user_id=assigned_user_id,
            due_date=dto.due_date,
            status=dto.status,
            description=dto.description,
        )
        self.repository.add(session, task)
        _commit(session, "task could not be created")
        session.refresh(task)

        logger.info("task.created", extra={"entity_type": self.entity_type, "entity_id": task.id, "user_id": ctx.user_id})
        self._publish_assignment(ctx, task)
        return self.to_read(task)

    def list_tasks(
        self,
        session: Session,
        ctx: ActorContext,
        filters: dict[str, Any] | None = None,
        *,
        today: date | None = None,
    ) -> list[TaskRead]:
        filters = dict(filters or {})
        overdue_only = bool(filters.pop("overdue", False))
        rows = [self.to_read(row, today=today) for row in self.repository.list(session, filters)]
        if overdue_only:
            rows = [row for row in rows if row.is_overdue]
        return rows

    def list_overdue_tasks(self, session: Session, ctx: ActorContext, *, today: date | None = None) -> list[TaskRead]:
        reference = today or date.today()
        return [self.to_read(row, today=reference) for row in self.repository.list_overdue(session, reference)]

    def get_task(self, session: Session, ctx: ActorContext, task_id: int) -> TaskRead:
        return self.to_read(self._get_or_404(session, task_id))

    def update_task(self, session: Session, ctx: ActorContext, task_id: int, dto: TaskUpdate) -> TaskRead:
        task = self._get_or_404(session, task_id)
        changes = dto.model_dump(exclude_unset=True)
        if changes.get("opportunity_id") is not None and self.opportunity_repository.get(session, changes["opportunity_id"]) is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                detail="opportunity_id does not reference an existing opportunity",
            )
        if "assigned_user_id" in changes:
            _require_user(session, changes["assigned_user_id"], "assigned_user_id")

        previous_assignee = task.assigned_user_id
        previous_status = task.status
        for field_name, value in changes.items():
            if value is None and field_name in {"name", "opportunity_id", "due_date", "status"}:
                continue
            setattr(task, field_name, value.strip() if field_name == "name" else value)
        _commit(session, "task could not be updated")
        session.refresh(task)

        if task.assigned_user_id != previous_assignee:
            self._publish_assignment(ctx, task)
        self._publish_completion(ctx, task, previous_status)
        return self.to_read(task)

    def change_status(self, session: Session, ctx: ActorContext, task_id: int, new_status: str) -> TaskRead:
        task = self._get_or_404(session, task_id)
        previous_status = task.status
        task.status = _validate_status(new_status, TASK_STATUSES)
        session.commit()
        session.refresh(task)
        self._publish_completion(ctx, task, previous_status)
        return self.to_read(task)

    def delete_task(self, session: Session, ctx: ActorContext, task_id: int) -> DeleteResult:
        task = self._get_or_404(session, task_id)
        session.delete(task)
        session.commit()
        return DeleteResult(success=True, message="Task deleted")

    def task_stats(
        self,
        session: Session,
        ctx: ActorContext,
        *,
        assigned_user_id: int | None = None,
        today: date | None = None,
    ) -> TaskStats:
        counts = self.repository.status_counts(session, assigned_user_id)
        reference = today or date.today()
        overdue = [
            row
            for row in self.repository.list_overdue(session, reference)
            if assigned_user_id is None or row.assigned_user_id == assigned_user_id
        ]
        return TaskStats(
            total=sum(counts.values()),
            pending=counts.get("pending", 0),
            in_progress=counts.get("in_progress", 0),
            completed=counts.get("completed", 0),
            on_hold=counts.get("on_hold", 0),
            cancelled=counts.get("cancelled", 0),
            overdue=len(overdue),
        )

    def to_read(self, task: Task, *, today: date | None = None) -> TaskRead:
        return TaskRead.model_validate(
            {
                "id": task.id,
                "name": task.name,
                "opportunity_id": task.opportunity_id,
                "opportunity_name": task.opportunity.name if task.opportunity else None,
                "assigned_user_id": task.assigned_user_id,
                "assigned_user_name": task.assigned_user.username if task.assigned_user else None,
                "due_date": task.due_date,
                "status": task.status,
                "description": task.description,
                "is_overdue": is_task_overdue(task, today),
                "created_at": task.created_at,
                "updated_at": task.updated_at,
            }
        )

    def _publish_assignment(self, ctx: ActorContext, task: Task) -> None:
        if task.assigned_user_id is None:
            return
        _publish(
            "crosssell.task.assigned",
            ctx,
            {
                "task_id": task.id,
                "name": task.name,
                "assigned_user_id": task.assigned_user_id,
                "opportunity_id": task.opportunity_id,
            },
        )

    def _publish_completion(self, ctx: ActorContext, task: Task, previous_status: str) -> None:
        if task.status != "completed" or previous_status == "completed":
            return
        opportunity = task.opportunity
        _publish(
            "crosssell.task.completed",
            ctx,
            {
                "task_id": task.id,
                "name": task.name,
                "opportunity_id": task.opportunity_id,
                "opportunity_assigned_user_id": opportunity.assigned_user_id if opportunity else None,
            },
        )

    def _get_or_404(self, session: Session, task_id: int) -> Task:
        task = self.repository.get(session, task_id)
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="task not found")
        return task


class NotificationService:
    entity_type = "notification"

    def __init__(self) -> None:
        self.repository = NotificationRepository()

    def create_notification(self, session: Session, dto: NotificationCreate, *, commit: bool = True) -> NotificationRead:
        notification = Notification(
            user_id=dto.user_id,
            type=dto.type,
            title=dto.title,
            message=dto.message,
            related_to=dto.related_to,
            related_id=dto.related_id,
            is_read=False,
        )
        self.repository.add(session, notification)
        session.flush()
        if commit:
            session.commit()
            session.refresh(notification)
        observe_notification_created(dto.type)
        logger.info(
            "notification.created",
            extra={"notification_type": dto.type, "user_id": dto.user_id, "entity_id": dto.related_id},
        )
        return NotificationRead.model_validate(notification)

    def create_many(self, session: Session, items: list[NotificationCreate]) -> list[NotificationRead]:
        created = [self.create_notification(session, item, commit=False) for item in items]
        session.commit()
        return created

    def list_for_user(
        self,
        session: Session,
        ctx: ActorContext,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[NotificationRead]:
        page_size = limit or get_settings().notification_page_size
        rows = self.repository.list_for_user(session, self._user_id(ctx), limit=page_size, offset=offset)
        return [NotificationRead.model_validate(row) for row in rows]

    def list_unread(self, session: Session, ctx: ActorContext) -> list[NotificationRead]:
        rows = self.repository.list_for_user(session, self._user_id(ctx), unread_only=True, limit=1000)
        return [NotificationRead.model_validate(row) for row in rows]

    def count(self, session: Session, ctx: ActorContext) -> NotificationCount:
        return NotificationCount(**self.repository.counts_for_user(session, self._user_id(ctx)))

    def mark_read(self, session: Session, ctx: ActorContext, notification_id: int) -> NotificationRead:
        notification = self._get_owned_or_404(session, ctx, notification_id)
        notification.is_read = True
        session.commit()
        session.refresh(notification)
        return NotificationRead.model_validate(notification)

    def mark_all_read(self, session: Session, ctx: ActorContext) -> int:
        updated = self.repository.mark_all_read(session, self._user_id(ctx))
        session.commit()
        return updated

    def delete_notification(self, session: Session, ctx: ActorContext, notification_id: int) -> None:
        notification = self._get_owned_or_404(session, ctx, notification_id)
        session.delete(notification)
        session.commit()

    def delete_many(self, session: Session, ctx: ActorContext, ids: list[int]) -> int:
        deleted = self.repository.delete_many(session, self._user_id(ctx), ids)
        session.commit()
        return deleted

    def cleanup_older_than(self, session: Session, days: int, *, now: datetime | None = None) -> int:
        if days < 1:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="days must be at least 1")
        cutoff = (now or utcnow()) - timedelta(days=days)
        deleted = self.repository.delete_older_than(session, cutoff)
        session.commit()
        logger.info("notification.cleanup", extra={"count": deleted})
        return deleted

    def _user_id(self, ctx: ActorContext) -> int:
        if ctx.user_id is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
        return ctx.user_id

    def _get_owned_or_404(self, session: Session, ctx: ActorContext, notification_id: int) -> Notification:
        notification = self.repository.get(session, notification_id)
        if notification is None or notification.user_id != self._user_id(ctx):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="notification not found")
        return notification


user_service = UserService()
business_unit_service = BusinessUnitService()
industry_service = IndustryService()
client_service = ClientService()
service_catalog_service = ServiceCatalogService()
opportunity_service = OpportunityService()
task_service = TaskService()
notification_service = NotificationService()
