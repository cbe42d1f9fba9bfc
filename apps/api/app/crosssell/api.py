from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crosssell.csv_transform import ENTITY_TYPES, CSVParseError, build_import_template, decode_csv_bytes
from app.crosssell.import_export import export_csv, import_csv
from app.crosssell.matrix import matrix_service
from app.crosssell.schemas import (
    ApiResponse,
    BusinessUnitCreate,
    BusinessUnitRead,
    BusinessUnitUpdate,
    ClientCreate,
    ClientRead,
    ClientUpdate,
    CrossSellMatrix,
    CsvTemplate,
    DeleteResult,
    ImportSummary,
    IndustryCreate,
    IndustryRead,
    IndustryUpdate,
    NotificationBulkDelete,
    NotificationCount,
    NotificationCreate,
    NotificationRead,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    ServiceCreate,
    ServiceRead,
    ServiceUpdate,
    StatusChange,
    TaskCreate,
    TaskRead,
    TaskStats,
    TaskUpdate,
    UserCreate,
    UserRead,
    UserUpdate,
)
from app.crosssell.service import (
    ActorContext,
    business_unit_service,
    client_service,
    industry_service,
    notification_service,
    opportunity_service,
    require_admin,
    service_catalog_service,
    task_service,
    user_service,
)

clients_router = APIRouter(prefix="/api/clients", tags=["crosssell.clients"])
services_router = APIRouter(prefix="/api/services", tags=["crosssell.services"])
opportunities_router = APIRouter(prefix="/api/opportunities", tags=["crosssell.opportunities"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["crosssell.tasks"])
users_router = APIRouter(prefix="/api/users", tags=["crosssell.users"])
business_units_router = APIRouter(prefix="/api/admin/business-units", tags=["crosssell.admin"])
industries_router = APIRouter(prefix="/api/admin/industries", tags=["crosssell.admin"])
notifications_router = APIRouter(prefix="/api/notifications", tags=["crosssell.notifications"])
csv_router = APIRouter(prefix="/api", tags=["crosssell.csv"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None
    success: bool = False


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    detail = exc.detail
    message = detail.get("message", str(detail)) if isinstance(detail, dict) else str(detail)
    return error_response(request, status_code=exc.status_code, code=code, message=message, details=detail)


def _delete_response(request: Request, result: DeleteResult, code: str) -> dict[str, Any] | JSONResponse:
    payload = result.to_payload()
    if result.success:
        return payload
    payload["code"] = code
    payload["correlation_id"] = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=payload)


def get_actor(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorContext:
    if auth_user.user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    return ActorContext(
        user_id=auth_user.user_id,
        role=auth_user.role,
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


# Clients


@clients_router.post("", response_model=ApiResponse[ClientRead], status_code=status.HTTP_201_CREATED)
def create_client(
    request: Request,
    dto: ClientCreate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[ClientRead] | JSONResponse:
    try:
        return ApiResponse(data=client_service.create_client(db, ctx, dto), message="Client created")
    except HTTPException as exc:
        return _failed(request, exc, "client_create_failed")


@clients_router.get("", response_model=ApiResponse[list[ClientRead]])
def list_clients(
    name: str | None = Query(default=None),
    industry: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    account_owner_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[list[ClientRead]]:
    filters = {"name": name, "industry": industry, "status": status_filter, "account_owner_id": account_owner_id}
    return ApiResponse(data=client_service.list_clients(db, ctx, filters))


@clients_router.get("/{client_id}", response_model=ApiResponse[ClientRead])
def get_client(
    request: Request,
    client_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[ClientRead] | JSONResponse:
    try:
        return ApiResponse(data=client_service.get_client(db, ctx, client_id))
    except HTTPException as exc:
        return _failed(request, exc, "client_get_failed")


@clients_router.put("/{client_id}", response_model=ApiResponse[ClientRead])
def update_client(
    request: Request,
    client_id: int,
    dto: ClientUpdate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[ClientRead] | JSONResponse:
    try:
        return ApiResponse(data=client_service.update_client(db, ctx, client_id, dto), message="Client updated")
    except HTTPException as exc:
        return _failed(request, exc, "client_update_failed")


@clients_router.patch("/{client_id}/status", response_model=ApiResponse[ClientRead])
def change_client_status(
    request: Request,
    client_id: int,
    payload: StatusChange,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[ClientRead] | JSONResponse:
    try:
        return ApiResponse(data=client_service.change_status(db, ctx, client_id, payload.status))
    except HTTPException as exc:
        return _failed(request, exc, "client_status_failed")


@clients_router.delete("/{client_id}", response_model=None)
def delete_client(
    request: Request,
    client_id: int,
    force: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> dict[str, Any] | JSONResponse:
    try:
        result = client_service.delete_client(db, ctx, client_id, force=force)
    except HTTPException as exc:
        return _failed(request, exc, "client_delete_failed")
    return _delete_response(request, result, "client_delete_blocked")


@clients_router.get("/{client_id}/services", response_model=ApiResponse[list[ServiceRead]])
def list_client_services(
    request: Request,
    client_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[list[ServiceRead]] | JSONResponse:
    try:
        return ApiResponse(data=client_service.list_client_services(db, ctx, client_id))
    except HTTPException as exc:
        return _failed(request, exc, "client_services_failed")


@clients_router.post("/{client_id}/services/{service_id}", response_model=ApiResponse[ClientRead])
def add_client_service(
    request: Request,
    client_id: int,
    service_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[ClientRead] | JSONResponse:
    try:
        return ApiResponse(data=client_service.add_service(db, ctx, client_id, service_id), message="Service added")
    except HTTPException as exc:
        return _failed(request, exc, "client_service_add_failed")


@clients_router.delete("/{client_id}/services/{service_id}", response_model=ApiResponse[ClientRead])
def remove_client_service(
    request: Request,
    client_id: int,
    service_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[ClientRead] | JSONResponse:
    try:
        return ApiResponse(
            data=client_service.remove_service(db, ctx, client_id, service_id),
            message="Service removed",
        )
    except HTTPException as exc:
        return _failed(request, exc, "client_service_remove_failed")


# Services


@services_router.post("", response_model=ApiResponse[ServiceRead], status_code=status.HTTP_201_CREATED)
def create_service(
    request: Request,
    dto: ServiceCreate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[ServiceRead] | JSONResponse:
    try:
        return ApiResponse(data=service_catalog_service.create_service(db, ctx, dto), message="Service created")
    except HTTPException as exc:
        return _failed(request, exc, "service_create_failed")


@services_router.get("", response_model=ApiResponse[list[ServiceRead]])
def list_services(
    name: str | None = Query(default=None),
    business_unit: str | None = Query(default=None),
    industry: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[list[ServiceRead]]:
    filters = {"name": name, "business_unit": business_unit, "industry": industry, "status": status_filter}
    return ApiResponse(data=service_catalog_service.list_services(db, ctx, filters))


@services_router.get("/{service_id}", response_model=ApiResponse[ServiceRead])
def get_service(
    request: Request,
    service_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[ServiceRead] | JSONResponse:
    try:
        return ApiResponse(data=service_catalog_service.get_service(db, ctx, service_id))
    except HTTPException as exc:
        return _failed(request, exc, "service_get_failed")


@services_router.put("/{service_id}", response_model=ApiResponse[ServiceRead])
def update_service(
    request: Request,
    service_id: int,
    dto: ServiceUpdate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[ServiceRead] | JSONResponse:
    try:
        return ApiResponse(
            data=service_catalog_service.update_service(db, ctx, service_id, dto),
            message="Service updated",
        )
    except HTTPException as exc:
        return _failed(request, exc, "service_update_failed")


@services_router.patch("/{service_id}/status", response_model=ApiResponse[ServiceRead])
def change_service_status(
    request: Request,
    service_id: int,
    payload: StatusChange,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[ServiceRead] | JSONResponse:
    try:
        return ApiResponse(data=service_catalog_service.change_status(db, ctx, service_id, payload.status))
    except HTTPException as exc:
        return _failed(request, exc, "service_status_failed")


@services_router.delete("/{service_id}", response_model=None)
def delete_service(
    request: Request,
    service_id: int,
    force: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> dict[str, Any] | JSONResponse:
    try:
        result = service_catalog_service.delete_service(db, ctx, service_id, force=force)
    except HTTPException as exc:
        return _failed(request, exc, "service_delete_failed")
    return _delete_response(request, result, "service_delete_blocked")


# Opportunities


@opportunities_router.get("/matrix", response_model=ApiResponse[CrossSellMatrix])
def get_matrix(
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[CrossSellMatrix]:
    return ApiResponse(data=matrix_service.get_matrix(db))


@opportunities_router.post("", response_model=ApiResponse[OpportunityRead], status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[OpportunityRead] | JSONResponse:
    try:
        return ApiResponse(data=opportunity_service.create_opportunity(db, ctx, dto), message="Opportunity created")
    except HTTPException as exc:
        return _failed(request, exc, "opportunity_create_failed")


@opportunities_router.get("", response_model=ApiResponse[list[OpportunityRead]])
def list_opportunities(
    client_id: int | None = Query(default=None),
    service_id: int | None = Query(default=None),
    assigned_user_id: int | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    priority: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[list[OpportunityRead]]:
    filters = {
        "client_id": client_id,
        "service_id": service_id,
        "assigned_user_id": assigned_user_id,
        "status": status_filter,
        "priority": priority,
    }
    return ApiResponse(data=opportunity_service.list_opportunities(db, ctx, filters))


@opportunities_router.get("/{opportunity_id}", response_model=ApiResponse[OpportunityRead])
def get_opportunity(
    request: Request,
    opportunity_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[OpportunityRead] | JSONResponse:
    try:
        return ApiResponse(data=opportunity_service.get_opportunity(db, ctx, opportunity_id))
    except HTTPException as exc:
        return _failed(request, exc, "opportunity_get_failed")


@opportunities_router.put("/{opportunity_id}", response_model=ApiResponse[OpportunityRead])
def update_opportunity(
    request: Request,
    opportunity_id: int,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[OpportunityRead] | JSONResponse:
    try:
        return ApiResponse(
            data=opportunity_service.update_opportunity(db, ctx, opportunity_id, dto),
            message="Opportunity updated",
        )
    except HTTPException as exc:
        return _failed(request, exc, "opportunity_update_failed")


@opportunities_router.patch("/{opportunity_id}/status", response_model=ApiResponse[OpportunityRead])
def change_opportunity_status(
    request: Request,
    opportunity_id: int,
    payload: StatusChange,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[OpportunityRead] | JSONResponse:
    try:
        return ApiResponse(data=opportunity_service.change_status(db, ctx, opportunity_id, payload.status))
    except HTTPException as exc:
        return _failed(request, exc, "opportunity_status_failed")


@opportunities_router.delete("/{opportunity_id}", response_model=None)
def delete_opportunity(
    request: Request,
    opportunity_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> dict[str, Any] | JSONResponse:
    try:
        result = opportunity_service.delete_opportunity(db, ctx, opportunity_id)
    except HTTPException as exc:
        return _failed(request, exc, "opportunity_delete_failed")
    return _delete_response(request, result, "opportunity_delete_blocked")


# Tasks


@tasks_router.get("/overdue", response_model=ApiResponse[list[TaskRead]])
def list_overdue_tasks(
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[list[TaskRead]]:
    return ApiResponse(data=task_service.list_overdue_tasks(db, ctx))


@tasks_router.get("/stats", response_model=ApiResponse[TaskStats])
def get_task_stats(
    assigned_user_id: int | None = Query(default=None),
    mine: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[TaskStats]:
    user_filter = ctx.user_id if mine else assigned_user_id
    return ApiResponse(data=task_service.task_stats(db, ctx, assigned_user_id=user_filter))


@tasks_router.post("", response_model=ApiResponse[TaskRead], status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[TaskRead] | JSONResponse:
    try:
        return ApiResponse(data=task_service.create_task(db, ctx, dto), message="Task created")
    except HTTPException as exc:
        return _failed(request, exc, "task_create_failed")


@tasks_router.get("", response_model=ApiResponse[list[TaskRead]])
def list_tasks(
    opportunity_id: int | None = Query(default=None),
    assigned_user_id: int | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    overdue: bool = Query(default=False),
    mine: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[list[TaskRead]]:
    filters = {
        "opportunity_id": opportunity_id,
        "assigned_user_id": ctx.user_id if mine else assigned_user_id,
        "status": status_filter,
        "overdue": overdue,
    }
    return ApiResponse(data=task_service.list_tasks(db, ctx, filters))


@tasks_router.get("/{task_id}", response_model=ApiResponse[TaskRead])
def get_task(
    request: Request,
    task_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[TaskRead] | JSONResponse:
    try:
        return ApiResponse(data=task_service.get_task(db, ctx, task_id))
    except HTTPException as exc:
        return _failed(request, exc, "task_get_failed")


@tasks_router.put("/{task_id}", response_model=ApiResponse[TaskRead])
def update_task(
    request: Request,
    task_id: int,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[TaskRead] | JSONResponse:
    try:
        return ApiResponse(data=task_service.update_task(db, ctx, task_id, dto), message="Task updated")
    except HTTPException as exc:
        return _failed(request, exc, "task_update_failed")


@tasks_router.patch("/{task_id}/status", response_model=ApiResponse[TaskRead])
def change_task_status(
    request: Request,
    task_id: int,
    payload: StatusChange,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[TaskRead] | JSONResponse:
    try:
        return ApiResponse(data=task_service.change_status(db, ctx, task_id, payload.status))
    except HTTPException as exc:
        return _failed(request, exc, "task_status_failed")


@tasks_router.delete("/{task_id}", response_model=None)
def delete_task(
    request: Request,
    task_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> dict[str, Any] | JSONResponse:
    try:
        result = task_service.delete_task(db, ctx, task_id)
    except HTTPException as exc:
        return _failed(request, exc, "task_delete_failed")
    return _delete_response(request, result, "task_delete_blocked")


# Users


@users_router.post("", response_model=ApiResponse[UserRead], status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: UserCreate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[UserRead] | JSONResponse:
    try:
        require_admin(ctx)
        return ApiResponse(data=user_service.create_user(db, ctx, dto), message="User created")
    except HTTPException as exc:
        return _failed(request, exc, "user_create_failed")


@users_router.get("", response_model=ApiResponse[list[UserRead]])
def list_users(
    role: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[list[UserRead]]:
    return ApiResponse(data=user_service.list_users(db, ctx, {"role": role}))


@users_router.get("/{user_id}", response_model=ApiResponse[UserRead])
def get_user(
    request: Request,
    user_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[UserRead] | JSONResponse:
    try:
        return ApiResponse(data=user_service.get_user(db, ctx, user_id))
    except HTTPException as exc:
        return _failed(request, exc, "user_get_failed")


@users_router.put("/{user_id}", response_model=ApiResponse[UserRead])
def update_user(
    request: Request,
    user_id: int,
    dto: UserUpdate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[UserRead] | JSONResponse:
    try:
        if user_id != ctx.user_id:
            require_admin(ctx)
        return ApiResponse(data=user_service.update_user(db, ctx, user_id, dto), message="User updated")
    except HTTPException as exc:
        return _failed(request, exc, "user_update_failed")


@users_router.delete("/{user_id}", response_model=None)
def delete_user(
    request: Request,
    user_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> dict[str, Any] | JSONResponse:
    try:
        user_service.delete_user(db, ctx, user_id)
    except HTTPException as exc:
        return _failed(request, exc, "user_delete_failed")
    return DeleteResult(success=True, message="User deleted").to_payload()


# Business units


@business_units_router.post("", response_model=ApiResponse[BusinessUnitRead], status_code=status.HTTP_201_CREATED)
def create_business_unit(
    request: Request,
    dto: BusinessUnitCreate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[BusinessUnitRead] | JSONResponse:
    try:
        return ApiResponse(
            data=business_unit_service.create_business_unit(db, ctx, dto),
            message="Business unit created",
        )
    except HTTPException as exc:
        return _failed(request, exc, "business_unit_create_failed")


@business_units_router.get("", response_model=ApiResponse[list[BusinessUnitRead]])
def list_business_units(
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[list[BusinessUnitRead]]:
    return ApiResponse(data=business_unit_service.list_business_units(db, ctx, {"status": status_filter}))


@business_units_router.get("/{unit_id}", response_model=ApiResponse[BusinessUnitRead])
def get_business_unit(
    request: Request,
    unit_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[BusinessUnitRead] | JSONResponse:
    try:
        return ApiResponse(data=business_unit_service.get_business_unit(db, ctx, unit_id))
    except HTTPException as exc:
        return _failed(request, exc, "business_unit_get_failed")


@business_units_router.put("/{unit_id}", response_model=ApiResponse[BusinessUnitRead])
def update_business_unit(
    request: Request,
    unit_id: int,
    dto: BusinessUnitUpdate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[BusinessUnitRead] | JSONResponse:
    try:
        return ApiResponse(
            data=business_unit_service.update_business_unit(db, ctx, unit_id, dto),
            message="Business unit updated",
        )
    except HTTPException as exc:
        return _failed(request, exc, "business_unit_update_failed")


@business_units_router.patch("/{unit_id}/status", response_model=ApiResponse[BusinessUnitRead])
def change_business_unit_status(
    request: Request,
    unit_id: int,
    payload: StatusChange,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[BusinessUnitRead] | JSONResponse:
    try:
        return ApiResponse(data=business_unit_service.change_status(db, ctx, unit_id, payload.status))
    except HTTPException as exc:
        return _failed(request, exc, "business_unit_status_failed")


@business_units_router.delete("/{unit_id}", response_model=None)
def delete_business_unit(
    request: Request,
    unit_id: int,
    force: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> dict[str, Any] | JSONResponse:
    try:
        result = business_unit_service.delete_business_unit(db, ctx, unit_id, force=force)
    except HTTPException as exc:
        return _failed(request, exc, "business_unit_delete_failed")
    return _delete_response(request, result, "business_unit_delete_blocked")


# Industries


@industries_router.post("", response_model=ApiResponse[IndustryRead], status_code=status.HTTP_201_CREATED)
def create_industry(
    request: Request,
    dto: IndustryCreate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[IndustryRead] | JSONResponse:
    try:
        return ApiResponse(data=industry_service.create_industry(db, ctx, dto), message="Industry created")
    except HTTPException as exc:
        return _failed(request, exc, "industry_create_failed")


@industries_router.get("", response_model=ApiResponse[list[IndustryRead]])
def list_industries(
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[list[IndustryRead]]:
    return ApiResponse(data=industry_service.list_industries(db, ctx, {"status": status_filter}))


@industries_router.get("/{industry_id}", response_model=ApiResponse[IndustryRead])
def get_industry(
    request: Request,
    industry_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[IndustryRead] | JSONResponse:
    try:
        return ApiResponse(data=industry_service.get_industry(db, ctx, industry_id))
    except HTTPException as exc:
        return _failed(request, exc, "industry_get_failed")


@industries_router.put("/{industry_id}", response_model=ApiResponse[IndustryRead])
def update_industry(
    request: Request,
    industry_id: int,
    dto: IndustryUpdate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[IndustryRead] | JSONResponse:
    try:
        return ApiResponse(
            data=industry_service.update_industry(db, ctx, industry_id, dto),
            message="Industry updated",
        )
    except HTTPException as exc:
        return _failed(request, exc, "industry_update_failed")


@industries_router.patch("/{industry_id}/status", response_model=ApiResponse[IndustryRead])
def change_industry_status(
    request: Request,
    industry_id: int,
    payload: StatusChange,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[IndustryRead] | JSONResponse:
    try:
        return ApiResponse(data=industry_service.change_status(db, ctx, industry_id, payload.status))
    except HTTPException as exc:
        return _failed(request, exc, "industry_status_failed")


@industries_router.delete("/{industry_id}", response_model=None)
def delete_industry(
    request: Request,
    industry_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> dict[str, Any] | JSONResponse:
    try:
        result = industry_service.delete_industry(db, ctx, industry_id)
    except HTTPException as exc:
        return _failed(request, exc, "industry_delete_failed")
    return _delete_response(request, result, "industry_delete_blocked")


# Notifications


@notifications_router.get("/unread", response_model=ApiResponse[list[NotificationRead]])
def list_unread_notifications(
    request: Request,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[list[NotificationRead]] | JSONResponse:
    try:
        return ApiResponse(data=notification_service.list_unread(db, ctx))
    except HTTPException as exc:
        return _failed(request, exc, "notification_list_failed")


@notifications_router.get("/count", response_model=ApiResponse[NotificationCount])
def count_notifications(
    request: Request,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[NotificationCount] | JSONResponse:
    try:
        return ApiResponse(data=notification_service.count(db, ctx))
    except HTTPException as exc:
        return _failed(request, exc, "notification_count_failed")


@notifications_router.patch("/read-all", response_model=ApiResponse[dict[str, int]])
def mark_all_notifications_read(
    request: Request,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[dict[str, int]] | JSONResponse:
    try:
        updated = notification_service.mark_all_read(db, ctx)
        return ApiResponse(data={"updated": updated}, message="All notifications marked as read")
    except HTTPException as exc:
        return _failed(request, exc, "notification_read_all_failed")


@notifications_router.delete("/cleanup", response_model=ApiResponse[dict[str, int]])
def cleanup_notifications(
    request: Request,
    days: int = Query(default=30, ge=1),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[dict[str, int]] | JSONResponse:
    try:
        require_admin(ctx)
        deleted = notification_service.cleanup_older_than(db, days)
        return ApiResponse(data={"deleted": deleted}, message=f"Deleted notifications older than {days} days")
    except HTTPException as exc:
        return _failed(request, exc, "notification_cleanup_failed")


@notifications_router.get("", response_model=ApiResponse[list[NotificationRead]])
def list_notifications(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[list[NotificationRead]] | JSONResponse:
    try:
        return ApiResponse(data=notification_service.list_for_user(db, ctx, limit=limit, offset=offset))
    except HTTPException as exc:
        return _failed(request, exc, "notification_list_failed")


@notifications_router.post("", response_model=ApiResponse[NotificationRead], status_code=status.HTTP_201_CREATED)
def create_notification(
    request: Request,
    dto: NotificationCreate,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[NotificationRead] | JSONResponse:
    try:
        if dto.user_id != ctx.user_id:
            require_admin(ctx)
        return ApiResponse(data=notification_service.create_notification(db, dto), message="Notification created")
    except HTTPException as exc:
        return _failed(request, exc, "notification_create_failed")


@notifications_router.delete("", response_model=ApiResponse[dict[str, int]])
def delete_notifications(
    request: Request,
    payload: NotificationBulkDelete,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[dict[str, int]] | JSONResponse:
    try:
        deleted = notification_service.delete_many(db, ctx, payload.ids)
        return ApiResponse(data={"deleted": deleted}, message="Notifications deleted")
    except HTTPException as exc:
        return _failed(request, exc, "notification_delete_failed")


@notifications_router.patch("/{notification_id}/read", response_model=ApiResponse[NotificationRead])
def mark_notification_read(
    request: Request,
    notification_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[NotificationRead] | JSONResponse:
    try:
        return ApiResponse(data=notification_service.mark_read(db, ctx, notification_id))
    except HTTPException as exc:
        return _failed(request, exc, "notification_read_failed")


@notifications_router.delete("/{notification_id}", response_model=None)
def delete_notification(
    request: Request,
    notification_id: int,
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> dict[str, Any] | JSONResponse:
    try:
        notification_service.delete_notification(db, ctx, notification_id)
    except HTTPException as exc:
        return _failed(request, exc, "notification_delete_failed")
    return DeleteResult(success=True, message="Notification deleted").to_payload()


# CSV import / export


@csv_router.get("/csv/templates/{entity_type}", response_model=ApiResponse[CsvTemplate])
def get_csv_template(
    request: Request,
    entity_type: str,
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[CsvTemplate] | JSONResponse:
    if entity_type not in ENTITY_TYPES:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="csv_template_failed",
            message=f"unsupported entity type: {entity_type}",
        )
    return ApiResponse(data=build_import_template(entity_type))


@csv_router.get("/{entity_type}/export")
def export_entities(
    request: Request,
    entity_type: str,
    for_import: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> Response:
    try:
        content = export_csv(db, ctx, entity_type, for_import=for_import)
    except HTTPException as exc:
        return _failed(request, exc, "csv_export_failed")
    filename = f"{entity_type}_import.csv" if for_import else f"{entity_type}.csv"
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@csv_router.post("/{entity_type}/import", response_model=ApiResponse[ImportSummary])
def import_entities(
    request: Request,
    entity_type: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    ctx: ActorContext = Depends(get_actor),
) -> ApiResponse[ImportSummary] | JSONResponse:
    try:
        csv_text = decode_csv_bytes(file.file.read())
        summary = import_csv(db, ctx, entity_type, csv_text)
    except CSVParseError as exc:
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            code="csv_import_failed",
            message=str(exc),
        )
    except HTTPException as exc:
        return _failed(request, exc, "csv_import_failed")

    if summary.attempted == 0 and summary.errors:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            content={
                "success": False,
                "code": "csv_validation_failed",
                "message": "CSV validation failed",
                "data": summary.model_dump(mode="json"),
                "correlation_id": get_correlation_id() or getattr(request.state, "correlation_id", None),
            },
        )
    message = f"Imported {summary.created} of {summary.attempted} {entity_type}"
    return ApiResponse(success=summary.failed == 0, data=summary, message=message)
