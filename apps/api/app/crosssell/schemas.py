from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


UserRole = Literal["admin", "sales", "bu_head", "senior_management"]
RecordStatus = Literal["active", "inactive"]
ClientStatus = Literal["active", "inactive", "prospect"]
ServiceStatus = Literal["active", "inactive", "deprecated"]
OpportunityStatus = Literal["new", "in_progress", "qualified", "proposal", "negotiation", "won", "lost", "on_hold"]
OpportunityPriority = Literal["low", "medium", "high", "critical"]
TaskStatus = Literal["pending", "in_progress", "completed", "on_hold", "cancelled"]
NotificationType = Literal[
    "new_opportunity",
    "opportunity_status_change",
    "opportunity_won",
    "task_assigned",
    "task_completed",
    "task_overdue",
    "task_overdue_escalation",
    "new_client",
]
RelatedEntity = Literal["opportunity", "task", "client", "service"]
EntityType = Literal["clients", "services", "opportunities", "tasks"]

T = TypeVar("T")


def _split_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.replace(",", ";").split(";") if item.strip()]
    if isinstance(value, (int, float)):
        return [value]
    return value


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    data: T | None = None
    message: str | None = None


class UserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(min_length=6)
    role: UserRole = "sales"


class UserUpdate(BaseModel):
    username: str | None = Field(default=None, min_length=1, max_length=100)
    email: EmailStr | None = None
    password: str | None = Field(default=None, min_length=6)
    role: UserRole | None = None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    role: UserRole
    created_at: datetime
    updated_at: datetime


class BusinessUnitCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    status: RecordStatus = "active"
    owner_id: int | None = None


class BusinessUnitUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    status: RecordStatus | None = None
    owner_id: int | None = None


class BusinessUnitRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None
    status: RecordStatus
    owner_id: int | None
    created_at: datetime
    updated_at: datetime


class IndustryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    status: RecordStatus = "active"


class IndustryUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    status: RecordStatus | None = None


class IndustryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None
    status: RecordStatus
    created_at: datetime
    updated_at: datetime


class ClientCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    industry: str | None = None
    contact_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    address: str | None = None
    account_owner_id: int | None = None
    services_used: list[int] = Field(default_factory=list)
    crm_link: str | None = None
    notes: str | None = None
    status: ClientStatus = "prospect"

    @field_validator("services_used", mode="before")
    @classmethod
    def _coerce_services_used(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("contact_phone", mode="before")
    @classmethod
    def _phone_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(value)
        return value


class ClientUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    industry: str | None = None
    contact_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    address: str | None = None
    account_owner_id: int | None = None
    services_used: list[int] | None = None
    crm_link: str | None = None
    notes: str | None = None
    status: ClientStatus | None = None


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    industry: str | None
    contact_name: str | None
    contact_email: str | None
    contact_phone: str | None
    address: str | None
    account_owner_id: int | None
    account_owner_name: str | None = None
    services_used: list[int]
    crm_link: str | None
    notes: str | None
    status: ClientStatus
    created_at: datetime
    updated_at: datetime


class ServiceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    business_unit: str = Field(min_length=1, max_length=100)
    pricing_model: str | None = None
    pricing_details: str | None = None
    applicable_industries: list[str] = Field(default_factory=list)
    client_role: str | None = None
    status: ServiceStatus = "active"

    @field_validator("applicable_industries", mode="before")
    @classmethod
    def _coerce_industries(cls, value: Any) -> Any:
        return [str(item) for item in _split_list(value)]


class ServiceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    business_unit: str | None = Field(default=None, min_length=1, max_length=100)
    pricing_model: str | None = None
    pricing_details: str | None = None
    applicable_industries: list[str] | None = None
    client_role: str | None = None
    status: ServiceStatus | None = None


class ServiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None
    business_unit: str
    pricing_model: str | None
    pricing_details: str | None
    applicable_industries: list[str]
    client_role: str | None
    status: ServiceStatus
    created_at: datetime
    updated_at: datetime


class OpportunityCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    client_id: int
    service_id: int
    assigned_user_id: int | None = None
    status: OpportunityStatus = "new"
    priority: OpportunityPriority = "medium"
    estimated_value: Decimal = Field(default=Decimal("0"), ge=0)
    due_date: date | None = None
    notes: str | None = None


class OpportunityUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    client_id: int | None = None
    service_id: int | None = None
    assigned_user_id: int | None = None
    status: OpportunityStatus | None = None
    priority: OpportunityPriority | None = None
    estimated_value: Decimal | None = Field(default=None, ge=0)
    due_date: date | None = None
    notes: str | None = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    client_id: int
    client_name: str | None = None
    service_id: int
    service_name: str | None = None
    assigned_user_id: int | None
    assigned_user_name: str | None = None
    status: OpportunityStatus
    priority: OpportunityPriority
    estimated_value: Decimal
    due_date: date | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class TaskCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    opportunity_id: int
    assigned_user_id: int | None = None
    due_date: date
    status: TaskStatus = "pending"
    description: str | None = None


class TaskUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    opportunity_id: int | None = None
    assigned_user_id: int | None = None
    due_date: date | None = None
    status: TaskStatus | None = None
    description: str | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    opportunity_id: int
    opportunity_name: str | None = None
    assigned_user_id: int | None
    assigned_user_name: str | None = None
    due_date: date
    status: TaskStatus
    description: str | None
    is_overdue: bool = False
    created_at: datetime
    updated_at: datetime


class TaskStats(BaseModel):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    on_hold: int = 0
    cancelled: int = 0
    overdue: int = 0


class StatusChange(BaseModel):
    status: str = Field(min_length=1)


class NotificationCreate(BaseModel):
    user_id: int
    type: NotificationType
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    related_to: RelatedEntity | None = None
    related_id: int | None = None


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    type: NotificationType
    title: str
    message: str
    related_to: RelatedEntity | None
    related_id: int | None
    is_read: bool
    created_at: datetime


class NotificationCount(BaseModel):
    total: int
    unread: int


class NotificationBulkDelete(BaseModel):
    ids: list[int] = Field(min_length=1)


class DeleteResult(BaseModel):
    """Outcome of a guarded delete. A refusal carries dependency counts instead of raising."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str | None = None
    has_opportunities: bool = Field(default=False, serialization_alias="hasOpportunities")
    opportunity_count: int = Field(default=0, serialization_alias="opportunityCount")
    has_services: bool = Field(default=False, serialization_alias="hasServices")
    service_count: int = Field(default=0, serialization_alias="serviceCount")
    has_clients: bool = Field(default=False, serialization_alias="hasClients")
    client_count: int = Field(default=0, serialization_alias="clientCount")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class MatrixClient(BaseModel):
    id: int
    name: str


class MatrixServiceColumn(BaseModel):
    id: int
    name: str
    business_unit: str


class MatrixCell(BaseModel):
    status: str | None
    opportunity_id: int | None = None


class CrossSellMatrix(BaseModel):
    clients: list[MatrixClient] = Field(default_factory=list)
    services: list[MatrixServiceColumn] = Field(default_factory=list)
    matrix: dict[int, dict[int, MatrixCell]] = Field(default_factory=dict)

    def cell(self, client_id: int, service_id: int) -> MatrixCell | None:
        return self.matrix.get(client_id, {}).get(service_id)


class ImportRowError(BaseModel):
    row_number: int
    error_code: str
    message: str
    field: str | None = None


class ImportSummary(BaseModel):
    entity_type: EntityType
    attempted: int = 0
    created: int = 0
    failed: int = 0
    created_ids: list[int] = Field(default_factory=list)
    errors: list[ImportRowError] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class CsvTemplate(BaseModel):
    entity_type: EntityType
    required_fields: list[str]
    optional_fields: list[str]
    csv: str
