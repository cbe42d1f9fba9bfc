from app.crosssell.api import (
    business_units_router,
    clients_router,
    csv_router,
    industries_router,
    notifications_router,
    opportunities_router,
    services_router,
    tasks_router,
    users_router,
)
from app.crosssell.matrix import MatrixService, apply_created_opportunity, build_matrix, matrix_service
from app.crosssell.models import BusinessUnit, Client, Industry, Notification, Opportunity, Service, Task, User
from app.crosssell.notifications import CROSSSELL_EVENT_TYPES, NotificationDispatcher, notification_dispatcher
from app.crosssell.service import ActorContext, is_task_overdue
from app.crosssell.workflow import WorkflowService, workflow_service

routers = [
    csv_router,
    clients_router,
    services_router,
    opportunities_router,
    tasks_router,
    users_router,
    business_units_router,
    industries_router,
    notifications_router,
]

__all__ = [
    "routers",
    "ActorContext",
    "BusinessUnit",
    "Client",
    "Industry",
    "Notification",
    "Opportunity",
    "Service",
    "Task",
    "User",
    "MatrixService",
    "matrix_service",
    "build_matrix",
    "apply_created_opportunity",
    "is_task_overdue",
    "CROSSSELL_EVENT_TYPES",
    "NotificationDispatcher",
    "notification_dispatcher",
    "WorkflowService",
    "workflow_service",
]
