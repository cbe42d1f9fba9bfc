"""Turns cross-sell domain events into Notification rows.

Handlers run after the originating transaction has committed, in their own
session. They only notify users that exist and never notify the same user
twice for one event.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.crosssell.models import User
from app.crosssell.repositories import BusinessUnitRepository, UserRepository
from app.crosssell.schemas import NotificationCreate, NotificationRead
from app.crosssell.service import notification_service


logger = logging.getLogger("app.crosssell.notifications")

CROSSSELL_EVENT_TYPES = [
    "crosssell.client.created",
    "crosssell.opportunity.created",
    "crosssell.opportunity.status_changed",
    "crosssell.opportunity.won",
    "crosssell.task.assigned",
    "crosssell.task.completed",
]

_business_unit_repository = BusinessUnitRepository()
_user_repository = UserRepository()


def resolve_bu_head(session: Session, business_unit_name: str | None) -> int | None:
    """Owner of the active business unit, falling back to the first bu_head user."""
    if business_unit_name:
        unit = _business_unit_repository.get_by_name(session, business_unit_name, active_only=True)
        if unit is not None and unit.owner_id is not None:
            return unit.owner_id
    fallback = _user_repository.first_with_role(session, "bu_head")
    return fallback.id if fallback is not None else None


def _recipients(session: Session, *user_ids: int | None) -> list[int]:
    seen: list[int] = []
    for user_id in user_ids:
        if user_id is None or user_id in seen:
            continue
        if session.get(User, user_id) is None:
            continue
        seen.append(user_id)
    return seen


class NotificationDispatcher:
    def __init__(self) -> None:
        self._handlers: dict[str, Callable[[Session, dict[str, Any], int | None], list[NotificationRead]]] = {
            "crosssell.client.created": self.on_client_created,
            "crosssell.opportunity.created": self.on_opportunity_created,
            "crosssell.opportunity.status_changed": self.on_opportunity_status_changed,
            "crosssell.opportunity.won": self.on_opportunity_won,
            "crosssell.task.assigned": self.on_task_assigned,
            "crosssell.task.completed": self.on_task_completed,
        }

    def handle_event(self, session: Session, envelope: dict[str, Any]) -> list[NotificationRead]:
        event_type = envelope.get("event_type")
        handler = self._handlers.get(event_type) if isinstance(event_type, str) else None
        payload = envelope.get("payload")
        if handler is None or not isinstance(payload, dict):
            return []
        created = handler(session, payload, envelope.get("actor_user_id"))
        logger.info("notifications.dispatched", extra={"event_name": event_type, "count": len(created)})
        return created

    def on_client_created(self, session: Session, payload: dict[str, Any], actor_user_id: int | None) -> list[NotificationRead]:
        return self._send(
            session,
            _recipients(session, payload.get("account_owner_id")),
            notification_type="new_client",
            title="New Client",
            message=f'A new client "{payload.get("name")}" has been added to your accounts.',
            related_to="client",
            related_id=payload.get("client_id"),
        )

    def on_opportunity_created(
        self,
        session: Session,
        payload: dict[str, Any],
        actor_user_id: int | None,
    ) -> list[NotificationRead]:
        bu_head_id = resolve_bu_head(session, payload.get("business_unit"))
        return self._send(
            session,
            _recipients(session, payload.get("assigned_user_id"), bu_head_id),
            notification_type="new_opportunity",
            title="New Opportunity",
            message=(
                f'A new opportunity "{payload.get("name")}" was created for client '
                f'"{payload.get("client_name")}" and service "{payload.get("service_name")}".'
            ),
            related_to="opportunity",
            related_id=payload.get("opportunity_id"),
        )

    def on_opportunity_status_changed(
        self,
        session: Session,
        payload: dict[str, Any],
        actor_user_id: int | None,
    ) -> list[NotificationRead]:
        return self._send(
            session,
            _recipients(session, payload.get("assigned_user_id"), payload.get("account_owner_id")),
            notification_type="opportunity_status_change",
            title="Opportunity Status Changed",
            message=(
                f'Opportunity "{payload.get("name")}" changed status from '
                f'{payload.get("from_status")} to {payload.get("to_status")}.'
            ),
            related_to="opportunity",
            related_id=payload.get("opportunity_id"),
        )

    def on_opportunity_won(self, session: Session, payload: dict[str, Any], actor_user_id: int | None) -> list[NotificationRead]:
        name = payload.get("name")
        service_name = payload.get("service_name")
        if payload.get("service_active", True):
            outcome = "and added to client's services."
            bu_outcome = f'Service "{service_name}" has been added to client\'s services.'
        else:
            outcome = "but the service is not active, so it was not added to client's services."
            bu_outcome = f'Service "{service_name}" is not active and was not added to client\'s services.'
        account_owner = _recipients(session, payload.get("account_owner_id"))
        created = self._send(
            session,
            account_owner,
            notification_type="opportunity_won",
            title="Opportunity Won",
            message=f'Opportunity "{name}" for service "{service_name}" has been won {outcome}',
            related_to="opportunity",
            related_id=payload.get("opportunity_id"),
        )
        bu_head = [
            user_id
            for user_id in _recipients(session, resolve_bu_head(session, payload.get("business_unit")))
            if user_id not in account_owner
        ]
        created.extend(
            self._send(
                session,
                bu_head,
                notification_type="opportunity_won",
                title="Opportunity Won - BU Notification",
                message=f'Opportunity "{name}" for client "{payload.get("client_name")}" has been won. {bu_outcome}',
                related_to="opportunity",
                related_id=payload.get("opportunity_id"),
            )
        )
        return created

    def on_task_assigned(self, session: Session, payload: dict[str, Any], actor_user_id: int | None) -> list[NotificationRead]:
        assignee = payload.get("assigned_user_id")
        if assignee is not None and assignee == actor_user_id:
            return []
        return self._send(
            session,
            _recipients(session, assignee),
            notification_type="task_assigned",
            title="New Task Assigned",
            message=f"You have been assigned a new task: {payload.get('name')}",
            related_to="task",
            related_id=payload.get("task_id"),
        )

    def on_task_completed(self, session: Session, payload: dict[str, Any], actor_user_id: int | None) -> list[NotificationRead]:
        # Goes to whoever owns the opportunity, not the task assignee.
        owner = payload.get("opportunity_assigned_user_id")
        if owner is not None and owner == actor_user_id:
            return []
        return self._send(
            session,
            _recipients(session, owner),
            notification_type="task_completed",
            title="Task Completed",
            message=f'Task "{payload.get("name")}" has been marked as completed',
            related_to="task",
            related_id=payload.get("task_id"),
        )

    def _send(
        self,
        session: Session,
        user_ids: list[int],
        *,
        notification_type: str,
        title: str,
        message: str,
        related_to: str,
        related_id: int | None,
    ) -> list[NotificationRead]:
        if not user_ids:
            return []
        items = [
            NotificationCreate(
                user_id=user_id,
                type=notification_type,
                title=title,
                message=message,
                related_to=related_to,
                related_id=related_id,
            )
            for user_id in user_ids
        ]
        return notification_service.create_many(session, items)


notification_dispatcher = NotificationDispatcher()
