from __future__ import annotations

import logging
from datetime import date
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.crosssell.csv_transform import (
    ENTITY_TYPES,
    REQUIRED_FIELDS,
    LookupTables,
    error_row_number,
    export_for_import,
    export_to_csv,
    parse_csv_text,
    prepare_data_for_import,
    validate_csv_data,
)
from app.crosssell.models import Client, Opportunity, Service, User
from app.crosssell.schemas import ImportRowError, ImportSummary
from app.crosssell.service import (
    ActorContext,
    client_service,
    opportunity_service,
    service_catalog_service,
    task_service,
)
from app.metrics import observe_export_rows, observe_import_rows


logger = logging.getLogger("app.crosssell.import_export")
tracer = trace.get_tracer("app.crosssell.import_export")

EXPORT_COLUMNS: dict[str, list[str]] = {
    "clients": [
        "id",
        "name",
        "industry",
        "contact_name",
        "contact_email",
        "contact_phone",
        "address",
        "account_owner_id",
        "account_owner_name",
        "services_used",
        "crm_link",
        "notes",
        "status",
        "created_at",
        "updated_at",
    ],
    "services": [
        "id",
        "name",
        "description",
        "business_unit",
        "pricing_model",
        "pricing_details",
        "applicable_industries",
        "client_role",
        "status",
        "created_at",
        "updated_at",
    ],
    "opportunities": [
        "id",
        "name",
        "client_id",
        "client_name",
        "service_id",
        "service_name",
        "assigned_user_id",
        "assigned_user_name",
        "status",
        "priority",
        "estimated_value",
        "due_date",
        "notes",
        "created_at",
        "updated_at",
    ],
    "tasks": [
        "id",
        "name",
        "opportunity_id",
        "opportunity_name",
        "assigned_user_id",
        "assigned_user_name",
        "due_date",
        "status",
        "description",
        "is_overdue",
        "created_at",
        "updated_at",
    ],
}


def _require_entity_type(entity_type: str) -> None:
    if entity_type not in ENTITY_TYPES:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"unsupported entity type: {entity_type}",
        )


def build_lookup_tables(session: Session) -> LookupTables:
    return LookupTables.from_pairs(
        clients=session.execute(select(Client.id, Client.name)).all(),
        services=session.execute(select(Service.id, Service.name)).all(),
        users=session.execute(select(User.id, User.username)).all(),
        opportunities=session.execute(select(Opportunity.id, Opportunity.name)).all(),
    )


def _create_record(session: Session, ctx: ActorContext, entity_type: str, dto: Any) -> int:
    if entity_type == "clients":
        return client_service.create_client(session, ctx, dto).id
    if entity_type == "services":
        return service_catalog_service.create_service(session, ctx, dto).id
    if entity_type == "opportunities":
        return opportunity_service.create_opportunity(session, ctx, dto).id
    return task_service.create_task(session, ctx, dto).id


def import_csv(
    session: Session,
    ctx: ActorContext,
    entity_type: str,
    csv_text: str,
    *,
    today: date | None = None,
) -> ImportSummary:
    """Parse, validate and create every row of an uploaded CSV.

    Validation is all-or-nothing: any error means no row is written. Once rows
    start being created each one commits on its own, so a failing row does not
    undo the ones before it.
    """
    _require_entity_type(entity_type)
    summary = ImportSummary(entity_type=entity_type)

    with tracer.start_as_current_span("crosssell.import") as span:
        span.set_attribute("entity_type", entity_type)
        parsed = parse_csv_text(csv_text)
        summary.warnings.extend(parsed.warnings)

        validation = validate_csv_data(parsed.rows, REQUIRED_FIELDS[entity_type], entity_type)
        summary.warnings.extend(validation.warnings)
        if not validation.valid:
            summary.errors.extend(
                ImportRowError(row_number=error_row_number(message), error_code="VALIDATION", message=message)
                for message in validation.errors
            )
            summary.failed = len(parsed.rows)
            span.set_attribute("validation_errors", len(validation.errors))
            logger.warning(
                "import.validation_failed",
                extra={"entity_type": entity_type, "count": len(validation.errors)},
            )
            return summary

        prepared = prepare_data_for_import(parsed.rows, entity_type, build_lookup_tables(session), today=today)
        for warning in prepared.warnings:
            logger.warning("import.lookup_unresolved", extra={"entity_type": entity_type, "error": warning})
        summary.warnings.extend(prepared.warnings)
        summary.errors.extend(prepared.errors)
        summary.attempted = len(prepared.records) + len(prepared.errors)

        for record in prepared.records:
            try:
                created_id = _create_record(session, ctx, entity_type, record.dto)
            except HTTPException as exc:
                session.rollback()
                summary.errors.append(_row_error(record.row_number, "HTTP_ERROR", str(exc.detail)))
                _log_row_failure(entity_type, record.row_number, str(exc.detail))
                continue
            except (IntegrityError, ValidationError, ValueError) as exc:
                session.rollback()
                summary.errors.append(_row_error(record.row_number, "ROW_ERROR", str(exc)))
                _log_row_failure(entity_type, record.row_number, str(exc))
                continue
            summary.created_ids.append(created_id)

        summary.created = len(summary.created_ids)
        summary.failed = len(summary.errors)
        span.set_attribute("created", summary.created)
        span.set_attribute("failed", summary.failed)

    observe_import_rows(entity_type, summary.created, summary.failed)
    logger.info(
        "import.finished",
        extra={"entity_type": entity_type, "count": summary.created, "user_id": ctx.user_id},
    )
    return summary


def _row_error(row_number: int, code: str, message: str) -> ImportRowError:
    return ImportRowError(row_number=row_number, error_code=code, message=message[:500], field="row")


def _log_row_failure(entity_type: str, row_number: int, error: str) -> None:
    logger.warning(
        "import.row_failed",
        extra={"entity_type": entity_type, "row_number": row_number, "error": error[:500]},
    )


def _export_records(session: Session, ctx: ActorContext, entity_type: str) -> list[dict[str, Any]]:
    if entity_type == "clients":
        rows = client_service.list_clients(session, ctx)
    elif entity_type == "services":
        rows = service_catalog_service.list_services(session, ctx)
    elif entity_type == "opportunities":
        rows = opportunity_service.list_opportunities(session, ctx)
    else:
        rows = task_service.list_tasks(session, ctx)
    return [row.model_dump() for row in rows]


def export_csv(session: Session, ctx: ActorContext, entity_type: str, *, for_import: bool = False) -> str:
    _require_entity_type(entity_type)
    records = _export_records(session, ctx, entity_type)
    columns = EXPORT_COLUMNS[entity_type]
    if for_import:
        content = export_for_import(records, entity_type, columns)
    else:
        content = export_to_csv(records, columns)
    observe_export_rows(entity_type, len(records))
    logger.info(
        "export.finished",
        extra={"entity_type": entity_type, "count": len(records), "user_id": ctx.user_id},
    )
    return content
