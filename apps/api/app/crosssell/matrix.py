from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Iterable

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.crosssell.models import Client, Opportunity, Service
from app.crosssell.repositories import OpportunityRepository
from app.crosssell.schemas import CrossSellMatrix, MatrixCell, MatrixClient, MatrixServiceColumn
from app.metrics import observe_matrix_build


logger = logging.getLogger("app.crosssell.matrix")
tracer = trace.get_tracer("app.crosssell.matrix")

ACTIVE_CELL = "active"
IGNORED_OPPORTUNITY_STATUSES = {"lost"}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _recency_key(opportunity: Any) -> tuple[datetime, int]:
    created_at = getattr(opportunity, "created_at", None) or _EPOCH
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at, int(opportunity.id)


def select_opportunities(opportunities: Iterable[Any]) -> dict[tuple[int, int], Any]:
    """Pick the opportunity that speaks for each (client, service) pair.

    Lost opportunities never count. Among the rest the newest wins, ties go to
    the highest id.
    """
    selected: dict[tuple[int, int], Any] = {}
    for opportunity in opportunities:
        if opportunity.status in IGNORED_OPPORTUNITY_STATUSES:
            continue
        key = (opportunity.client_id, opportunity.service_id)
        current = selected.get(key)
        if current is None or _recency_key(opportunity) > _recency_key(current):
            selected[key] = opportunity
    return selected


def build_matrix(clients: Iterable[Any], services: Iterable[Any], opportunities: Iterable[Any]) -> CrossSellMatrix:
    client_rows = sorted(clients, key=lambda item: (item.name.lower(), item.id))
    service_columns = sorted(
        (item for item in services if item.status == "active"),
        key=lambda item: (item.business_unit.lower(), item.name.lower(), item.id),
    )
    selected = select_opportunities(opportunities)

    matrix: dict[int, dict[int, MatrixCell]] = {}
    for client in client_rows:
        used = set(client.services_used or [])
        cells: dict[int, MatrixCell] = {}
        for service in service_columns:
            if service.id in used:
                cells[service.id] = MatrixCell(status=ACTIVE_CELL, opportunity_id=None)
                continue
            opportunity = selected.get((client.id, service.id))
            if opportunity is not None:
                cells[service.id] = MatrixCell(status=opportunity.status, opportunity_id=opportunity.id)
        matrix[client.id] = cells

    return CrossSellMatrix(
        clients=[MatrixClient(id=client.id, name=client.name) for client in client_rows],
        services=[
            MatrixServiceColumn(id=service.id, name=service.name, business_unit=service.business_unit)
            for service in service_columns
        ],
        matrix=matrix,
    )


def apply_created_opportunity(matrix: CrossSellMatrix, opportunity: Any) -> CrossSellMatrix:
    """Fill a cell from a freshly created opportunity without refetching.

    An active cell is left as is, and so is a lost opportunity.
    """
    if opportunity.status in IGNORED_OPPORTUNITY_STATUSES:
        return matrix
    row = matrix.matrix.setdefault(opportunity.client_id, {})
    current = row.get(opportunity.service_id)
    if current is not None and current.status == ACTIVE_CELL:
        return matrix
    row[opportunity.service_id] = MatrixCell(status=opportunity.status, opportunity_id=opportunity.id)
    return matrix


def count_cells(matrix: CrossSellMatrix) -> tuple[int, int]:
    active = 0
    with_opportunity = 0
    for cells in matrix.matrix.values():
        for cell in cells.values():
            if cell.status == ACTIVE_CELL:
                active += 1
            else:
                with_opportunity += 1
    return active, with_opportunity


class MatrixService:
    def __init__(self) -> None:
        self.opportunity_repository = OpportunityRepository()

    def get_matrix(self, session: Session) -> CrossSellMatrix:
        started = time.perf_counter()
        with tracer.start_as_current_span("crosssell.matrix.build") as span:
            clients = session.scalars(select(Client).order_by(Client.name.asc())).all()
            services = session.scalars(
                select(Service).where(Service.status == "active").order_by(Service.business_unit.asc(), Service.name.asc())
            ).all()
            opportunities: list[Opportunity] = self.opportunity_repository.list_for_clients_and_services(
                session,
                [client.id for client in clients],
                [service.id for service in services],
            )
            result = build_matrix(clients, services, opportunities)
            active, with_opportunity = count_cells(result)
            span.set_attribute("clients", len(result.clients))
            span.set_attribute("services", len(result.services))
            span.set_attribute("active_cells", active)
            span.set_attribute("opportunity_cells", with_opportunity)

        duration = time.perf_counter() - started
        observe_matrix_build(duration, active, with_opportunity)
        logger.info(
            "matrix.built",
            extra={"count": len(result.clients), "duration_ms": round(duration * 1000, 2)},
        )
        return result


matrix_service = MatrixService()
