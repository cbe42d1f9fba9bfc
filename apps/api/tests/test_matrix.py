from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from app.crosssell.matrix import apply_created_opportunity, build_matrix, count_cells, select_opportunities

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _client(client_id: int, name: str, services_used: list[int] | None = None) -> SimpleNamespace:
    return SimpleNamespace(id=client_id, name=name, services_used=services_used or [])


def _service(service_id: int, name: str, business_unit: str, status: str = "active") -> SimpleNamespace:
    return SimpleNamespace(id=service_id, name=name, business_unit=business_unit, status=status)


def _opportunity(
    opportunity_id: int,
    client_id: int,
    service_id: int,
    status: str = "new",
    age_hours: int = 0,
) -> SimpleNamespace:
    return SimpleNamespace(
        id=opportunity_id,
        client_id=client_id,
        service_id=service_id,
        status=status,
        created_at=BASE - timedelta(hours=age_hours),
    )


def test_select_opportunities_prefers_newest_then_highest_id() -> None:
    older = _opportunity(1, 1, 1, status="proposal", age_hours=5)
    newer = _opportunity(2, 1, 1, status="qualified", age_hours=1)
    tie_low = _opportunity(3, 2, 1, status="new")
    tie_high = _opportunity(4, 2, 1, status="negotiation")

    selected = select_opportunities([newer, older, tie_high, tie_low])

    assert selected[(1, 1)] is newer
    assert selected[(2, 1)] is tie_high


def test_select_opportunities_ignores_lost() -> None:
    kept = _opportunity(1, 1, 1, status="on_hold", age_hours=10)
    lost = _opportunity(2, 1, 1, status="lost")

    assert select_opportunities([kept, lost]) == {(1, 1): kept}
    assert select_opportunities([lost]) == {}


def test_build_matrix_orders_rows_and_columns() -> None:
    clients = [_client(2, "globex"), _client(1, "Acme")]
    services = [
        _service(10, "Migration", "Cloud"),
        _service(11, "Backup", "Cloud"),
        _service(12, "Audit", "Assurance"),
        _service(13, "Legacy", "Assurance", status="deprecated"),
    ]

    matrix = build_matrix(clients, services, [])

    assert [row.name for row in matrix.clients] == ["Acme", "globex"]
    assert [(column.business_unit, column.name) for column in matrix.services] == [
        ("Assurance", "Audit"),
        ("Cloud", "Backup"),
        ("Cloud", "Migration"),
    ]
    assert matrix.matrix == {1: {}, 2: {}}


def test_build_matrix_active_cells_override_opportunities() -> None:
    clients = [_client(1, "Acme", services_used=[10])]
    services = [_service(10, "Migration", "Cloud"), _service(11, "Backup", "Cloud")]
    opportunities = [
        _opportunity(5, 1, 10, status="proposal"),
        _opportunity(6, 1, 11, status="qualified"),
    ]

    matrix = build_matrix(clients, services, opportunities)

    active = matrix.cell(1, 10)
    assert active is not None
    assert active.status == "active"
    assert active.opportunity_id is None

    pipeline = matrix.cell(1, 11)
    assert pipeline is not None
    assert (pipeline.status, pipeline.opportunity_id) == ("qualified", 6)

    assert count_cells(matrix) == (1, 1)


def test_build_matrix_skips_inactive_service_columns() -> None:
    clients = [_client(1, "Acme", services_used=[13])]
    services = [_service(13, "Legacy", "Assurance", status="inactive")]

    matrix = build_matrix(clients, services, [_opportunity(1, 1, 13)])

    assert matrix.services == []
    assert matrix.cell(1, 13) is None
    assert count_cells(matrix) == (0, 0)


def test_apply_created_opportunity_fills_empty_cell() -> None:
    matrix = build_matrix([_client(1, "Acme")], [_service(10, "Migration", "Cloud")], [])

    apply_created_opportunity(matrix, _opportunity(7, 1, 10, status="new"))

    cell = matrix.cell(1, 10)
    assert cell is not None
    assert (cell.status, cell.opportunity_id) == ("new", 7)


def test_apply_created_opportunity_keeps_active_and_ignores_lost() -> None:
    matrix = build_matrix(
        [_client(1, "Acme", services_used=[10]), _client(2, "Globex")],
        [_service(10, "Migration", "Cloud")],
        [],
    )

    apply_created_opportunity(matrix, _opportunity(8, 1, 10, status="proposal"))
    apply_created_opportunity(matrix, _opportunity(9, 2, 10, status="lost"))

    active = matrix.cell(1, 10)
    assert active is not None
    assert active.status == "active"
    assert matrix.cell(2, 10) is None


def test_matrix_serializes_with_string_keys() -> None:
    matrix = build_matrix(
        [_client(1, "Acme")],
        [_service(10, "Migration", "Cloud")],
        [_opportunity(3, 1, 10, status="won")],
    )

    payload = matrix.model_dump(mode="json")

    assert payload["matrix"] == {"1": {"10": {"status": "won", "opportunity_id": 3}}}
