"""HTTP client for the cross-sell API.

Older deployments answer with bare arrays or objects instead of the
``{success, data, message}`` envelope; ``unwrap_response`` accepts both so
callers always receive typed data.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, TypeAdapter

from app.crosssell.csv_transform import (
    REQUIRED_FIELDS,
    LookupTables,
    error_row_number,
    parse_csv_text,
    prepare_data_for_import,
    validate_csv_data,
)
from app.crosssell.matrix import apply_created_opportunity
from app.crosssell.schemas import (
    ClientRead,
    CrossSellMatrix,
    ImportRowError,
    ImportSummary,
    OpportunityCreate,
    OpportunityRead,
    ServiceRead,
    TaskRead,
    UserRead,
)


logger = logging.getLogger("app.crosssell.client")

T = TypeVar("T")

_ENTITY_PATHS = {
    "clients": "/api/clients",
    "services": "/api/services",
    "opportunities": "/api/opportunities",
    "tasks": "/api/tasks",
}


class CrossSellApiError(Exception):
    def __init__(self, status_code: int, message: str, payload: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.payload = payload


def unwrap_response(payload: Any) -> Any:
    """Return the data part of an enveloped response, or the payload itself."""
    if isinstance(payload, dict) and "success" in payload and ("data" in payload or "message" in payload):
        if payload.get("success") is False:
            raise CrossSellApiError(
                status_code=0,
                message=str(payload.get("message") or "request failed"),
                payload=payload,
            )
        return payload.get("data")
    return payload


def parse_as(model: type[T] | Any, payload: Any) -> T:
    return TypeAdapter(model).validate_python(unwrap_response(payload))


class CrossSellApiClient:
    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.http = httpx.Client(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    def close(self) -> None:
        self.http.close()

    def __enter__(self) -> "CrossSellApiClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = self.http.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            body = _safe_json(exc.response)
            message = body.get("message") if isinstance(body, dict) else None
            raise CrossSellApiError(
                status_code=exc.response.status_code,
                message=str(message or exc.response.text or exc),
                payload=body,
            ) from exc
        except httpx.HTTPError as exc:
            raise CrossSellApiError(status_code=0, message=f"Error calling {path}: {exc}") from exc
        if not resp.content:
            return None
        return resp.json()

    def list_clients(self, **filters: Any) -> list[ClientRead]:
        return parse_as(list[ClientRead], self._request("GET", "/api/clients", params=_params(filters)))

    def list_services(self, **filters: Any) -> list[ServiceRead]:
        return parse_as(list[ServiceRead], self._request("GET", "/api/services", params=_params(filters)))

    def list_opportunities(self, **filters: Any) -> list[OpportunityRead]:
        return parse_as(list[OpportunityRead], self._request("GET", "/api/opportunities", params=_params(filters)))

    def list_tasks(self, **filters: Any) -> list[TaskRead]:
        return parse_as(list[TaskRead], self._request("GET", "/api/tasks", params=_params(filters)))

    def list_users(self) -> list[UserRead]:
        return parse_as(list[UserRead], self._request("GET", "/api/users"))

    def get_matrix(self) -> CrossSellMatrix:
        return parse_as(CrossSellMatrix, self._request("GET", "/api/opportunities/matrix"))

    def create_opportunity(self, dto: OpportunityCreate) -> OpportunityRead:
        payload = self._request("POST", "/api/opportunities", json=dto.model_dump(mode="json", exclude_none=True))
        return parse_as(OpportunityRead, payload)

    def create_opportunity_from_cell(self, matrix: CrossSellMatrix, dto: OpportunityCreate) -> OpportunityRead:
        """Create an opportunity for a blank matrix cell and patch the local matrix."""
        created = self.create_opportunity(dto)
        apply_created_opportunity(matrix, created)
        return created

    def create_record(self, entity_type: str, dto: BaseModel) -> dict[str, Any]:
        payload = self._request("POST", _ENTITY_PATHS[entity_type], json=dto.model_dump(mode="json", exclude_none=True))
        data = unwrap_response(payload)
        return data if isinstance(data, dict) else {}

    def lookup_tables(self) -> LookupTables:
        return LookupTables.from_pairs(
            clients=[(row.id, row.name) for row in self.list_clients()],
            services=[(row.id, row.name) for row in self.list_services()],
            users=[(row.id, row.username) for row in self.list_users()],
            opportunities=[(row.id, row.name) for row in self.list_opportunities()],
        )

    def bulk_import(self, entity_type: str, csv_text: str, *, today: date | None = None) -> ImportSummary:
        """Validate locally, then create each row through the API one at a time."""
        summary = ImportSummary(entity_type=entity_type)
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
            return summary

        prepared = prepare_data_for_import(parsed.rows, entity_type, self.lookup_tables(), today=today)
        summary.warnings.extend(prepared.warnings)
        summary.errors.extend(prepared.errors)
        summary.attempted = len(prepared.records) + len(prepared.errors)

        for record in prepared.records:
            try:
                created = self.create_record(entity_type, record.dto)
            except CrossSellApiError as exc:
                logger.warning(
                    "import.row_failed",
                    extra={"entity_type": entity_type, "row_number": record.row_number, "error": exc.message[:500]},
                )
                summary.errors.append(
                    ImportRowError(row_number=record.row_number, error_code="HTTP_ERROR", message=exc.message, field="row")
                )
                continue
            created_id = created.get("id")
            if isinstance(created_id, int):
                summary.created_ids.append(created_id)

        summary.created = len(summary.created_ids)
        summary.failed = len(summary.errors)
        return summary


def _params(filters: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in filters.items() if value is not None}


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


__all__ = [
    "CrossSellApiClient",
    "CrossSellApiError",
    "parse_as",
    "unwrap_response",
]
