"""Flat CSV <-> entity record mapping used by bulk import and export.

Everything here is pure: rows come in as dictionaries, lookups are passed in
as plain tables, and nothing touches the database.
"""

from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ValidationError

from app.core.config import get_settings
from app.crosssell.schemas import (
    ClientCreate,
    CsvTemplate,
    ImportRowError,
    OpportunityCreate,
    ServiceCreate,
    TaskCreate,
)


ENTITY_TYPES = ("clients", "services", "opportunities", "tasks")

REQUIRED_FIELDS: dict[str, list[str]] = {
    "clients": ["name"],
    "services": ["name", "business_unit"],
    "opportunities": ["name"],
    "tasks": ["name"],
}

ENUM_FIELDS: dict[str, dict[str, tuple[str, ...]]] = {
    "clients": {"status": ("active", "inactive", "prospect")},
    "services": {"status": ("active", "inactive", "deprecated")},
    "opportunities": {
        "status": ("new", "in_progress", "qualified", "proposal", "negotiation", "won", "lost", "on_hold"),
        "priority": ("low", "medium", "high", "critical"),
    },
    "tasks": {"status": ("pending", "in_progress", "completed", "on_hold", "cancelled")},
}

DEFAULT_STATUS = {
    "clients": "prospect",
    "services": "active",
    "opportunities": "new",
    "tasks": "pending",
}

ALWAYS_EXCLUDED = {"id", "created_at", "updated_at", "is_overdue"}

# Display-only name column -> the id column it shadows.
NAME_COLUMNS = {
    "client_name": "client_id",
    "service_name": "service_id",
    "assigned_user_name": "assigned_user_id",
    "opportunity_name": "opportunity_id",
    "account_owner_name": "account_owner_id",
}

TEXT_FIELDS: dict[str, set[str]] = {
    "clients": {"name", "industry", "contact_name", "contact_email", "contact_phone", "address", "crm_link", "notes"},
    "services": {"name", "description", "business_unit", "pricing_model", "pricing_details", "client_role"},
    "opportunities": {"name", "notes"},
    "tasks": {"name", "description"},
}

DTO_BY_ENTITY: dict[str, type[BaseModel]] = {
    "clients": ClientCreate,
    "services": ServiceCreate,
    "opportunities": OpportunityCreate,
    "tasks": TaskCreate,
}

TEMPLATE_ROWS: dict[str, dict[str, Any]] = {
    "clients": {
        "name": "Example Client Corp",
        "industry": "Technology",
        "contact_name": "John Doe",
        "contact_email": "john.doe@example.com",
        "contact_phone": "+1-555-0123",
        "address": "123 Business St, City, State 12345",
        "account_owner_name": "admin",
        "services_used": [1, 2],
        "crm_link": "https://crm.example.com/client/123",
        "notes": "Important client with high potential",
        "status": "active",
    },
    "services": {
        "name": "Digital Marketing Strategy",
        "description": "Comprehensive digital marketing planning and execution",
        "business_unit": "Digital Marketing",
        "pricing_model": "Project-based",
        "pricing_details": "$5,000 - $15,000 per project",
        "applicable_industries": ["Technology", "Healthcare", "Finance"],
        "client_role": "CMO",
        "status": "active",
    },
    "opportunities": {
        "name": "Q1 Marketing Campaign",
        "client_name": "Example Client Corp",
        "service_name": "Digital Marketing Strategy",
        "assigned_user_name": "admin",
        "status": "new",
        "priority": "high",
        "estimated_value": 10000,
        "due_date": "2024-03-31",
        "notes": "High priority opportunity for Q1",
    },
    "tasks": {
        "name": "Prepare proposal",
        "opportunity_name": "Q1 Marketing Campaign",
        "assigned_user_name": "admin",
        "due_date": "2024-03-15",
        "status": "pending",
        "description": "Draft the proposal deck",
    },
}

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


class CSVParseError(ValueError):
    pass


@dataclass
class ParseResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class LookupTables:
    """Lower-cased display names mapped to ids, built from current data."""

    clients: dict[str, int] = field(default_factory=dict)
    services: dict[str, int] = field(default_factory=dict)
    users: dict[str, int] = field(default_factory=dict)
    opportunities: dict[str, int] = field(default_factory=dict)
    first_opportunity_id: int | None = None

    @classmethod
    def from_pairs(
        cls,
        *,
        clients: Iterable[tuple[int, str]] = (),
        services: Iterable[tuple[int, str]] = (),
        users: Iterable[tuple[int, str]] = (),
        opportunities: Iterable[tuple[int, str]] = (),
    ) -> "LookupTables":
        opportunity_pairs = list(opportunities)
        return cls(
            clients=_index(clients),
            services=_index(services),
            users=_index(users),
            opportunities=_index(opportunity_pairs),
            first_opportunity_id=min((item_id for item_id, _ in opportunity_pairs), default=None),
        )


@dataclass
class PreparedRecord:
    row_number: int
    dto: BaseModel


@dataclass
class PreparedImport:
    records: list[PreparedRecord] = field(default_factory=list)
    errors: list[ImportRowError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _index(pairs: Iterable[tuple[int, str]]) -> dict[str, int]:
    table: dict[str, int] = {}
    for item_id, name in pairs:
        key = _normalize_name(name)
        # First match wins on duplicate names.
        if key and key not in table:
            table[key] = item_id
    return table


def _normalize_name(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return False


def _render_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, set)):
        return ";".join(_render_cell(item) for item in value)
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def _as_mapping(record: Any) -> Mapping[str, Any]:
    if isinstance(record, BaseModel):
        return record.model_dump()
    return record


def convert_to_csv(records: Iterable[Any], headers: list[str] | None = None) -> str:
    rows = [_as_mapping(record) for record in records]
    if not rows:
        return ""
    columns = list(headers) if headers is not None else list(rows[0].keys())

    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(columns)
    for row in rows:
        writer.writerow([_render_cell(row.get(column)) for column in columns])
    return output.getvalue()


def export_to_csv(records: Iterable[Any], headers: list[str] | None = None) -> str:
    return convert_to_csv(records, headers)


def import_columns(columns: Iterable[str], entity_type: str) -> list[str]:
    """Columns that survive an import-ready export."""
    columns = list(columns)
    present = set(columns)
    kept: list[str] = []
    for column in columns:
        if column in ALWAYS_EXCLUDED:
            continue
        if column in NAME_COLUMNS:
            # A name column stands in for its id when the id is not exported.
            if entity_type in {"opportunities", "tasks"} and NAME_COLUMNS[column] not in present:
                kept.append(column)
            continue
        kept.append(column)
    return kept


def export_for_import(records: Iterable[Any], entity_type: str, headers: list[str] | None = None) -> str:
    rows = [_as_mapping(record) for record in records]
    if not rows:
        return ""
    columns = list(headers) if headers is not None else list(rows[0].keys())
    return convert_to_csv(rows, import_columns(columns, entity_type))


def _coerce_cell(header: str, value: str) -> Any:
    if value == "":
        return None
    if ";" in value:
        return [part.strip() for part in value.split(";") if part.strip()]
    lowered = header.lower()
    if "date" in lowered and _DATE_RE.match(value.strip()):
        return value.strip()
    if "phone" not in lowered and _NUMBER_RE.match(value.strip()):
        number = value.strip()
        if re.fullmatch(r"[+-]?\d+", number):
            return int(number)
        return float(number)
    return value


def parse_csv_text(text: str) -> ParseResult:
    result = ParseResult()
    # Quoted fields may span lines, so records come from the reader, not from splitting.
    records = [values for values in csv.reader(io.StringIO(text)) if any(value.strip() for value in values)]
    if not records:
        return result

    headers = [header.strip() for header in records[0]]
    for index, values in enumerate(records[1:], start=2):
        if len(values) != len(headers):
            result.warnings.append(f"Row {index}: expected {len(headers)} values, found {len(values)}")
            continue
        result.rows.append({header: _coerce_cell(header, value) for header, value in zip(headers, values)})
    return result


def decode_csv_bytes(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise CSVParseError(f"Failed to parse CSV file: {exc}") from exc


def parse_csv_file(source: str | Path | bytes) -> ParseResult:
    if isinstance(source, bytes):
        return parse_csv_text(decode_csv_bytes(source))
    try:
        raw = Path(source).read_bytes()
    except OSError as exc:
        raise CSVParseError(f"Failed to read the file: {exc}") from exc
    return parse_csv_text(decode_csv_bytes(raw))


def validate_csv_data(
    rows: list[dict[str, Any]],
    required_fields: list[str] | None,
    entity_type: str,
) -> ValidationResult:
    """Check required fields, enum values and date formats.

    Enum values are lower-cased in place when they match, so the rows can be
    handed straight to prepare_data_for_import.
    """
    required = list(required_fields if required_fields is not None else REQUIRED_FIELDS.get(entity_type, []))
    result = ValidationResult(valid=False)
    if not rows:
        result.errors.append("CSV file contains no data")
        return result

    missing_columns = [name for name in required if name not in rows[0]]
    for name in missing_columns:
        result.errors.append(f'Required field "{name}" is missing')
    if missing_columns:
        return result

    if "id" in rows[0]:
        result.warnings.append('The "id" column is ignored on import; new records always get new ids')

    enums = ENUM_FIELDS.get(entity_type, {})
    check_dates = entity_type in {"opportunities", "tasks"}
    for index, row in enumerate(rows, start=1):
        for name in required:
            if _is_empty(row.get(name)):
                result.errors.append(f'Row {index}: Required field "{name}" is empty')

        for name, allowed in enums.items():
            value = row.get(name)
            if _is_empty(value):
                continue
            normalized = str(value).strip().lower()
            if normalized in allowed:
                row[name] = normalized
            else:
                result.errors.append(f'Row {index}: Invalid {name} "{value}". Must be one of: {", ".join(allowed)}')

        if check_dates:
            due = row.get("due_date")
            if not _is_empty(due) and not _DATE_RE.match(str(due).strip()):
                result.errors.append(f'Row {index}: Invalid date "{due}" for "due_date". Expected YYYY-MM-DD')

    result.valid = not result.errors
    return result


def _resolve(
    record: dict[str, Any],
    name_field: str,
    id_field: str,
    table: dict[str, int],
    label: str,
    row_number: int,
    warnings: list[str],
) -> None:
    name = record.pop(name_field, None)
    if not _is_empty(record.get(id_field)) or _is_empty(name):
        return
    found = table.get(_normalize_name(name))
    if found is None:
        warnings.append(f'Row {row_number}: {label} "{name}" not found')
        return
    record[id_field] = found


def _as_text(value: Any) -> Any:
    if isinstance(value, list):
        return ";".join(str(item) for item in value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _as_list(value: Any) -> list[Any]:
    if _is_empty(value):
        return []
    if isinstance(value, list):
        return value
    return [value]


def _prepare_row(
    raw: dict[str, Any],
    entity_type: str,
    lookups: LookupTables,
    today: date,
    row_number: int,
    warnings: list[str],
) -> dict[str, Any]:
    settings = get_settings()
    record = {key: value for key, value in raw.items() if key not in ALWAYS_EXCLUDED}

    for name in TEXT_FIELDS[entity_type]:
        if name in record:
            record[name] = _as_text(record[name])

    if entity_type == "clients":
        _resolve(record, "account_owner_name", "account_owner_id", lookups.users, "User", row_number, warnings)
        if _is_empty(record.get("account_owner_id")):
            record["account_owner_id"] = settings.import_fallback_user_id
        record["services_used"] = _as_list(record.get("services_used"))
    elif entity_type == "services":
        record["applicable_industries"] = [str(item) for item in _as_list(record.get("applicable_industries"))]
    elif entity_type == "opportunities":
        _resolve(record, "client_name", "client_id", lookups.clients, "Client", row_number, warnings)
        _resolve(record, "service_name", "service_id", lookups.services, "Service", row_number, warnings)
        _resolve(record, "assigned_user_name", "assigned_user_id", lookups.users, "User", row_number, warnings)
        if _is_empty(record.get("assigned_user_id")):
            record["assigned_user_id"] = settings.import_fallback_user_id
        if _is_empty(record.get("priority")):
            record["priority"] = "medium"
        if _is_empty(record.get("estimated_value")):
            record["estimated_value"] = 0
        if _is_empty(record.get("due_date")):
            record["due_date"] = (today + timedelta(days=settings.opportunity_default_due_days)).isoformat()
    elif entity_type == "tasks":
        _resolve(record, "opportunity_name", "opportunity_id", lookups.opportunities, "Opportunity", row_number, warnings)
        _resolve(record, "assigned_user_name", "assigned_user_id", lookups.users, "User", row_number, warnings)
        if _is_empty(record.get("opportunity_id")):
            record["opportunity_id"] = (
                lookups.first_opportunity_id
                if lookups.first_opportunity_id is not None
                else settings.import_fallback_opportunity_id
            )
        if _is_empty(record.get("assigned_user_id")):
            record["assigned_user_id"] = settings.import_fallback_user_id
        if _is_empty(record.get("due_date")):
            record["due_date"] = (today + timedelta(days=settings.task_default_due_days)).isoformat()

    if _is_empty(record.get("status")):
        record["status"] = DEFAULT_STATUS[entity_type]

    for name in list(record):
        if name in NAME_COLUMNS:
            record.pop(name)
    return {key: value for key, value in record.items() if value is not None}


def prepare_data_for_import(
    rows: list[dict[str, Any]],
    entity_type: str,
    lookups: LookupTables,
    today: date | None = None,
) -> PreparedImport:
    if entity_type not in DTO_BY_ENTITY:
        raise ValueError(f"unsupported entity type: {entity_type}")
    reference = today or date.today()
    dto_type = DTO_BY_ENTITY[entity_type]
    prepared = PreparedImport()

    for row_number, raw in enumerate(rows, start=1):
        record = _prepare_row(raw, entity_type, lookups, reference, row_number, prepared.warnings)
        try:
            dto = dto_type.model_validate(record)
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ())) or None
            prepared.errors.append(
                ImportRowError(
                    row_number=row_number,
                    error_code="VALIDATION",
                    message=str(first.get("msg", "invalid row")),
                    field=location,
                )
            )
            continue
        prepared.records.append(PreparedRecord(row_number=row_number, dto=dto))
    return prepared


def build_import_template(entity_type: str) -> CsvTemplate:
    if entity_type not in TEMPLATE_ROWS:
        raise ValueError(f"unsupported entity type: {entity_type}")
    example = TEMPLATE_ROWS[entity_type]
    required = REQUIRED_FIELDS[entity_type]
    return CsvTemplate(
        entity_type=entity_type,
        required_fields=list(required),
        optional_fields=[name for name in example if name not in required],
        csv=convert_to_csv([example]),
    )


def error_row_number(message: str) -> int:
    """Row number a validation message refers to, or 0 for file-level messages."""
    match = re.match(r"^Row (\d+):", message)
    return int(match.group(1)) if match else 0
