"""MaterialFlow agent input validator — structural pre-check before agents run.

Records that are not non-empty objects, miss a ``required`` field, or carry
a value of the wrong JSON type are split off. They keep their data, gain
``_validationError`` / ``_skipAgents`` flags, and bypass the agent stages.
"""

from __future__ import annotations

from typing import Any

from materialflow.modules.extraction.agent_schemas import InputValidationReport, InvalidRecord


def json_type(value: Any) -> str:
    """Name of ``value``'s JSON type."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _type_matches(actual: str, expected: str | list[str]) -> bool:
    allowed = expected if isinstance(expected, list) else [expected]
    if actual in allowed:
        return True
    return actual == "integer" and "number" in allowed


def _check_record(record: Any, schema: dict[str, Any] | None) -> None:
    if not isinstance(record, dict):
        raise ValueError(f"Invalid extraction result structure: {json_type(record)}")
    if not record:
        raise ValueError("Invalid extraction result structure: empty object")

    properties = (schema or {}).get("properties")
    if not properties:
        return

    for field in schema.get("required") or []:
        if field not in record:
            raise ValueError(f"Missing required field: {field}")

    for field, field_schema in properties.items():
        if not isinstance(field_schema, dict) or field not in record:
            continue
        expected = field_schema.get("type")
        value = record[field]
        if not expected or value is None:
            continue
        actual = json_type(value)
        if not _type_matches(actual, expected):
            raise ValueError(
                f'Field "{field}" has wrong type: expected {expected}, got {actual}'
            )


def validate_records(
    records: list[Any],
    schema: dict[str, Any] | None = None,
) -> InputValidationReport:
    report = InputValidationReport()

    for index, record in enumerate(records):
        try:
            _check_record(record, schema)
        except ValueError as e:
            base = record if isinstance(record, dict) else {}
            report.invalid.append({**base, "_validationError": str(e), "_skipAgents": True})
            report.errors.append(InvalidRecord(index=index, error=str(e)))
        else:
            report.valid.append(record)

    return report


def format_report(report: InputValidationReport) -> str:
    if not report.invalid:
        return f"All {len(report.valid)} extraction results passed validation"

    samples = "\n".join(f"- Result #{e.index}: {e.error}" for e in report.errors[:3])
    return (
        f"Validation issues: {len(report.valid)} valid, {len(report.invalid)} invalid\n"
        f"Sample errors:\n{samples}"
    )
