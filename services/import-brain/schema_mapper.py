"""Map source columns (or extracted fields) onto a target import schema.

The inference service proposes a column for each target field; proposals are
accepted only for columns that actually exist, and scored by the reported
confidence or, failing that, by whether the column's inferred type suits the
field. Any service failure yields an all-unmapped result so the caller can
fall back to manual mapping.
"""

import json
import logging
import re
from typing import Any

from csv_parser import infer_data_types, parse_boolean, parse_date, parse_number
from errors import PipelineError, ValidationError
from extraction import try_parse_json
from gateway import InferenceGateway
from inference_client import InferenceRequest
from models import (
    ColumnMapping,
    ColumnType,
    CSVParseResult,
    DataTypeInfo,
    FieldMapping,
    FieldType,
    ImportSchema,
)
from prompts import COLUMN_SUGGESTION, CSV_MAPPING, MAPPING_SYSTEM, fill_prompt

logger = logging.getLogger(__name__)

COMPATIBLE_CONFIDENCE = 0.8
INCOMPATIBLE_CONFIDENCE = 0.5
OVERRIDE_CONFIDENCE = 0.9

NO_MATCH_REASON = "No matching column found"
SUGGESTED_REASON = "AI-suggested mapping"
OVERRIDE_REASON = "user selected"

# Inferred column types each schema field type accepts.
TYPE_COMPATIBILITY: dict[FieldType, set[ColumnType]] = {
    FieldType.STRING: {ColumnType.STRING, ColumnType.EMAIL, ColumnType.PHONE},
    FieldType.NUMBER: {ColumnType.NUMBER},
    FieldType.DATE: {ColumnType.DATE},
    FieldType.BOOLEAN: {ColumnType.BOOLEAN},
    FieldType.ENUM: {ColumnType.STRING},
}

_DBS_NUMBER_RE = re.compile(r"^\d{12}$")
_PROMPT_SAMPLE_ROWS = 3
_SUGGESTION_SAMPLES = 5


class SchemaMapper:
    def __init__(self, gateway: InferenceGateway):
        self._gateway = gateway

    async def map_columns(self, parsed: CSVParseResult, schema: ImportSchema, actor_id: str) -> ColumnMapping:
        """Ask the inference service for a mapping, then validate and score it. Never raises."""
        request = InferenceRequest(
            system=MAPPING_SYSTEM,
            prompt=fill_prompt(CSV_MAPPING, {
                "headers": ", ".join(parsed.headers),
                "schema_fields": describe_schema(schema),
            }),
            content=_mapping_context(parsed),
        )
        try:
            reply = await self._gateway.complete(request, actor_id, context={"schema_id": schema.id})
        except PipelineError as e:
            logger.warning("Column mapping unavailable for schema %s, falling back to manual: %s", schema.id, e)
            return unmapped(parsed, schema)

        suggested = try_parse_json(reply.content)
        if suggested is None or not isinstance(suggested.get("mappings"), dict):
            logger.warning("Column mapping reply for schema %s was not usable", schema.id)
            return unmapped(parsed, schema)

        mapping = ColumnMapping(mappings=enhance_mappings(suggested["mappings"], parsed, schema))
        mapping = recompute(mapping, parsed.headers, schema)
        logger.info(
            "Mapped %d/%d fields for schema %s (%d required missing)",
            sum(1 for m in mapping.mappings.values() if m.source_column),
            len(schema.fields),
            schema.id,
            len(mapping.missing_required_fields),
        )
        return mapping

    async def suggest_column(
        self,
        column: str,
        sample_values: list[Any],
        target_fields: list[str],
        actor_id: str,
    ) -> str | None:
        """Best target field for a single column, or None. Never raises."""
        request = InferenceRequest(
            system=MAPPING_SYSTEM,
            prompt=fill_prompt(COLUMN_SUGGESTION, {
                "column": column,
                "sample_values": ", ".join(str(v) for v in sample_values[:_SUGGESTION_SAMPLES]),
                "target_fields": ", ".join(target_fields),
            }),
            json_mode=False,
        )
        try:
            reply = await self._gateway.complete(request, actor_id)
        except PipelineError as e:
            logger.warning("Column suggestion failed for %s: %s", column, e)
            return None

        suggestion = reply.content.strip().strip("\"'`")
        return suggestion if suggestion in target_fields else None


def describe_schema(schema: ImportSchema) -> str:
    return "\n".join(
        f"- {f.name}: {f.description} ({f.type.value}{', required' if f.required else ''})"
        for f in schema.fields
    )


def _mapping_context(parsed: CSVParseResult) -> str:
    samples = "\n".join(json.dumps(row, indent=2) for row in parsed.sample_rows[:_PROMPT_SAMPLE_ROWS])
    types = json.dumps({k: v.model_dump(mode="json") for k, v in parsed.data_types.items()}, indent=2)
    return f"Sample data from CSV:\n{samples}\n\nData type analysis:\n{types}"


def is_compatible(column_type: DataTypeInfo | None, field_type: FieldType) -> bool:
    if column_type is None:
        return False
    return column_type.type in TYPE_COMPATIBILITY.get(field_type, set())


def enhance_mappings(
    suggested: dict[str, Any],
    parsed: CSVParseResult,
    schema: ImportSchema,
) -> dict[str, FieldMapping]:
    """One FieldMapping per schema field; suggestions naming unknown columns are dropped."""
    enhanced: dict[str, FieldMapping] = {}
    for field in schema.fields:
        entry = suggested.get(field.name)
        if not isinstance(entry, dict):
            entry = {}
        column = entry.get("csv_column")

        if isinstance(column, str) and column in parsed.headers:
            reported = entry.get("confidence")
            if isinstance(reported, (int, float)) and not isinstance(reported, bool):
                confidence = min(max(float(reported), 0.0), 1.0)
            elif is_compatible(parsed.data_types.get(column), field.type):
                confidence = COMPATIBLE_CONFIDENCE
            else:
                confidence = INCOMPATIBLE_CONFIDENCE
            enhanced[field.name] = FieldMapping(
                target_field=field.name,
                source_column=column,
                confidence=confidence,
                reason=entry.get("reason") or SUGGESTED_REASON,
            )
        else:
            enhanced[field.name] = FieldMapping(target_field=field.name, reason=NO_MATCH_REASON)
    return enhanced


def recompute(mapping: ColumnMapping, headers: list[str], schema: ImportSchema) -> ColumnMapping:
    """Derive unmapped columns and missing required fields from the mappings."""
    used = {m.source_column for m in mapping.mappings.values() if m.source_column}
    missing = [
        name for name in schema.required_fields
        if name not in mapping.mappings or not mapping.mappings[name].source_column
    ]
    return ColumnMapping(
        mappings=mapping.mappings,
        unmapped_source_columns=[h for h in headers if h not in used],
        missing_required_fields=missing,
    )


def unmapped(parsed: CSVParseResult, schema: ImportSchema) -> ColumnMapping:
    mapping = ColumnMapping(mappings={
        f.name: FieldMapping(target_field=f.name, reason=NO_MATCH_REASON) for f in schema.fields
    })
    return recompute(mapping, parsed.headers, schema)


def apply_override(
    mapping: ColumnMapping,
    target_field: str,
    source_column: str | None,
    headers: list[str],
    schema: ImportSchema,
) -> ColumnMapping:
    """Set or clear one field's column by hand and recompute the mapping."""
    if schema.field(target_field) is None:
        raise ValidationError(f"Unknown target field for schema {schema.id}: {target_field}")
    if source_column is not None and source_column not in headers:
        raise ValidationError(f"Unknown source column: {source_column}")

    mappings = dict(mapping.mappings)
    if source_column is None:
        mappings[target_field] = FieldMapping(target_field=target_field, reason=NO_MATCH_REASON)
    else:
        mappings[target_field] = FieldMapping(
            target_field=target_field,
            source_column=source_column,
            confidence=OVERRIDE_CONFIDENCE,
            reason=OVERRIDE_REASON,
        )
    return recompute(ColumnMapping(mappings=mappings), headers, schema)


def tabular_from_fields(fields: dict[str, Any]) -> CSVParseResult:
    """Present a flat dict of extracted fields as a one-row table."""
    headers = list(fields)
    row = {k: "" if v is None else str(v) for k, v in fields.items()}
    return CSVParseResult(
        headers=headers,
        rows=[row],
        row_count=1,
        sample_rows=[row],
        data_types=infer_data_types(headers, [row]),
    )


def transform_value(value: Any, field_type: FieldType, date_format: str | None = None) -> Any:
    if value is None or value == "":
        return None

    if field_type == FieldType.NUMBER:
        return parse_number(str(value))
    if field_type == FieldType.BOOLEAN:
        return parse_boolean(str(value))
    if field_type == FieldType.DATE:
        parsed = parse_date(str(value), date_format)
        return parsed.isoformat() if parsed else None
    return str(value).strip()


def apply_column_mappings(
    rows: list[dict[str, str]],
    mapping: ColumnMapping,
    schema: ImportSchema,
    data_types: dict[str, DataTypeInfo] | None = None,
) -> list[dict[str, Any]]:
    """Rename and convert each row into the target schema's shape.

    Date columns are read in the layout the parser detected for them.
    """
    formats = {column: info.format for column, info in (data_types or {}).items()}
    mapped_rows = []
    for row in rows:
        out: dict[str, Any] = {}
        for target, field_mapping in mapping.mappings.items():
            field = schema.field(target)
            column = field_mapping.source_column
            if field is None or not column or column not in row:
                continue
            out[target] = transform_value(row[column], field.type, formats.get(column))
        mapped_rows.append(out)
    return mapped_rows


def validate_mapped_data(rows: list[dict[str, Any]], schema: ImportSchema) -> tuple[bool, list[str]]:
    errors: list[str] = []
    for name in schema.required_fields:
        missing = sum(1 for row in rows if row.get(name) in (None, ""))
        if missing:
            errors.append(f"{missing} rows missing required field: {name}")

    if schema.id == "safeguarding":
        invalid = sum(
            1 for row in rows
            if row.get("dbs_certificate_number") and not _DBS_NUMBER_RE.match(str(row["dbs_certificate_number"]))
        )
        if invalid:
            errors.append(f"{invalid} rows have invalid DBS certificate numbers")

    return not errors, errors
