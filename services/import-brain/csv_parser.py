"""Delimited-file parsing and per-column type inference.

The first row supplies the headers. Every column is sampled for email,
phone, date, number and boolean values; a type is chosen only when more than
80% of the non-empty values match it, with ties going to the earlier type in
TYPE_PRIORITY. Inference is a pure function of the parsed rows, so running it
twice on the same data yields the same result.
"""

import csv
import io
import logging
import math
import re
from datetime import date, datetime

from config import settings
from errors import CSVParseError
from models import ColumnType, CSVParseResult, DataTypeInfo

logger = logging.getLogger(__name__)

SAMPLE_ROWS = 5
EXAMPLE_VALUES = 3
DATE_FORMAT_SAMPLE = 10
DOMINANT_FRACTION = 0.8

TYPE_PRIORITY = (
    ColumnType.EMAIL,
    ColumnType.PHONE,
    ColumnType.DATE,
    ColumnType.NUMBER,
    ColumnType.BOOLEAN,
)

# Detection order doubles as the tie-break order.
DATE_FORMATS = {
    "YYYY-MM-DD": "%Y-%m-%d",
    "DD/MM/YYYY": "%d/%m/%Y",
    "MM/DD/YYYY": "%m/%d/%Y",
    "DD-MM-YYYY": "%d-%m-%Y",
    "MM-DD-YYYY": "%m-%d-%Y",
}

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?\d{10,15}$")
_PHONE_SEPARATORS = re.compile(r"[\s\-().]")
_CURRENCY_CHARS = re.compile(r"[£$€¥,]")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_SLASH_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})$")
_DASH_DATE_RE = re.compile(r"^(\d{2})-(\d{2})-(\d{4})$")

TRUE_TOKENS = {"true", "yes", "y", "1"}
BOOLEAN_TOKENS = TRUE_TOKENS | {"false", "no", "n", "0"}


def parse_csv(
    data: bytes,
    delimiter: str | None = None,
    encoding: str = "utf-8",
    max_rows: int | None = None,
    max_record_size: int | None = None,
) -> CSVParseResult:
    """Parse a delimited file into headers, row dicts and inferred column types."""
    delimiter = delimiter or ","
    limit = max_record_size if max_record_size is not None else settings.CSV_MAX_RECORD_BYTES

    try:
        text = data.decode("utf-8-sig" if encoding.lower().replace("_", "-") == "utf-8" else encoding)
    except (UnicodeDecodeError, LookupError) as e:
        raise CSVParseError(f"Could not decode file as {encoding}: {e}") from e

    reader = csv.reader(io.StringIO(text, newline=""), delimiter=delimiter)
    headers: list[str] | None = None
    records: list[dict[str, str]] = []

    try:
        for raw in reader:
            if not any(cell.strip() for cell in raw):
                continue

            record_size = sum(len(cell) for cell in raw) + len(raw) - 1
            if record_size > limit:
                raise CSVParseError(
                    f"Row at line {reader.line_num} exceeds the maximum record size of {limit} characters"
                )

            cells = [cell.strip() for cell in raw]
            if headers is None:
                headers = _validate_headers(cells)
                continue

            if len(cells) != len(headers):
                raise CSVParseError(
                    f"Row at line {reader.line_num} has {len(cells)} columns, expected {len(headers)}"
                )
            records.append(dict(zip(headers, cells)))
    except csv.Error as e:
        raise CSVParseError(f"Malformed delimited data at line {reader.line_num}: {e}") from e

    if headers is None:
        raise CSVParseError("File is empty; the first row must contain column headers")

    rows = records[:max_rows] if max_rows else records
    logger.info("Parsed delimited file: %d columns, %d rows", len(headers), len(records))

    return CSVParseResult(
        headers=headers,
        rows=rows,
        row_count=len(records),
        sample_rows=rows[:SAMPLE_ROWS],
        data_types=infer_data_types(headers, rows),
    )


def _validate_headers(cells: list[str]) -> list[str]:
    if any(not c for c in cells):
        raise CSVParseError("Header row contains blank column names")
    seen: set[str] = set()
    duplicates = [c for c in cells if c in seen or seen.add(c)]
    if duplicates:
        raise CSVParseError(f"Header row contains duplicate column names: {', '.join(sorted(set(duplicates)))}")
    return cells


def infer_data_types(headers: list[str], rows: list[dict[str, str]]) -> dict[str, DataTypeInfo]:
    return {header: infer_column_type([row.get(header, "") for row in rows]) for header in headers}


def infer_column_type(column: list[str]) -> DataTypeInfo:
    values = [v for v in column if v is not None and v != ""]
    if not values:
        return DataTypeInfo(type=ColumnType.STRING, nullable=True, examples=[], confidence=0.0)

    checks = {
        ColumnType.EMAIL: is_email,
        ColumnType.PHONE: is_phone,
        ColumnType.DATE: is_date,
        ColumnType.NUMBER: is_number,
        ColumnType.BOOLEAN: is_boolean,
    }

    dominant = ColumnType.STRING
    best_fraction = 0.0
    for column_type in TYPE_PRIORITY:
        fraction = sum(1 for v in values if checks[column_type](v)) / len(values)
        if fraction > DOMINANT_FRACTION and fraction > best_fraction:
            dominant = column_type
            best_fraction = fraction

    return DataTypeInfo(
        type=dominant,
        format=detect_date_format(values) if dominant == ColumnType.DATE else None,
        nullable=len(values) < len(column),
        examples=values[:EXAMPLE_VALUES],
        confidence=best_fraction if dominant != ColumnType.STRING else 1.0,
    )


def is_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


def is_phone(value: str) -> bool:
    return bool(_PHONE_RE.match(_PHONE_SEPARATORS.sub("", value)))


def is_date(value: str) -> bool:
    return parse_date(value) is not None


def is_number(value: str) -> bool:
    return parse_number(value) is not None


def is_boolean(value: str) -> bool:
    return value.strip().lower() in BOOLEAN_TOKENS


def detect_date_format(values: list[str]) -> str:
    """Most frequent layout among the first sampled values; day-first when ambiguous."""
    counts = dict.fromkeys(DATE_FORMATS, 0)
    for value in values[:DATE_FORMAT_SAMPLE]:
        value = value.strip()
        if _ISO_DATE_RE.match(value):
            counts["YYYY-MM-DD"] += 1
            continue
        for pattern, day_first, month_first in (
            (_SLASH_DATE_RE, "DD/MM/YYYY", "MM/DD/YYYY"),
            (_DASH_DATE_RE, "DD-MM-YYYY", "MM-DD-YYYY"),
        ):
            match = pattern.match(value)
            if match:
                first, second = int(match.group(1)), int(match.group(2))
                if second > 12 and first <= 12:
                    counts[month_first] += 1
                else:
                    counts[day_first] += 1
                break

    # max() keeps the first key on ties, which follows DATE_FORMATS order.
    return max(counts, key=lambda k: counts[k])


def parse_date(value: str, preferred_format: str | None = None) -> date | None:
    """Parse a calendar date in any supported layout, trying preferred_format first."""
    value = value.strip()
    if not (_ISO_DATE_RE.match(value) or _SLASH_DATE_RE.match(value) or _DASH_DATE_RE.match(value)):
        return None

    layouts = list(DATE_FORMATS.values())
    if preferred_format in DATE_FORMATS:
        layouts.insert(0, DATE_FORMATS[preferred_format])
    # Two-digit years on slash dates.
    layouts += ["%d/%m/%y", "%m/%d/%y"]

    for layout in layouts:
        try:
            return datetime.strptime(value, layout).date()
        except ValueError:
            continue
    return None


def parse_number(value: str) -> float | None:
    cleaned = _CURRENCY_CHARS.sub("", value).strip()
    if not cleaned or "_" in cleaned:
        return None
    try:
        number = float(cleaned)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_boolean(value: str) -> bool:
    return value.strip().lower() in TRUE_TOKENS


def validate_csv(
    result: CSVParseResult,
    required_headers: list[str] | None = None,
    min_rows: int | None = None,
    max_rows: int | None = None,
) -> tuple[bool, list[str]]:
    """Check a parsed file against structural requirements."""
    errors: list[str] = []

    if required_headers:
        missing = [h for h in required_headers if h not in result.headers]
        if missing:
            errors.append(f"Missing required columns: {', '.join(missing)}")

    if min_rows is not None and result.row_count < min_rows:
        errors.append(f"Too few rows. Minimum required: {min_rows}")

    if max_rows is not None and result.row_count > max_rows:
        errors.append(f"Too many rows. Maximum allowed: {max_rows}")

    return not errors, errors


def normalize_rows(rows: list[dict[str, str]], data_types: dict[str, DataTypeInfo]) -> list[dict]:
    """Convert cell strings to Python values according to the inferred column types."""
    normalized = []
    for row in rows:
        out: dict = {}
        for key, value in row.items():
            if value is None or value == "":
                out[key] = None
                continue

            info = data_types.get(key)
            column_type = info.type if info else ColumnType.STRING
            if column_type == ColumnType.NUMBER:
                out[key] = parse_number(value)
            elif column_type == ColumnType.BOOLEAN:
                out[key] = parse_boolean(value)
            elif column_type == ColumnType.DATE:
                parsed = parse_date(value, info.format if info else None)
                out[key] = parsed.isoformat() if parsed else value.strip()
            else:
                out[key] = value.strip()
        normalized.append(out)
    return normalized
