"""Pydantic models shared across the import pipeline."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# --- Tasks ---


class TaskType(str, Enum):
    EMAIL_EXTRACTION = "email_extraction"
    DOCUMENT_OCR = "document_ocr"
    CSV_MAPPING = "csv_mapping"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class Task(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    type: TaskType
    status: TaskStatus = TaskStatus.PENDING
    input: dict[str, Any] = {}
    output: dict[str, Any] | None = None
    error: str | None = None
    confidence: float | None = None
    attempts: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None


class TaskOutcome(BaseModel):
    """What a task handler hands back to the orchestrator."""

    output: dict[str, Any]
    confidence: float | None = None


# --- Extraction ---


class FieldLocation(BaseModel):
    page: int | None = None
    x: float | None = None
    y: float | None = None
    width: float | None = None
    height: float | None = None


class ExtractionField(BaseModel):
    model_config = ConfigDict(frozen=True)

    field_name: str
    value: Any = None
    confidence: float
    location: FieldLocation | None = None


class ExtractionResult(BaseModel):
    """Outcome of one extraction. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    success: bool
    data: dict[str, Any] | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    fields: list[ExtractionField] | None = None
    error: str | None = None
    requires_review: bool = True
    document_type: str | None = None


# --- CSV parsing and schema mapping ---


class ColumnType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    EMAIL = "email"
    PHONE = "phone"
    MIXED = "mixed"


class DataTypeInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ColumnType
    format: str | None = None
    nullable: bool
    examples: list[str] = []
    confidence: float


class CSVParseResult(BaseModel):
    headers: list[str]
    rows: list[dict[str, str]]
    row_count: int
    sample_rows: list[dict[str, str]]
    data_types: dict[str, DataTypeInfo]


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    ENUM = "enum"


class SchemaField(BaseModel):
    name: str
    type: FieldType
    required: bool = False
    description: str = ""
    choices: list[str] = []


class ImportSchema(BaseModel):
    id: str
    fields: list[SchemaField]

    def field(self, name: str) -> SchemaField | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def required_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.required]


class FieldMapping(BaseModel):
    target_field: str
    source_column: str | None = None
    confidence: float = 0.0
    reason: str = ""


class ColumnMapping(BaseModel):
    mappings: dict[str, FieldMapping]
    unmapped_source_columns: list[str] = []
    missing_required_fields: list[str] = []

    @property
    def is_valid(self) -> bool:
        return not self.missing_required_fields


# --- Cache and rate limiting ---


class CacheEntry(BaseModel):
    key: str
    payload: str
    hit_count: int = 0
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    last_accessed_at: datetime | None = None


class RateWindow(BaseModel):
    actor_id: str
    window_start: float
    count: int = 0


# --- Ingestion inputs ---


class EmailAttachment(BaseModel):
    filename: str
    content: str  # base64 encoded
    content_type: str
    size: int = 0


class EmailMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(alias="from")
    to: str = ""
    subject: str = ""
    text_content: str = ""
    html_content: str | None = None
    attachments: list[EmailAttachment] = []
    received_at: datetime | None = None


# --- Review ---


class Disposition(str, Enum):
    AUTO_APPROVED = "auto_approved"
    NEEDS_REVIEW = "needs_review"
    MANUAL_ENTRY = "manual_entry"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewItem(BaseModel):
    id: str = Field(default_factory=new_id)
    source_id: str
    owner_id: str
    document_type: str | None = None
    disposition: Disposition
    status: ReviewStatus = ReviewStatus.PENDING
    result: ExtractionResult
    original_content: str = ""
    edited_data: dict[str, Any] | None = None
    reviewer: str | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    reviewed_at: datetime | None = None


class CommittedRecord(BaseModel):
    review_id: str | None = None
    source_id: str
    owner_id: str
    document_type: str | None = None
    data: dict[str, Any]
    reviewer: str | None = None
    notes: str | None = None
    auto_approved: bool = False
    committed_at: datetime = Field(default_factory=utcnow)
