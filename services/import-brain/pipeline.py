"""Ingestion adapters tying extraction, mapping, tasks and review together.

Each ingest_* call validates its input synchronously, records a task and
returns it straight away; the work itself runs in a task handler.
"""

import asyncio
import base64
import logging
from typing import Any

from cache import ResponseCache
from config import Settings, settings as default_settings
from csv_parser import parse_csv
from errors import InvalidTransition, ValidationError
from extraction import ExtractionEngine
from gateway import InferenceGateway
from inference_client import InferenceClient
from models import (
    ColumnMapping,
    CommittedRecord,
    CSVParseResult,
    EmailMessage,
    ReviewItem,
    Task,
    TaskOutcome,
    TaskStatus,
    TaskType,
)
from normalizer import build_email_content, is_supported_image
from orchestrator import TaskOrchestrator
from rate_limiter import RateLimiter
from retry import RetryPolicy
from review import ReviewRouter
from schema_mapper import SchemaMapper, apply_column_mappings, apply_override, validate_mapped_data
from schemas import get_schema
from storage import (
    InMemoryCacheStore,
    InMemoryRateLimitStore,
    InMemoryRecordSink,
    InMemoryReviewStore,
    InMemoryTaskStore,
    RecordSink,
)

logger = logging.getLogger(__name__)


class ImportPipeline:
    def __init__(
        self,
        gateway: InferenceGateway,
        cache: ResponseCache,
        tasks: TaskOrchestrator,
        review: ReviewRouter,
        sink: RecordSink,
        client: InferenceClient | None = None,
        max_attachment_bytes: int | None = None,
    ):
        self.gateway = gateway
        self.cache = cache
        self.tasks = tasks
        self.review = review
        self.sink = sink
        self.client = client
        self.engine = ExtractionEngine(gateway)
        self.mapper = SchemaMapper(gateway)
        self._max_attachment_bytes = max_attachment_bytes or default_settings.MAX_ATTACHMENT_BYTES
        self._committed_imports: set[str] = set()
        self._commit_lock = asyncio.Lock()

        tasks.register(TaskType.EMAIL_EXTRACTION, self._handle_email)
        tasks.register(TaskType.DOCUMENT_OCR, self._handle_document)
        tasks.register(TaskType.CSV_MAPPING, self._handle_csv)

    @property
    def inference_available(self) -> bool:
        return self.client is None or self.client.configured

    # --- Ingestion ---

    async def ingest_email(self, owner_id: str, email: EmailMessage, email_type: str | None = None) -> Task:
        return await self.tasks.create(owner_id, TaskType.EMAIL_EXTRACTION, {
            "email": email.model_dump(mode="json", by_alias=True),
            "email_type": email_type,
        })

    async def ingest_document(
        self,
        owner_id: str,
        pages: list[bytes],
        content_types: list[str],
        document_type: str,
    ) -> Task:
        if not pages:
            raise ValidationError("At least one page is required")
        if len(pages) != len(content_types):
            raise ValidationError("Each page needs a content type")
        for number, (page, content_type) in enumerate(zip(pages, content_types), start=1):
            if not is_supported_image(content_type):
                raise ValidationError(f"Page {number} has unsupported content type: {content_type}")
            if not page:
                raise ValidationError(f"Page {number} is empty")
            if len(page) > self._max_attachment_bytes:
                raise ValidationError(
                    f"Page {number} is too large ({len(page)} bytes, max {self._max_attachment_bytes})"
                )

        # Log sizes only, never document content.
        logger.info("Document import: type=%s pages=%d bytes=%d", document_type, len(pages), sum(map(len, pages)))
        return await self.tasks.create(owner_id, TaskType.DOCUMENT_OCR, {
            "document_type": document_type,
            "content_types": content_types,
            "pages": [base64.b64encode(p).decode() for p in pages],
        })

    async def ingest_csv(
        self,
        owner_id: str,
        data: bytes,
        schema_id: str,
        delimiter: str | None = None,
    ) -> Task:
        """Parse now (parse errors surface to the caller), map columns in a task."""
        schema = get_schema(schema_id)
        parsed = parse_csv(data, delimiter=delimiter)
        return await self.tasks.create(owner_id, TaskType.CSV_MAPPING, {
            "schema_id": schema.id,
            "parsed": parsed.model_dump(mode="json"),
        })

    async def commit_csv_import(
        self,
        task_id: str,
        reviewer: str,
        overrides: dict[str, str | None] | None = None,
    ) -> dict[str, Any]:
        """Apply column overrides, transform and validate every row, then commit them."""
        task = await self.tasks.get(task_id)
        if task.type != TaskType.CSV_MAPPING:
            raise ValidationError(f"Task {task_id} is not a CSV import")
        if task.status != TaskStatus.COMPLETED or not task.output:
            raise InvalidTransition(f"CSV import {task_id} has not finished mapping (status {task.status.value})")
        if task_id in self._committed_imports:
            raise InvalidTransition(f"CSV import {task_id} has already been committed")

        schema = get_schema(task.input["schema_id"])
        parsed = CSVParseResult.model_validate(task.input["parsed"])
        mapping = ColumnMapping.model_validate(task.output["mapping"])
        for target_field, column in (overrides or {}).items():
            mapping = apply_override(mapping, target_field, column, parsed.headers, schema)

        if not mapping.is_valid:
            raise ValidationError(
                f"Required fields are not mapped: {', '.join(mapping.missing_required_fields)}"
            )

        rows = apply_column_mappings(parsed.rows, mapping, schema, parsed.data_types)
        valid, errors = validate_mapped_data(rows, schema)
        if not valid:
            raise ValidationError("; ".join(errors))

        records = [
            CommittedRecord(
                source_id=f"{task_id}:row-{number}",
                owner_id=task.owner_id,
                document_type=schema.id,
                data=row,
                reviewer=reviewer,
            )
            for number, row in enumerate(rows, start=1)
        ]
        async with self._commit_lock:
            # A concurrent commit of the same import may have finished first.
            if task_id in self._committed_imports:
                raise InvalidTransition(f"CSV import {task_id} has already been committed")
            await self.sink.commit_many(records)
            self._committed_imports.add(task_id)

        logger.info("Committed %d rows from CSV import %s (schema=%s)", len(rows), task_id, schema.id)
        return {"task_id": task_id, "schema_id": schema.id, "committed": len(rows), "mapping": mapping}

    async def close(self):
        await self.tasks.shutdown()
        await self.gateway.drain()
        if self.client is not None:
            await self.client.close()

    # --- Task handlers ---

    async def _handle_email(self, task: Task) -> TaskOutcome:
        email = EmailMessage.model_validate(task.input["email"])
        results = await self.engine.extract_email(email, task.owner_id, task.input.get("email_type"))

        items = []
        for label, result in results:
            item = await self.review.submit(
                result,
                source_id=f"{task.id}:{label}",
                owner_id=task.owner_id,
                original_content=build_email_content(email),
            )
            items.append(_item_summary(label, item))

        return TaskOutcome(
            output={"document_type": results[0][1].document_type, "items": items},
            confidence=min(r.confidence for _, r in results),
        )

    async def _handle_document(self, task: Task) -> TaskOutcome:
        pages = [base64.b64decode(p) for p in task.input["pages"]]
        result = await self.engine.extract_pages(
            pages, task.input["document_type"], task.owner_id, content_types=task.input["content_types"],
        )
        original = "\n".join(
            f"data:{ct};base64,{p}" for ct, p in zip(task.input["content_types"], task.input["pages"])
        )
        item = await self.review.submit(result, source_id=task.id, owner_id=task.owner_id, original_content=original)
        return TaskOutcome(
            output={"document_type": result.document_type, "items": [_item_summary("document", item)]},
            confidence=result.confidence,
        )

    async def _handle_csv(self, task: Task) -> TaskOutcome:
        schema = get_schema(task.input["schema_id"])
        parsed = CSVParseResult.model_validate(task.input["parsed"])
        mapping = await self.mapper.map_columns(parsed, schema, task.owner_id)

        mapped = [m.confidence for m in mapping.mappings.values() if m.source_column]
        return TaskOutcome(
            output={
                "schema_id": schema.id,
                "row_count": parsed.row_count,
                "is_valid": mapping.is_valid,
                "mapping": mapping.model_dump(mode="json"),
            },
            confidence=sum(mapped) / len(mapped) if mapped else 0.0,
        )


def _item_summary(label: str, item: ReviewItem) -> dict[str, Any]:
    return {
        "source": label,
        "review_id": item.id,
        "disposition": item.disposition.value,
        "success": item.result.success,
        "confidence": item.result.confidence,
    }


def build_pipeline(settings: Settings | None = None) -> ImportPipeline:
    """Default in-process wiring: in-memory stores and an HTTP inference client."""
    settings = settings or default_settings
    client = InferenceClient(
        base_url=settings.INFERENCE_BASE_URL,
        api_key=settings.INFERENCE_API_KEY,
        model=settings.INFERENCE_MODEL,
        vision_model=settings.VISION_MODEL,
        timeout=settings.INFERENCE_TIMEOUT_SECONDS,
        connect_timeout=settings.INFERENCE_CONNECT_TIMEOUT,
    )
    cache = ResponseCache(InMemoryCacheStore(), ttl_hours=settings.CACHE_TTL_HOURS)
    gateway = InferenceGateway(
        client,
        cache,
        RateLimiter(InMemoryRateLimitStore(), requests_per_minute=settings.RATE_LIMIT_PER_MINUTE),
        policy=RetryPolicy(
            max_attempts=settings.RETRY_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            multiplier=settings.RETRY_BACKOFF,
            max_delay=settings.RETRY_MAX_DELAY,
            overall_timeout=settings.RETRY_OVERALL_TIMEOUT,
        ),
        max_request_chars=settings.MAX_REQUEST_CHARS,
    )
    sink = InMemoryRecordSink()
    return ImportPipeline(
        gateway=gateway,
        cache=cache,
        tasks=TaskOrchestrator(
            InMemoryTaskStore(),
            max_workers=settings.WORKER_POOL_SIZE,
            task_timeout=settings.TASK_TIMEOUT_SECONDS,
        ),
        review=ReviewRouter(InMemoryReviewStore(), sink),
        sink=sink,
        client=client,
        max_attachment_bytes=settings.MAX_ATTACHMENT_BYTES,
    )
