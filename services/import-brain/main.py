"""FastAPI import brain service: structured-data extraction and import pipeline.

Accepts forwarded emails, scanned documents and delimited files, runs them
through extraction or column mapping as background tasks, and exposes the
review queue. The caller's identity arrives in the X-Actor-Id header;
authentication happens upstream.
GDPR: document content is never logged, only sizes and ids.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, Form, Header, Request, UploadFile
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel

from cache import ResponseCache
from config import settings
from errors import (
    InferenceServiceError,
    InvalidTransition,
    NotFound,
    RateLimited,
    ReviewStateError,
    TransientServiceError,
    ValidationError,
)
from models import (
    CommittedRecord,
    Disposition,
    EmailMessage,
    ReviewItem,
    ReviewStatus,
    Task,
    TaskStatus,
    TaskType,
)
from pipeline import ImportPipeline, build_pipeline
from schemas import generate_csv_template

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class EmailImportRequest(BaseModel):
    email: EmailMessage
    email_type: str | None = None


class CSVCommitRequest(BaseModel):
    overrides: dict[str, str | None] = {}


class ReviewEdits(BaseModel):
    data: dict


class ReviewDecision(BaseModel):
    notes: str | None = None


async def sweep_cache(cache: ResponseCache, interval: float):
    """Drop expired cache entries every interval seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        await cache.cleanup_expired()


def create_app(pipeline: ImportPipeline | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the pipeline on startup unless one was supplied."""
        if getattr(app.state, "pipeline", None) is None:
            app.state.pipeline = build_pipeline(settings)

        client = app.state.pipeline.client
        if client is not None and not client.configured:
            logger.info("Inference service not configured (INFERENCE_BASE_URL is empty), AI extraction disabled")
        elif client is not None:
            health = await client.health()
            if health.get("status") == "reachable":
                logger.info("Inference service is reachable: %s", health)
            else:
                logger.warning("Inference service not yet reachable: %s", health)

        sweeper = asyncio.create_task(
            sweep_cache(app.state.pipeline.cache, settings.CACHE_CLEANUP_INTERVAL_SECONDS)
        )
        yield

        sweeper.cancel()
        await app.state.pipeline.close()

    app = FastAPI(title="Import Brain", version="1.0.0", lifespan=lifespan)
    app.state.pipeline = pipeline
    _register_error_handlers(app)
    _register_routes(app)
    return app


def _pipeline(request: Request) -> ImportPipeline:
    return request.app.state.pipeline


def _error(status_code: int, exc: Exception, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)}, headers=headers)


def _register_error_handlers(app: FastAPI):
    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return _error(400, exc)

    @app.exception_handler(ReviewStateError)
    async def review_state_error(request: Request, exc: ReviewStateError):
        return _error(409, exc)

    @app.exception_handler(InvalidTransition)
    async def invalid_transition(request: Request, exc: InvalidTransition):
        return _error(409, exc)

    @app.exception_handler(NotFound)
    async def not_found(request: Request, exc: NotFound):
        return _error(404, exc)

    @app.exception_handler(RateLimited)
    async def rate_limited(request: Request, exc: RateLimited):
        return _error(429, exc, headers={"Retry-After": str(exc.retry_after)})

    @app.exception_handler(TransientServiceError)
    async def service_unavailable(request: Request, exc: TransientServiceError):
        return _error(503, exc)

    @app.exception_handler(InferenceServiceError)
    async def service_error(request: Request, exc: InferenceServiceError):
        return _error(502, exc)


def _register_routes(app: FastAPI):
    def _require_inference(request: Request) -> JSONResponse | None:
        if not _pipeline(request).inference_available:
            return JSONResponse(
                status_code=503,
                content={"detail": "AI extraction is not available - no inference service configured"},
            )
        return None

    async def _owned_task(request: Request, task_id: str, actor: str) -> Task:
        task = await _pipeline(request).tasks.get(task_id)
        if task.owner_id != actor:
            raise NotFound(f"Task not found: {task_id}")
        return task

    async def _owned_item(request: Request, item_id: str, actor: str) -> ReviewItem:
        item = await _pipeline(request).review.get(item_id)
        if item.owner_id != actor:
            raise NotFound(f"Review item not found: {item_id}")
        return item

    # --- Ingestion ---

    @app.post("/api/v1/import/email", response_model=Task, status_code=202)
    async def import_email(body: EmailImportRequest, request: Request, x_actor_id: str = Header(...)):
        """Queue extraction of a forwarded email and its image attachments."""
        unavailable = _require_inference(request)
        if unavailable is not None:
            return unavailable
        logger.info(
            "Email import: attachments=%d text=%d chars",
            len(body.email.attachments),
            len(body.email.text_content),
        )
        return await _pipeline(request).ingest_email(x_actor_id, body.email, body.email_type)

    @app.post("/api/v1/import/document", response_model=Task, status_code=202)
    async def import_document(
        request: Request,
        files: list[UploadFile] = File(...),
        document_type: str = Form(...),
        x_actor_id: str = Header(...),
    ):
        """Queue extraction of a scanned document, one image per page."""
        unavailable = _require_inference(request)
        if unavailable is not None:
            return unavailable
        pages = [await f.read() for f in files]
        content_types = [f.content_type or "application/octet-stream" for f in files]
        return await _pipeline(request).ingest_document(x_actor_id, pages, content_types, document_type)

    @app.post("/api/v1/import/csv", response_model=Task, status_code=202)
    async def import_csv(
        request: Request,
        file: UploadFile = File(...),
        schema_id: str = Form(...),
        delimiter: str | None = Form(None),
        x_actor_id: str = Header(...),
    ):
        """Parse a delimited file and queue column mapping against an import schema."""
        data = await file.read()
        logger.info("CSV import: schema=%s size=%d bytes", schema_id, len(data))
        return await _pipeline(request).ingest_csv(x_actor_id, data, schema_id, delimiter)

    @app.post("/api/v1/import/csv/{task_id}/commit")
    async def commit_csv(task_id: str, body: CSVCommitRequest, request: Request, x_actor_id: str = Header(...)):
        await _owned_task(request, task_id, x_actor_id)
        result = await _pipeline(request).commit_csv_import(task_id, x_actor_id, body.overrides)
        result["mapping"] = result["mapping"].model_dump(mode="json")
        return result

    @app.get("/api/v1/templates/{schema_id}")
    async def csv_template(schema_id: str):
        content = generate_csv_template(schema_id)
        return Response(
            content=content,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{schema_id}_template.csv"'},
        )

    # --- Tasks ---

    @app.get("/api/v1/tasks", response_model=list[Task])
    async def list_tasks(
        request: Request,
        type: TaskType | None = None,
        status: TaskStatus | None = None,
        limit: int | None = None,
        x_actor_id: str = Header(...),
    ):
        return await _pipeline(request).tasks.list_tasks(
            owner_id=x_actor_id, task_type=type, status=status, limit=limit
        )

    @app.get("/api/v1/tasks/{task_id}", response_model=Task)
    async def get_task(task_id: str, request: Request, x_actor_id: str = Header(...)):
        return await _owned_task(request, task_id, x_actor_id)

    @app.post("/api/v1/tasks/{task_id}/cancel", response_model=Task)
    async def cancel_task(task_id: str, request: Request, x_actor_id: str = Header(...)):
        await _owned_task(request, task_id, x_actor_id)
        return await _pipeline(request).tasks.cancel(task_id)

    @app.post("/api/v1/tasks/{task_id}/retry", response_model=Task)
    async def retry_task(task_id: str, request: Request, x_actor_id: str = Header(...)):
        await _owned_task(request, task_id, x_actor_id)
        return await _pipeline(request).tasks.retry(task_id)

    # --- Review ---

    @app.get("/api/v1/review", response_model=list[ReviewItem])
    async def list_review_items(
        request: Request,
        status: ReviewStatus | None = None,
        disposition: Disposition | None = None,
        x_actor_id: str = Header(...),
    ):
        return await _pipeline(request).review.list_items(
            status=status, disposition=disposition, owner_id=x_actor_id
        )

    @app.get("/api/v1/review/{item_id}", response_model=ReviewItem)
    async def get_review_item(item_id: str, request: Request, x_actor_id: str = Header(...)):
        return await _owned_item(request, item_id, x_actor_id)

    @app.get("/api/v1/review/{item_id}/original", response_class=PlainTextResponse)
    async def review_original(item_id: str, request: Request, x_actor_id: str = Header(...)):
        item = await _owned_item(request, item_id, x_actor_id)
        return PlainTextResponse(item.original_content)

    @app.patch("/api/v1/review/{item_id}", response_model=ReviewItem)
    async def edit_review_item(item_id: str, body: ReviewEdits, request: Request, x_actor_id: str = Header(...)):
        await _owned_item(request, item_id, x_actor_id)
        return await _pipeline(request).review.edit_fields(item_id, body.data)

    @app.post("/api/v1/review/{item_id}/approve", response_model=CommittedRecord)
    async def approve_review_item(
        item_id: str,
        body: ReviewDecision,
        request: Request,
        x_actor_id: str = Header(...),
    ):
        await _owned_item(request, item_id, x_actor_id)
        return await _pipeline(request).review.approve(item_id, reviewer=x_actor_id, notes=body.notes)

    @app.post("/api/v1/review/{item_id}/reject", response_model=ReviewItem)
    async def reject_review_item(
        item_id: str,
        body: ReviewDecision,
        request: Request,
        x_actor_id: str = Header(...),
    ):
        await _owned_item(request, item_id, x_actor_id)
        return await _pipeline(request).review.reject(item_id, reviewer=x_actor_id, notes=body.notes)

    # --- Operations ---

    @app.get("/api/v1/cache/stats")
    async def cache_stats(request: Request):
        return await _pipeline(request).cache.stats()

    @app.get("/health")
    async def health(request: Request):
        """Return service status and inference availability."""
        pipeline = _pipeline(request)
        base = {
            "status": "healthy",
            "inference_available": pipeline.inference_available,
            "tasks": await pipeline.tasks.stats(),
        }
        if pipeline.client is not None and pipeline.inference_available:
            base["inference_health"] = await pipeline.client.health()
        return base


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
