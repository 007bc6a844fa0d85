"""Extraction engine: prompt selection, inference, shape validation and scoring.

Replies are parsed tolerantly and validated against the tagged shape for the
document type. A reply that does not fit its shape becomes a failed but
reviewable result; it never raises. Service errors (rate limiting, exhausted
retries, rejected requests) propagate so the owning task can fail and be
retried.
"""

import asyncio
import json
import logging
import math
import re
import time
from typing import Any, Sequence

import pydantic

from document_types import validate_document
from errors import SchemaValidationError, ValidationError
from gateway import InferenceGateway
from inference_client import InferenceRequest
from models import EmailMessage, ExtractionField, ExtractionResult, FieldLocation
from normalizer import build_email_content, decode_attachment, detect_email_type, is_supported_image
from preprocessing import prepare_page
from prompts import EXTRACTION_PROMPTS, EXTRACTION_SYSTEM

logger = logging.getLogger(__name__)

# Results below this confidence always need a human look.
REVIEW_THRESHOLD = 0.8

_META_SUFFIXES = ("_confidence", "_location")


class ExtractionEngine:
    def __init__(self, gateway: InferenceGateway):
        self._gateway = gateway

    async def extract(
        self,
        content: str,
        document_type: str,
        actor_id: str,
        images: Sequence[bytes] = (),
        image_types: Sequence[str] = (),
    ) -> ExtractionResult:
        """Extract structured fields of document_type from text and/or page images."""
        prompt = EXTRACTION_PROMPTS.get(document_type)
        if prompt is None:
            return ExtractionResult(
                success=False,
                confidence=0.0,
                error=f"No extraction prompt defined for document type: {document_type}",
                requires_review=True,
                document_type=document_type,
            )

        start = time.monotonic()
        request = InferenceRequest(
            system=EXTRACTION_SYSTEM,
            prompt=prompt,
            content=content,
            images=list(images),
            image_types=list(image_types),
        )
        reply = await self._gateway.complete(request, actor_id, context={"document_type": document_type})
        result = build_result(reply.content, document_type)

        logger.info(
            "Extraction finished: type=%s success=%s confidence=%.2f cache_hit=%s elapsed=%dms",
            document_type,
            result.success,
            result.confidence,
            reply.cache_hit,
            int((time.monotonic() - start) * 1000),
        )
        return result

    async def extract_pages(
        self,
        pages: Sequence[bytes],
        document_type: str,
        actor_id: str,
        content_types: Sequence[str] | None = None,
    ) -> ExtractionResult:
        """Extract each page image concurrently and merge the page results.

        A page that raises becomes a failed page result; only when every page
        raises is the first error re-raised.
        """
        prepared = await asyncio.gather(*(asyncio.to_thread(prepare_page, page) for page in pages))
        # Pages OpenCV could not re-encode keep their original content type.
        types = [
            "image/jpeg" if ready is not page or not content_types else content_types[index]
            for index, (page, ready) in enumerate(zip(pages, prepared))
        ]
        outcomes = await asyncio.gather(
            *(
                self.extract("", document_type, actor_id, images=[page], image_types=[image_type])
                for page, image_type in zip(prepared, types)
            ),
            return_exceptions=True,
        )

        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if outcomes and len(errors) == len(outcomes):
            raise errors[0]

        results = []
        for page_no, outcome in enumerate(outcomes, start=1):
            if isinstance(outcome, BaseException):
                logger.warning("Page %d of %s failed: %s", page_no, document_type, outcome)
                results.append(ExtractionResult(
                    success=False,
                    error=f"Page {page_no}: {outcome}",
                    requires_review=True,
                    document_type=document_type,
                ))
            else:
                results.append(_tag_page(outcome, page_no))
        return merge_results(results)

    async def extract_email(
        self,
        email: EmailMessage,
        actor_id: str,
        email_type: str | None = None,
    ) -> list[tuple[str, ExtractionResult]]:
        """Extract from the email body and each image attachment.

        Returns (source label, result) pairs, body first.
        """
        document_type = email_type or detect_email_type(email)
        results = [("body", await self.extract(build_email_content(email), document_type, actor_id))]

        for attachment in email.attachments:
            label = f"attachment:{attachment.filename}"
            if not is_supported_image(attachment.content_type):
                logger.info("Skipping attachment %s (%s)", attachment.filename, attachment.content_type)
                continue
            try:
                payload = decode_attachment(attachment)
            except ValidationError as e:
                results.append((label, ExtractionResult(
                    success=False,
                    error=str(e),
                    requires_review=True,
                    document_type=document_type,
                )))
                continue
            results.append((label, await self.extract_pages(
                [payload], document_type, actor_id, content_types=[attachment.content_type],
            )))

        return results


def build_result(raw: str, document_type: str) -> ExtractionResult:
    """Turn a raw inference reply into a scored ExtractionResult."""
    parsed = try_parse_json(raw)
    if parsed is None:
        return ExtractionResult(
            success=False,
            confidence=0.0,
            error="Could not parse a JSON object from the inference response",
            requires_review=True,
            document_type=document_type,
        )

    try:
        record = validate_document(document_type, parsed)
    except SchemaValidationError as e:
        confidence = _as_confidence(parsed.get("confidence")) or 0.0
        logger.warning("Shape validation failed for %s: %s", document_type, "; ".join(e.errors))
        return ExtractionResult(
            success=False,
            data=_strip_meta(parsed),
            confidence=confidence,
            error=str(e),
            requires_review=True,
            document_type=document_type,
        )

    confidence = record.confidence
    data = record.model_dump(mode="json", exclude={"document_type", "confidence"})
    fields = []
    for key, value in data.items():
        field_confidence = _as_confidence(parsed.get(f"{key}_confidence"))
        fields.append(ExtractionField(
            field_name=key,
            value=value,
            confidence=confidence if field_confidence is None else field_confidence,
            location=_as_location(parsed.get(f"{key}_location")),
        ))

    return ExtractionResult(
        success=True,
        data=data,
        confidence=confidence,
        fields=fields,
        requires_review=confidence < REVIEW_THRESHOLD,
        document_type=document_type,
    )


def merge_results(results: Sequence[ExtractionResult]) -> ExtractionResult:
    """Combine page results; later pages win on key conflicts."""
    if not results:
        return ExtractionResult(success=False, error="No results to merge", requires_review=True)
    if len(results) == 1:
        return results[0]

    document_type = next((r.document_type for r in results if r.document_type), None)
    successes = [r for r in results if r.success and r.data is not None]
    if not successes:
        return ExtractionResult(
            success=False,
            error="All extractions failed",
            requires_review=True,
            document_type=document_type,
        )

    merged: dict[str, Any] = {}
    fields: dict[str, ExtractionField] = {}
    for result in successes:
        merged.update(result.data)
        fields.update((f.field_name, f) for f in result.fields or [])

    confidence = sum(r.confidence for r in successes) / len(successes)
    return ExtractionResult(
        success=True,
        data=merged,
        confidence=confidence,
        fields=list(fields.values()),
        requires_review=confidence < REVIEW_THRESHOLD,
        document_type=document_type,
    )


def try_parse_json(raw: str) -> dict | None:
    """Try to extract a JSON object from the model output.

    Handles: direct JSON, markdown fences, preamble text, and
    <think>...</think> reasoning blocks.
    """
    if not raw:
        return None

    cleaned = re.sub(r"<think>.*?</think>", "", raw, flags=re.DOTALL).strip()

    candidates = [cleaned]
    match = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", cleaned, re.DOTALL)
    if match:
        candidates.append(match.group(1).strip())
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if 0 <= start < end:
        candidates.append(cleaned[start:end + 1])

    for candidate in candidates:
        try:
            result = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(result, dict):
            return result

    logger.warning("Could not parse JSON from inference response (%d chars)", len(cleaned))
    return None


def _as_confidence(value: Any) -> float | None:
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    return min(max(float(value), 0.0), 1.0)


def _as_location(value: Any) -> FieldLocation | None:
    if not isinstance(value, dict):
        return None
    try:
        return FieldLocation.model_validate(value)
    except pydantic.ValidationError:
        return None


def _strip_meta(parsed: dict) -> dict:
    return {
        k: v for k, v in parsed.items()
        if k != "confidence" and not k.endswith(_META_SUFFIXES)
    }


def _tag_page(result: ExtractionResult, page_no: int) -> ExtractionResult:
    """Record the page number on fields that carry no location of their own."""
    if not result.fields:
        return result
    fields = [
        f if f.location is not None else f.model_copy(update={"location": FieldLocation(page=page_no)})
        for f in result.fields
    ]
    return result.model_copy(update={"fields": fields})
