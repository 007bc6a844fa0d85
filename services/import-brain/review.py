"""Confidence routing and the human review workflow.

Each extraction is classified once:

    failed                                   -> manual_entry
    confidence >= 0.8 and not requires_review -> auto_approved (committed at once)
    confidence >= 0.5                        -> needs_review
    otherwise                                -> manual_entry

Items that are not auto-approved wait for a reviewer to edit, approve or
reject them. Reviewer edits are committed exactly as entered.
"""

import asyncio
import logging
from typing import Any

from errors import NotFound, ReviewStateError, ValidationError
from models import (
    CommittedRecord,
    Disposition,
    ExtractionResult,
    ReviewItem,
    ReviewStatus,
    utcnow,
)
from storage import RecordSink, ReviewStore

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.5


def classify(result: ExtractionResult) -> Disposition:
    if not result.success:
        return Disposition.MANUAL_ENTRY
    if result.confidence >= HIGH_CONFIDENCE and not result.requires_review:
        return Disposition.AUTO_APPROVED
    if result.confidence >= MEDIUM_CONFIDENCE:
        return Disposition.NEEDS_REVIEW
    return Disposition.MANUAL_ENTRY


class ReviewRouter:
    def __init__(self, store: ReviewStore, sink: RecordSink):
        self._store = store
        self._sink = sink
        self._lock = asyncio.Lock()

    async def submit(
        self,
        result: ExtractionResult,
        source_id: str,
        owner_id: str,
        original_content: str = "",
    ) -> ReviewItem:
        """Classify a result and file it; auto-approved data is committed immediately."""
        disposition = classify(result)
        item = ReviewItem(
            source_id=source_id,
            owner_id=owner_id,
            document_type=result.document_type,
            disposition=disposition,
            result=result,
            original_content=original_content,
        )

        if disposition == Disposition.AUTO_APPROVED:
            await self._sink.commit(CommittedRecord(
                review_id=item.id,
                source_id=source_id,
                owner_id=owner_id,
                document_type=result.document_type,
                data=result.data or {},
                auto_approved=True,
            ))
            item = item.model_copy(update={"status": ReviewStatus.APPROVED, "reviewed_at": utcnow()})

        await self._store.insert(item)
        logger.info(
            "Routed %s from %s as %s (confidence=%.2f)",
            result.document_type or "result",
            source_id,
            disposition.value,
            result.confidence,
        )
        return item

    async def get(self, item_id: str) -> ReviewItem:
        item = await self._store.get(item_id)
        if item is None:
            raise NotFound(f"Review item not found: {item_id}")
        return item

    async def view_original(self, item_id: str) -> str:
        return (await self.get(item_id)).original_content

    async def edit_fields(self, item_id: str, edits: dict[str, Any]) -> ReviewItem:
        async with self._lock:
            item = await self._pending(item_id)
            base = item.edited_data if item.edited_data is not None else dict(item.result.data or {})
            item = item.model_copy(update={"edited_data": {**base, **edits}})
            await self._store.save(item)
            return item

    async def approve(self, item_id: str, reviewer: str, notes: str | None = None) -> CommittedRecord:
        """Commit the edited (or else extracted) data downstream."""
        async with self._lock:
            item = await self._pending(item_id)
            data = item.edited_data if item.edited_data is not None else item.result.data
            if not data:
                raise ValidationError(f"Review item {item_id} has no data to approve; enter the fields first")

            record = CommittedRecord(
                review_id=item.id,
                source_id=item.source_id,
                owner_id=item.owner_id,
                document_type=item.document_type,
                data=data,
                reviewer=reviewer,
                notes=notes,
            )
            await self._sink.commit(record)
            await self._store.save(item.model_copy(update={
                "status": ReviewStatus.APPROVED,
                "reviewer": reviewer,
                "notes": notes,
                "reviewed_at": record.committed_at,
            }))
            logger.info("Review item %s approved by %s", item_id, reviewer)
            return record

    async def reject(self, item_id: str, reviewer: str, notes: str | None = None) -> ReviewItem:
        async with self._lock:
            item = await self._pending(item_id)
            item = item.model_copy(update={
                "status": ReviewStatus.REJECTED,
                "reviewer": reviewer,
                "notes": notes,
                "reviewed_at": utcnow(),
            })
            await self._store.save(item)
            logger.info("Review item %s rejected by %s", item_id, reviewer)
            return item

    async def list_items(
        self,
        status: ReviewStatus | None = None,
        disposition: Disposition | None = None,
        owner_id: str | None = None,
    ) -> list[ReviewItem]:
        """Matching items, newest first."""
        items = [
            i for i in await self._store.all()
            if (status is None or i.status == status)
            and (disposition is None or i.disposition == disposition)
            and (owner_id is None or i.owner_id == owner_id)
        ]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return items

    async def _pending(self, item_id: str) -> ReviewItem:
        item = await self.get(item_id)
        if item.status != ReviewStatus.PENDING:
            raise ReviewStateError(f"Review item {item_id} is already {item.status.value}")
        return item
