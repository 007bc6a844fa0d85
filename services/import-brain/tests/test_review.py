"""Tests for confidence routing and the review workflow."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import NotFound, ReviewStateError, ValidationError
from models import Disposition, ExtractionResult, ReviewStatus
from review import ReviewRouter, classify
from storage import InMemoryRecordSink, InMemoryReviewStore


def result(confidence: float, success: bool = True, requires_review: bool | None = None, data=None):
    return ExtractionResult(
        success=success,
        data={"person_name": "Jane Doe"} if data is None and success else data,
        confidence=confidence,
        requires_review=confidence < 0.8 if requires_review is None else requires_review,
        document_type="dbs_certificate",
    )


@pytest.fixture
def sink() -> InMemoryRecordSink:
    return InMemoryRecordSink()


@pytest.fixture
def router(sink: InMemoryRecordSink) -> ReviewRouter:
    return ReviewRouter(InMemoryReviewStore(), sink)


class TestClassify:
    @pytest.mark.parametrize(
        "confidence,expected",
        [
            (0.81, Disposition.AUTO_APPROVED),
            (0.8, Disposition.AUTO_APPROVED),
            (0.79, Disposition.NEEDS_REVIEW),
            (0.6, Disposition.NEEDS_REVIEW),
            (0.5, Disposition.NEEDS_REVIEW),
            (0.3, Disposition.MANUAL_ENTRY),
        ],
    )
    def test_boundaries(self, confidence: float, expected: Disposition):
        assert classify(result(confidence)) == expected

    def test_flagged_high_confidence_needs_review(self):
        assert classify(result(0.95, requires_review=True)) == Disposition.NEEDS_REVIEW

    def test_failed_is_manual_regardless_of_confidence(self):
        assert classify(result(0.92, success=False, data={"person_name": "Jane"})) == Disposition.MANUAL_ENTRY


class TestSubmit:
    @pytest.mark.asyncio
    async def test_auto_approved_committed_once(self, router: ReviewRouter, sink: InMemoryRecordSink):
        item = await router.submit(result(0.92), source_id="task-1:body", owner_id="owner-1", original_content="email")

        assert item.disposition == Disposition.AUTO_APPROVED
        assert item.status == ReviewStatus.APPROVED
        assert len(sink.records) == 1
        assert sink.records[0].auto_approved is True
        assert sink.records[0].data == {"person_name": "Jane Doe"}
        assert sink.records[0].review_id == item.id

        with pytest.raises(ReviewStateError):
            await router.approve(item.id, reviewer="reviewer-1")
        assert len(sink.records) == 1

    @pytest.mark.asyncio
    async def test_needs_review_waits(self, router: ReviewRouter, sink: InMemoryRecordSink):
        item = await router.submit(result(0.6), source_id="task-2", owner_id="owner-1")
        assert item.disposition == Disposition.NEEDS_REVIEW
        assert item.status == ReviewStatus.PENDING
        assert sink.records == []

    @pytest.mark.asyncio
    async def test_original_content_retrievable(self, router: ReviewRouter):
        item = await router.submit(result(0.3), source_id="task-3", owner_id="owner-1", original_content="raw text")
        assert await router.view_original(item.id) == "raw text"


class TestReviewActions:
    @pytest.mark.asyncio
    async def test_edit_then_approve_commits_edits(self, router: ReviewRouter, sink: InMemoryRecordSink):
        item = await router.submit(result(0.6), source_id="task-1", owner_id="owner-1")

        await router.edit_fields(item.id, {"person_name": "Jane A. Doe"})
        edited = await router.edit_fields(item.id, {"issue_date": "2024-01-15"})
        assert edited.edited_data == {"person_name": "Jane A. Doe", "issue_date": "2024-01-15"}

        record = await router.approve(item.id, reviewer="reviewer-1", notes="checked against scan")

        assert record.data == {"person_name": "Jane A. Doe", "issue_date": "2024-01-15"}
        assert record.reviewer == "reviewer-1"
        assert record.auto_approved is False
        assert sink.records == [record]

        approved = await router.get(item.id)
        assert approved.status == ReviewStatus.APPROVED
        assert approved.notes == "checked against scan"
        assert approved.reviewed_at is not None

    @pytest.mark.asyncio
    async def test_approve_without_edits_commits_extracted_data(self, router: ReviewRouter):
        item = await router.submit(result(0.7), source_id="task-1", owner_id="owner-1")
        record = await router.approve(item.id, reviewer="reviewer-1")
        assert record.data == {"person_name": "Jane Doe"}

    @pytest.mark.asyncio
    async def test_manual_entry_needs_data_before_approval(self, router: ReviewRouter):
        item = await router.submit(result(0.0, success=False), source_id="task-1", owner_id="owner-1")
        assert item.disposition == Disposition.MANUAL_ENTRY

        with pytest.raises(ValidationError, match="no data"):
            await router.approve(item.id, reviewer="reviewer-1")

        await router.edit_fields(item.id, {"person_name": "Typed In"})
        record = await router.approve(item.id, reviewer="reviewer-1")
        assert record.data == {"person_name": "Typed In"}

    @pytest.mark.asyncio
    async def test_reject(self, router: ReviewRouter, sink: InMemoryRecordSink):
        item = await router.submit(result(0.55), source_id="task-1", owner_id="owner-1")
        rejected = await router.reject(item.id, reviewer="reviewer-1", notes="not a DBS certificate")

        assert rejected.status == ReviewStatus.REJECTED
        assert sink.records == []
        with pytest.raises(ReviewStateError):
            await router.edit_fields(item.id, {"person_name": "x"})
        with pytest.raises(ReviewStateError):
            await router.approve(item.id, reviewer="reviewer-1")

    @pytest.mark.asyncio
    async def test_unknown_item(self, router: ReviewRouter):
        with pytest.raises(NotFound):
            await router.get("missing")


class TestListItems:
    @pytest.mark.asyncio
    async def test_filters(self, router: ReviewRouter):
        await router.submit(result(0.9), source_id="a", owner_id="owner-1")
        review = await router.submit(result(0.6), source_id="b", owner_id="owner-1")
        await router.submit(result(0.2), source_id="c", owner_id="owner-1")
        await router.submit(result(0.6), source_id="d", owner_id="owner-2")

        pending = await router.list_items(status=ReviewStatus.PENDING, owner_id="owner-1")
        assert {i.source_id for i in pending} == {"b", "c"}

        needs_review = await router.list_items(disposition=Disposition.NEEDS_REVIEW, owner_id="owner-1")
        assert [i.id for i in needs_review] == [review.id]

        assert len(await router.list_items()) == 4
