"""HTTP surface tests against an in-process pipeline."""

import asyncio
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from cache import ResponseCache
from conftest import FakeInferenceClient, make_gateway
from inference_client import InferenceClient
from main import create_app, sweep_cache
from orchestrator import TaskOrchestrator
from pipeline import ImportPipeline
from review import ReviewRouter
from storage import InMemoryCacheStore, InMemoryRecordSink, InMemoryReviewStore, InMemoryTaskStore

OWNER = {"X-Actor-Id": "owner-1"}
STRANGER = {"X-Actor-Id": "owner-2"}

FUNDRAISING_CSV = b"Source,Amount,Received,Type\nGala dinner,1250.50,15/01/2024,corporate\n"

FUNDRAISING_MAPPING = (
    '{"mappings": {'
    '"source": {"csv_column": "Source", "confidence": 0.95}, '
    '"amount": {"csv_column": "Amount", "confidence": 0.9}, '
    '"date_received": {"csv_column": "Received", "confidence": 0.9}, '
    '"donor_type": {"csv_column": "Type", "confidence": 0.85}}}'
)


def make_pipeline(fake: FakeInferenceClient, client: InferenceClient | None = None) -> ImportPipeline:
    gateway = make_gateway(fake)
    sink = InMemoryRecordSink()
    return ImportPipeline(
        gateway=gateway,
        cache=gateway._cache,
        tasks=TaskOrchestrator(InMemoryTaskStore(), max_workers=2, task_timeout=5),
        review=ReviewRouter(InMemoryReviewStore(), sink),
        sink=sink,
        client=client,
    )


def wait_for_task(client: TestClient, task_id: str) -> dict:
    for _ in range(300):
        body = client.get(f"/api/v1/tasks/{task_id}", headers=OWNER).json()
        if body["status"] not in ("pending", "processing"):
            return body
        time.sleep(0.01)
    raise AssertionError(f"task {task_id} did not finish")


@pytest.fixture
def fake() -> FakeInferenceClient:
    return FakeInferenceClient()


@pytest.fixture
def api(fake: FakeInferenceClient):
    with TestClient(create_app(make_pipeline(fake))) as client:
        yield client


class TestHealth:
    def test_healthy(self, api: TestClient):
        resp = api.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["inference_available"] is True
        assert body["tasks"]["total"] == 0

    def test_unconfigured_inference(self, fake: FakeInferenceClient):
        pipeline = make_pipeline(fake, client=InferenceClient(base_url=""))
        with TestClient(create_app(pipeline)) as client:
            health = client.get("/health").json()
            assert health["inference_available"] is False

            resp = client.post(
                "/api/v1/import/email",
                json={"email": {"from": "a@example.com", "subject": "Donation"}},
                headers=OWNER,
            )
            assert resp.status_code == 503

    def test_cache_stats(self, api: TestClient):
        resp = api.get("/api/v1/cache/stats")
        assert resp.status_code == 200
        assert resp.json()["total_entries"] == 0


class TestEmailFlow:
    def test_import_review_and_approve(self, api: TestClient, fake: FakeInferenceClient, donation_response: str):
        fake.replies.append(donation_response)

        resp = api.post(
            "/api/v1/import/email",
            json={"email": {
                "from": "donor@example.com",
                "subject": "Donation confirmation",
                "text_content": "Thank you for your donation of £250.",
            }},
            headers=OWNER,
        )
        assert resp.status_code == 202
        assert resp.json()["status"] == "pending"

        task = wait_for_task(api, resp.json()["id"])
        assert task["status"] == "completed"
        review_id = task["output"]["items"][0]["review_id"]

        queue = api.get("/api/v1/review", params={"status": "pending"}, headers=OWNER).json()
        assert [i["id"] for i in queue] == [review_id]
        assert api.get("/api/v1/review", headers=STRANGER).json() == []

        original = api.get(f"/api/v1/review/{review_id}/original", headers=OWNER)
        assert "Subject: Donation confirmation" in original.text

        edited = api.patch(f"/api/v1/review/{review_id}", json={"data": {"amount": 260.0}}, headers=OWNER)
        assert edited.json()["edited_data"]["amount"] == 260.0

        approved = api.post(f"/api/v1/review/{review_id}/approve", json={"notes": "checked"}, headers=OWNER)
        assert approved.status_code == 200
        assert approved.json()["data"]["amount"] == 260.0
        assert approved.json()["reviewer"] == "owner-1"

        again = api.post(f"/api/v1/review/{review_id}/approve", json={}, headers=OWNER)
        assert again.status_code == 409

    def test_missing_actor_header(self, api: TestClient):
        resp = api.post("/api/v1/import/email", json={"email": {"from": "a@example.com"}})
        assert resp.status_code == 422


class TestTaskRoutes:
    def test_owner_scoping_and_retry_rules(self, api: TestClient, fake: FakeInferenceClient, dbs_response: str):
        fake.replies.append(dbs_response)
        resp = api.post(
            "/api/v1/import/document",
            files=[("files", ("page1.jpg", b"\xff\xd8not-really-a-jpeg", "image/jpeg"))],
            data={"document_type": "dbs_certificate"},
            headers=OWNER,
        )
        assert resp.status_code == 202
        task_id = resp.json()["id"]

        assert api.get(f"/api/v1/tasks/{task_id}", headers=STRANGER).status_code == 404
        assert wait_for_task(api, task_id)["status"] == "completed"

        listed = api.get("/api/v1/tasks", params={"type": "document_ocr"}, headers=OWNER).json()
        assert [t["id"] for t in listed] == [task_id]

        assert api.post(f"/api/v1/tasks/{task_id}/retry", headers=OWNER).status_code == 409
        cancelled = api.post(f"/api/v1/tasks/{task_id}/cancel", headers=OWNER)
        assert cancelled.json()["status"] == "completed"

    def test_unknown_task(self, api: TestClient):
        assert api.get("/api/v1/tasks/nope", headers=OWNER).status_code == 404

    def test_unsupported_page_type(self, api: TestClient):
        resp = api.post(
            "/api/v1/import/document",
            files=[("files", ("scan.pdf", b"%PDF-1.4", "application/pdf"))],
            data={"document_type": "receipt"},
            headers=OWNER,
        )
        assert resp.status_code == 400
        assert "unsupported content type" in resp.json()["detail"]


class TestCSVRoutes:
    def test_upload_map_and_commit(self, api: TestClient, fake: FakeInferenceClient):
        fake.replies.append(FUNDRAISING_MAPPING)

        resp = api.post(
            "/api/v1/import/csv",
            files={"file": ("income.csv", FUNDRAISING_CSV, "text/csv")},
            data={"schema_id": "fundraising"},
            headers=OWNER,
        )
        assert resp.status_code == 202
        task = wait_for_task(api, resp.json()["id"])
        assert task["output"]["is_valid"] is True

        committed = api.post(f"/api/v1/import/csv/{task['id']}/commit", json={}, headers=OWNER)
        assert committed.status_code == 200
        assert committed.json()["committed"] == 1
        assert committed.json()["mapping"]["mappings"]["amount"]["source_column"] == "Amount"

        again = api.post(f"/api/v1/import/csv/{task['id']}/commit", json={}, headers=OWNER)
        assert again.status_code == 409

    def test_bad_csv(self, api: TestClient):
        resp = api.post(
            "/api/v1/import/csv",
            files={"file": ("bad.csv", b"a,b,a\n1,2,3\n", "text/csv")},
            data={"schema_id": "fundraising"},
            headers=OWNER,
        )
        assert resp.status_code == 400
        assert "duplicate" in resp.json()["detail"]

    def test_template_download(self, api: TestClient):
        resp = api.get("/api/v1/templates/safeguarding")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert 'filename="safeguarding_template.csv"' in resp.headers["content-disposition"]
        assert resp.text.splitlines()[0].startswith("person_name,dbs_certificate_number")

    def test_unknown_template(self, api: TestClient):
        assert api.get("/api/v1/templates/payroll").status_code == 400


class TestCacheSweep:
    @pytest.mark.asyncio
    async def test_sweep_drops_expired_entries(self):
        now = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
        store = InMemoryCacheStore()
        cache = ResponseCache(store, ttl_hours=1, clock=lambda: now[0])
        await cache.store("stale", "payload")
        now[0] += timedelta(hours=2)

        sweeper = asyncio.create_task(sweep_cache(cache, 0.01))
        await asyncio.sleep(0.05)
        sweeper.cancel()

        assert await store.get("stale") is None
