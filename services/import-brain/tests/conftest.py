"""Shared test fixtures for import brain tests."""

import json
import sys
import time
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path so we can import the modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from cache import ResponseCache
from errors import TransientServiceError
from gateway import InferenceGateway
from rate_limiter import RateLimiter
from retry import RetryPolicy
from storage import InMemoryCacheStore, InMemoryRateLimitStore


class FakeInferenceClient:
    """Stands in for InferenceClient: replays queued replies and records requests.

    Queue items may be strings (returned) or exceptions (raised). When the
    queue is empty the default reply is returned.
    """

    def __init__(self, replies=None, default: str = "{}"):
        self.replies = list(replies or [])
        self.default = default
        self.requests = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def complete(self, request) -> str:
        self.requests.append(request)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeSleep:
    """Records backoff delays instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


def make_gateway(client, requests_per_minute: int = 100, clock=None, sleep=None, **policy) -> InferenceGateway:
    limiter = RateLimiter(InMemoryRateLimitStore(), requests_per_minute=requests_per_minute, clock=clock or time.time)
    return InferenceGateway(
        client,
        ResponseCache(InMemoryCacheStore(), ttl_hours=24),
        limiter,
        policy=RetryPolicy(**{"base_delay": 0.0, "overall_timeout": 5.0, **policy}),
        max_request_chars=20000,
        sleep=sleep or FakeSleep(),
    )


@pytest.fixture
def fake_client() -> FakeInferenceClient:
    return FakeInferenceClient()


@pytest.fixture
def gateway(fake_client: FakeInferenceClient) -> InferenceGateway:
    return make_gateway(fake_client)


@pytest.fixture
def transient_error() -> TransientServiceError:
    return TransientServiceError("Inference service returned 503")


@pytest.fixture
def sample_image_bytes() -> bytes:
    """A small scanned-certificate page as JPEG."""
    import cv2

    img = np.full((400, 300, 3), 235, dtype=np.uint8)
    cv2.rectangle(img, (0, 0), (300, 40), (90, 60, 20), -1)  # title band
    for top in range(70, 330, 40):
        cv2.rectangle(img, (24, top), (24 + 220 - top // 4, top + 14), (40, 40, 40), -1)

    _, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, 90])
    return buf.tobytes()


@pytest.fixture
def large_image_bytes() -> bytes:
    """Generate a larger page that will trigger resize."""
    import cv2

    img = np.zeros((2000, 3000, 3), dtype=np.uint8)
    img[:] = (200, 200, 200)
    _, buf = cv2.imencode(".jpg", img)
    return buf.tobytes()


@pytest.fixture
def invalid_bytes() -> bytes:
    """Non-image bytes for testing graceful degradation."""
    return b"this is not an image file at all"


@pytest.fixture
def dbs_response() -> str:
    """Inference reply for a DBS certificate extraction."""
    return json.dumps({
        "person_name": "Jane Doe",
        "dbs_certificate_number": "123456789012",
        "issue_date": "2024-01-15",
        "dbs_check_type": "enhanced",
        "expiry_date": None,
        "confidence": 0.92,
    })


@pytest.fixture
def donation_response() -> str:
    """Inference reply for a donation email."""
    return json.dumps({
        "donor_name": "John Smith",
        "amount": 250.0,
        "date_received": "2024-03-02",
        "source": "bank_transfer",
        "donor_type": "individual",
        "is_anonymous": False,
        "restricted_funds": False,
        "restriction_details": None,
        "gift_aid_eligible": True,
        "reference_number": "DON-0042",
        "confidence": 0.65,
    })


@pytest.fixture
def mock_markdown_response() -> str:
    """Inference reply wrapped in a markdown code fence."""
    return '```json\n{"person_name": "Jane Doe", "confidence": 0.9}\n```'


@pytest.fixture
def mock_preamble_response() -> str:
    """Inference reply with text before the JSON."""
    return 'Here is the extracted data:\n\n{"person_name": "Jane Doe", "confidence": 0.9}'
