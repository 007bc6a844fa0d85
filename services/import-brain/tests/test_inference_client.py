"""Tests for the inference HTTP client: status mapping and payload shape."""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import InferenceServiceError, TransientServiceError
from inference_client import InferenceClient, InferenceRequest


def completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.fixture
def inference_client() -> InferenceClient:
    return InferenceClient(
        base_url="http://fake-inference:8000/v1",
        api_key="test-key",
        model="text-model",
        vision_model="vision-model",
        timeout=5,
        connect_timeout=2,
    )


@pytest.fixture
def request_text() -> InferenceRequest:
    return InferenceRequest(system="Extract fields.", prompt="Return JSON.", content="Receipt from Tesco")


class TestComplete:
    @pytest.mark.asyncio
    async def test_successful_completion(self, request_text: InferenceRequest):
        client = InferenceClient(base_url="http://fake-inference:8000/v1", api_key="k")
        mock_post = AsyncMock(return_value=httpx.Response(200, json=completion('{"amount": 4.2}')))

        with patch.object(client._client, "post", mock_post):
            text = await client.complete(request_text)

        assert text == '{"amount": 4.2}'
        path = mock_post.call_args.args[0]
        assert path == "/chat/completions"
        await client.close()

    @pytest.mark.asyncio
    async def test_503_is_transient(self, request_text: InferenceRequest):
        client = InferenceClient(base_url="http://fake-inference:8000/v1")
        response = httpx.Response(503, json={"error": {"message": "Model loading"}})

        with patch.object(client._client, "post", AsyncMock(return_value=response)):
            with pytest.raises(TransientServiceError, match="Model loading"):
                await client.complete(request_text)
        await client.close()

    @pytest.mark.asyncio
    async def test_429_is_transient(self, request_text: InferenceRequest):
        client = InferenceClient(base_url="http://fake-inference:8000/v1")
        response = httpx.Response(429, json={"detail": "slow down"})

        with patch.object(client._client, "post", AsyncMock(return_value=response)):
            with pytest.raises(TransientServiceError, match="slow down"):
                await client.complete(request_text)
        await client.close()

    @pytest.mark.asyncio
    async def test_500_is_transient(self, request_text: InferenceRequest):
        client = InferenceClient(base_url="http://fake-inference:8000/v1")

        with patch.object(client._client, "post", AsyncMock(return_value=httpx.Response(500, text="boom"))):
            with pytest.raises(TransientServiceError):
                await client.complete(request_text)
        await client.close()

    @pytest.mark.asyncio
    async def test_400_is_not_retryable(self, request_text: InferenceRequest):
        client = InferenceClient(base_url="http://fake-inference:8000/v1")
        response = httpx.Response(400, json={"error": {"message": "Invalid model"}})

        with patch.object(client._client, "post", AsyncMock(return_value=response)):
            with pytest.raises(InferenceServiceError, match="Invalid model"):
                await client.complete(request_text)
        await client.close()

    @pytest.mark.asyncio
    async def test_401_is_not_retryable(self, request_text: InferenceRequest):
        client = InferenceClient(base_url="http://fake-inference:8000/v1")

        with patch.object(client._client, "post", AsyncMock(return_value=httpx.Response(401, json={}))):
            with pytest.raises(InferenceServiceError, match="HTTP 401"):
                await client.complete(request_text)
        await client.close()

    @pytest.mark.asyncio
    async def test_connect_error_is_transient(self, request_text: InferenceRequest):
        client = InferenceClient(base_url="http://fake-inference:8000/v1")

        with patch.object(client._client, "post", AsyncMock(side_effect=httpx.ConnectError("refused"))):
            with pytest.raises(TransientServiceError, match="Cannot connect"):
                await client.complete(request_text)
        await client.close()

    @pytest.mark.asyncio
    async def test_read_timeout_is_transient(self, request_text: InferenceRequest):
        client = InferenceClient(base_url="http://fake-inference:8000/v1")

        with patch.object(client._client, "post", AsyncMock(side_effect=httpx.ReadTimeout("slow"))):
            with pytest.raises(TransientServiceError, match="timeout"):
                await client.complete(request_text)
        await client.close()

    @pytest.mark.asyncio
    async def test_malformed_body(self, request_text: InferenceRequest):
        client = InferenceClient(base_url="http://fake-inference:8000/v1")

        with patch.object(client._client, "post", AsyncMock(return_value=httpx.Response(200, json={"choices": []}))):
            with pytest.raises(InferenceServiceError, match="Malformed"):
                await client.complete(request_text)
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_content(self, request_text: InferenceRequest):
        client = InferenceClient(base_url="http://fake-inference:8000/v1")

        with patch.object(client._client, "post", AsyncMock(return_value=httpx.Response(200, json=completion("")))):
            with pytest.raises(InferenceServiceError, match="No response content"):
                await client.complete(request_text)
        await client.close()

    @pytest.mark.asyncio
    async def test_not_configured(self, request_text: InferenceRequest):
        client = InferenceClient(base_url="")
        mock_post = AsyncMock()

        with patch.object(client._client, "post", mock_post):
            with pytest.raises(InferenceServiceError, match="not configured"):
                await client.complete(request_text)

        mock_post.assert_not_called()
        assert client.configured is False
        assert await client.health() == {"status": "not_configured"}
        await client.close()


class TestPayload:
    def test_text_request(self, request_text: InferenceRequest):
        client = InferenceClient(base_url="http://x", model="text-model", vision_model="vision-model")
        payload = client._build_payload(request_text)

        assert payload["model"] == "text-model"
        assert payload["messages"][0] == {"role": "system", "content": "Extract fields."}
        assert payload["messages"][1]["content"] == "Return JSON.\n\nReceipt from Tesco"
        assert payload["response_format"] == {"type": "json_object"}

    def test_image_request_uses_vision_model(self):
        client = InferenceClient(base_url="http://x", model="text-model", vision_model="vision-model")
        request = InferenceRequest(system="s", prompt="Read the page.", images=[b"\xff\xd8jpeg"])

        payload = client._build_payload(request)
        parts = payload["messages"][1]["content"]

        assert payload["model"] == "vision-model"
        assert parts[0] == {"type": "text", "text": "Read the page."}
        assert parts[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")

    def test_image_content_type_carried_into_data_url(self):
        client = InferenceClient(base_url="http://x")
        request = InferenceRequest(
            system="s",
            prompt="Read the pages.",
            images=[b"\xff\xd8jpeg", b"GIF89a"],
            image_types=["image/jpeg", "image/gif"],
        )

        parts = client._build_payload(request)["messages"][1]["content"]

        assert parts[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")
        assert parts[2]["image_url"]["url"].startswith("data:image/gif;base64,")

    def test_plain_text_mode(self):
        client = InferenceClient(base_url="http://x")
        payload = client._build_payload(InferenceRequest(system="s", prompt="p", json_mode=False))
        assert "response_format" not in payload

    def test_explicit_model_wins(self):
        client = InferenceClient(base_url="http://x", model="text-model")
        request = InferenceRequest(system="s", prompt="p", model="other-model")
        assert client.model_for(request) == "other-model"


class TestCacheText:
    def test_images_identified_by_digest(self):
        a = InferenceRequest(system="s", prompt="p", images=[b"page-one"])
        b = InferenceRequest(system="s", prompt="p", images=[b"page-two"])
        assert a.cache_text() != b.cache_text()
        assert "page-one" not in a.cache_text()


class TestHealth:
    @pytest.mark.asyncio
    async def test_reachable(self, inference_client: InferenceClient):
        with patch.object(inference_client._client, "get", AsyncMock(return_value=httpx.Response(200, json={}))):
            health = await inference_client.health()
        assert health == {"status": "reachable", "http_status": 200}
        await inference_client.close()

    @pytest.mark.asyncio
    async def test_unreachable_never_raises(self, inference_client: InferenceClient):
        with patch.object(inference_client._client, "get", AsyncMock(side_effect=httpx.ConnectError("down"))):
            health = await inference_client.health()
        assert health["status"] == "unreachable"
        await inference_client.close()
