"""HTTP client for the structured-completion inference service.

Speaks an OpenAI-compatible chat-completions API over httpx with
configurable timeouts. A single call is made per invocation; retry, caching
and rate limiting live in the gateway that wraps this client.
"""

import base64
import hashlib
import logging

import httpx
from pydantic import BaseModel

from config import settings
from errors import InferenceServiceError, TransientServiceError

logger = logging.getLogger(__name__)

# 408 and 429 are worth retrying; so is every 5xx.
RETRYABLE_STATUS = {408, 429}


class InferenceRequest(BaseModel):
    system: str
    prompt: str
    content: str = ""
    images: list[bytes] = []
    image_types: list[str] = []
    json_mode: bool = True
    model: str | None = None

    def cache_text(self) -> str:
        """Text identifying this request for cache keying (images by digest)."""
        digests = " ".join(hashlib.sha256(img).hexdigest() for img in self.images)
        return f"{self.system}\n{self.prompt}\n{self.content}\n{digests}"


class InferenceClient:
    """Async HTTP client for the inference service."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        vision_model: str | None = None,
        timeout: int | None = None,
        connect_timeout: int | None = None,
    ):
        self._base_url = (base_url or settings.INFERENCE_BASE_URL).rstrip("/")
        self._model = model or settings.INFERENCE_MODEL
        self._vision_model = vision_model or settings.VISION_MODEL
        api_key = api_key if api_key is not None else settings.INFERENCE_API_KEY

        read_timeout = timeout if timeout is not None else settings.INFERENCE_TIMEOUT_SECONDS
        conn_timeout = connect_timeout if connect_timeout is not None else settings.INFERENCE_CONNECT_TIMEOUT

        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(
                connect=float(conn_timeout),
                read=float(read_timeout),
                write=30.0,
                pool=30.0,
            ),
        )

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    async def close(self):
        await self._client.aclose()

    def model_for(self, request: InferenceRequest) -> str:
        if request.model:
            return request.model
        return self._vision_model if request.images else self._model

    async def complete(self, request: InferenceRequest) -> str:
        """Send one completion request and return the reply text.

        Raises TransientServiceError (retryable) or InferenceServiceError (non-retryable).
        """
        if not self.configured:
            raise InferenceServiceError("Inference service is not configured (INFERENCE_BASE_URL is empty)")

        payload = self._build_payload(request)
        try:
            resp = await self._client.post("/chat/completions", json=payload)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.warning("Inference service connection failed: %s", e)
            raise TransientServiceError(f"Cannot connect to inference service: {e}") from e
        except httpx.TimeoutException as e:
            logger.warning("Inference service timeout: %s", e)
            raise TransientServiceError(f"Inference service timeout: {e}") from e
        except httpx.HTTPError as e:
            logger.error("Inference service HTTP error: %s", e)
            raise TransientServiceError(f"Inference service HTTP error: {e}") from e

        if resp.status_code in RETRYABLE_STATUS or resp.status_code >= 500:
            detail = _error_detail(resp)
            logger.warning("Inference service returned %d: %s", resp.status_code, detail)
            raise TransientServiceError(detail)

        if resp.status_code != 200:
            detail = _error_detail(resp)
            logger.error("Inference service error %d: %s", resp.status_code, detail)
            raise InferenceServiceError(detail)

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise InferenceServiceError(f"Malformed inference response: {e}") from e

        if not content:
            raise InferenceServiceError("No response content from inference service")
        return content

    def _build_payload(self, request: InferenceRequest) -> dict:
        text = f"{request.prompt}\n\n{request.content}".strip()
        if request.images:
            user_content: str | list = [{"type": "text", "text": text}]
            for index, image in enumerate(request.images):
                image_type = request.image_types[index] if index < len(request.image_types) else "image/jpeg"
                image_b64 = base64.b64encode(image).decode()
                user_content.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{image_type};base64,{image_b64}"},
                })
        else:
            user_content = text

        payload = {
            "model": self.model_for(request),
            "messages": [
                {"role": "system", "content": request.system},
                {"role": "user", "content": user_content},
            ],
            "temperature": settings.INFERENCE_TEMPERATURE,
            "max_tokens": settings.INFERENCE_MAX_TOKENS,
        }
        if request.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def health(self) -> dict:
        """Check inference service reachability. Returns a status dict, never raises."""
        if not self.configured:
            return {"status": "not_configured"}
        try:
            resp = await self._client.get("/models", timeout=10.0)
            return {"status": "reachable" if resp.status_code == 200 else "degraded", "http_status": resp.status_code}
        except Exception as e:
            logger.warning("Inference health check failed: %s", e)
            return {"status": "unreachable", "error": str(e)}


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or f"HTTP {resp.status_code}"
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return str(error or f"HTTP {resp.status_code}")
