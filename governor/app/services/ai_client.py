"""Gemini generative-AI client gated by a quota governor.

Every call passes through ``QuotaGovernor.execute`` so the downstream API
is only contacted after local admission, and a downstream 429 engages the
governor's exhaustion block for all later callers.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from governor.app.core.config import Settings, settings as default_settings
from governor.app.core.http_client import create_http_client
from governor.app.core.logging import get_log_context, get_logger
from governor.app.exceptions import (
    AIServiceError,
    GovernorException,
    QuotaExceededError,
    RateLimitError,
)
from governor.app.quota.governor import QuotaGovernor, is_downstream_exhaustion

logger = get_logger(__name__)


@dataclass
class GeminiUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class GeminiResponse:
    """Text generated by the downstream model."""
    text: str
    model: str
    usage: GeminiUsage = field(default_factory=GeminiUsage)

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "model": self.model,
            "usage": {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
                "total_tokens": self.usage.total_tokens,
            },
        }


def _error_text(exc: BaseException) -> str:
    text = str(exc)
    response = getattr(exc, "response", None)
    if isinstance(response, httpx.Response):
        try:
            text = f"{text} {response.text}"
        except httpx.ResponseNotRead:
            pass
    return text


def translate_error(exc: Exception, governor: QuotaGovernor) -> GovernorException:
    """Map a downstream failure to the application's error taxonomy.

    Args:
        exc: Exception raised while calling the downstream API
        governor: Governor guarding the call, used for the retry hint

    Returns:
        RateLimitError for 429 / "Resource exhausted", QuotaExceededError when
        the downstream mentions its quota, AIServiceError otherwise
    """
    if isinstance(exc, GovernorException):
        return exc

    if is_downstream_exhaustion(exc):
        status = governor.get_status()
        retry_after = status.remaining_seconds or governor.config.block_seconds
        return RateLimitError(retry_after, "API rate limit exceeded")

    text = _error_text(exc)
    if "quota" in text.lower():
        return QuotaExceededError("API quota exceeded")

    return AIServiceError(text or type(exc).__name__)


class GeminiClient:
    """Client for the Gemini ``generateContent`` REST endpoint."""

    def __init__(
        self,
        governor: QuotaGovernor,
        http_client: Optional[httpx.AsyncClient] = None,
        config: Optional[Settings] = None,
    ):
        config = config or default_settings
        self.governor = governor
        self.api_key = config.gemini_api_key
        self.base_url = config.gemini_base_url.rstrip("/")
        self.model = config.gemini_model
        self.temperature = config.gemini_temperature
        self._config = config
        self.http_client = http_client

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _build_payload(
        self,
        prompt: str,
        temperature: Optional[float],
        max_output_tokens: Optional[int],
    ) -> Dict[str, Any]:
        generation_config: Dict[str, Any] = {
            "temperature": self.temperature if temperature is None else temperature,
        }
        if max_output_tokens is not None:
            generation_config["maxOutputTokens"] = max_output_tokens
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        if self.http_client is not None:
            response = await self.http_client.post(url, json=payload, headers=headers)
        else:
            async with create_http_client(self._config) as client:
                response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _parse_response(data: Dict[str, Any], model: str) -> GeminiResponse:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback", {})
            reason = feedback.get("blockReason", "no candidates returned")
            raise AIServiceError(
                f"Gemini returned no content: {reason}",
                "AI service returned an empty response. Please try again.",
            )

        parts = candidates[0].get("content", {}).get("parts", [])
        text = "".join(part.get("text", "") for part in parts)

        metadata = data.get("usageMetadata", {})
        usage = GeminiUsage(
            prompt_tokens=metadata.get("promptTokenCount", 0),
            completion_tokens=metadata.get("candidatesTokenCount", 0),
            total_tokens=metadata.get("totalTokenCount", 0),
        )
        return GeminiResponse(text=text, model=model, usage=usage)

    async def generate(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> GeminiResponse:
        """Generate text for ``prompt``.

        Raises:
            AIServiceError: If no API key is configured or the call fails
            RateLimitError: If the governor refuses or the downstream returns 429
            QuotaExceededError: If the downstream reports its quota exhausted
        """
        if not self.is_available():
            # Checked before acquiring so an unconfigured client never spends a slot
            raise AIServiceError(
                "Gemini API key not configured",
                "AI service is not configured. Please check your API key.",
            )

        url = f"{self.base_url}/models/{self.model}:generateContent"
        payload = self._build_payload(prompt, temperature, max_output_tokens)

        try:
            data = await self.governor.execute(self._post, url, payload)
        except RateLimitError:
            raise
        except (httpx.HTTPError, ValueError) as e:
            error = translate_error(e, self.governor)
            logger.warning(
                f"Gemini call failed: {type(e).__name__}: {e}",
                extra=get_log_context(governor=self.governor.name, error_code=error.error_code),
            )
            raise error from e

        return self._parse_response(data, self.model)
