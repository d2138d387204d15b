"""
Gemini Generation Provider Implementation.

Calls the generateContent REST endpoint with httpx. One call per request,
no retries: transport and API errors surface as GenerationProviderError.
"""

import httpx
from structlog import get_logger

from app.exceptions import GenerationProviderError
from app.services.generation_provider import GenerationOutput, GenerationPrompt

logger = get_logger(__name__)

EMPTY_RESPONSE_TEXT = "No response generated"


class GeminiProvider:
    """
    Gemini generation provider.

    Implements the GenerationProvider protocol.
    """

    def __init__(
        self,
        api_key: str,
        api_base: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize Gemini provider.

        Args:
            api_key: Google AI Studio API key
            api_base: REST API base URL
            timeout_seconds: Request timeout
            transport: Optional httpx transport (tests)
        """
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def generate(self, request: GenerationPrompt) -> GenerationOutput:
        """
        Generate a reply with systemInstruction and a single user turn.

        Raises:
            GenerationProviderError: Missing key, transport error, non-2xx
                response or malformed body
        """
        if not self.api_key:
            raise GenerationProviderError(request.model_key, "GEMINI_API_KEY not configured")

        url = f"{self.api_base}/models/{request.model_key}:generateContent"
        payload = {
            "systemInstruction": {"parts": [{"text": request.system_instruction}]},
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
        }

        logger.info(
            "calling_gemini",
            model=request.model_key,
            prompt_chars=len(request.prompt),
        )

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(url, params={"key": self.api_key}, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "gemini_request_rejected",
                model=request.model_key,
                status_code=exc.response.status_code,
                body=exc.response.text[:500],
            )
            raise GenerationProviderError(
                request.model_key, f"API returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "gemini_request_failed",
                model=request.model_key,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise GenerationProviderError(request.model_key, "Model not available") from exc
        except ValueError as exc:
            logger.error("gemini_response_not_json", model=request.model_key)
            raise GenerationProviderError(request.model_key, "Malformed response") from exc

        text, finish_reason = self._extract_text(data)

        logger.info(
            "gemini_response_received",
            model=request.model_key,
            response_chars=len(text),
            finish_reason=finish_reason,
        )

        return GenerationOutput(
            text=text or EMPTY_RESPONSE_TEXT,
            model_key=request.model_key,
            finish_reason=finish_reason,
        )

    @staticmethod
    def _extract_text(data: object) -> tuple[str, str | None]:
        """Concatenate the text parts of the first candidate."""
        if not isinstance(data, dict):
            return "", None
        candidates = data.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            return "", None

        candidate = candidates[0]
        content = candidate.get("content")
        parts = (content.get("parts") or []) if isinstance(content, dict) else []
        text = "".join(
            str(part.get("text", "")) for part in parts if isinstance(part, dict)
        )
        return text, candidate.get("finishReason")
