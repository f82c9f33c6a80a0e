import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from review_rag.errors import FatalError, RetryableError
from review_rag.providers.base import BackendReply, DeltaCallback, ModelBackend

_RETRYABLE = (
    google_exceptions.ResourceExhausted,
    google_exceptions.ServiceUnavailable,
    google_exceptions.InternalServerError,
    google_exceptions.DeadlineExceeded,
)


def _token_count(response) -> int:
    usage = getattr(response, "usage_metadata", None)
    return int(getattr(usage, "total_token_count", 0) or 0)


class GeminiBackend(ModelBackend):
    name = "gemini"

    def __init__(self, api_key: str, model_id: str = "models/gemini-2.5-flash"):
        super().__init__(model_id)
        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(model_id)

    async def generate(self, prompt: str) -> BackendReply:
        try:
            response = await self.model.generate_content_async(prompt)
            text = response.text
        except _RETRYABLE as e:
            raise RetryableError(f"gemini unavailable: {e}") from e
        except google_exceptions.GoogleAPICallError as e:
            raise FatalError(f"gemini rejected request: {e}") from e
        except ValueError as e:
            # .text raises when the candidate was blocked
            raise RetryableError(f"gemini returned no text: {e}") from e
        return BackendReply(content=text, token_count=_token_count(response))

    async def generate_streaming(self, prompt: str, on_delta: DeltaCallback) -> BackendReply:
        parts = []
        try:
            response = await self.model.generate_content_async(prompt, stream=True)
            async for chunk in response:
                text = chunk.text
                if text:
                    parts.append(text)
                    await on_delta(text)
        except _RETRYABLE as e:
            raise RetryableError(f"gemini unavailable: {e}") from e
        except google_exceptions.GoogleAPICallError as e:
            raise FatalError(f"gemini rejected request: {e}") from e
        except ValueError as e:
            raise RetryableError(f"gemini returned no text: {e}") from e
        return BackendReply(content="".join(parts), token_count=_token_count(response))
