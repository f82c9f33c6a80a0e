"""Backend-specific request/response handling.

HTTP backends run against httpx.MockTransport; the Gemini backend gets a
mocked GenerativeModel so no SDK call leaves the process.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from google.api_core import exceptions as google_exceptions

from review_rag.config import Settings
from review_rag.errors import FatalError, RetryableError
from review_rag.providers.anthropic import AnthropicBackend
from review_rag.providers.base import BackendReply, HttpBackend
from review_rag.providers.factory import build_backends, get_backend
from review_rag.providers.gemini import GeminiBackend
from review_rag.providers.openai import OpenAIBackend


def _client(handler, base_url):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


class TestOpenAIBackend:
    @pytest.mark.asyncio
    async def test_parses_chat_completion(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"content": "Use a context manager."}}],
                    "usage": {"total_tokens": 42},
                },
            )

        backend = OpenAIBackend("gpt-4o", "sk-test", client=_client(handler, OpenAIBackend.base_url))
        reply = await backend.generate("review this")

        assert reply.content == "Use a context manager."
        assert reply.token_count == 42
        assert seen["path"] == "/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == "gpt-4o"
        assert seen["body"]["messages"][0]["content"] == "review this"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_transient_statuses_are_retryable(self, status):
        backend = OpenAIBackend("gpt-4o", "k", client=_client(lambda r: httpx.Response(status), OpenAIBackend.base_url))
        with pytest.raises(RetryableError):
            await backend.generate("p")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 404])
    async def test_client_errors_are_fatal(self, status):
        backend = OpenAIBackend("gpt-4o", "k", client=_client(lambda r: httpx.Response(status), OpenAIBackend.base_url))
        with pytest.raises(FatalError):
            await backend.generate("p")

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("reset", request=request)

        backend = OpenAIBackend("gpt-4o", "k", client=_client(handler, OpenAIBackend.base_url))
        with pytest.raises(RetryableError, match="ConnectError"):
            await backend.generate("p")

    @pytest.mark.asyncio
    async def test_empty_choice_is_retryable(self):
        backend = OpenAIBackend(
            "gpt-4o", "k", client=_client(lambda r: httpx.Response(200, json={"choices": []}), OpenAIBackend.base_url)
        )
        with pytest.raises(RetryableError):
            await backend.generate("p")

    @pytest.mark.asyncio
    async def test_default_streaming_delivers_one_increment(self):
        backend = OpenAIBackend(
            "gpt-4o",
            "k",
            client=_client(
                lambda r: httpx.Response(200, json={"choices": [{"message": {"content": "done"}}]}),
                OpenAIBackend.base_url,
            ),
        )
        deltas = []

        async def on_delta(text):
            deltas.append(text)

        reply = await backend.generate_streaming("p", on_delta)

        assert deltas == ["done"]
        assert reply.token_count == 0


class TestAnthropicBackend:
    @pytest.mark.asyncio
    async def test_joins_text_blocks_and_sums_usage(self):
        seen = {}

        def handler(request):
            seen["key"] = request.headers["x-api-key"]
            seen["version"] = request.headers["anthropic-version"]
            return httpx.Response(
                200,
                json={
                    "content": [
                        {"type": "text", "text": "First. "},
                        {"type": "tool_use", "id": "x"},
                        {"type": "text", "text": "Second."},
                    ],
                    "usage": {"input_tokens": 30, "output_tokens": 12},
                },
            )

        backend = AnthropicBackend("claude", "ak-test", client=_client(handler, AnthropicBackend.base_url))
        reply = await backend.generate("p")

        assert reply.content == "First. Second."
        assert reply.token_count == 42
        assert seen["key"] == "ak-test"
        assert seen["version"] == AnthropicBackend.API_VERSION

    @pytest.mark.asyncio
    async def test_no_text_is_retryable(self):
        backend = AnthropicBackend(
            "claude", "k", client=_client(lambda r: httpx.Response(200, json={"content": []}), AnthropicBackend.base_url)
        )
        with pytest.raises(RetryableError):
            await backend.generate("p")


class TestGeminiBackend:
    def _backend(self, model):
        with patch("review_rag.providers.gemini.genai") as genai:
            genai.GenerativeModel.return_value = model
            return GeminiBackend(api_key="g-test", model_id="models/gemini-test")

    @pytest.mark.asyncio
    async def test_generate(self):
        response = MagicMock(text="Looks fine")
        response.usage_metadata.total_token_count = 17
        model = MagicMock()
        model.generate_content_async = AsyncMock(return_value=response)

        reply = await self._backend(model).generate("p")

        assert reply.content == "Looks fine"
        assert reply.token_count == 17

    @pytest.mark.asyncio
    async def test_streaming_forwards_chunks(self):
        class _Stream:
            usage_metadata = MagicMock(total_token_count=9)

            def __aiter__(self):
                return self._chunks()

            async def _chunks(self):
                for text in ("Looks ", "fine"):
                    yield MagicMock(text=text)

        model = MagicMock()
        model.generate_content_async = AsyncMock(return_value=_Stream())
        deltas = []

        async def on_delta(text):
            deltas.append(text)

        reply = await self._backend(model).generate_streaming("p", on_delta)

        assert deltas == ["Looks ", "fine"]
        assert reply.content == "Looks fine"
        assert reply.token_count == 9

    @pytest.mark.asyncio
    async def test_quota_is_retryable(self):
        model = MagicMock()
        model.generate_content_async = AsyncMock(side_effect=google_exceptions.ResourceExhausted("quota"))

        with pytest.raises(RetryableError):
            await self._backend(model).generate("p")

    @pytest.mark.asyncio
    async def test_permission_denied_is_fatal(self):
        model = MagicMock()
        model.generate_content_async = AsyncMock(side_effect=google_exceptions.PermissionDenied("key"))

        with pytest.raises(FatalError):
            await self._backend(model).generate("p")


class TestFactory:
    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown model backend"):
            get_backend("llama", Settings(_env_file=None))

    def test_backends_without_keys_are_skipped(self):
        settings = Settings(
            _env_file=None,
            gemini_api_key=None,
            openai_api_key="sk",
            anthropic_api_key="ak",
            model_order=["gemini", "anthropic", "openai"],
        )

        backends = build_backends(settings)

        assert [b.name for b in backends] == ["anthropic", "openai"]
        assert backends[0].model_id == settings.anthropic_model


class TestHttpBackend:
    def test_subclass_must_define_headers(self):
        class Headless(HttpBackend):
            name = "headless"

            async def generate(self, prompt):
                return BackendReply(content="x", token_count=0)

        with pytest.raises(TypeError, match="headers"):
            Headless("m", "k")
