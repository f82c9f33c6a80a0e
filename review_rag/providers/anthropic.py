from review_rag.errors import RetryableError
from review_rag.providers.base import BackendReply, HttpBackend


class AnthropicBackend(HttpBackend):
    name = "anthropic"
    base_url = "https://api.anthropic.com/v1"
    API_VERSION = "2023-06-01"
    TEMPERATURE = 0.3
    MAX_TOKENS = 4096

    def headers(self) -> dict:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.API_VERSION,
            "content-type": "application/json",
        }

    async def generate(self, prompt: str) -> BackendReply:
        data = await self.post_json(
            "/messages",
            {
                "model": self.model_id,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": self.TEMPERATURE,
                "max_tokens": self.MAX_TOKENS,
            },
        )
        text = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        ).strip()
        if not text:
            raise RetryableError("anthropic returned no text")
        usage = data.get("usage") or {}
        tokens = int(usage.get("input_tokens", 0)) + int(usage.get("output_tokens", 0))
        return BackendReply(content=text, token_count=tokens)
