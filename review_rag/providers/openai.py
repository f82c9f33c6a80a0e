from review_rag.errors import RetryableError
from review_rag.providers.base import BackendReply, HttpBackend


class OpenAIBackend(HttpBackend):
    name = "openai"
    base_url = "https://api.openai.com/v1"
    # lean toward deterministic, structured JSON output
    TEMPERATURE = 0.2
    MAX_TOKENS = 4096

    def headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def generate(self, prompt: str) -> BackendReply:
        data = await self.post_json(
            "/chat/completions",
            {
                "model": self.model_id,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": self.TEMPERATURE,
                "max_tokens": self.MAX_TOKENS,
            },
        )
        choices = data.get("choices") or []
        if not choices or not choices[0].get("message", {}).get("content"):
            raise RetryableError("openai returned no content")
        usage = data.get("usage") or {}
        return BackendReply(
            content=choices[0]["message"]["content"],
            token_count=int(usage.get("total_tokens", 0)),
        )
