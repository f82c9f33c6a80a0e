from typing import Dict, List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Cache decision
    similarity_threshold: float = 0.85
    retrieval_top_k: int = 5
    # require the cached review to come from the same directory as the diff
    match_path_namespace: bool = False

    # Generation routing
    model_order: List[str] = ["gemini", "openai", "anthropic"]
    model_timeout_ms: int = 3000
    org_concurrency_cap: int = 10
    queue_depth_multiplier: int = 2
    daily_budget_usd: Optional[float] = None
    monthly_budget_usd: Optional[float] = None
    # USD per 1k tokens, keyed by backend name
    model_pricing_per_1k_tokens: Dict[str, float] = {
        "gemini": 0.00035,
        "openai": 0.005,
        "anthropic": 0.003,
    }

    # Embeddings
    embedding_backend: str = "gemini"  # "gemini" | "hashing"
    embedding_model: str = "models/text-embedding-004"
    embedding_dimension: int = 768
    embedding_max_attempts: int = 3
    embedding_backoff_s: float = 0.5

    # Pipeline
    coalesce_wait_timeout_ms: int = 10000
    request_deadline_ms: int = 30000
    storing_max_retries: int = 3
    storing_retry_delay_s: float = 1.0
    result_cache_ttl_s: int = 60 * 60 * 24  # 24h

    # Infrastructure
    database_url: str = "mysql+pymysql://root@localhost:3306/review_rag"
    redis_url: str = "redis://localhost:6379/0"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "models/gemini-2.5-flash"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o"
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-sonnet-4-20250514"

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        protected_namespaces = ()

    @property
    def model_timeout_s(self) -> float:
        return self.model_timeout_ms / 1000

    @property
    def coalesce_wait_timeout_s(self) -> float:
        return self.coalesce_wait_timeout_ms / 1000

    @property
    def request_deadline_s(self) -> float:
        return self.request_deadline_ms / 1000

    @property
    def queue_depth(self) -> int:
        return self.org_concurrency_cap * self.queue_depth_multiplier


settings = Settings()
