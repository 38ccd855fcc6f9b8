from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]
RERANK_PROVIDERS = {"none", "stub", "ollama", "groq", "llamacpp"}


class Settings(BaseSettings):
    """Application configuration derived from environment variables."""

    app_name: str = "ExpertMatch Retrieval"
    log_dir: Path = Path("logs")
    admin_api_secret: str | None = None
    seed_path: Optional[Path] = None

    # Relational / graph store
    database_url: str | None = None
    db_schema: str = "expertmatch"
    graph_name: str = "expertmatch_graph"
    db_pool_size: int = 5

    # Vector store
    chroma_dir: Path = Path("store/chroma")
    chroma_collection: str = "expert_profiles"

    # Embeddings
    embed_provider: str = "sentence"
    embed_model_name: str = "all-MiniLM-L6-v2"
    ollama_embed_model: str = "nomic-embed-text"
    ollama_host: str = "http://localhost:11434"

    # Reasoning model used for reranking and name matching
    rerank_provider: str = "none"
    model_name: str = "phi3:mini"
    model_timeout_sec: int = 20
    llamacpp_host: str = "http://localhost:8080"
    hosted_model_name: str = "llama-3.1-8b-instant"
    groq_api_key: str | None = None
    groq_api_url: str = "https://api.groq.com/openai/v1/chat/completions"

    # Retrieval
    max_results: int = 10
    vector_similarity_threshold: float = 0.7
    name_similarity_threshold: float = 0.3
    parallel_channels: bool = False
    channel_timeout_sec: float = 10.0
    graph_batch_size: int = 1000

    model_config = SettingsConfigDict(
        env_file=PROJECT_ROOT / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=("settings_",),
    )

    @field_validator("rerank_provider")
    @classmethod
    def normalize_rerank_provider(cls, value: str) -> str:
        """Normalise provider identifiers; unknown values disable reranking."""
        normalized = (value or "none").strip().lower()
        if normalized in {"hosted"}:
            return "groq"
        return normalized if normalized in RERANK_PROVIDERS else "none"

    @field_validator("embed_provider")
    @classmethod
    def normalize_embed_provider(cls, value: str) -> str:
        """Normalise embedding provider identifiers, defaulting to stub."""
        return (value or "stub").lower()

    @field_validator("database_url", mode="before")
    @classmethod
    def blank_database_url(cls, value: Optional[str]) -> Optional[str]:
        """Treat an empty DATABASE_URL as unset."""
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("max_results", "graph_batch_size", "db_pool_size", "model_timeout_sec")
    @classmethod
    def positive_int(cls, value: int) -> int:
        """Clamp integer configuration values to be strictly positive."""
        return max(1, int(value))

    @field_validator("vector_similarity_threshold", "name_similarity_threshold")
    @classmethod
    def unit_interval(cls, value: float) -> float:
        """Keep similarity floors inside [0, 1]."""
        return min(1.0, max(0.0, float(value)))

    @field_validator("channel_timeout_sec")
    @classmethod
    def positive_timeout(cls, value: float) -> float:
        """Prevent zero or negative channel timeouts."""
        return max(0.1, float(value))


@lru_cache
def get_settings() -> Settings:
    """Return cached settings (re-computed only when module reloaded)."""
    settings = Settings()
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    settings.chroma_dir.mkdir(parents=True, exist_ok=True)
    return settings


def reload_settings() -> None:
    """Clear cached settings, primarily for tests."""
    get_settings.cache_clear()  # type: ignore[attr-defined]
