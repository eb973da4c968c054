import functools
from pathlib import Path

import pydantic
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """Runtime configuration, read from `CODING_*` environment variables or `.env`."""

    provider_a: str = pydantic.Field(default="openai", description="Provider of backend A.")
    model_a: str = pydantic.Field(default="gpt-4o-mini", description="Chat model of backend A.")
    provider_b: str = pydantic.Field(default="google_genai", description="Provider of backend B.")
    model_b: str = pydantic.Field(default="gemini-2.5-pro", description="Chat model of backend B.")
    temperature: float = pydantic.Field(default=0.0, ge=0.0, le=2.0)
    max_tokens: int = pydantic.Field(default=4096, gt=0)
    request_timeout: float = pydantic.Field(
        default=120.0, gt=0, description="Per-call timeout handed to the chat clients."
    )
    max_retries: int = pydantic.Field(
        default=2, ge=0, description="Client-level retries handed to the chat clients."
    )

    embedding_model: str | None = pydantic.Field(
        default=None,
        description="OpenAI embedding model; the local hash embedder is used when unset.",
    )
    embedding_dim: int = pydantic.Field(default=1024, gt=0)

    cci_candidate_limit: int = pydantic.Field(default=40, gt=0)
    icd_candidate_limit: int = pydantic.Field(default=100, gt=0)
    top_k: int = pydantic.Field(default=20, gt=0)
    max_agent_rounds: int = pydantic.Field(default=5, gt=0)
    min_code_length: int = pydantic.Field(default=3, gt=0)

    cci_catalog_path: Path = pydantic.Field(default=Path("data/cci_catalog.jsonl"))
    icd_catalog_path: Path = pydantic.Field(default=Path("data/icd10ca_catalog.jsonl"))
    attributes_path: Path = pydantic.Field(default=Path("data/attributes.json"))

    log_level: str = pydantic.Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="CODING_", env_file=".env", extra="ignore", frozen=True
    )

    @pydantic.field_validator("cci_catalog_path", "icd_catalog_path", "attributes_path", mode="after")
    @classmethod
    def _resolve_path(cls, value: Path) -> Path:
        if value.is_absolute():
            return value
        return (PROJECT_ROOT / value).resolve()

    @pydantic.field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        return str(value).upper()


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
