"""
Runtime configuration.

Values come from the environment (optionally a local `.env` file). Provider
keys follow the same conventions as the rest of the backend: GEMINI_API_KEYS
may hold several comma/newline separated keys tried in order.
"""
import os
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

GROQ_API_URL = "https://api.groq.com/openai/v1/chat/completions"
GROQ_DEFAULT_MODEL = "meta-llama/llama-4-scout-17b-16e-instruct"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
GEMINI_DEFAULT_MODEL = "gemini-2.5-flash"
HUGGINGFACE_API_URL = "https://router.huggingface.co/hf-inference/models"
HUGGINGFACE_DEFAULT_MODELS = ["microsoft/resnet-50", "google/vit-base-patch16-224"]


def _split_tokens(raw: str) -> List[str]:
    """Split a comma/newline separated env value.

    Only the first whitespace-delimited token per line is kept so trailing
    comments never leak into requests.
    """
    tokens: List[str] = []
    for chunk in (raw or "").replace(",", "\n").splitlines():
        token = chunk.strip()
        if not token:
            continue
        tokens.append(token.split()[0].strip())
    return tokens


def get_gemini_api_keys() -> List[str]:
    raw = os.getenv("GEMINI_API_KEYS", "") or os.getenv("GEMINI_API_KEY", "") or ""
    return _split_tokens(raw)


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


class Settings(BaseModel):
    groq_api_key: str = ""
    groq_api_url: str = GROQ_API_URL
    groq_model: str = GROQ_DEFAULT_MODEL
    gemini_api_keys: List[str] = Field(default_factory=list)
    gemini_api_base: str = GEMINI_API_BASE
    gemini_model: str = GEMINI_DEFAULT_MODEL
    gemini_max_attempts: int = 3
    gemini_backoff_seconds: float = 2.0
    huggingface_api_key: str = ""
    huggingface_api_url: str = HUGGINGFACE_API_URL
    huggingface_models: List[str] = Field(default_factory=lambda: list(HUGGINGFACE_DEFAULT_MODELS))
    provider_timeout_seconds: float = 60.0
    default_provider: str = "groq"
    db_path: str = "analyses.db"
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Build settings from the current environment."""
    hf_models = _split_tokens(os.getenv("HUGGINGFACE_MODELS", "")) or list(HUGGINGFACE_DEFAULT_MODELS)
    return Settings(
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", GROQ_DEFAULT_MODEL),
        gemini_api_keys=get_gemini_api_keys(),
        gemini_model=os.getenv("GEMINI_MODEL", GEMINI_DEFAULT_MODEL),
        gemini_max_attempts=max(1, _env_int("GEMINI_MAX_ATTEMPTS", 3)),
        gemini_backoff_seconds=max(0.0, _env_float("GEMINI_BACKOFF_SECONDS", 2.0)),
        huggingface_api_key=os.getenv("HUGGINGFACE_API_KEY", ""),
        huggingface_api_url=os.getenv("HUGGINGFACE_API_URL", HUGGINGFACE_API_URL),
        huggingface_models=hf_models,
        provider_timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS", 60.0),
        default_provider=os.getenv("DEFAULT_PROVIDER", "groq"),
        db_path=os.getenv("ANALYSIS_DB_PATH", os.path.join(os.getcwd(), "analyses.db")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
