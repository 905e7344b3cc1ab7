"""
Runtime configuration.

Values come from the environment (a local `.env` is loaded first) and are
collected into a single Settings object that is passed to every component.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)).strip() or default)
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)).strip() or default)
    except ValueError:
        return default


class Settings(BaseModel):
    """Assistant settings (Gemini + in-process document store)."""

    google_api_key: Optional[str] = Field(None, description="GOOGLE_API_KEY or GEMINI_API_KEY")
    model: str = Field("gemini-2.0-flash", description="Gemini chat model")
    embedding_model: str = Field("models/text-embedding-004", description="Gemini embedding model")
    embedding_dimensions: int = Field(768, description="Expected vector size for stored item embeddings")

    history_window: int = Field(8, description="Number of recent turns given to classifiers")
    history_token_budget: int = Field(1000, description="Max tokens of rendered history context")

    semantic_max_distance: float = Field(0.45, description="Max cosine distance for a semantic hit")
    semantic_top_k: int = Field(10, description="Max semantic hits used for a summary")

    storage_path: Optional[str] = Field(None, description="JSON file backing the document store")
    log_level: str = Field("INFO")


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    return Settings(
        google_api_key=os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY"),
        model=os.getenv("GEMINI_MODEL") or os.getenv("MODEL") or "gemini-2.0-flash",
        embedding_model=os.getenv("EMBEDDING_MODEL") or "models/text-embedding-004",
        embedding_dimensions=_env_int("EMBEDDING_DIMENSIONS", 768),
        history_window=_env_int("HISTORY_WINDOW", 8),
        history_token_budget=_env_int("HISTORY_TOKEN_BUDGET", 1000),
        semantic_max_distance=_env_float("SEMANTIC_MAX_DISTANCE", 0.45),
        semantic_top_k=_env_int("SEMANTIC_TOP_K", 10),
        storage_path=os.getenv("STORAGE_PATH") or None,
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )
