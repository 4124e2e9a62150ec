from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str) -> str | None:
    # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
    for candidate in (name, f"\ufeff{name}"):
        raw = os.getenv(candidate)
        if raw is not None:
            return raw
    return None


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_lookup(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = _env_lookup(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_optional_int(name: str, default: int | None = None) -> int | None:
    raw = _env_lookup(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"", "none", "null"}:
        return None
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env_lookup(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = _env_lookup(name)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class Settings:
    sqlite_path: Path
    sqlite_vector_extension_path: str
    embedding_dim: int
    sqlite_busy_timeout_ms: int
    memory_startup_cleanup: bool

    memory_default_importance: int
    memory_default_ttl_days: int | None
    memory_prompt_min_importance: int
    memory_prompt_max_items: int
    memory_digest_source_min_importance: int
    memory_digest_source_max_items_per_user: int
    memory_digest_prune_below_importance: int
    memory_store_enabled: bool
    memory_store_min_importance: int

    deepseek_api_key: str
    deepseek_base_url: str
    deepseek_model: str
    deepseek_timeout_seconds: int
    digest_temperature: float

    profile_command: str
    profile_max_input_chars: int

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/chat_memory.sqlite3")).expanduser(),
            sqlite_vector_extension_path=_env_str("SQLITE_VECTOR_EXTENSION_PATH", ""),
            embedding_dim=_env_int("EMBEDDING_DIM", 1536),
            sqlite_busy_timeout_ms=_env_int("MEMORY_SQLITE_BUSY_TIMEOUT_MS", 5000),
            memory_startup_cleanup=_env_bool("MEMORY_STARTUP_CLEANUP", True),
            memory_default_importance=_env_int("MEMORY_DEFAULT_IMPORTANCE", 5),
            memory_default_ttl_days=_env_optional_int("MEMORY_DEFAULT_TTL_DAYS", None),
            memory_prompt_min_importance=_env_int("MEMORY_PROMPT_MIN_IMPORTANCE", 1),
            memory_prompt_max_items=_env_int("MEMORY_PROMPT_MAX_ITEMS", 10),
            memory_digest_source_min_importance=_env_int("MEMORY_DIGEST_SOURCE_MIN_IMPORTANCE", 1),
            memory_digest_source_max_items_per_user=_env_int("MEMORY_DIGEST_SOURCE_MAX_ITEMS_PER_USER", 60),
            memory_digest_prune_below_importance=_env_int("MEMORY_DIGEST_PRUNE_BELOW_IMPORTANCE", 3),
            memory_store_enabled=_env_bool("MEMORY_STORE_ENABLED", True),
            memory_store_min_importance=_env_int("MEMORY_STORE_MIN_IMPORTANCE", 1),
            deepseek_api_key=_env_str("DEEPSEEK_API_KEY", ""),
            deepseek_base_url=_env_str("DEEPSEEK_BASE_URL", "https://api.deepseek.com"),
            deepseek_model=_env_str("DEEPSEEK_MODEL", "deepseek-chat"),
            deepseek_timeout_seconds=_env_int("DEEPSEEK_TIMEOUT_SECONDS", 60),
            digest_temperature=_env_float("DIGEST_TEMPERATURE", 0.7),
            profile_command=_env_str("PROFILE_COMMAND", "setprofile"),
            profile_max_input_chars=_env_int("PROFILE_MAX_INPUT_CHARS", 200),
        )

    def validate(self, *, require_llm: bool = False) -> None:
        if self.embedding_dim < 1:
            raise ValueError("EMBEDDING_DIM must be >= 1")
        if not 0 <= self.sqlite_busy_timeout_ms <= 60000:
            raise ValueError("MEMORY_SQLITE_BUSY_TIMEOUT_MS must be between 0 and 60000")

        for name, value in (
            ("MEMORY_DEFAULT_IMPORTANCE", self.memory_default_importance),
            ("MEMORY_PROMPT_MIN_IMPORTANCE", self.memory_prompt_min_importance),
            ("MEMORY_DIGEST_SOURCE_MIN_IMPORTANCE", self.memory_digest_source_min_importance),
            ("MEMORY_DIGEST_PRUNE_BELOW_IMPORTANCE", self.memory_digest_prune_below_importance),
            ("MEMORY_STORE_MIN_IMPORTANCE", self.memory_store_min_importance),
        ):
            if not 1 <= value <= 10:
                raise ValueError(f"{name} must be between 1 and 10")
        if self.memory_default_ttl_days is not None and self.memory_default_ttl_days < 1:
            raise ValueError("MEMORY_DEFAULT_TTL_DAYS must be >= 1 or empty")
        if not 1 <= self.memory_prompt_max_items <= 100:
            raise ValueError("MEMORY_PROMPT_MAX_ITEMS must be between 1 and 100")
        if not 1 <= self.memory_digest_source_max_items_per_user <= 200:
            raise ValueError("MEMORY_DIGEST_SOURCE_MAX_ITEMS_PER_USER must be between 1 and 200")

        if not self.profile_command.strip():
            raise ValueError("PROFILE_COMMAND cannot be empty")
        if self.profile_max_input_chars < 1:
            raise ValueError("PROFILE_MAX_INPUT_CHARS must be >= 1")

        if self.deepseek_timeout_seconds < 5:
            raise ValueError("DEEPSEEK_TIMEOUT_SECONDS must be >= 5")
        if not 0.0 <= self.digest_temperature <= 2.0:
            raise ValueError("DIGEST_TEMPERATURE must be between 0 and 2")
        if require_llm:
            if not self.deepseek_api_key:
                raise ValueError("DEEPSEEK_API_KEY is required")
            if self.deepseek_api_key == "put_your_deepseek_api_key_here":
                raise ValueError("DEEPSEEK_API_KEY is still placeholder")
            if not self.deepseek_model:
                raise ValueError("DEEPSEEK_MODEL cannot be empty")
