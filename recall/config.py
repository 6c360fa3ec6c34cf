"""
Process configuration for recall.

Values come from the environment, optionally seeded from a `.env` file found
from the current working directory. Settings are read once and cached; tests
call `reset_settings()` after changing the environment.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def _first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


@dataclass(frozen=True)
class Settings:
    workspace_dir: Path
    database_url: str

    llm_api_base: str
    llm_api_key: str
    llm_model: str
    llm_max_tokens: int
    llm_timeout_sec: float

    vector_url: str
    vector_token: str
    vector_timeout_sec: float

    command_timeout_sec: float

    embed_worker_enabled: bool
    embed_queue_maxsize: int
    embed_drain_timeout_sec: float

    log_level: str
    log_format: str

    @property
    def context_dir(self) -> Path:
        return self.workspace_dir / "context"

    @property
    def skills_dir(self) -> Path:
        return self.workspace_dir / "skills"

    @property
    def bin_dir(self) -> Path:
        return self.workspace_dir / "bin"

    @property
    def legacy_sessions_dir(self) -> Path:
        return self.workspace_dir / "sessions"

    @property
    def mirror_file(self) -> Path:
        return self.workspace_dir / "MEMORY.md"


def load_settings() -> Settings:
    workspace = Path(
        _first_env(["RECALL_WORKSPACE"], default="workspace")
    ).expanduser().resolve()
    database_url = _first_env(
        ["DATABASE_URL"], default=f"sqlite+aiosqlite:///{workspace / 'recall.db'}"
    )
    return Settings(
        workspace_dir=workspace,
        database_url=database_url,
        llm_api_base=_first_env(["LLM_API_BASE", "OPENAI_BASE_URL", "OPENAI_API_BASE"]),
        llm_api_key=_first_env(["LLM_API_KEY", "OPENAI_API_KEY"]),
        llm_model=_first_env(["LLM_MODEL", "OPENAI_MODEL"]),
        llm_max_tokens=_env_int("LLM_MAX_TOKENS", 4096, minimum=1),
        llm_timeout_sec=_env_float("LLM_TIMEOUT_SEC", 120.0, minimum=1.0),
        vector_url=_first_env(["UPSTASH_VECTOR_REST_URL", "SEMANTIC_INDEX_URL"]),
        vector_token=_first_env(["UPSTASH_VECTOR_REST_TOKEN", "SEMANTIC_INDEX_TOKEN"]),
        vector_timeout_sec=_env_float("SEMANTIC_INDEX_TIMEOUT_SEC", 8.0, minimum=1.0),
        command_timeout_sec=_env_float("TOOL_COMMAND_TIMEOUT_SEC", 30.0, minimum=1.0),
        embed_worker_enabled=_env_bool("RUNTIME_EMBED_WORKER_ENABLED", True),
        embed_queue_maxsize=_env_int("RUNTIME_EMBED_QUEUE_MAXSIZE", 256, minimum=8),
        embed_drain_timeout_sec=_env_float(
            "RUNTIME_EMBED_DRAIN_TIMEOUT_SEC", 5.0, minimum=0.0
        ),
        log_level=_first_env(["LOG_LEVEL"], default="WARNING").upper(),
        log_format=_first_env(["LOG_FORMAT"], default="console").lower(),
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide Settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
