"""Environment-driven settings for the chat service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

PERSISTENCE_BACKENDS = ("local", "remote")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Runtime configuration.

    Attributes:
        persistence: `local` (device slots) or `remote` (SQLite, per principal).
        database_dir: Directory for `app.db` when `persistence` is `remote`.
        local_store_dir: Directory for the local slot files.
        openai_api_key: Bearer credential for completion requests.
        openai_base_url: Optional endpoint override.
        openai_max_retries: Retries the SDK performs on 429/5xx.
        model: Initial completion model.
        streaming: Default streaming mode for new turns.
        principal_id: Identity already resolved by the sign-in collaborator.
        log_level: Root logging level name.
    """

    persistence: str = "local"
    database_dir: Optional[str] = None
    local_store_dir: str = "~/.chat-stream-sync"
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    openai_max_retries: int = 2
    model: str = "gpt-4o"
    streaming: bool = True
    principal_id: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """Build settings from the environment (and `.env` when present)."""
        if dotenv:
            load_dotenv()

        persistence = (os.getenv("CHAT_PERSISTENCE") or "local").strip().lower()
        if persistence not in PERSISTENCE_BACKENDS:
            raise RuntimeError(
                f"CHAT_PERSISTENCE={persistence!r} is not supported; use one of {PERSISTENCE_BACKENDS}."
            )

        try:
            max_retries = int(os.getenv("OPENAI_MAX_RETRIES", "2"))
        except ValueError as exc:
            raise RuntimeError("OPENAI_MAX_RETRIES must be an integer") from exc

        return cls(
            persistence=persistence,
            database_dir=os.getenv("DATABASE_DIR") or None,
            local_store_dir=os.getenv("LOCAL_STORE_DIR") or cls.local_store_dir,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            openai_max_retries=max_retries,
            model=os.getenv("OPENAI_MODEL") or cls.model,
            streaming=_env_bool("CHAT_STREAMING", True),
            principal_id=os.getenv("CHAT_PRINCIPAL_ID") or None,
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )

    @property
    def local_store_path(self) -> Path:
        return Path(self.local_store_dir).expanduser()
