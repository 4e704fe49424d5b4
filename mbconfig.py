"""
Settings and logging setup for masterbase.

Settings come from MASTERBASE_* environment variables (and an optional .env
file in the working directory). The remote blob credentials also accept the
unprefixed SITE_ID / NETLIFY_AUTH_TOKEN names used by deploy tooling.
"""

import logging
import sys
from functools import lru_cache
from pathlib import Path
from typing import Optional

import structlog
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chunkstore import DEFAULT_CHUNK_CAPACITY


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MASTERBASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        populate_by_name=True,
    )

    root_dir: Path = Path(".")
    chunk_capacity: int = Field(DEFAULT_CHUNK_CAPACITY, ge=1)
    eco_path: Path = Path("eco")
    key_prefix: str = "indexes/"

    # Remote blob store
    blob_api_url: str = "https://api.netlify.com"
    blob_store_name: str = "master-games"
    site_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("MASTERBASE_SITE_ID", "SITE_ID", "site_id"))
    auth_token: Optional[str] = Field(
        None, validation_alias=AliasChoices(
            "MASTERBASE_AUTH_TOKEN", "NETLIFY_AUTH_TOKEN", "auth_token"))
    remote_dir: Optional[Path] = None

    # Upstream fetch
    source_base_url: str = "https://www.pgnmentor.com"
    user_agent: str = "masterbase/0.1 (+chess master game index)"
    request_timeout_seconds: float = 30.0
    throttle_seconds: float = 2.0
    checkpoint_every: int = Field(10, ge=1)
    probe_workers: int = Field(8, ge=1)
    max_files: Optional[int] = Field(None, ge=1)

    log_level: str = "INFO"
    log_json: bool = False

    @field_validator('key_prefix')
    @classmethod
    def _prefix_ends_with_slash(cls, v: str) -> str:
        if v and not v.endswith('/'):
            return v + '/'
        return v

    # Workspace layout
    @property
    def index_dir(self) -> Path:
        return self.root_dir / "indexes"

    @property
    def backups_dir(self) -> Path:
        return self.root_dir / "backups"

    @property
    def downloads_dir(self) -> Path:
        return self.root_dir / "downloads"

    def resolve_eco_path(self) -> Path:
        """A relative catalog path is taken from the workspace root."""
        if self.eco_path.is_absolute():
            return self.eco_path
        return self.root_dir / self.eco_path


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def _normalize_log_level(level: Optional[str]) -> int:
    if not level:
        return logging.INFO
    return logging._nameToLevel.get(level.strip().upper(), logging.INFO)


def _stderr_logger(*args):
    # Looked up per call so a replaced sys.stderr is honoured
    return structlog.PrintLogger(sys.stderr)


def configure_logging(level: Optional[str] = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog once for the process.

    Events go to stderr so command output on stdout stays clean. The JSON
    renderer is for unattended runs; the console renderer for people.
    """
    resolved_level = _normalize_log_level(level)
    logging.basicConfig(level=resolved_level)
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(resolved_level),
        context_class=dict,
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )
