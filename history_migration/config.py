"""
Configuration settings for the account history migration.

Uses Pydantic Settings with three layers, each overriding the previous one:
the local JSON file, environment variables (and `.env`), and finally the
remote JSON document named by `SettingsUrl`. JSON keys are matched
case-insensitively on their colon-joined path; environment variables spell
the same path with `__` (`MtBackend__MarginTradingLive__Db__HistoryConnString`).
"""
from __future__ import annotations

import contextlib
from contextvars import ContextVar
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterator, Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from history_migration.domain.errors import ConfigurationError
from history_migration.infrastructure.config_sources import (
    FlatConfig,
    JsonDocumentSettingsSource,
    fetch_remote_document,
    flatten_json_document,
    read_json_file,
)
from history_migration.utils.logging import get_logger

DEFAULT_CONFIG_FILE = "appsettings.dev.json"

log = get_logger(__name__)

# (local file, remote document) feeding the JSON layers of the next Settings().
_documents: ContextVar[Tuple[FlatConfig, FlatConfig]] = ContextVar(
    "settings_documents", default=({}, {})
)


class Settings(BaseSettings):
    # Sources
    settings_url: Optional[str] = Field(None, alias="SettingsUrl")

    # Storage
    live_history_conn_string: Optional[str] = Field(
        None, alias="MtBackend__MarginTradingLive__Db__HistoryConnString"
    )
    demo_history_conn_string: Optional[str] = Field(
        None, alias="MtBackend__MarginTradingDemo__Db__HistoryConnString"
    )
    primary_table: str = Field("MarginTradingAccountsHistory", alias="Migration__PrimaryTable")
    backup_table: str = Field("MarginTradingAccountsHistoryBackup", alias="Migration__BackupTable")

    # Pipeline
    page_size: int = Field(1000, alias="Migration__PageSize", gt=0, le=1000)
    max_parallelism: int = Field(10, alias="Migration__MaxParallelism", gt=0)
    progress_step: int = Field(1000, alias="Migration__ProgressStep", gt=0)
    key_retry_attempts: int = Field(5, alias="Migration__KeyRetryAttempts", gt=0)

    # Application
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    json_logs: bool = Field(False, alias="JSON_LOGS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        local, remote = _documents.get()
        return (
            init_settings,
            JsonDocumentSettingsSource(settings_cls, remote),
            env_settings,
            dotenv_settings,
            JsonDocumentSettingsSource(settings_cls, local),
        )

    def environments(self) -> Dict[str, str]:
        """Configured environments mapped to their history storage connection string."""
        envs = {
            "DEMO": self.demo_history_conn_string,
            "LIVE": self.live_history_conn_string,
        }
        return {name: conn for name, conn in envs.items() if conn}


@contextlib.contextmanager
def _layered(local: FlatConfig, remote: Optional[FlatConfig] = None) -> Iterator[None]:
    token = _documents.set((local, remote or {}))
    try:
        yield
    finally:
        _documents.reset(token)


RemoteFetcher = Callable[[str], Awaitable[str]]


async def load_settings(
    config_path: Path | str = DEFAULT_CONFIG_FILE,
    fetch_remote: RemoteFetcher = fetch_remote_document,
) -> Settings:
    """
    Assemble settings from the local file, the environment and the remote document.

    `SettingsUrl` itself may come from the file or the environment; the remote
    document is fetched once it is known and layered on top.

    Raises
    ------
    ConfigurationError
        If the remote document cannot be fetched or no environment is configured.
    ConfigFormatError
        If a JSON document contains duplicate keys or unsupported tokens.
    """
    local = read_json_file(config_path)
    with _layered(local):
        settings = Settings()

    if settings.settings_url:
        log.info("Loading settings from remote document")
        remote = flatten_json_document(await fetch_remote(settings.settings_url.strip()))
        with _layered(local, remote):
            settings = Settings()

    if not settings.environments():
        raise ConfigurationError(
            "No history storage connection string configured "
            "(MtBackend:MarginTradingLive:Db:HistoryConnString / "
            "MtBackend:MarginTradingDemo:Db:HistoryConnString)"
        )
    return settings


__all__ = ["DEFAULT_CONFIG_FILE", "Settings", "load_settings"]
