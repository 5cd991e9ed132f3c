"""Configuration management for branchspace."""

from __future__ import annotations

import hashlib
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

_HOME = Path.home()
_DEFAULT_CONFIG_DIR = _HOME / ".config" / "branchspace"

CONFIG_FILE_NAME = "config.json"


class UserConfigSource(JsonConfigSettingsSource):
    """Settings from ``config.json`` in the configuration directory.

    The directory comes from an explicit ``config_dir`` argument, then
    ``BRANCHSPACE_CONFIG_DIR``, then the default. A missing file contributes
    nothing. Keys are setting names, e.g. ``port_range_start``.
    """

    def __init__(self, settings_cls: type[BaseSettings], init_kwargs: dict[str, Any]) -> None:
        config_dir = (
            init_kwargs.get("config_dir")
            or init_kwargs.get("BRANCHSPACE_CONFIG_DIR")
            or os.environ.get("BRANCHSPACE_CONFIG_DIR")
            or _DEFAULT_CONFIG_DIR
        )
        super().__init__(settings_cls, json_file=Path(config_dir).expanduser() / CONFIG_FILE_NAME)


class BranchspaceSettings(BaseSettings):
    """Runtime configuration from environment variables, an optional .env file, and config.json."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    config_dir: Path = Field(
        default=_DEFAULT_CONFIG_DIR, validation_alias="BRANCHSPACE_CONFIG_DIR"
    )
    cache_dir: Path = Field(
        default=_HOME / ".cache" / "branchspace", validation_alias="BRANCHSPACE_CACHE_DIR"
    )
    clones_dir: Path = Field(
        default=_HOME / ".local" / "share" / "branchspace" / "clone",
        validation_alias="BRANCHSPACE_CLONES_DIR",
    )
    worktrees_dir: Path = Field(
        default=_HOME / ".local" / "share" / "branchspace" / "worktree",
        validation_alias="BRANCHSPACE_WORKTREES_DIR",
    )
    sessions_dir: Path | None = Field(default=None, validation_alias="BRANCHSPACE_SESSIONS_DIR")

    port_range_start: int = Field(default=13000, validation_alias="BRANCHSPACE_PORT_RANGE_START")
    port_range_end: int = Field(default=13099, validation_alias="BRANCHSPACE_PORT_RANGE_END")
    lock_stale_seconds: float = Field(default=60.0, validation_alias="BRANCHSPACE_LOCK_STALE_SECONDS")
    stale_days: float = Field(default=7.0, validation_alias="BRANCHSPACE_STALE_DAYS")
    job_retention_seconds: float = Field(
        default=3600.0, validation_alias="BRANCHSPACE_JOB_RETENTION_SECONDS"
    )
    failed_job_retention_seconds: float = Field(
        default=86400.0, validation_alias="BRANCHSPACE_FAILED_JOB_RETENTION_SECONDS"
    )
    interactive_budget_seconds: float = Field(
        default=2.0, validation_alias="BRANCHSPACE_INTERACTIVE_BUDGET_SECONDS"
    )

    devcontainer_path: str | None = Field(default=None, validation_alias="BRANCHSPACE_DEVCONTAINER_PATH")
    docker_path: str | None = Field(default=None, validation_alias="BRANCHSPACE_DOCKER_PATH")
    git_path: str | None = Field(default=None, validation_alias="BRANCHSPACE_GIT_PATH")
    host_commands_path: Path | None = Field(
        default=None, validation_alias="BRANCHSPACE_HOST_COMMANDS_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="BRANCHSPACE_LOG_LEVEL")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        init_kwargs = getattr(init_settings, "init_kwargs", {})
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            UserConfigSource(settings_cls, init_kwargs),
            file_secret_settings,
        )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "BRANCHSPACE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("port_range_start", "port_range_end")
    @classmethod
    def _validate_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError("Port range bounds must be between 1 and 65535")
        return value

    @field_validator("lock_stale_seconds", "stale_days", "interactive_budget_seconds")
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Thresholds must be > 0")
        return value

    @model_validator(mode="after")
    def _validate_range(self) -> "BranchspaceSettings":
        if self.port_range_start > self.port_range_end:
            raise ValueError("BRANCHSPACE_PORT_RANGE_START must be <= BRANCHSPACE_PORT_RANGE_END")
        return self

    @property
    def sessions_path(self) -> Path:
        return self.sessions_dir or self.cache_dir / "sessions"

    @property
    def ports_file(self) -> Path:
        return self.cache_dir / "ports.json"

    @property
    def overrides_dir(self) -> Path:
        return self.cache_dir / "overrides"

    @property
    def jobs_dir(self) -> Path:
        return self.cache_dir / "jobs"


def path_id(path: str | Path) -> str:
    """Return a deterministic identifier for a workspace path."""

    return hashlib.md5(str(path).encode("utf-8")).hexdigest()


def ensure_dirs(settings: BranchspaceSettings) -> None:
    """Create the configuration, cache, and state directories."""

    for directory in (
        settings.config_dir,
        settings.cache_dir,
        settings.overrides_dir,
        settings.jobs_dir,
        settings.sessions_path,
    ):
        directory.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> BranchspaceSettings:
    """Return cached settings instance."""

    settings = BranchspaceSettings()
    settings.config_dir = settings.config_dir.expanduser().resolve()
    settings.cache_dir = settings.cache_dir.expanduser().resolve()
    settings.clones_dir = settings.clones_dir.expanduser().resolve()
    settings.worktrees_dir = settings.worktrees_dir.expanduser().resolve()
    if settings.sessions_dir is not None:
        settings.sessions_dir = settings.sessions_dir.expanduser().resolve()
    if settings.host_commands_path is not None:
        settings.host_commands_path = settings.host_commands_path.expanduser().resolve()
    return settings


__all__ = [
    "BranchspaceSettings",
    "CONFIG_FILE_NAME",
    "UserConfigSource",
    "ensure_dirs",
    "get_settings",
    "path_id",
]
