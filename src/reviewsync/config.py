"""Configuration management with pydantic-settings for reviewsync.

Loads from (in order of precedence):
1. Environment variables (highest priority)
2. .env file in the working directory
3. Default values (lowest priority)

Components never read the global accessor themselves: the service wiring
calls get_config() once and hands plain values to each constructor.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

__all__ = [
    "SOURCE_GERRIT",
    "SOURCE_GITHUB",
    "SyncConfig",
    "get_config",
    "reset_config",
]

SOURCE_GERRIT = "gerrit"
SOURCE_GITHUB = "github"


class SyncConfig(BaseSettings):
    """Configuration for the review sync engine.

    All threshold values are validated on load.

    Attributes:
        source: Which review server to mirror (gerrit or github)
        gerrit_base_url: Gerrit REST base URL
        gerrit_project: Gerrit project (repository) name
        gerrit_branches: Branch globs to keep (release-branch.go1.* style)
        gerrit_statuses: Change statuses to query
        github_repo: Target repository in owner/repo format
        sync_default_window_days: Look-back window for first/forced-full syncs
        sync_safety_window_minutes: Overlap subtracted from the stored cursor
        sync_max_concurrency: Gate capacity for concurrent sync jobs
        diff_max_size_bytes: Diffs at or above this size are stored as stats only
        update_check_ttl_seconds: Freshness window of cached update probes
        analysis_max_retries: Retries after the first analysis attempt
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        validate_default=True,
        frozen=True,
        extra="ignore",
    )

    source: str = Field(
        default=SOURCE_GERRIT,
        description="Review server type: gerrit or github",
    )

    # --- Gerrit ---
    gerrit_base_url: str = Field(
        default="https://go-review.googlesource.com",
        description="Gerrit REST base URL",
    )
    gerrit_project: str = Field(
        default="go",
        description="Gerrit project to mirror",
    )
    gerrit_username: str = Field(
        default="",
        description="HTTP username (enables authenticated /a/ endpoints)",
    )
    gerrit_password: SecretStr = Field(
        default=SecretStr(""),
        description="HTTP password generated in Gerrit settings",
    )
    gerrit_branches: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["master", "release-branch.go1.*"],
        description="Comma-separated branch globs to keep",
    )
    gerrit_statuses: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["open", "merged"],
        description="Comma-separated change statuses to query",
    )

    # --- GitHub ---
    github_token: SecretStr = Field(
        default=SecretStr(""),
        description="GitHub token with pull_requests:read",
    )
    github_repo: str = Field(
        default="",
        description="Target repository (owner/repo)",
    )
    github_base_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST base URL",
    )
    github_requests_per_hour: int = Field(
        default=4500,
        ge=60,
        le=15000,
        description="Client-side request budget (kept below the 5000/h PAT limit)",
    )
    github_burst: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Token bucket burst size",
    )
    github_min_remaining: int = Field(
        default=100,
        ge=0,
        le=5000,
        description="Sleep until quota reset when fewer requests remain",
    )

    # --- Sync ---
    sync_default_window_days: int = Field(
        default=30,
        ge=1,
        le=3650,
        description="Look-back window for the first sync and forced full syncs",
    )
    sync_safety_window_minutes: int = Field(
        default=10,
        ge=1,
        le=1440,
        description="Overlap subtracted from the stored cursor on incremental syncs",
    )
    sync_page_size: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Records requested per listing page",
    )
    sync_max_pages: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Abort a listing that keeps returning full pages past this cap",
    )
    sync_max_concurrency: int = Field(
        default=3,
        ge=1,
        le=32,
        description="Maximum concurrent sync jobs",
    )
    sync_timeout_seconds: int = Field(
        default=600,
        ge=10,
        le=7200,
        description="Timeout for incremental and single-change syncs",
    )
    sync_full_timeout_seconds: int = Field(
        default=900,
        ge=10,
        le=14400,
        description="Timeout for forced full syncs",
    )
    sync_interval_seconds: int = Field(
        default=1800,
        ge=60,
        le=86400,
        description="Scheduler interval (default: 1800 = 30 min)",
    )
    sync_scheduler_enabled: bool = Field(
        default=True,
        description="Run periodic syncs in service mode",
    )

    # --- Diff policy ---
    diff_max_size_bytes: int = Field(
        default=512000,
        ge=1024,
        le=104857600,
        description="Diffs at or above this size are stored as stats only",
    )
    diff_exclude_paths: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Comma-separated path prefixes whose diffs are never fetched",
    )
    diff_exclude_patterns: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Comma-separated regular expressions whose matches are never diffed",
    )

    # --- Update check ---
    update_check_ttl_seconds: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Freshness window of cached update probes",
    )
    update_check_page_size: int = Field(
        default=25,
        ge=1,
        le=500,
        description="Records fetched by the lightweight dashboard probe",
    )

    # --- Analysis ---
    analysis_max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries after the first failed analysis attempt",
    )
    analysis_base_backoff_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Backoff before retry n is base * 2^(n-1)",
    )
    analysis_timeout_seconds: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Timeout of a single analysis attempt",
    )

    # --- Storage & logging ---
    database_path: Path = Field(
        default=Path("reviewsync.db"),
        description="SQLite database file",
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level",
    )
    log_format: str = Field(
        default="json",
        pattern="^(json|text)$",
        description="Log format (json for production, text for development)",
    )

    @field_validator("source", mode="before")
    @classmethod
    def normalize_source(cls, v):
        """Lower-case and validate the source name."""
        if isinstance(v, str):
            v = v.strip().lower()
        if v not in (SOURCE_GERRIT, SOURCE_GITHUB):
            raise ValueError("SOURCE must be gerrit or github")
        return v

    @field_validator(
        "gerrit_branches",
        "gerrit_statuses",
        "diff_exclude_paths",
        "diff_exclude_patterns",
        mode="before",
    )
    @classmethod
    def parse_comma_list(cls, v):
        """Parse comma-separated string into list for list-valued env vars."""
        if isinstance(v, str):
            if v.startswith("["):
                return json.loads(v)  # NoDecode skips the settings-level JSON parse
            return [p.strip() for p in v.split(",") if p.strip()]
        return v

    @model_validator(mode="after")
    def validate_windows(self) -> "SyncConfig":
        """Safety window must be shorter than the default window."""
        if self.sync_safety_window_minutes >= self.sync_default_window_days * 24 * 60:
            raise ValueError(
                "SYNC_SAFETY_WINDOW_MINUTES must be shorter than SYNC_DEFAULT_WINDOW_DAYS"
            )
        if self.sync_full_timeout_seconds < self.sync_timeout_seconds:
            raise ValueError(
                f"SYNC_FULL_TIMEOUT_SECONDS ({self.sync_full_timeout_seconds}) "
                f"must be >= SYNC_TIMEOUT_SECONDS ({self.sync_timeout_seconds})"
            )
        return self

    @model_validator(mode="after")
    def validate_github_config(self) -> "SyncConfig":
        """Validate GitHub config is complete when it is the source."""
        if self.source == SOURCE_GITHUB:
            if not self.github_token.get_secret_value():
                raise ValueError("GITHUB_TOKEN required when SOURCE=github")
            if not self.github_repo:
                raise ValueError("GITHUB_REPO required when SOURCE=github")
            if "/" not in self.github_repo:
                raise ValueError("GITHUB_REPO must be in owner/repo format")
        return self

    @property
    def repository_name(self) -> str:
        """Name of the mirrored repository row in the local store."""
        if self.source == SOURCE_GITHUB:
            return self.github_repo
        return self.gerrit_project


@lru_cache(maxsize=1)
def get_config() -> SyncConfig:
    """Get global configuration singleton.

    First call loads from environment + .env file, subsequent calls return
    the cached instance.

    Raises:
        ValidationError: If configuration values are invalid.
    """
    return SyncConfig()


def reset_config() -> None:
    """Reset configuration singleton for testing.

    Warning:
        Only use in test code. Production code should not reset config.
    """
    get_config.cache_clear()
