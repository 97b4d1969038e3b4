"""Configuration settings for bundlepipe.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default resolver fetch cache directory."""
    return Path.home() / ".cache" / "bundlepipe" / "cdn"


def _default_artifacts_dir() -> Path:
    """Return the default root for per-build directories."""
    return Path.home() / ".local" / "share" / "bundlepipe" / "builds"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "bundlepipe" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the BUNDLEPIPE_
    prefix. List and dict values are read as JSON from the environment.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUNDLEPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    artifacts_dir: Path = Field(
        default_factory=_default_artifacts_dir,
        description="Root directory holding one directory per build id",
    )
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Resolver fetch cache directory",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for job and listing records",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Import resolution
    cdn_base: str = Field(
        default="https://esm.sh",
        description="CDN mirror base for resolved module URLs",
    )
    allow_any_npm: bool = Field(
        default=True,
        description="Allow any package name; when false cdn_allow is enforced",
    )
    cdn_allow: list[str] = Field(
        default_factory=list,
        description="Package names permitted when allow_any_npm is false",
    )
    cdn_pin: dict[str, str] = Field(
        default_factory=dict,
        description="Package name to exact version or URL",
    )
    fetch_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single module fetch (seconds)",
    )
    fetch_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per module fetch on transient failure",
    )
    fetch_backoff: float = Field(
        default=0.5,
        ge=0,
        description="Base backoff between fetch attempts (seconds)",
    )

    # Inline bundler
    esbuild_bin: str = Field(
        default="esbuild",
        description="esbuild executable used to transpile JSX/TSX sources",
    )
    jsx_dev: bool = Field(
        default=False,
        description="Emit development JSX runtime calls",
    )
    bundle_target: str = Field(
        default="es2018",
        description="Language target for transpiled output",
    )

    # Project build executor
    build_mode: Literal["native", "container"] = Field(
        default="native",
        description="Project build execution strategy",
    )
    build_timeout: float = Field(
        default=600.0,
        gt=0,
        description="Wall-clock timeout for install+build (seconds)",
    )
    allow_scripts: bool = Field(
        default=False,
        description="Run dependency lifecycle scripts during install",
    )
    container_runtime: str = Field(
        default="docker",
        description="Container runtime executable",
    )
    container_image: str = Field(
        default="node:20-bookworm-slim",
        description="Image used for container builds",
    )
    container_memory: str = Field(default="2g", description="Container memory cap")
    container_cpus: str = Field(default="1.5", description="Container CPU cap")
    container_pids_limit: int = Field(
        default=256,
        ge=16,
        description="Container process count cap",
    )

    # Orchestrator
    worker_enabled: bool = Field(
        default=False,
        description="Enable the asynchronous build worker",
    )
    queue_url: str | None = Field(
        default=None,
        description="Database URL of the durable build queue",
    )
    max_concurrent_builds: int = Field(
        default=2,
        ge=1,
        le=16,
        description="Worker threads pulling from the build queue",
    )
    worker_poll_interval: float = Field(
        default=1.0,
        gt=0,
        description="Idle worker queue polling interval (seconds)",
    )
    feed_poll_interval: float = Field(
        default=1.0,
        gt=0,
        description="Status feed polling interval (seconds)",
    )
    feed_keepalive_interval: float = Field(
        default=20.0,
        gt=0,
        description="Status feed keep-alive interval (seconds)",
    )
    require_publish_approval: bool = Field(
        default=True,
        description="Hold successful builds in pending_review for moderation",
    )
    error_message_max_length: int = Field(
        default=2000,
        ge=64,
        description="Maximum stored length of a job error message",
    )

    # Listings and quota
    archive_ttl_days: int = Field(
        default=30,
        ge=1,
        description="Retention window for archived versions",
    )
    max_apps_per_user: int = Field(default=2, ge=0)
    gold_max_apps_per_user: int = Field(default=10, ge=0)
    publish_rate_limit_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Minimum interval between publishes by one user",
    )

    # Serving
    web_base: str | None = Field(
        default=None,
        description="Front-end origin allowed to frame served builds",
    )
    public_base: str = Field(
        default="http://127.0.0.1:8788",
        description="Public base URL of this API",
    )
    always_allowed_origins: list[str] = Field(
        default_factory=list,
        description="Origins always allowed for scripts, frames and connections",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
