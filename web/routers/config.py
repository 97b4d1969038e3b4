"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from bundlepipe.config import Settings
from web.deps import get_app_settings

router = APIRouter()


@router.get("")
def get_config(settings: Settings = Depends(get_app_settings)) -> dict[str, Any]:
    """Get effective configuration.

    Returns:
        Current configuration as JSON.
    """
    return {
        "artifacts_dir": str(settings.artifacts_dir),
        "cache_dir": str(settings.cache_dir),
        "log_level": settings.log_level,
        "cdn_base": settings.cdn_base,
        "allow_any_npm": settings.allow_any_npm,
        "cdn_allow": list(settings.cdn_allow),
        "build_mode": settings.build_mode,
        "build_timeout": settings.build_timeout,
        "allow_scripts": settings.allow_scripts,
        "worker_enabled": settings.worker_enabled,
        "queue_enabled": bool(settings.worker_enabled and settings.queue_url),
        "max_concurrent_builds": settings.max_concurrent_builds,
        "require_publish_approval": settings.require_publish_approval,
        "archive_ttl_days": settings.archive_ttl_days,
    }
