"""Publish module.

This module handles:
- Pre-flight guards (dangerous patterns, rate limit, quota)
- Persisting a submission and starting its build
"""

from bundlepipe.publish.guards import (
    DangerousPatternError,
    QuotaExceededError,
    RateLimitedError,
)
from bundlepipe.publish.models import RateLimitEntry

__all__ = [
    # Models
    "RateLimitEntry",
    # Guards module
    "DangerousPatternError",
    "QuotaExceededError",
    "RateLimitedError",
]
