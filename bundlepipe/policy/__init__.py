"""Serve-time security policy module.

This module handles:
- Reading a build's manifest and permission flags
- Deriving Content-Security-Policy, Permissions-Policy and
  Referrer-Policy headers from them
"""

from bundlepipe.policy.headers import PolicyHeaders, derive_headers, normalize_domains

__all__ = ["PolicyHeaders", "derive_headers", "normalize_domains"]
