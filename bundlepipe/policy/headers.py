"""Security header derivation.

Headers are a pure function of a build's on-disk ``manifest.json`` and
``policy.json`` plus settings. Missing or malformed artifacts fall back
to the most restrictive policy: same-origin only, every optional
permission denied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from bundlepipe.builds.artifacts import MANIFEST_FILE, POLICY_FILE, get_build_dir, read_json
from bundlepipe.config import get_settings
from bundlepipe.types import NetworkPolicy

if TYPE_CHECKING:
    from bundlepipe.config import Settings

logger = logging.getLogger(__name__)

SELF = "'self'"

# Used for connect-src when OPEN_NET declares no domains
OPEN_NET_FALLBACK = "https:"

# Permissions-Policy feature name -> policy.json flag
PERMISSION_FEATURES = (
    ("camera", "camera"),
    ("microphone", "microphone"),
    ("geolocation", "geolocation"),
    ("clipboard-read", "clipboardRead"),
    ("clipboard-write", "clipboardWrite"),
)


@dataclass(frozen=True)
class PolicyHeaders:
    """Derived security headers of one build."""

    csp: str
    permissions_policy: str
    referrer_policy: str = "no-referrer"

    def to_headers(self) -> dict[str, str]:
        """Return HTTP response headers."""
        return {
            "Content-Security-Policy": self.csp,
            "Permissions-Policy": self.permissions_policy,
            "Referrer-Policy": self.referrer_policy,
        }

    def to_dict(self) -> dict[str, str]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "csp": self.csp,
            "permissionsPolicy": self.permissions_policy,
            "referrerPolicy": self.referrer_policy,
        }


def origin_of(value: str, secure: bool = False) -> str | None:
    """Return the scheme://host[:port] origin of a URL or bare host.

    Args:
        value: URL or bare host name.
        secure: Upgrade http:// to https://.

    Returns:
        Origin string, or None if the value is not an http(s) origin.
    """
    value = value.strip()
    if not value:
        return None
    if not value.startswith(("http://", "https://")):
        if "://" in value:
            return None
        value = f"https://{value}"
    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError:
        return None
    if not parts.hostname or any(c in parts.hostname for c in " *'\";"):
        return None
    scheme = "https" if secure else parts.scheme
    origin = f"{scheme}://{parts.hostname}"
    if port is not None:
        origin += f":{port}"
    return origin


def normalize_domains(domains: Any) -> list[str]:
    """Turn declared domains into unique https origins, dropping invalid ones."""
    if not isinstance(domains, list):
        return []
    origins: list[str] = []
    for domain in domains:
        if not isinstance(domain, str):
            continue
        origin = origin_of(domain, secure=True)
        if origin is None:
            logger.debug("Dropping invalid network domain %r", domain)
            continue
        if origin not in origins:
            origins.append(origin)
    return origins


def _join(*parts: str | None) -> str:
    seen: list[str] = []
    for part in parts:
        if part and part not in seen:
            seen.append(part)
    return " ".join(seen)


def _read_manifest(build_dir: Any) -> tuple[NetworkPolicy, list[str]]:
    manifest = read_json(build_dir / MANIFEST_FILE)
    if not isinstance(manifest, dict):
        return NetworkPolicy.NO_NET, []
    try:
        policy = NetworkPolicy(manifest.get("networkPolicy"))
    except ValueError:
        logger.warning("Unknown network policy in %s; using NO_NET", build_dir)
        return NetworkPolicy.NO_NET, []
    return policy, normalize_domains(manifest.get("networkDomains"))


def _read_permissions(build_dir: Any) -> dict[str, bool]:
    flags = read_json(build_dir / POLICY_FILE)
    if not isinstance(flags, dict):
        return {}
    return {key: value is True for key, value in flags.items()}


def build_csp(
    network_policy: NetworkPolicy,
    domains: list[str],
    settings: Settings,
) -> str:
    """Compose the Content-Security-Policy value."""
    fixed = [o for o in (origin_of(x) for x in settings.always_allowed_origins) if o]
    cdn_origin = origin_of(settings.cdn_base)
    web_origin = origin_of(settings.web_base) if settings.web_base else None

    if network_policy == NetworkPolicy.NO_NET:
        img_src = _join(SELF, "data:", "blob:")
        media_src = _join(SELF, "blob:")
    else:
        img_src = _join("*", "data:", "blob:")
        media_src = _join("*", "blob:")

    connect = [SELF]
    if network_policy == NetworkPolicy.OPEN_NET:
        connect.extend(domains or [OPEN_NET_FALLBACK])

    directives = [
        f"default-src {SELF}",
        f"script-src {_join(SELF, cdn_origin, *fixed)}",
        f"style-src {SELF} 'unsafe-inline'",
        f"img-src {img_src}",
        f"media-src {media_src}",
        f"connect-src {_join(*connect, *fixed)}",
        f"frame-src {_join(SELF, *fixed)}",
        "base-uri 'none'",
        "object-src 'none'",
        f"frame-ancestors {_join(SELF, web_origin)}",
    ]
    return "; ".join(directives)


def build_permissions_policy(flags: dict[str, bool]) -> str:
    """Compose the Permissions-Policy value."""
    parts = [
        f"{feature}=({'self' if flags.get(key) else ''})" for feature, key in PERMISSION_FEATURES
    ]
    parts.append("fullscreen=(self)")
    return ", ".join(parts)


def allowed_origins(build_dir: Any, settings: Settings | None = None) -> list[str]:
    """Origins a build may load from outside its own directory.

    These are the CDN, the always-allowed origins and, under OPEN_NET, the
    declared domains. The broad OPEN_NET fallback is not included.
    """
    if settings is None:
        settings = get_settings()
    network_policy, domains = _read_manifest(build_dir)
    origins = [origin_of(settings.cdn_base), *(origin_of(x) for x in settings.always_allowed_origins)]
    if network_policy == NetworkPolicy.OPEN_NET:
        origins.extend(domains)
    return list(dict.fromkeys(o for o in origins if o))


def derive_headers(build_id: str, settings: Settings | None = None) -> PolicyHeaders:
    """Derive the security headers of a build.

    Args:
        build_id: Build id; validated as a single path segment.
        settings: Optional settings instance.

    Returns:
        PolicyHeaders.

    Raises:
        InvalidBuildIdError: If the build id could escape the artifacts root.
    """
    if settings is None:
        settings = get_settings()
    build_dir = get_build_dir(build_id, settings)
    network_policy, domains = _read_manifest(build_dir)
    return PolicyHeaders(
        csp=build_csp(network_policy, domains, settings),
        permissions_policy=build_permissions_policy(_read_permissions(build_dir)),
    )


__all__ = [
    "OPEN_NET_FALLBACK",
    "PolicyHeaders",
    "allowed_origins",
    "build_csp",
    "build_permissions_policy",
    "derive_headers",
    "normalize_domains",
    "origin_of",
]
