"""
abuse_gate/services/identity.py — Client identity resolution
Identity is the client IP. It is best-effort (NAT and proxy chains share
addresses), never a security boundary by itself.
"""
from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from abuse_gate.config import get_settings

settings = get_settings()

# Printable, no whitespace; ':' allowed for IPv6
_SAFE_TOKEN = re.compile(r"^[A-Za-z0-9.:_\-\[\]%]+$")
_MAX_TOKEN_LENGTH = 128

DEFAULT_WORKER = "unknown-worker"


def sanitize_identity(value: Any, default: str = "unknown") -> str:
    """
    Coerce an identity-ish value into a string safe to embed in store keys.
    None, blanks and values with whitespace or control characters collapse
    to `default`.
    """
    if value is None:
        return default
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    text = str(value).strip()
    if not text or len(text) > _MAX_TOKEN_LENGTH or not _SAFE_TOKEN.match(text):
        return default
    return text


def sanitize_worker(value: Any) -> str:
    return sanitize_identity(value, DEFAULT_WORKER)


def _first_forwarded_hop(header_value: str) -> Optional[str]:
    """X-Forwarded-For is 'client, proxy1, proxy2'; the first hop is the client."""
    for part in header_value.split(","):
        candidate = part.strip()
        if candidate:
            return candidate
    return None


def resolve_identity(
    headers: Mapping[str, str],
    client_host: Optional[str] = None,
    trusted_headers: Optional[list[str]] = None,
    fallback: Optional[str] = None,
) -> str:
    """
    Derive the client identity from request metadata.
    Order: trusted proxy headers (CF-Connecting-IP, X-Forwarded-For first hop,
    X-Real-IP by default), then the socket peer, then the configured fallback.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    fallback = fallback or settings.fallback_identity

    for name in trusted_headers or settings.trusted_proxy_headers:
        raw = lowered.get(name.lower())
        if not raw:
            continue
        candidate = _first_forwarded_hop(raw) if "," in raw else raw.strip()
        identity = sanitize_identity(candidate, "")
        if identity:
            return identity

    identity = sanitize_identity(client_host, "")
    return identity or fallback


def request_context(headers: Mapping[str, str], path: str = "", method: str = "") -> dict[str, Any]:
    """Context stored alongside violation records."""
    lowered = {k.lower(): v for k, v in headers.items()}
    return {
        "user_agent": lowered.get("user-agent", "")[:300],
        "country": lowered.get("cf-ipcountry", "XX"),
        "path": path,
        "method": method,
    }
