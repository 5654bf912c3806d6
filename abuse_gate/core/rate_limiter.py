"""
abuse_gate/core/rate_limiter.py — slowapi limits for the service's own endpoints
These are coarse per-address limits that protect the admin surface from
API key brute forcing. They are unrelated to the tiered limits the engine
enforces for protected workers.
"""
from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

from abuse_gate.config import get_settings

settings = get_settings()

# Single shared limiter instance — imported by main.py and routers
limiter = Limiter(key_func=get_remote_address, enabled=not settings.is_testing)

RATE_LIMITS = {
    # Admin mutations: restrictive
    "admin_write": "30/minute",
    # Admin reads: status, config listings
    "admin_read": "120/minute",
    # Health check: moderate
    "health": "30/minute",
}
