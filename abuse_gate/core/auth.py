"""
abuse_gate/core/auth.py — API key authentication for the admin and commit endpoints
The admission check itself is unauthenticated: it is called for every
client request and decides on the client's identity, not on a credential.
"""
from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

from abuse_gate.config import get_settings

settings = get_settings()


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> bool:
    """Validate X-API-Key header for programmatic access."""
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-API-Key header required",
        )
    if not secrets.compare_digest(x_api_key, settings.admin_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    return True
