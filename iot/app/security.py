from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, status

from .config import settings


def require_admin(x_admin_key: str | None = Header(default=None, alias="X-Admin-Key")) -> None:
    """Admin authorization gate: X-Admin-Key must match ADMIN_API_KEY."""

    if (
        not x_admin_key
        or not settings.admin_api_key
        or not hmac.compare_digest(x_admin_key, settings.admin_api_key)
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")
