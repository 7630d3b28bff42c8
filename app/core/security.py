from __future__ import annotations

import hmac

from fastapi import Header, HTTPException

from app.core.config import settings


def _matches(given: str | None, expected: str) -> bool:
    return bool(given) and hmac.compare_digest(given.encode(), expected.encode())


def require_admin_token(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")) -> None:
    """Guards admin and status-ingest routes."""
    if settings.AUTH_DISABLED:
        return
    if not _matches(x_admin_token, settings.ADMIN_TOKEN):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def webhook_token_ok(token: str | None) -> bool:
    return _matches(token, settings.WEBHOOK_VERIFY_TOKEN)
