import secrets
from typing import Optional

from fastapi import Header, HTTPException

from app.config import get_settings


async def require_operator(
    x_admin_token: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> str:
    """Authenticate an operator and return the identity recorded in the audit log."""
    settings = get_settings()
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.ADMIN_API_TOKEN):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id or "admin"
