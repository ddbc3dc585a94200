"""
Request identity.

Authentication happens upstream; this service trusts request.state.user_id
(set by the gateway's auth middleware) or the X-User-Id header, and guards
admin routes with a shared X-Admin-Key.
"""
import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from gigcoins.core.errors import PermissionError


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None),
) -> str:
    """
    Returns:
        user_id of the caller

    Raises:
        HTTPException 401: no identity on the request
    """
    user_id = getattr(request.state, "user_id", None) or x_user_id
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id.strip()


async def require_admin(
    request: Request,
    x_admin_key: Optional[str] = Header(None),
) -> str:
    """
    Check X-Admin-Key against ADMIN_KEY. Admin routes are closed while no key is configured.

    Raises:
        PermissionError: missing or wrong key
    """
    expected = getattr(request.app.state.settings, "ADMIN_KEY", None)
    provided = (x_admin_key or "").strip()
    if not expected or not provided or not hmac.compare_digest(provided, expected):
        raise PermissionError("Admin access required")
    return "admin"
