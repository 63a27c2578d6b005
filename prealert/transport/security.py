# prealert/transport/security.py
"""
Admin endpoint authentication.

Admin routes take a Bearer token compared in constant time against
ADMIN_TOKEN:

    curl -H "Authorization: Bearer $ADMIN_TOKEN" http://host/admin/workflows
"""
from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from prealert.config import settings
from prealert.infra.logging_config import get_logger

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _verify_bearer_token(credentials: HTTPAuthorizationCredentials | None) -> tuple[bool, str | None]:
    """Returns (is_valid, error_message)."""
    if not credentials:
        return False, "Missing Authorization header"

    if not hmac.compare_digest(credentials.credentials.encode(), settings.admin_token.encode()):
        return False, "Invalid token"

    return True, None


async def require_admin_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """
    Usage:
        @app.get("/admin/endpoint", dependencies=[Depends(require_admin_auth)])
        async def admin_endpoint():
            ...
    """
    if not settings.admin_token:
        logger.critical("ADMIN_TOKEN not configured but admin endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable",
        )

    valid, error = _verify_bearer_token(credentials)
    if not valid:
        logger.warning(f"Admin auth failed: {error}", extra={"request_id": getattr(request.state, "request_id", None)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
