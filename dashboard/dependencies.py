"""
Shared FastAPI dependencies.
"""
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from managed_wealth.container import ManagedWealthContainer

logger = logging.getLogger(__name__)


def get_container(request: Request) -> ManagedWealthContainer:
    return request.app.state.container


def require_admin(
    x_admin_token: Optional[str] = Header(default=None),
    container: ManagedWealthContainer = Depends(get_container),
) -> str:
    """Admin guard on the x-admin-token header. Returns the actor name for audit logs."""
    expected = container.config.admin_token
    if expected is None:
        return "admin"
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        logger.warning("Rejected admin request with missing or invalid token")
        raise HTTPException(status_code=401, detail="Unauthorized")
    return "admin"
