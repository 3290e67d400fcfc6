"""Authentication dependencies"""
from fastapi import HTTPException, Request

from sellerhub.core.logging import security_logger
from sellerhub.db.redis import get_session


def require_auth(request: Request) -> str:
    """Dependency: Require an authenticated seller session, return seller_id"""
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    seller_id = get_session(session_id)
    if not seller_id:
        security_logger.info(
            f"Expired session - IP: {request.client.host if request.client else 'unknown'}, "
            f"Path: {request.url.path}"
        )
        raise HTTPException(401, "Session expired. Please log in again.")

    return seller_id
