"""
Identity helpers.

Authentication itself belongs to the external identity provider; by the time
a request reaches these routes the caller's id is either on request.state
(set by an upstream auth layer) or in the X-User-Id header.
"""
from typing import Optional

from fastapi import Request

from preply.core.errors import AuthError


def get_optional_user_id(request: Request) -> Optional[str]:
    user_id = getattr(request.state, "user_id", None) or request.headers.get("x-user-id")
    if user_id is None:
        return None
    user_id = user_id.strip()
    return user_id or None


def require_user_id(request: Request) -> str:
    """FastAPI dependency: caller identity or 401."""
    user_id = get_optional_user_id(request)
    if not user_id:
        raise AuthError("Please login to continue")
    return user_id
