from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token
from models import UserRole
from utils.rate_limiter import rate_limiter

logger = logging.getLogger(__name__)


def get_client_info(request: Request) -> dict:
    """Tracking fields stored with every intake submission."""
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("User-Agent"),
        "referrer": request.headers.get("Referer"),
    }


async def intake_rate_limit(request: Request) -> None:
    """Per-IP limit on public form submissions."""
    client_ip = request.client.host if request.client else "unknown"
    allowed, message = await rate_limiter.check_rate_limit(f"intake:{client_ip}")
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=message
        )


async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload:
        return None

    return payload


async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user


async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    user = await require_auth(request)
    if user.get("role") != UserRole.ROLE_ADMIN.value:
        logger.warning(f"Admin route denied for {user.get('email')} on {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user
