from fastapi import APIRouter, HTTPException, Request, status
from models import AdminLoginRequest
from auth import authenticate_admin, create_access_token
from utils.rate_limiter import rate_limiter
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])

LOGIN_MAX_ATTEMPTS = 5


@router.post("/login")
async def admin_login(request: Request, credentials: AdminLoginRequest):
    """Back-office login. Returns a bearer token carrying ROLE_ADMIN."""
    client_ip = request.client.host if request.client else "unknown"
    allowed, message = await rate_limiter.check_rate_limit(
        f"login:{client_ip}",
        max_attempts=LOGIN_MAX_ATTEMPTS,
    )
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=message
        )

    claims = authenticate_admin(credentials.email, credentials.password)
    if not claims:
        logger.warning(f"Admin login failed for {credentials.email} from {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials"
        )

    access_token = create_access_token(claims)
    logger.info(f"Admin login: {claims['email']}")

    return {
        "access_token": access_token,
        "token_type": "bearer",
        "user": {"email": claims["email"], "role": claims["role"]},
    }
