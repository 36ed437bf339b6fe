import jwt
from typing import Optional, Dict, Any
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from ..core.config import settings
from ..core.logging_config import get_logger, set_request_context
from .dispatcher import WorkflowDispatcher, get_dispatcher

logger = get_logger("dependencies")
security = HTTPBearer(auto_error=False)


class TokenClaims(BaseModel):
    """JWT token claims"""
    user_id: str
    tenant_id: str
    email: str = ""
    role: str = "user"
    exp: int = 0


def decode_token(token: str) -> Dict[str, Any]:
    """Verify signature, expiry and issuer of an access token"""
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Token validation is not configured"
        )

    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=settings.JWT_ISSUER,
            options={"require": ["exp"]}
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Token has expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"}
        )
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"}
        )


async def validate_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> TokenClaims:
    """Validate JWT token and extract claims"""

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header missing",
            headers={"WWW-Authenticate": "Bearer"}
        )

    token_info = decode_token(credentials.credentials)

    user_id = token_info.get("user_id") or token_info.get("sub")
    tenant_id = token_info.get("tenant_id")

    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing user_id claim",
            headers={"WWW-Authenticate": "Bearer"}
        )

    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing tenant_id claim",
            headers={"WWW-Authenticate": "Bearer"}
        )

    authorities = token_info.get("authorities", [])
    role = "admin" if "ROLE_TENANT_ADMIN" in authorities else "user"

    claims = TokenClaims(
        user_id=str(user_id),
        tenant_id=str(tenant_id),
        email=token_info.get("email", ""),
        role=role,
        exp=token_info.get("exp", 0)
    )

    set_request_context(tenant_id=claims.tenant_id, user_id=claims.user_id)
    logger.debug(f"Token validated for tenant: {tenant_id}, user: {user_id}")
    return claims


def get_workflow_dispatcher() -> WorkflowDispatcher:
    """Dispatcher configured at application startup"""
    try:
        return get_dispatcher()
    except RuntimeError as e:
        logger.error(str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Workflow engine is not ready"
        )
