# api/auth.py
# ============================================================================
# BLOOM SISTERS BACKEND — BEARER AUTH
# ============================================================================
# HS256 JWT bearer tokens issued by the storefront login. Decoded claims
# become an ``Actor``; admin routes additionally require an admin role.
# ============================================================================

import os
from typing import Any, Dict, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from schemas.order_models import ADMIN_ROLES, Actor

logger = structlog.get_logger().bind(component="auth")


class AuthConfig:
    """Token verification settings"""

    JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production-please-32b")
    JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")


config = AuthConfig()

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])


def actor_from_claims(claims: Dict[str, Any]) -> Actor:
    user_id = claims.get("userId") or claims.get("id") or claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return Actor(
        user_id=str(user_id),
        username=claims.get("username"),
        email=claims.get("email"),
        role=claims.get("role"),
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Access token required")

    try:
        claims = decode_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.info("token_rejected", error_type=type(e).__name__)
        raise HTTPException(status_code=401, detail="Invalid token")

    return actor_from_claims(claims)


def require_roles(*roles: str):
    """Dependency factory: the caller's role must be one of ``roles``."""
    allowed = frozenset(r.upper() for r in roles) or ADMIN_ROLES

    async def dependency(actor: Actor = Depends(get_current_user)) -> Actor:
        if (actor.role or "").upper() not in allowed:
            logger.warning("role_forbidden", user_id=actor.user_id, role=actor.role)
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return actor

    return dependency


require_admin = require_roles(*sorted(ADMIN_ROLES))
