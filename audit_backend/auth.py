"""
Authentication: bearer JWT validation and caller context.
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from audit_backend.config import settings
from audit_backend.models import AuditSession, RequestContext

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    """Identity carried by an access token."""
    user_id: str
    organization_id: Optional[str] = None


def decode_access_token(token: str) -> Optional[TokenData]:
    """
    Decode and validate a JWT access token.

    The user id is the "sub" claim; the organization comes from
    "organizationId" (or "org_id").

    Returns:
        TokenData if valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm]
        )
    except JWTError as e:
        logger.warning(f"JWT decode error: {e}")
        return None

    user_id = payload.get("sub")
    if user_id is None:
        return None

    return TokenData(
        user_id=str(user_id),
        organization_id=payload.get("organizationId") or payload.get("org_id"),
    )


def client_ip(request: Request) -> Optional[str]:
    """First address of X-Forwarded-For, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def get_request_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> RequestContext:
    """
    Dependency resolving the authenticated caller.

    Raises:
        HTTPException: 401 if the bearer token is missing or invalid
    """
    token_data = decode_access_token(credentials.credentials) if credentials else None
    if token_data is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return RequestContext(
        actor_id=token_data.user_id,
        organization_id=token_data.organization_id,
        ip=client_ip(request),
        method=request.method,
        user_agent=request.headers.get("user-agent"),
    )


async def get_audit_session(
    context: RequestContext = Depends(get_request_context),
) -> AuditSession:
    """Fresh audit session scoped to the current request."""
    return AuditSession(context=context)
