"""Principal resolution - JWT bearer tokens to the current user.

Token issuance and password handling belong to the identity service; this
module only verifies access tokens and loads the matching user, whose id
becomes the principal every query is scoped to.  With the default (unset)
JWT secret every request runs as a local development analyst.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from threatquery.config import settings
from threatquery.db import get_db
from threatquery.db.models import User

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

security = HTTPBearer(auto_error=False)

DEV_USER = dict(
    id="dev-user",
    username="analyst",
    email="analyst@local",
    role="analyst",
    display_name="Dev Analyst",
)


class TokenPayload(BaseModel):
    sub: str  # principal id
    role: str
    exp: datetime
    type: str  # only "access" is accepted here


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(user_id: str, role: str = "analyst", minutes: int = 60) -> str:
    """Mint an access token; used by tests and local tooling."""
    payload = {
        "sub": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
        "type": "access",
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> TokenPayload:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError as e:
        raise _unauthorized(f"Invalid token: {e}")
    return TokenPayload(**payload)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the bearer token to an active user."""
    if settings.auth_disabled:
        return User(**DEV_USER)

    if not credentials:
        raise _unauthorized("Authentication required")

    token = decode_token(credentials.credentials)
    if token.type != "access":
        raise _unauthorized("Invalid token type - use access token")

    user = await db.get(User, token.sub)
    if user is None:
        logger.info(f"Token for unknown principal {token.sub} rejected")
        raise _unauthorized("User not found")
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled",
        )
    return user
