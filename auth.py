"""
Request authentication.

Users arrive with a bearer JWT issued by the identity provider; its `sub`
claim is the user id. Worker and cron endpoints use shared secrets instead.
"""

import logging
import secrets
from typing import Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import config

bearer_scheme = HTTPBearer(auto_error=False)


def decode_user_token(token: str) -> str:
    """Return the user id carried by a token, or raise 401."""
    if not config.AUTH_JWT_SECRET:
        logging.error("AUTH_JWT_SECRET is not configured; rejecting authenticated request")
        raise HTTPException(status_code=401, detail="Unauthorized")

    options = {"require": ["sub", "exp"]}
    try:
        claims = jwt.decode(
            token,
            config.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            issuer=config.AUTH_JWT_ISSUER or None,
            options=options,
        )
    except jwt.PyJWTError as e:
        logging.warning(f"Rejected user token: {e}")
        raise HTTPException(status_code=401, detail="Unauthorized")
    return claims["sub"]


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """Dependency for FastAPI to get the authenticated user id."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return decode_user_token(credentials.credentials)


def _matches(credentials: Optional[HTTPAuthorizationCredentials], secret: str) -> bool:
    if credentials is None or not secret:
        return False
    return secrets.compare_digest(credentials.credentials, secret)


def require_worker_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    if not _matches(credentials, config.WORKER_SECRET):
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    # Cron triggers are open when no CRON_SECRET is configured
    if config.CRON_SECRET and not _matches(credentials, config.CRON_SECRET):
        raise HTTPException(status_code=401, detail="Unauthorized")
