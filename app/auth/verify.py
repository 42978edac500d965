"""
verify.py
---------
Purpose:
    Turn the auth service's bearer JWT into a UserIdentity.

Notes:
    - Tokens are HS256-signed by the auth collaborator with AUTH_JWT_SECRET.
    - `auth_dependency` protects HTTP routes; `identity_from_token` is used
      for WebSocket connections that pass the token as a query parameter.
"""

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.features.annotation.domain import UserIdentity

_security = HTTPBearer()


def verify_jwt(token: str) -> dict:
    try:
        decoded = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.AUTH_JWT_ALGORITHM],
            audience=settings.AUTH_JWT_AUDIENCE,
            options={"verify_exp": True, "require": ["sub"]},
        )
        return decoded
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def identity_from_claims(claims: dict) -> UserIdentity:
    return UserIdentity(
        uid=str(claims["sub"]),
        display_name=claims.get("name"),
        email=claims.get("email"),
        photo_url=claims.get("picture"),
    )


def identity_from_token(token: str) -> UserIdentity:
    return identity_from_claims(verify_jwt(token))


def auth_dependency(
    credentials: HTTPAuthorizationCredentials = Depends(_security),
) -> UserIdentity:
    return identity_from_token(credentials.credentials)
