"""
Bearer token verification.

Tokens are HS256 JWTs signed with `settings.jwt_secret`; issuing them is
somebody else's job. Verification checks signature and expiry, then looks
the subject up in the injected UserDirectory:

    unknown subject   → 401
    inactive user     → 401
    otherwise         → the directory's User (its role wins over any claim)

HTTP routes read the token from `Authorization: Bearer …`. Browsers cannot
set headers on WebSocket or EventSource connections, so those endpoints
accept `?token=…` instead.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel

from invoiceflow.auth.users import User, UserDirectory
from invoiceflow.core.config import Settings, settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class TokenPayload(BaseModel):
    sub: str
    exp: int


def decode_token(token: str, cfg: Settings = settings) -> TokenPayload:
    try:
        claims = jwt.decode(
            token,
            cfg.jwt_secret,
            algorithms=[cfg.jwt_algorithm],
            options={"verify_exp": True, "verify_aud": False},
        )
    except ExpiredSignatureError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Token has expired")
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {exc}")

    if not claims.get("sub") or "exp" not in claims:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Token missing sub or exp claim")
    return TokenPayload(sub=claims["sub"], exp=claims["exp"])


async def verify_token(token: str, directory: UserDirectory, cfg: Settings = settings) -> User:
    payload = decode_token(token, cfg)
    user = await directory.get(payload.sub)
    if user is None or not user.active:
        logger.warning("Auth | rejected token for unknown or inactive user %r", payload.sub)
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Unknown or inactive user")
    return user


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> User:
    """
    FastAPI dependency for authenticated routes::

        @router.get("/batches")
        async def list_batches(user: User = Depends(get_current_user)): ...
    """
    token = credentials.credentials if credentials else request.query_params.get("token")
    if not token:
        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return await verify_token(token, request.app.state.users, request.app.state.settings)
