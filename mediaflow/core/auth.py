from __future__ import annotations

from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings, get_settings


security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    owner_id: str
    scopes: tuple[str, ...] = ()


def decode_token(token: str, settings: Settings) -> dict:
    try:
        payload = jwt.decode(
            token,
            settings.secrets.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"verify_aud": settings.jwt_audience is not None},
        )
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from exc
    return payload


def encode_token(owner_id: str, settings: Settings, *, scopes: tuple[str, ...] = (), extra: dict | None = None) -> str:
    claims: dict[str, object] = {"sub": owner_id, "scopes": list(scopes)}
    if settings.jwt_issuer:
        claims["iss"] = settings.jwt_issuer
    if settings.jwt_audience:
        claims["aud"] = settings.jwt_audience
    claims.update(extra or {})
    return jwt.encode(claims, settings.secrets.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    settings: Settings = Depends(get_settings),
) -> AuthContext:
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_authorization")

    payload = decode_token(credentials.credentials, settings)
    owner_id = payload.get("sub")
    if not owner_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="subject_required")

    context = AuthContext(owner_id=str(owner_id), scopes=tuple(payload.get("scopes") or []))
    request.state.auth = context
    return context


__all__ = ["AuthContext", "decode_token", "encode_token", "get_auth_context"]
