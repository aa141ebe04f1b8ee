from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from loanflow.core.settings import settings


def _verification_key() -> str:
    return settings.jwt_public_key or settings.jwt_secret_key


def decode_actor_token(token: str) -> dict[str, Any]:
    """Verify an identity token issued by the auth service and return its claims."""
    options = {"verify_aud": settings.jwt_audience is not None}
    try:
        payload = jwt.decode(
            token,
            _verification_key(),
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options,
        )
    except JWTError as exc:
        raise ValueError("Invalid token") from exc
    token_type = payload.get("type")
    if token_type is not None and token_type != "access":
        raise ValueError(f"Unexpected token type: {token_type}")
    if not payload.get("sub") or not payload.get("role"):
        raise ValueError("Token is missing actor claims")
    return payload


def create_actor_token(
    subject: str,
    role: str,
    *,
    region: str | None = None,
    manager: str | None = None,
    expires_delta: timedelta | None = None,
    signing_key: str | None = None,
) -> str:
    """Mint an access token with actor claims.

    Tokens are normally issued by the auth service; this helper exists for
    local tooling and tests that need a token the service will accept.
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=15))
    claims: dict[str, Any] = {"sub": subject, "role": role, "type": "access", "exp": expire}
    if region is not None:
        claims["region"] = region
    if manager is not None:
        claims["manager"] = manager
    if settings.jwt_audience is not None:
        claims["aud"] = settings.jwt_audience
    return jwt.encode(claims, signing_key or settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
