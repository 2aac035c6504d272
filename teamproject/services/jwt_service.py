"""
JWT Service — bearer tokens for the Team Project Manager API.

Tokens are minted by the login front end (or by the test suite) and only
verified here.  Claims:

    sub    user id, as a string
    role   stored role at issue time (informational; the DB row wins)
    type   always "access"
    iss    JWT_ISSUER
    iat / exp / jti

Lifetime defaults to 15 minutes (JWT_ACCESS_EXPIRES, seconds).
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

ALGORITHM = "HS256"
TOKEN_TYPE = "access"
DEFAULT_ACCESS_EXPIRES = 900
DEFAULT_ISSUER = "teamproject"

_REQUIRED_CLAIMS = ["sub", "exp", "iat", "type"]


def _signing_key() -> str:
    cfg = current_app.config
    return cfg.get("JWT_SECRET_KEY") or cfg["SECRET_KEY"]


def _issuer() -> str:
    return current_app.config.get("JWT_ISSUER", DEFAULT_ISSUER)


def encode_access_token(user_id: int, role: str, expires_in: int | None = None) -> str:
    issued = datetime.now(timezone.utc)
    lifetime = expires_in if expires_in is not None else current_app.config.get(
        "JWT_ACCESS_EXPIRES", DEFAULT_ACCESS_EXPIRES,
    )
    claims = {
        "sub": str(user_id),
        "role": role,
        "type": TOKEN_TYPE,
        "iss": _issuer(),
        "iat": issued,
        "exp": issued + timedelta(seconds=lifetime),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, _signing_key(), algorithm=ALGORITHM)


def generate_access_token(user, expires_in: int | None = None) -> str:
    """Access token for a ``User`` row."""
    return encode_access_token(user.id, user.role, expires_in=expires_in)


def decode_access_token(token: str) -> dict:
    """
    Verify signature, expiry, issuer and token type.

    Raises ``jwt.ExpiredSignatureError`` or another ``jwt.InvalidTokenError``.
    """
    claims = jwt.decode(
        token,
        _signing_key(),
        algorithms=[ALGORITHM],
        issuer=_issuer(),
        options={"require": _REQUIRED_CLAIMS},
        leeway=current_app.config.get("JWT_LEEWAY", 0),
    )
    if claims["type"] != TOKEN_TYPE:
        raise jwt.InvalidTokenError(f"Unexpected token type: {claims['type']}")
    return claims
